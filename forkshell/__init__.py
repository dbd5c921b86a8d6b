"""
forkshell - a minimal remote command-execution service.

The server accepts TCP connections and forks one process per connection. Each
process reads command lines from its socket, runs them through the shell and
sends the output back, terminated by a NUL byte. The server stops by itself
once it has served at least one connection and none are left.

Quick Start:
    # Server (shell): python -m forkshell.server -p 8888 -v
    # Client (shell): python -m forkshell.client -h 127.0.0.1 -p 8888 -c "uname -a"

    from forkshell import CommandClient

    with CommandClient("127.0.0.1", 8888) as client:
        print(client.send_command("echo hello"), end="")
"""

from .client import CommandClient, ConnectError, run_batch, run_interactive
from .config import (
    ClientConfig,
    InvalidPollTimeoutError,
    InvalidPortError,
    ServerConfig,
    parse_poll_timeout,
    parse_port,
)
from .dispatcher import AddressResolutionError, BindError, Dispatcher, SpawnError
from .executor import CommandStartError, ShellExecutor, execute_command
from .liveness import CompletionChannel, LivenessTracker
from .session import Session, SessionHandler

__all__ = [
    "AddressResolutionError",
    "BindError",
    "ClientConfig",
    "CommandClient",
    "CommandStartError",
    "CompletionChannel",
    "ConnectError",
    "Dispatcher",
    "InvalidPollTimeoutError",
    "InvalidPortError",
    "LivenessTracker",
    "ServerConfig",
    "Session",
    "SessionHandler",
    "ShellExecutor",
    "SpawnError",
    "execute_command",
    "parse_poll_timeout",
    "parse_port",
    "run_batch",
    "run_interactive",
]
