"""
Configuration for the forkshell server and client.

Values come from three layers, lowest precedence first:
  1. The defaults defined in this module.
  2. Environment variables prefixed with FORKSHELL_ (a .env file in the
     working directory is loaded into the environment first).
  3. Command line flags, applied by the entry points in server.py / client.py.
"""

import logging
import math
import os
import sys
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

# --- Configuration ---
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8888
MAX_PORT = 0xFFFF
LISTEN_BACKLOG = 64
POLL_TIMEOUT = 3.0  # seconds
SERVER_BUFFER_SIZE = 512
CLIENT_BUFFER_SIZE = 1024
EXIT_COMMAND = "exit"

ENV_PREFIX = "FORKSHELL_"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class InvalidPortError(ValueError):
    """Raised when a port is not a decimal integer between 0 and 65535."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"Bad port, got: {value}")


def parse_port(value) -> int:
    """
    Parses a TCP port given as text.

    Args:
        value: The port as a string (or an int).

    Returns:
        The port number.

    Raises:
        InvalidPortError: If the value is not a decimal integer in [0, 65535].
    """
    text = str(value).strip()
    if not text.isdigit() or not text.isascii():
        raise InvalidPortError(value)
    port = int(text)
    if port > MAX_PORT:
        raise InvalidPortError(value)
    return port


class InvalidPollTimeoutError(ValueError):
    """Raised when a poll timeout is not a finite, positive number of seconds."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"Bad poll timeout, got: {value}")


def parse_poll_timeout(value) -> float:
    """Parses a poll timeout in seconds. Zero or less would make the loops spin or block."""
    try:
        timeout = float(value)
    except (TypeError, ValueError) as e:
        raise InvalidPollTimeoutError(value) from e
    if not math.isfinite(timeout) or timeout <= 0:
        raise InvalidPollTimeoutError(value)
    return timeout


def _env(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return None
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = _env(env, name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ServerConfig:
    port: int = DEFAULT_PORT
    verbose: bool = False
    poll_timeout: float = POLL_TIMEOUT
    backlog: int = LISTEN_BACKLOG
    buffer_size: int = SERVER_BUFFER_SIZE
    # None means the platform default shell (/bin/sh on POSIX).
    shell: Optional[str] = None
    merge_stderr: bool = False

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        """Builds a config from FORKSHELL_* environment variables."""
        env = os.environ if env is None else env
        config = cls()
        port = _env(env, "PORT")
        if port is not None:
            config.port = parse_port(port)
        poll_timeout = _env(env, "POLL_TIMEOUT")
        if poll_timeout is not None:
            config.poll_timeout = parse_poll_timeout(poll_timeout)
        config.shell = _env(env, "SHELL")
        config.verbose = _env_bool(env, "VERBOSE", config.verbose)
        config.merge_stderr = _env_bool(env, "MERGE_STDERR", config.merge_stderr)
        return config


@dataclass
class ClientConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    # None runs the client interactively.
    command: Optional[str] = None
    verbose: bool = False
    buffer_size: int = CLIENT_BUFFER_SIZE

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ClientConfig":
        """Builds a config from FORKSHELL_* environment variables."""
        env = os.environ if env is None else env
        config = cls()
        config.host = _env(env, "HOST") or config.host
        port = _env(env, "PORT")
        if port is not None:
            config.port = parse_port(port)
        config.verbose = _env_bool(env, "VERBOSE", config.verbose)
        return config


def load_env_file(path: Optional[str] = None) -> bool:
    """Loads a .env file into os.environ without overriding existing variables."""
    return load_dotenv(dotenv_path=path)


def setup_logging(verbose: bool) -> None:
    """
    Configures the root logger for the command line tools.

    Verbose mode shows the status messages (INFO). Otherwise only errors are
    printed, so per-session problems logged as warnings stay quiet.
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.ERROR,
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
