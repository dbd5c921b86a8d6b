"""
Runs shell command lines and captures their output.
"""

import logging
import subprocess
from typing import Optional

from forkshell.config import SERVER_BUFFER_SIZE
from forkshell.protocol import SERVER_ENCODING

logger = logging.getLogger(__name__)


class CommandStartError(Exception):
    """Raised when the shell interpreter for a command cannot be started."""

    def __init__(self, command_line: str, reason: Exception):
        self.command_line = command_line
        self.reason = reason
        super().__init__(f"Could not start shell for {command_line!r}: {reason}")


def execute_command(
    command_line: str,
    shell: Optional[str] = None,
    merge_stderr: bool = False,
    chunk_size: int = SERVER_BUFFER_SIZE,
) -> str:
    """
    Executes a command line through the shell and returns its standard output.

    The output is read incrementally until the shell closes its end of the
    pipe. There is no size cap: the whole output is held in memory.

    Args:
        command_line (str): The command line, passed verbatim to the shell.
        shell (str, optional): Interpreter to use instead of /bin/sh.
        merge_stderr (bool): Capture stderr into the output as well. When False
            stderr is inherited from the calling process.
        chunk_size (int): Bytes requested per read from the pipe.

    Returns:
        str: The captured output. Bytes that are not valid UTF-8 are kept as
        surrogate escapes so they can be re-encoded unchanged.

    Raises:
        CommandStartError: If the interpreter could not be started.
    """
    try:
        process = subprocess.Popen(
            command_line,
            shell=True,
            executable=shell,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if merge_stderr else None,
        )
    except (OSError, ValueError) as e:
        raise CommandStartError(command_line, e) from e

    chunks = []
    with process:
        while True:
            chunk = process.stdout.read1(chunk_size)
            if not chunk:
                break
            chunks.append(chunk)
    logger.debug(f"Command {command_line!r} exited with status {process.returncode}")
    return b"".join(chunks).decode(SERVER_ENCODING, errors="surrogateescape")


class ShellExecutor:
    """
    Executes command lines for a session with a fixed shell configuration.
    """

    def __init__(
        self,
        shell: Optional[str] = None,
        merge_stderr: bool = False,
        chunk_size: int = SERVER_BUFFER_SIZE,
    ):
        self.shell = shell
        self.merge_stderr = merge_stderr
        self.chunk_size = chunk_size

    @classmethod
    def from_config(cls, config) -> "ShellExecutor":
        return cls(
            shell=config.shell,
            merge_stderr=config.merge_stderr,
            chunk_size=config.buffer_size,
        )

    def execute(self, command_line: str) -> str:
        """Runs one command line to completion. See ``execute_command``."""
        return execute_command(
            command_line,
            shell=self.shell,
            merge_stderr=self.merge_stderr,
            chunk_size=self.chunk_size,
        )
