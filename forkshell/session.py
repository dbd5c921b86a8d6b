"""
Per-connection command loop.

A ``SessionHandler`` owns one accepted connection for its whole life: it waits
for a command, runs it, writes the output back, and repeats until the client
goes away or an I/O error occurs. When the loop ends it always closes the
connection and sends the completion notification, whatever the reason.
"""

import logging
import os
import select
import socket
from dataclasses import dataclass
from typing import Optional

from forkshell.config import POLL_TIMEOUT, SERVER_BUFFER_SIZE
from forkshell.executor import CommandStartError, ShellExecutor
from forkshell.liveness import CompletionChannel
from forkshell.protocol import SENTINEL, decode_command, encode_response

logger = logging.getLogger(__name__)

_HANGUP = select.POLLHUP | select.POLLERR | select.POLLNVAL


@dataclass
class Session:
    """One accepted client connection."""

    sock: socket.socket
    host: str
    service: str
    # PID of the process running the session; set once it is running.
    pid: Optional[int] = None

    @property
    def peer(self) -> str:
        return f"{self.host}:{self.service}"


class SessionHandler:
    def __init__(
        self,
        executor: ShellExecutor,
        completions: Optional[CompletionChannel] = None,
        poll_timeout: float = POLL_TIMEOUT,
        buffer_size: int = SERVER_BUFFER_SIZE,
    ):
        self.executor = executor
        self.completions = completions
        self.poll_timeout = poll_timeout
        self.buffer_size = buffer_size

    def handle(self, session: Session) -> None:
        """
        Serves commands on ``session`` until it ends, then tears it down.

        Errors end this session only; they are logged and never raised.
        """
        if session.pid is None:
            session.pid = os.getpid()
        try:
            self._serve(session)
        finally:
            self._terminate(session)

    def _serve(self, session: Session) -> None:
        poller = select.poll()
        poller.register(session.sock, select.POLLIN | select.POLLHUP)
        timeout_ms = int(self.poll_timeout * 1000)

        while True:
            try:
                events = poller.poll(timeout_ms)
            except OSError as e:
                logger.warning(f"Error polling session {session.peer}: {e}")
                return

            if not events:
                # Idle sessions are kept open indefinitely.
                continue

            mask = events[0][1]
            if mask & select.POLLIN:
                if not self._exchange(session):
                    return
            elif mask & _HANGUP:
                logger.info(f"Client {session.peer} hung up.")
                return

    def _exchange(self, session: Session) -> bool:
        """
        Reads one command, executes it and sends back the output.

        Returns:
            False if the session should end.
        """
        try:
            # The terminating NUL does not count against the command buffer, so a
            # full-size command and its terminator are read together.
            data = session.sock.recv(self.buffer_size + len(SENTINEL))
        except OSError as e:
            logger.warning(f"Error reading from {session.peer}: {e}")
            return False
        if not data:
            return False

        command = decode_command(data)
        logger.info(f"Read from client was: {command}")

        try:
            output = self.executor.execute(command)
        except CommandStartError as e:
            logger.warning(f"popen() failed for {session.peer}: {e}")
            return False

        try:
            session.sock.sendall(encode_response(output))
        except OSError as e:
            logger.warning(f"Error in write() to {session.peer}: {e}")
            return False
        return True

    def _terminate(self, session: Session) -> None:
        logger.info(f"Terminating connection from {session.peer}")
        try:
            session.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # The peer may already have reset the connection.
            pass
        session.sock.close()

        if self.completions is not None:
            try:
                self.completions.notify(session.pid)
            except OSError as e:
                logger.warning(f"Could not notify dispatcher about {session.peer}: {e}")
