"""
The forkshell server's accept loop.

The dispatcher binds a listening TCP socket and forks one process per accepted
connection. The forked process runs a ``SessionHandler`` and exits when the
session ends, after writing its PID into the dispatcher's completion channel.

The main loop waits on the listening socket and the completion channel with a
bounded timeout. Notifications only update the ``LivenessTracker``; the idle
check runs when a wait times out. Once at least one session has been served and
none are left, the dispatcher stops, reaps every remaining child and closes the
listener.

This module relies on os.fork() and is not available on Windows.
"""

import logging
import os
import selectors
import socket
import sys
from typing import Optional, Set, Tuple

from forkshell.config import ServerConfig
from forkshell.executor import ShellExecutor
from forkshell.liveness import CompletionChannel, LivenessTracker
from forkshell.session import Session, SessionHandler

if sys.platform == "win32":
    raise ImportError("The forkshell dispatcher requires os.fork() and does not run on Windows.")

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

UNKNOWN_HOST = "UnknownHost"
UNKNOWN_PORT = "UnknownPort"


class AddressResolutionError(Exception):
    """Raised when no listen address can be resolved for the port."""


class BindError(Exception):
    """Raised when none of the resolved addresses could be bound."""


class SpawnError(Exception):
    """Raised when a session process cannot be forked."""


def resolve_peer(address) -> Tuple[str, str]:
    """Returns printable (host, service) names for a peer address."""
    try:
        return socket.getnameinfo(address, 0)
    except (socket.gaierror, OSError) as e:
        logger.error(f"Error in getnameinfo(): {e}")
        return UNKNOWN_HOST, UNKNOWN_PORT


class Dispatcher:
    """
    Accepts connections and runs each one in its own forked process.

    Usage:
        dispatcher = Dispatcher(ServerConfig(port=8888))
        exit_status = dispatcher.run()
    """

    def __init__(self, config: Optional[ServerConfig] = None):
        self.config = config or ServerConfig()
        self.tracker = LivenessTracker()
        self.sock: Optional[socket.socket] = None
        self.completions: Optional[CompletionChannel] = None
        self._selector: Optional[selectors.BaseSelector] = None
        # Forked sessions that have not been reaped yet.
        self._children: Set[int] = set()
        self._failed = False

    @property
    def port(self) -> int:
        """The port actually bound (differs from the config when it is 0)."""
        if self.sock is None:
            raise RuntimeError("Dispatcher is not bound.")
        return self.sock.getsockname()[1]

    def run(self) -> int:
        """
        Binds (unless already bound), serves until idle, then shuts down.

        Returns:
            The process exit status: 0 after an idle shutdown, 1 if the wait
            or accept loop failed.

        Raises:
            AddressResolutionError, BindError: If the server cannot start.
            SpawnError: If a session process could not be forked.
        """
        logger.info("Starting server ...")
        if self.sock is None:
            logger.info(f"Attempting to start service at port {self.config.port}")
            self.bind()
        try:
            return self.serve()
        finally:
            self.shutdown()

    def bind(self) -> socket.socket:
        """Resolves a passive IPv4 address for the port and binds the first that works."""
        try:
            candidates = socket.getaddrinfo(
                None,
                self.config.port,
                socket.AF_INET,
                socket.SOCK_STREAM,
                0,
                socket.AI_PASSIVE,
            )
        except socket.gaierror as e:
            raise AddressResolutionError(f"Error in getaddrinfo(): {e}") from e

        last_error: Optional[OSError] = None
        for family, socktype, proto, _, sockaddr in candidates:
            try:
                sock = socket.socket(family, socktype, proto)
            except OSError as e:
                last_error = e
                continue
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind(sockaddr)
            except OSError as e:
                last_error = e
                sock.close()
                continue
            break
        else:
            raise BindError(f"Could not bind port {self.config.port}: {last_error}")

        sock.listen(self.config.backlog)
        sock.setblocking(False)
        self.sock = sock
        logger.info(f"Service started. Listening on port {self.port}")
        return sock

    def serve(self) -> int:
        """Runs the accept loop until the server goes idle or the wait fails."""
        if self.sock is None:
            self.bind()
        self.completions = CompletionChannel()
        self._selector = selectors.DefaultSelector()
        self._selector.register(self.sock, selectors.EVENT_READ, self._accept)
        self._selector.register(self.completions, selectors.EVENT_READ, self._collect)

        while not self._failed:
            try:
                events = self._selector.select(self.config.poll_timeout)
            except OSError as e:
                # select() already retries on EINTR.
                logger.error(f"Error waiting for connections: {e}")
                return EXIT_FAILURE

            if not events:
                self._collect()
                if self.tracker.idle:
                    logger.info("All connections have been handled.")
                    return EXIT_SUCCESS
                continue

            for key, _ in events:
                key.data()
        return EXIT_FAILURE

    def shutdown(self) -> None:
        """Reaps every session process, then closes the listener."""
        self.reap_all()
        logger.info("Shutting down server.")
        if self._selector is not None:
            self._selector.close()
            self._selector = None
        if self.completions is not None:
            self.completions.close()
            self.completions = None
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    def _accept(self) -> None:
        try:
            conn, address = self.sock.accept()
        except (BlockingIOError, InterruptedError, ConnectionAbortedError):
            return
        except OSError as e:
            logger.error(f"Accept: {e}")
            self._failed = True
            return

        conn.setblocking(True)
        host, service = resolve_peer(address)
        logger.info(f"Received connection from {host}:{service}.")
        pid = self._spawn(Session(conn, host, service))
        active = self.tracker.on_session_started(pid)
        logger.info(f"Active connections: {active}")

    def _spawn(self, session: Session) -> int:
        try:
            pid = os.fork()
        except OSError as e:
            session.sock.close()
            logger.critical("Could not fork process. Aborting.")
            raise SpawnError(f"fork() failed: {e}") from e

        if pid == 0:
            self._run_child(session)

        # The child owns the connection now.
        session.sock.close()
        self._children.add(pid)
        return pid

    def _run_child(self, session: Session) -> None:
        """Runs a session inside the forked process. Never returns."""
        status = EXIT_SUCCESS
        try:
            self._selector.close()
            self.sock.close()
            self.completions.close_reader()
            session.pid = os.getpid()
            handler = SessionHandler(
                ShellExecutor.from_config(self.config),
                completions=self.completions,
                poll_timeout=self.config.poll_timeout,
                buffer_size=self.config.buffer_size,
            )
            handler.handle(session)
        except Exception:
            logger.exception(f"Session {session.peer} failed")
            status = EXIT_FAILURE
        finally:
            # Ensure the child never returns to the dispatcher loop.
            os._exit(status)

    def _collect(self) -> None:
        """Applies pending completion notifications, then reaps exited children."""
        # Drain before reaping so a notification can never refer to a PID
        # that has already been reaped and reused.
        for pid in self.completions.drain():
            self._session_ended(pid)
        self._reap(block=False)

    def _reap(self, block: bool) -> None:
        options = 0 if block else os.WNOHANG
        for pid in list(self._children):
            try:
                reaped, _ = os.waitpid(pid, options)
            except ChildProcessError:
                reaped = pid
            if reaped == 0:
                continue
            self._children.discard(pid)
            # Covers sessions that died without sending a notification.
            self._session_ended(pid)

    def _session_ended(self, pid: int) -> None:
        if self.tracker.on_session_ended(pid):
            logger.info(f"Active connections: {self.tracker.active_count}")

    def reap_all(self) -> None:
        """Blocks until every forked session has exited."""
        if self._children:
            logger.info(f"Waiting for {len(self._children)} session(s) to finish.")
        if self.completions is not None:
            for pid in self.completions.drain():
                self._session_ended(pid)
        self._reap(block=True)
