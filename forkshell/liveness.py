"""
Session liveness tracking for the dispatcher.

Every session runs in its own forked process, so the dispatcher cannot be told
about a finished session by a function call. Instead each session process
writes its PID into a pipe owned by the dispatcher (``CompletionChannel``) just
before it exits. The dispatcher drains the pipe from its main loop and feeds
the PIDs to a ``LivenessTracker``, which keeps the count of active sessions and
raises the idle flag once that count drops back to zero.
"""

import os
import struct
import threading
from typing import List, Set

# 4 bytes is below PIPE_BUF, so concurrent writers never interleave.
_PID_FORMAT = ">I"
_PID_SIZE = struct.calcsize(_PID_FORMAT)


class LivenessTracker:
    """
    Counts active sessions by PID.

    All methods are thread-safe. Ending a session is idempotent per PID, so a
    session reported both by its own notification and by reaping its process
    is only counted once.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Set[int] = set()
        self._started = 0
        self._ended = 0
        self._idle = False

    def on_session_started(self, pid: int) -> int:
        """Registers a newly spawned session and returns the active count."""
        with self._lock:
            if pid not in self._active:
                self._active.add(pid)
                self._started += 1
            self._idle = False
            return len(self._active)

    def on_session_ended(self, pid: int) -> bool:
        """
        Records the end of a session.

        Returns:
            True if this call decremented the count, False if the PID was
            unknown or already ended.
        """
        with self._lock:
            if pid not in self._active:
                return False
            self._active.remove(pid)
            self._ended += 1
            if not self._active:
                self._idle = True
            return True

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    @property
    def sessions_started(self) -> int:
        with self._lock:
            return self._started

    @property
    def sessions_ended(self) -> int:
        with self._lock:
            return self._ended

    @property
    def idle(self) -> bool:
        """True once the count has returned to zero after serving a session."""
        with self._lock:
            return self._idle and not self._active

    def active_pids(self) -> List[int]:
        with self._lock:
            return sorted(self._active)


class CompletionChannel:
    """
    A pipe that carries "session finished" notifications from session
    processes to the dispatcher.

    The dispatcher creates the channel before forking. Children call
    ``close_reader`` after the fork and ``notify`` when they are done; the
    dispatcher registers the channel (via ``fileno``) with its selector and
    calls ``drain`` whenever it becomes readable.
    """

    def __init__(self):
        self._read_fd, self._write_fd = os.pipe()
        os.set_blocking(self._read_fd, False)
        self._pending = b""

    def fileno(self) -> int:
        return self._read_fd

    def notify(self, pid: int) -> None:
        """Writes a completion notification for ``pid``."""
        os.write(self._write_fd, struct.pack(_PID_FORMAT, pid))

    def drain(self) -> List[int]:
        """Reads every notification available without blocking."""
        data = self._pending
        while True:
            try:
                chunk = os.read(self._read_fd, 4096)
            except BlockingIOError:
                break
            if not chunk:
                break
            data += chunk

        complete = len(data) - len(data) % _PID_SIZE
        self._pending = data[complete:]
        return [
            struct.unpack_from(_PID_FORMAT, data, offset)[0]
            for offset in range(0, complete, _PID_SIZE)
        ]

    def close_reader(self) -> None:
        """Closes the read end. Called in session processes after fork."""
        if self._read_fd != -1:
            os.close(self._read_fd)
            self._read_fd = -1

    def close(self) -> None:
        self.close_reader()
        if self._write_fd != -1:
            os.close(self._write_fd)
            self._write_fd = -1
