"""
Pytest fixtures for forkshell tests.

Integration tests run the real server in a separate interpreter, the same way
it is started from the command line.
"""

import subprocess
import sys
import time
from pathlib import Path

import portpicker
import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
SERVER_POLL_TIMEOUT = 0.2
STARTUP_TIMEOUT = 10.0


class ServerProcess:
    """A forkshell server running in a subprocess with its log in a file."""

    def __init__(self, port: int, log_path: Path, extra_args=()):
        self.port = port
        self.log_path = log_path
        self._log = open(log_path, "w")
        command = [
            sys.executable,
            "-m",
            "forkshell.server",
            "-p",
            str(port),
            "-v",
            "--poll-timeout",
            str(SERVER_POLL_TIMEOUT),
            *extra_args,
        ]
        self.process = subprocess.Popen(
            command,
            cwd=REPO_ROOT,
            stdout=subprocess.DEVNULL,
            stderr=self._log,
        )

    @property
    def pid(self) -> int:
        return self.process.pid

    def log(self) -> str:
        return self.log_path.read_text()

    def wait_until_listening(self, timeout: float = STARTUP_TIMEOUT) -> None:
        # Connecting to probe readiness would count as a served session,
        # so readiness is read from the verbose log instead.
        deadline = time.monotonic() + timeout
        expected = f"Listening on port {self.port}"
        while time.monotonic() < deadline:
            if expected in self.log():
                return
            if self.process.poll() is not None:
                raise RuntimeError(f"Server exited during startup:\n{self.log()}")
            time.sleep(0.05)
        raise RuntimeError(f"Server did not start listening in time:\n{self.log()}")

    def stop(self) -> None:
        if self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
        self._log.close()


@pytest.fixture
def free_port() -> int:
    return portpicker.pick_unused_port()


@pytest.fixture
def start_server(tmp_path):
    """Starts forkshell servers on free ports and stops them after the test."""
    servers = []

    def _start(*extra_args) -> ServerProcess:
        port = portpicker.pick_unused_port()
        server = ServerProcess(port, tmp_path / f"server-{port}.log", extra_args)
        servers.append(server)
        server.wait_until_listening()
        return server

    yield _start

    for server in servers:
        server.stop()
