"""
End-to-end tests: the real server in a subprocess, driven by CommandClient.
"""

import os
import signal
import socket
import subprocess
import sys
import threading
import time

import psutil
import pytest

from forkshell.client import CommandClient
from conftest import REPO_ROOT, SERVER_POLL_TIMEOUT


def _session_processes(server):
    """Direct children of the server, one per live session."""
    try:
        return psutil.Process(server.pid).children()
    except psutil.NoSuchProcess:
        return []


def _wait_for(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def _run_server_cli(*args, timeout: float = 10.0) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "forkshell.server", *args],
        cwd=REPO_ROOT,
        capture_output=True,
        text=True,
        timeout=timeout,
    )


class TestCommands:
    def test_echo_round_trip(self, start_server):
        server = start_server()
        with CommandClient("127.0.0.1", server.port, timeout=10) as client:
            assert client.send_command("echo hello") == "hello\n"

    def test_same_command_twice(self, start_server):
        server = start_server()
        with CommandClient("127.0.0.1", server.port, timeout=10) as client:
            assert client.send_command("echo twice") == "twice\n"
            assert client.send_command("echo twice") == "twice\n"
            assert client.closed is False

    def test_large_output(self, start_server):
        server = start_server()
        with CommandClient("127.0.0.1", server.port, timeout=10) as client:
            lines = client.send_command("seq 1 10000").splitlines()
        assert len(lines) == 10000
        assert lines[-1] == "10000"

    def test_verbose_log(self, start_server):
        server = start_server()
        with CommandClient("127.0.0.1", server.port, timeout=10) as client:
            client.send_command("echo logged")
        assert server.process.wait(timeout=10) == 0
        log = server.log()
        assert "Received connection from" in log
        assert "Active connections: 1" in log
        assert "Read from client was: echo logged" in log
        assert "Terminating connection from" in log
        assert "Shutting down server." in log


class TestConcurrency:
    def test_clients_get_only_their_own_output(self, start_server):
        server = start_server()
        count = 5
        results = {}
        errors = []
        barrier = threading.Barrier(count)

        def run(i):
            try:
                with CommandClient("127.0.0.1", server.port, timeout=20) as client:
                    barrier.wait()
                    results[i] = client.send_command(f"echo start-{i}; sleep 0.3; echo end-{i}")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(i,)) for i in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        assert errors == []
        assert results == {i: f"start-{i}\nend-{i}\n" for i in range(count)}

    def test_one_process_per_session(self, start_server):
        server = start_server()
        clients = [CommandClient("127.0.0.1", server.port, timeout=10).connect() for _ in range(3)]
        try:
            for client in clients:
                assert client.send_command("echo ok") == "ok\n"
            assert _wait_for(lambda: len(_session_processes(server)) == 3)
        finally:
            for client in clients:
                client.close()


class TestIdleShutdown:
    def test_exits_after_last_session(self, start_server):
        server = start_server()
        with CommandClient("127.0.0.1", server.port, timeout=10) as client:
            client.send_command("echo bye")
        assert server.process.wait(timeout=10) == 0

    def test_never_served_server_keeps_running(self, start_server):
        server = start_server()
        time.sleep(SERVER_POLL_TIMEOUT * 6)
        assert server.process.poll() is None

    def test_waits_for_every_session(self, start_server):
        server = start_server()
        first = CommandClient("127.0.0.1", server.port, timeout=10).connect()
        second = CommandClient("127.0.0.1", server.port, timeout=10).connect()
        try:
            first.send_command("true")
            second.send_command("true")
            first.close()
            assert _wait_for(lambda: len(_session_processes(server)) == 1)
            time.sleep(SERVER_POLL_TIMEOUT * 4)
            assert server.process.poll() is None
        finally:
            second.close()
        assert server.process.wait(timeout=10) == 0
        assert _session_processes(server) == []

    def test_killed_session_is_still_counted(self, start_server):
        """A session killed before it can report back is found by reaping."""
        server = start_server()
        client = CommandClient("127.0.0.1", server.port, timeout=10).connect()
        try:
            assert client.send_command("echo doomed") == "doomed\n"
            sessions = _session_processes(server)
            assert len(sessions) == 1
            sessions[0].send_signal(signal.SIGKILL)
            assert server.process.wait(timeout=10) == 0
        finally:
            client.close()
        assert "Active connections: 0" in server.log()

    def test_disconnect_mid_command(self, start_server):
        """A client vanishing mid-command ends only its own session."""
        server = start_server()
        survivor = CommandClient("127.0.0.1", server.port, timeout=10).connect()
        try:
            assert survivor.send_command("echo alive") == "alive\n"

            quitter = socket.create_connection(("127.0.0.1", server.port), timeout=10)
            quitter.sendall(b"sleep 0.5; echo lost\0")
            quitter.close()

            assert _wait_for(lambda: "Active connections: 2" in server.log())
            assert _wait_for(lambda: len(_session_processes(server)) == 1)
            assert server.process.poll() is None
            assert survivor.send_command("echo still alive") == "still alive\n"
        finally:
            survivor.close()
        assert server.process.wait(timeout=10) == 0


class TestServerCommandLine:
    @pytest.mark.parametrize("port", ["70000", "abc", "-5"])
    def test_rejects_bad_port(self, port):
        result = _run_server_cli("-p", port)
        assert result.returncode != 0
        assert "Bad port" in result.stderr or "argument" in result.stderr

    @pytest.mark.parametrize("timeout", ["0", "-1", "nan", "soon"])
    def test_rejects_bad_poll_timeout(self, timeout):
        result = _run_server_cli("-p", "0", "--poll-timeout", timeout)
        assert result.returncode != 0
        assert "Bad poll timeout" in result.stderr

    def test_help(self):
        result = _run_server_cli("-h")
        assert result.returncode == 0
        assert "-p" in result.stdout

    def test_bad_env_port(self):
        result = subprocess.run(
            [sys.executable, "-m", "forkshell.server"],
            cwd=REPO_ROOT,
            capture_output=True,
            text=True,
            timeout=10,
            env={**os.environ, "FORKSHELL_PORT": "123456"},
        )
        assert result.returncode != 0
        assert "Bad port" in result.stderr

    def test_port_in_use(self, free_port):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("0.0.0.0", free_port))
            blocker.listen(1)
            result = _run_server_cli("-p", str(free_port))
        assert result.returncode == 1
        assert "Could not bind" in result.stderr
