from __future__ import annotations

import socket
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List

import pytest

from agent.agent import AgentServer


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def free_port() -> int:
    """A loopback port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class RecordingServer:
    """Loopback TCP server that records every line and answers from a script."""

    def __init__(self, replies: Dict[str, List[str]] | None = None, close_on: str | None = None):
        self.replies = replies or {}
        self.close_on = close_on
        self.lines: List[str] = []
        self.accepted = 0
        self._lock = threading.Lock()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(5)
        self.port = self._sock.getsockname()[1]
        threading.Thread(target=self._serve, daemon=True).start()

    def _serve(self) -> None:
        while True:
            try:
                conn, _ = self._sock.accept()
            except OSError:
                return
            with self._lock:
                self.accepted += 1
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn: socket.socket) -> None:
        with conn:
            reader = conn.makefile("r", encoding="utf-8", newline="\n")
            try:
                for raw in reader:
                    line = raw.rstrip("\n")
                    with self._lock:
                        self.lines.append(line)
                    for reply in self.replies.get(line, []):
                        conn.sendall((reply + "\n").encode("utf-8"))
                    if line == self.close_on:
                        break
            except OSError:
                pass
            finally:
                reader.close()

    def wait_for_lines(self, count: int, timeout: float = 5.0) -> List[str]:
        wait_until(lambda: len(self.lines) >= count, timeout)
        with self._lock:
            return list(self.lines)

    def close(self) -> None:
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def recording_server():
    servers: List[RecordingServer] = []

    def make(**kwargs) -> RecordingServer:
        server = RecordingServer(**kwargs)
        servers.append(server)
        return server

    yield make
    for server in servers:
        server.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def agent_server(tmp_path: Path):
    """An AgentServer on an ephemeral loopback port, served from a thread."""
    config = tmp_path / "agent.ini"
    config.write_text("[agent]\nhost = 127.0.0.1\nport = 0\n", encoding="utf-8")
    server = AgentServer(str(config), poll_interval=0.05)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    assert server.ready.wait(5), "agent did not start listening"
    yield server
    server.stop()
    thread.join(5)
