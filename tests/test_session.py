from __future__ import annotations

import socket
import threading
import time
from typing import List

import pytest

from controller.hosts import HostDescriptor, HostState
from controller.protocol import LineReader
from controller.session import (ConnectError, ConnectionClosedError, ConnectionSession,
                                NotConnectedError, ResponseTimeout)
from conftest import free_port


def _host(port: int) -> HostDescriptor:
    return HostDescriptor("127.0.0.1", port, "alice")


def _assert_released(session: ConnectionSession) -> None:
    assert session.state is HostState.DISCONNECTED
    assert session.sock is None
    assert session.reader is None
    assert session.writer is None


def test_close_is_idempotent_before_connect() -> None:
    session = ConnectionSession(_host(free_port()))
    session.close()
    session.close()
    _assert_released(session)


def test_close_is_idempotent_after_connect(recording_server) -> None:
    server = recording_server()
    session = ConnectionSession(_host(server.port))
    session.connect()
    assert session.connected
    session.close()
    session.close()
    _assert_released(session)
    assert session.host.state is HostState.DISCONNECTED


class SlowShutdownSocket:
    """Wraps a socket so the first shutdown() stalls, widening any close race."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._stalled = False

    def shutdown(self, how: int) -> None:
        if not self._stalled:
            self._stalled = True
            time.sleep(0.2)
        self._sock.shutdown(how)

    def close(self) -> None:
        self._sock.close()


def test_concurrent_close_never_raises(recording_server) -> None:
    server = recording_server()
    session = ConnectionSession(_host(server.port))
    session.connect()
    session.sock = SlowShutdownSocket(session.sock)
    errors: List[BaseException] = []

    def close() -> None:
        try:
            session.close()
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=close) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    assert errors == []
    _assert_released(session)


def test_send_without_connection_never_touches_network(monkeypatch) -> None:
    def no_network(*args, **kwargs):
        raise AssertionError("network used")

    monkeypatch.setattr(socket, "create_connection", no_network)
    session = ConnectionSession(_host(free_port()))
    with pytest.raises(NotConnectedError):
        session.send_command("uptime")
    with pytest.raises(NotConnectedError):
        session.read_response()
    _assert_released(session)


def test_send_and_read(recording_server) -> None:
    server = recording_server(replies={"ping": ["pong"]})
    session = ConnectionSession(_host(server.port))
    session.connect()
    session.send_command("alice")
    session.send_command("ping")
    assert session.read_response() == "pong"
    assert server.wait_for_lines(2) == ["alice", "ping"]
    session.close()


def test_keepalive_enabled(recording_server) -> None:
    server = recording_server()
    session = ConnectionSession(_host(server.port))
    session.connect()
    assert session.sock.getsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE) != 0
    session.close()


def test_connect_refused_releases_everything() -> None:
    host = _host(free_port())
    session = ConnectionSession(host, connect_timeout=2.0)
    with pytest.raises(ConnectError):
        session.connect()
    _assert_released(session)
    assert host.state is HostState.FAILED


def test_peer_close_surfaces_as_closed_connection(recording_server) -> None:
    server = recording_server(replies={"exit": ["Goodbye!"]}, close_on="exit")
    session = ConnectionSession(_host(server.port))
    session.connect()
    session.send_command("exit")
    assert session.read_response() == "Goodbye!"
    with pytest.raises(ConnectionClosedError):
        session.read_response()
    _assert_released(session)


def test_read_timeout_keeps_session_open(recording_server) -> None:
    server = recording_server(replies={"slow": ["done"]})
    session = ConnectionSession(_host(server.port), read_timeout=0.2)
    session.connect()
    with pytest.raises(ResponseTimeout):
        session.read_response()
    assert session.connected
    session.send_command("slow")
    assert session.read_response() == "done"
    session.close()


def test_line_reader_joins_chunks_and_strips_cr() -> None:
    left, right = socket.socketpair()
    with left, right:
        reader = LineReader(left)
        right.sendall(b"first\r\nsec")
        right.sendall(b"ond\nlast")
        right.shutdown(socket.SHUT_WR)
        assert reader.readline() == "first"
        assert reader.readline() == "second"
        assert reader.readline() == "last"
        assert reader.readline() is None
