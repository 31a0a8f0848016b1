from __future__ import annotations

import socket
import threading
from typing import Dict, List, Tuple

from agent.handler import HandlerState, SessionHandler
from agent.registry import ClientRegistry


class FakeExecutor:
    def __init__(self, outputs: Dict[str, str] | None = None) -> None:
        self.outputs = outputs or {}
        self.ran: List[str] = []

    def execute(self, command: str) -> str:
        self.ran.append(command)
        if command == "boom":
            raise RuntimeError("boom")
        return self.outputs.get(command, "")


def run_session(lines: List[str], registry: ClientRegistry | None = None,
                executor: FakeExecutor | None = None,
                ip: str = "10.0.0.5") -> Tuple[List[str], SessionHandler]:
    registry = registry if registry is not None else ClientRegistry()
    server_side, client_side = socket.socketpair()
    handler = SessionHandler(server_side, ip, registry, executor or FakeExecutor())
    thread = threading.Thread(target=handler.run, daemon=True)
    thread.start()

    with client_side:
        client_side.sendall("".join(line + "\n" for line in lines).encode("utf-8"))
        client_side.shutdown(socket.SHUT_WR)
        received = b""
        while True:
            chunk = client_side.recv(4096)
            if not chunk:
                break
            received += chunk
    thread.join(5)
    assert not thread.is_alive()
    # Lines end at "\n" only; the last piece is what follows the final one
    return received.decode("utf-8").split("\n")[:-1], handler


def test_help_lists_registered_names() -> None:
    out, _ = run_session(["alice", "-h"])
    assert out == ["Client names: alice"]


def test_help_with_empty_registry() -> None:
    server_side, client_side = socket.socketpair()
    with server_side, client_side:
        handler = SessionHandler(server_side, "10.0.0.5", ClientRegistry(), FakeExecutor())
        assert handler.respond("-h") == ["Client names:"]


def test_exit_says_goodbye_and_unregisters() -> None:
    registry = ClientRegistry()
    out, handler = run_session(["alice", "  Exit ", "-h"], registry)

    assert out == ["Goodbye!"]
    assert handler.state is HandlerState.TERMINATED
    assert len(registry) == 0
    assert handler.record.commands == ["  Exit "]


def test_info_query_found_and_missing() -> None:
    out, _ = run_session(["alice", "-i alice", "-i bob"])
    assert out == [
        "Client[name=alice, ip=10.0.0.5, commands=[-i alice]]",
        "END_OF_INFO",
        "No client found with name: bob",
        "END_OF_INFO",
    ]


def test_info_returns_first_of_duplicate_names() -> None:
    registry = ClientRegistry()
    registry.register("alice", "10.0.0.1")
    out, _ = run_session(["alice", "-i alice"], registry, ip="10.0.0.2")
    assert out[0] == "Client[name=alice, ip=10.0.0.1, commands=[]]"
    assert out[1] == "END_OF_INFO"


def test_shell_output_is_written_line_by_line() -> None:
    executor = FakeExecutor({"ls": "a.txt\nb.txt\n", "true": ""})
    out, _ = run_session(["alice", "ls", "true", "-h"], executor=executor)
    assert out == ["a.txt", "b.txt", "Client names: alice"]
    assert executor.ran == ["ls", "true"]


def test_output_splits_on_newline_only() -> None:
    executor = FakeExecutor({"show": "page\x0cbreak\x0bv u\r\n\nlast"})
    out, _ = run_session(["alice", "show"], executor=executor)
    assert out == ["page\x0cbreak\x0bv u", "", "last"]


def test_execution_error_is_reported_and_session_continues() -> None:
    out, _ = run_session(["alice", "boom", "-h"])
    assert out == ["Error processing command: boom", "Client names: alice"]


def test_h_must_match_exactly() -> None:
    executor = FakeExecutor({"-h ": "ran"})
    out, _ = run_session(["alice", "-h "], executor=executor)
    assert out == ["ran"]


def test_eof_before_handshake_registers_nothing() -> None:
    registry = ClientRegistry()
    out, handler = run_session([], registry)
    assert out == []
    assert handler.record is None
    assert handler.state is HandlerState.TERMINATED
    assert len(registry) == 0


def test_disconnect_removes_record() -> None:
    registry = ClientRegistry()
    registry.register("other", "10.9.9.9")
    out, handler = run_session(["alice", "-h"], registry)
    assert out == ["Client names: other, alice"]
    assert registry.list_names() == ["other"]
    assert handler.record.commands == ["-h"]
