"""
relayshell Dispatcher
Drives every configured agent from the controller.

Responsibilities:
- Connect sweep with per-host retry budget and cooldown
- Handshake and paced auto-commands after connecting
- Fan-out of operator commands to every connected agent
- Fan-in of agent responses, one listener thread per agent
- Tear-down of all sessions on exit

Pacing between commands is a heuristic: the protocol has no per-command
acknowledgement, so the delay is the only backpressure the agent gets.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional

from .hosts import HostDescriptor
from .protocol import EXIT_COMMAND, GOODBYE
from .session import (ConnectionClosedError, ConnectionSession, ResponseTimeout,
                      SessionError)

log = logging.getLogger(__name__)


class DispatchError(Exception):
    pass


@dataclass
class DispatchSettings:
    command_delay: float = 1.0
    handshake_delay: float = 1.0
    retry_interval: float = 5.0
    max_retries: int = 5
    connect_timeout: float = 10.0
    read_timeout: Optional[float] = 30.0
    # How long to wait for listeners to see "Goodbye!" after exit
    exit_grace: float = 5.0


class Response(NamedTuple):
    host: str
    text: str


class Dispatcher:
    def __init__(self, hosts: Iterable[HostDescriptor],
                 settings: Optional[DispatchSettings] = None,
                 status: Optional[Callable[[str], None]] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 session_factory: Optional[Callable[[HostDescriptor], ConnectionSession]] = None):
        self.hosts: List[HostDescriptor] = list(hosts)
        self.settings = settings or DispatchSettings()
        self.connections: Dict[str, ConnectionSession] = {}
        self._status = status or (lambda message: None)
        self._clock = clock
        self._sleep = sleep
        self._session_factory = session_factory or self._new_session
        self._listeners: List[threading.Thread] = []

    def _new_session(self, host: HostDescriptor) -> ConnectionSession:
        return ConnectionSession(host, self.settings.connect_timeout,
                                 self.settings.read_timeout)

    # ── Connect sweep ────────────────────────────────────────

    def connect_sweep(self, send_auto_commands: bool = False,
                      hosts: Optional[Iterable[HostDescriptor]] = None) -> int:
        """Try every eligible host once. Returns how many connected."""
        connected = 0
        for host in (self.hosts if hosts is None else hosts):
            session = self.connections.get(host.key)
            if session is not None and session.connected:
                continue
            if host.exhausted(self.settings.max_retries):
                log.debug("skipping %s: retry budget exhausted", host.label)
                continue
            if host.cooling_down(self._clock(), self.settings.retry_interval):
                log.debug("skipping %s: retry cooldown", host.label)
                continue
            if self._open(host, send_auto_commands):
                connected += 1
        return connected

    def _open(self, host: HostDescriptor, send_auto_commands: bool) -> bool:
        attempted_at = self._clock()
        session = self._session_factory(host)
        self.connections[host.key] = session
        try:
            self._status(f"Connecting to {host.label}...")
            session.connect()
            session.send_command(host.name)
            self._sleep(self.settings.handshake_delay)
            if send_auto_commands:
                self._send_script(session)
        except SessionError as e:
            session.close()
            self.connections.pop(host.key, None)
            host.record_failure(attempted_at, self.settings.max_retries)
            log.warning("attempt %d/%d on %s failed: %s", host.retry_count,
                        self.settings.max_retries, host.label, e)
            if host.exhausted(self.settings.max_retries):
                self._status(f"{e}. Giving up on {host.label}.")
            else:
                self._status(f"{e}. Retrying in {self.settings.retry_interval:g} seconds...")
            return False
        host.record_success(attempted_at)
        self._status(f"Connected successfully to {host.address} on port {host.port}")
        return True

    def _send_script(self, session: ConnectionSession):
        commands = session.host.commands()
        if commands:
            self._status(f"Sending commands to {session.host.label}...")
        for command in commands:
            session.send_command(command)
            log.info("sent to %s: %s", session.host.label, command)
            self._sleep(self.settings.command_delay)

    def all_failed(self) -> bool:
        """True when nothing is connected and no host has retries left."""
        if any(session.connected for session in self.connections.values()):
            return False
        return all(host.exhausted(self.settings.max_retries) for host in self.hosts)

    def connected_sessions(self) -> List[ConnectionSession]:
        return [s for s in self.connections.values() if s.connected]

    # ── Fan-in ───────────────────────────────────────────────

    def listen(self, session: ConnectionSession, on_response: Callable[[Response], None]):
        """Surface every line from one agent until it closes or says goodbye."""
        label = session.host.label
        try:
            while True:
                try:
                    line = session.read_response()
                except ResponseTimeout:
                    continue
                except ConnectionClosedError:
                    log.info("%s closed the connection", label)
                    break
                except SessionError as e:
                    if session.connected:
                        log.warning("listener for %s stopped: %s", label, e)
                    break
                on_response(Response(label, line))
                if line.strip().lower() == GOODBYE.lower():
                    break
        finally:
            session.close()

    def start_listeners(self, on_response: Callable[[Response], None]):
        for session in self.connected_sessions():
            thread = threading.Thread(
                target=self.listen,
                args=(session, on_response),
                daemon=True,
                name=f"listener-{session.host.key}",
            )
            self._listeners.append(thread)
            thread.start()

    def join_listeners(self, timeout: Optional[float] = None):
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._listeners:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        self._listeners = [t for t in self._listeners if t.is_alive()]

    # ── Fan-out ──────────────────────────────────────────────

    def broadcast(self, command: str) -> List[str]:
        """Send one command to every connected agent. Returns the host keys reached."""
        reached = []
        for key, session in list(self.connections.items()):
            if not session.connected:
                self.connections.pop(key, None)
                continue
            try:
                session.send_command(command)
            except SessionError as e:
                log.warning("dropping %s: %s", session.host.label, e)
                self.connections.pop(key, None)
                continue
            reached.append(key)
        return reached

    def interactive_loop(self, read_command: Callable[[], Optional[str]]):
        """Fan operator input out until 'exit', EOF, or every agent is gone."""
        while True:
            if not self.connected_sessions():
                self._status("No connected hosts left.")
                return
            try:
                command = read_command()
            except EOFError:
                command = None
            if command is None or command.strip().lower() == EXIT_COMMAND:
                self.broadcast(EXIT_COMMAND)
                return
            if not command.strip():
                continue
            if not self.broadcast(command):
                log.warning("command not delivered to any host: %s", command)
            self._sleep(self.settings.command_delay)

    # ── Modes ────────────────────────────────────────────────

    def run_automatic(self) -> bool:
        """Deliver every host's auto-command script, then disconnect.

        A host whose connection fails stays pending: after the retry cooldown
        another sweep runs over the pending hosts, until each has either
        received its script or spent its retry budget.

        Returns False when every host failed.
        """
        pending = list(self.hosts)
        while pending:
            self.connect_sweep(send_auto_commands=True, hosts=pending)
            for host in list(pending):
                session = self.connections.pop(host.key, None)
                if session is not None:
                    session.close()
                    pending.remove(host)
                elif host.exhausted(self.settings.max_retries):
                    log.error("giving up on %s after %d attempts",
                              host.label, host.retry_count)
                    pending.remove(host)
            if pending:
                self._sleep(self._next_retry_in(pending))
        if self.all_failed():
            log.error("all hosts failed")
            return False
        return True

    def _next_retry_in(self, hosts: List[HostDescriptor]) -> float:
        now = self._clock()
        waits = [host.last_attempt + self.settings.retry_interval - now
                 for host in hosts if host.last_attempt is not None]
        return max(0.0, min(waits)) if waits else 0.0

    def run_interactive(self, read_command: Callable[[], Optional[str]],
                        on_response: Callable[[Response], None]):
        """Connect (handshake only), then fan out operator commands."""
        self.connect_sweep(send_auto_commands=False)
        if not self.connected_sessions():
            self.close_all()
            raise DispatchError("could not connect to any host")
        self.start_listeners(on_response)
        try:
            self.interactive_loop(read_command)
            self.join_listeners(self.settings.exit_grace)
        finally:
            self.close_all()

    def close_all(self):
        for session in list(self.connections.values()):
            session.close()
        self.connections.clear()
