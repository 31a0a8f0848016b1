"""
relayshell Connection Session
Owns the single live socket between the controller and one agent.

State only changes inside this class:
    DISCONNECTED -> CONNECTING -> CONNECTED -> (close) -> DISCONNECTED
                             \\-> FAILED -> (close) -> DISCONNECTED
"""

import logging
import socket
import threading
from typing import Optional

from .hosts import HostDescriptor, HostState
from .protocol import LineReader, LineWriter, open_socket

log = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0
READ_TIMEOUT = 30.0


class SessionError(Exception):
    """Base class for connection session failures."""


class ConnectError(SessionError):
    pass


class NotConnectedError(SessionError):
    pass


class SendError(SessionError):
    pass


class ReceiveError(SessionError):
    pass


class ConnectionClosedError(ReceiveError):
    """The agent closed the stream."""


class ResponseTimeout(SessionError):
    """No full line arrived within the read timeout; the session stays open."""


class ConnectionSession:
    def __init__(self, host: HostDescriptor,
                 connect_timeout: float = CONNECT_TIMEOUT,
                 read_timeout: Optional[float] = READ_TIMEOUT):
        self.host = host
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.state = HostState.DISCONNECTED
        self.sock: Optional[socket.socket] = None
        self.writer: Optional[LineWriter] = None
        self.reader: Optional[LineReader] = None
        self._close_lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return (self.state is HostState.CONNECTED
                and self.writer is not None and self.reader is not None)

    def _set_state(self, state: HostState):
        self.state = state
        self.host.state = state

    def connect(self):
        """Open the TCP connection. Raises ConnectError on any failure."""
        if self.connected:
            return
        self._set_state(HostState.CONNECTING)
        try:
            self.sock = open_socket(self.host.address, self.host.port,
                                    self.connect_timeout, self.read_timeout)
        except OSError as e:
            self._set_state(HostState.FAILED)
            self.close()
            raise ConnectError(f"{self.host.key}: {_describe(e)}") from e
        self.writer = LineWriter(self.sock)
        self.reader = LineReader(self.sock)
        self._set_state(HostState.CONNECTED)
        log.info("connected to %s", self.host.label)

    def send_command(self, text: str):
        """Write one line to the agent."""
        writer = self.writer
        if not self.connected or writer is None:
            raise NotConnectedError(f"{self.host.key}: not connected")
        try:
            writer.writeline(text)
        except (OSError, ValueError) as e:
            self.close()
            raise SendError(f"{self.host.key}: send failed: {e}") from e

    def read_response(self) -> str:
        """Block until one full line arrives from the agent."""
        reader = self.reader
        if not self.connected or reader is None:
            raise NotConnectedError(f"{self.host.key}: not connected")
        try:
            line = reader.readline()
        except socket.timeout as e:
            raise ResponseTimeout(f"{self.host.key}: no response within "
                                  f"{self.read_timeout}s") from e
        except (OSError, ValueError) as e:
            self.close()
            raise ReceiveError(f"{self.host.key}: read failed: {e}") from e
        if line is None:
            self.close()
            raise ConnectionClosedError(f"{self.host.key}: connection closed by peer")
        return line

    def close(self):
        """Release writer, reader and socket. Safe to call repeatedly, from any thread."""
        # A listener thread and the shutdown path may close the same session
        with self._close_lock:
            writer, self.writer = self.writer, None
            reader, self.reader = self.reader, None
            sock, self.sock = self.sock, None
            self.state = HostState.DISCONNECTED
            if self.host.state in (HostState.CONNECTED, HostState.CONNECTING):
                self.host.state = HostState.DISCONNECTED

        for what, handle in (("writer", writer), ("reader", reader)):
            if handle is None:
                continue
            try:
                handle.close()
            except Exception as e:
                log.warning("error closing %s for %s: %s", what, self.host.key, e)
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                # Already disconnected
                pass
            try:
                sock.close()
            except OSError as e:
                log.warning("error closing socket for %s: %s", self.host.key, e)

    def __repr__(self):
        return f"ConnectionSession({self.host.label}, {self.state.value})"


def _describe(exc: OSError) -> str:
    if isinstance(exc, socket.gaierror):
        return f"server not found ({exc})"
    if isinstance(exc, ConnectionRefusedError):
        return f"connection refused ({exc})"
    if isinstance(exc, socket.timeout):
        return "connection timed out"
    return f"I/O error ({exc})"
