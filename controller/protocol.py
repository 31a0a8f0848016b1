"""
relayshell Protocol Definitions (Controller Side)
Line channel and wire constants for controller-agent communication.

Every message is one UTF-8 text line terminated by "\\n".

Conversation:
- Controller opens the TCP connection
- Controller sends its name as the first line (handshake, no reply)
- Every following line is a command for the agent
- The agent answers with zero or more lines; some replies end in a sentinel
"""

import socket
from typing import Optional

ENCODING = "utf-8"
NEWLINE = b"\n"
RECV_SIZE = 4096

# Last line the agent writes before closing a session
GOODBYE = "Goodbye!"
EXIT_COMMAND = "exit"


def open_socket(host: str, port: int, connect_timeout: float,
                read_timeout: Optional[float]) -> socket.socket:
    """Connect to an agent with keep-alive enabled.

    Raises OSError (socket.gaierror, ConnectionRefusedError, socket.timeout...)
    without leaving the socket open.
    """
    sock = socket.create_connection((host, port), timeout=connect_timeout)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        sock.settimeout(read_timeout)
    except OSError:
        sock.close()
        raise
    return sock


class LineReader:
    """Reads newline-terminated lines from a socket.

    The buffer survives a socket timeout, so a caller may retry readline()
    after one without losing a partially received line.
    """

    def __init__(self, sock: socket.socket):
        self._sock = sock
        self._buf = b""
        self.closed = False

    def readline(self) -> Optional[str]:
        """Return the next line without its terminator, or None at EOF."""
        if self.closed:
            raise ValueError("read from closed LineReader")
        while NEWLINE not in self._buf:
            chunk = self._sock.recv(RECV_SIZE)
            if not chunk:
                if self._buf:
                    # Peer closed after an unterminated last line
                    line, self._buf = self._buf, b""
                    return _decode(line)
                return None
            self._buf += chunk
        line, self._buf = self._buf.split(NEWLINE, 1)
        return _decode(line)

    def close(self):
        self.closed = True
        self._buf = b""


class LineWriter:
    """Writes newline-terminated lines to a socket, flushing every line."""

    def __init__(self, sock: socket.socket):
        self._sock = sock
        self.closed = False

    def writeline(self, text: str):
        if self.closed:
            raise ValueError("write to closed LineWriter")
        self._sock.sendall(text.encode(ENCODING) + NEWLINE)

    def close(self):
        self.closed = True


def _decode(raw: bytes) -> str:
    return raw.decode(ENCODING, errors="replace").rstrip("\r")
