"""
relayshell Protocol Definitions (Agent Side)
Line streams and wire constants for the agent end of a connection.

The agent never times out a read: a session lives until the controller
says "exit", closes its end, or the socket fails.
"""

import socket
from typing import Iterable, List, Optional, TextIO, Tuple

ENCODING = "utf-8"

GOODBYE = "Goodbye!"
END_OF_INFO = "END_OF_INFO"
EXIT_COMMAND = "exit"
HELP_COMMAND = "-h"
INFO_PREFIX = "-i "
NOT_FOUND = "No client found with name: {name}"
CLIENT_NAMES = "Client names: {names}"


def open_streams(sock: socket.socket) -> Tuple[TextIO, TextIO]:
    """Return (reader, writer) text streams over an accepted socket."""
    reader = sock.makefile("r", encoding=ENCODING, errors="replace", newline="\n")
    writer = sock.makefile("w", encoding=ENCODING, errors="replace", newline="\n")
    return reader, writer


def read_line(reader: TextIO) -> Optional[str]:
    """Next line without its terminator, or None once the peer has closed."""
    line = reader.readline()
    if not line:
        return None
    return line.rstrip("\r\n")


def write_lines(writer: TextIO, lines: Iterable[str]):
    for line in lines:
        writer.write(line + "\n")
    writer.flush()


def split_lines(text: str) -> List[str]:
    """Cut command output into wire lines on "\\n" only.

    Other line-break characters (form feed, vertical tab, U+2028...) stay
    inside their line. A trailing "\\r" is dropped and so is the empty piece
    after a final "\\n".
    """
    if not text:
        return []
    pieces = text.split("\n")
    if pieces[-1] == "":
        pieces.pop()
    return [piece.rstrip("\r") for piece in pieces]
