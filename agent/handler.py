"""
relayshell Session Handler (Agent Side)
One instance per accepted controller connection, run on its own thread.

    AWAITING_HANDSHAKE --name--> ACTIVE --exit / EOF / I/O error--> TERMINATED
    AWAITING_HANDSHAKE --EOF-------------------------------------> TERMINATED
"""

import logging
import socket
from enum import Enum
from typing import List, Optional

from . import protocol
from .executor import CommandExecutor
from .registry import ClientRecord, ClientRegistry

log = logging.getLogger(__name__)


class HandlerState(Enum):
    AWAITING_HANDSHAKE = "awaiting-handshake"
    ACTIVE = "active"
    TERMINATED = "terminated"


class SessionHandler:
    def __init__(self, conn: socket.socket, ip: str, registry: ClientRegistry,
                 executor: Optional[CommandExecutor] = None):
        self.conn = conn
        self.ip = ip
        self.registry = registry
        self.executor = executor or CommandExecutor()
        self.state = HandlerState.AWAITING_HANDSHAKE
        self.record: Optional[ClientRecord] = None
        self.reader, self.writer = protocol.open_streams(conn)

    def run(self):
        try:
            name = protocol.read_line(self.reader)
            if name is None:
                log.info("%s closed before the handshake", self.ip)
                return
            self.record = self.registry.register(name, self.ip)
            self.state = HandlerState.ACTIVE
            print(f"[+] Client connected: {name} ({self.ip})")
            log.info("CONNECT  name=%s  ip=%s", name, self.ip)

            while self.state is HandlerState.ACTIVE:
                command = protocol.read_line(self.reader)
                if command is None:
                    break
                self.handle(command)
        except (OSError, ValueError) as e:
            log.warning("session with %s ended: %s", self.ip, e)
        finally:
            self.terminate()

    def handle(self, command: str):
        """Answer one command line."""
        name = self.record.name if self.record else "?"
        print(f"[i] Received from {name}: {command}")
        log.info("CMD  name=%s  ip=%s  cmd=%.200s", name, self.ip, command)
        self.registry.append_command(self.ip, command, record=self.record)

        if command.strip().lower() == protocol.EXIT_COMMAND:
            print(f"[i] Exit command received from {name}")
            protocol.write_lines(self.writer, [protocol.GOODBYE])
            self.state = HandlerState.TERMINATED
            return

        protocol.write_lines(self.writer, self.respond(command))

    def respond(self, command: str) -> List[str]:
        if command.startswith(protocol.INFO_PREFIX):
            return self.info(command[len(protocol.INFO_PREFIX):].strip())
        if command == protocol.HELP_COMMAND:
            names = ", ".join(self.registry.list_names())
            return [protocol.CLIENT_NAMES.format(names=names).rstrip()]
        try:
            output = self.executor.execute(command)
        except Exception as e:
            log.error("command from %s failed: %s", self.ip, e)
            return [f"Error processing command: {e}"]
        return protocol.split_lines(output)

    def info(self, target: str) -> List[str]:
        description = self.registry.describe(target)
        if description is None:
            description = protocol.NOT_FOUND.format(name=target)
        return [description, protocol.END_OF_INFO]

    def terminate(self):
        self.state = HandlerState.TERMINATED
        if self.record is not None:
            self.registry.unregister(self.ip)
            print(f"[i] Client {self.record.name} ({self.ip}) disconnected.")
            log.info("DISCONNECT  name=%s  ip=%s", self.record.name, self.ip)
        for what, handle in (("reader", self.reader), ("writer", self.writer),
                             ("socket", self.conn)):
            try:
                handle.close()
            except OSError as e:
                log.warning("error closing %s for %s: %s", what, self.ip, e)
