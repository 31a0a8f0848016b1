"""
relayshell Client Registry
Shared record of every controller currently connected to this agent.

All session threads go through one lock for every read, write and
iteration; nothing outside this class touches the list directly.
"""

import threading
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class ClientRecord:
    name: str
    ip: str
    commands: List[str] = field(default_factory=list)

    def __str__(self):
        return f"Client[name={self.name}, ip={self.ip}, commands=[{', '.join(self.commands)}]]"


class ClientRegistry:
    def __init__(self):
        self._clients: List[ClientRecord] = []
        self._lock = threading.Lock()

    def register(self, name: str, ip: str) -> ClientRecord:
        record = ClientRecord(name, ip)
        with self._lock:
            self._clients.append(record)
        return record

    def unregister(self, ip: str) -> Optional[ClientRecord]:
        """Remove the first record from this IP. No-op if there is none."""
        with self._lock:
            for index, record in enumerate(self._clients):
                if record.ip == ip:
                    return self._clients.pop(index)
        return None

    def find(self, name: str) -> Optional[ClientRecord]:
        with self._lock:
            return next((r for r in self._clients if r.name == name), None)

    def describe(self, name: str) -> Optional[str]:
        """String form of the first record with this name, taken under the lock."""
        with self._lock:
            record = next((r for r in self._clients if r.name == name), None)
            return None if record is None else str(record)

    def append_command(self, ip: str, text: str,
                       record: Optional[ClientRecord] = None) -> bool:
        """Add a command to the history of `record`, or of the first record from `ip`."""
        with self._lock:
            for candidate in self._clients:
                matches = candidate is record if record is not None else candidate.ip == ip
                if matches:
                    candidate.commands.append(text)
                    return True
        return False

    def list_names(self) -> List[str]:
        with self._lock:
            return [r.name for r in self._clients]

    def __len__(self):
        with self._lock:
            return len(self._clients)
