"""
relayshell Host Descriptors
One entry per remote agent the controller may connect to: where it lives,
which name to announce, which commands to send automatically, and how the
last connection attempts went.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class HostState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


def split_commands(script: str) -> List[str]:
    """Split an auto-command script on ';', trimming and dropping empty pieces.

    There is no escaping: a command containing a literal ';' cannot be
    expressed.
    """
    if not script:
        return []
    return [piece.strip() for piece in script.split(";") if piece.strip()]


@dataclass
class HostDescriptor:
    """Configuration plus live retry state for one remote agent."""
    address: str
    port: int
    name: str
    auto_command: str = ""
    state: HostState = HostState.DISCONNECTED
    last_attempt: Optional[float] = None
    retry_count: int = 0

    def __post_init__(self):
        if not 0 <= self.port <= 65535:
            raise ValueError(f"Port number must be between 0 and 65535, got {self.port}")

    @property
    def key(self) -> str:
        return f"{self.address}:{self.port}"

    @property
    def label(self) -> str:
        return f"{self.name}@{self.key}"

    def commands(self) -> List[str]:
        return split_commands(self.auto_command)

    def exhausted(self, max_retries: int) -> bool:
        return self.retry_count >= max_retries

    def cooling_down(self, now: float, interval: float) -> bool:
        if self.last_attempt is None:
            return False
        return now - self.last_attempt < interval

    def record_success(self, now: float):
        self.retry_count = 0
        self.last_attempt = now

    def record_failure(self, now: float, max_retries: int):
        self.state = HostState.FAILED
        self.retry_count = min(self.retry_count + 1, max_retries)
        self.last_attempt = now
