"""Connection and relay data types.

Connection records are what the store persists; pairing sessions, batches
and reports only live for the duration of one command.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional

from core.errors import InvalidName


class ConnectionState(str, Enum):
    """Pairing state of a connection record."""

    PENDING_PAIRING = "pending_pairing"
    ACTIVE = "active"


def normalize_connection_name(name: str) -> str:
    """Return the canonical connection name (whitespace runs become dashes)."""

    normalized = "-".join(name.split())
    if not normalized:
        raise InvalidName(f"invalid connection name: {name!r}")
    return normalized


@dataclass(frozen=True)
class ConnectionRecord:
    """A named binding between a bot credential and a remote chat."""

    name: str
    credential: str
    remote_chat_id: Optional[str] = None
    state: ConnectionState = ConnectionState.PENDING_PAIRING

    def __post_init__(self) -> None:
        # A chat id exists exactly when pairing has completed.
        if (self.remote_chat_id is not None) != (self.state is ConnectionState.ACTIVE):
            raise ValueError(
                f"connection {self.name!r}: remote_chat_id must be set iff state is active"
            )

    @property
    def is_active(self) -> bool:
        return self.state is ConnectionState.ACTIVE

    def activate(self, remote_chat_id: str) -> "ConnectionRecord":
        """Return the Active version of this record.

        Activation happens once; an already Active record is returned as-is so
        late duplicate matches cannot rebind the chat.
        """

        if self.is_active:
            return self
        return replace(self, remote_chat_id=str(remote_chat_id), state=ConnectionState.ACTIVE)


@dataclass(frozen=True)
class IncomingMessage:
    """A text message received by the bot, as seen by the pairing engine."""

    sender_id: str
    text: str


@dataclass(frozen=True)
class PairingSession:
    """Transient state of one pairing attempt."""

    verification_code: str
    credential: str
    deadline: float

    def expired(self, now: float) -> bool:
        return now >= self.deadline

    def matches(self, message: IncomingMessage) -> bool:
        return message.text.strip() == self.verification_code


@dataclass
class RelayBatch:
    """Lines collected since the last flush."""

    lines: List[str] = field(default_factory=list)
    opened_at: Optional[float] = None
    size_bytes: int = 0

    def __len__(self) -> int:
        return len(self.lines)

    def add(self, line: str, now: float) -> None:
        if not self.lines:
            self.opened_at = now
        self.size_bytes = self.size_with(line)
        self.lines.append(line)

    def size_with(self, line: str) -> int:
        """Encoded size of the joined text if ``line`` were appended."""

        separator = 1 if self.lines else 0
        return self.size_bytes + separator + len(line.encode("utf-8"))

    def age(self, now: float) -> float:
        if self.opened_at is None:
            return 0.0
        return now - self.opened_at

    def text(self) -> str:
        return "\n".join(self.lines)

    def clear(self) -> None:
        self.lines = []
        self.opened_at = None
        self.size_bytes = 0


@dataclass
class RelayReport:
    """Counters describing the outcome of one relay run."""

    lines_read: int = 0
    batches_sent: int = 0
    batches_failed: int = 0
    batches_abandoned: int = 0
    skipped_empty: int = 0
