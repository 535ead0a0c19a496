"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(slots=True)
class Task:
    """A unit of queued work: one reply into one conversation."""

    id: str
    account: str
    chat_id: str
    reply_text: str
    created_at: str
    message_id: str | None = None
    leased_at: str | None = None
    heartbeat_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Claim:
    """A task together with the lock token that proves its lease."""

    task: Task
    lock: str


@dataclass(slots=True)
class Reclaimed:
    """A stale lease handed back to the queue."""

    lock: str
    age_ms: int


@dataclass(slots=True)
class LogPartition:
    name: str
    mtime: float


@dataclass(slots=True)
class LogTail:
    name: str
    text: str


@dataclass(slots=True)
class Confirmation:
    """Outcome of an outbound-reply lookup and the partitions it covered."""

    confirmed: bool
    sources: list[str] = field(default_factory=list)


@dataclass(slots=True)
class InboundEvent:
    """Webhook envelope normalized for classification."""

    type: str = ""
    text: str = ""
    flow_id: str = ""
    chat_id: str = ""
    message_id: str | None = None

    @property
    def is_system(self) -> bool:
        return self.type == "system"
