"""Descriptive records for a stream topic, its consumer groups and consumers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any


def _nanoseconds(delta: timedelta) -> int:
    return (delta.days * 86_400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1_000


@dataclass
class ConsumerInfo:
    """One consumer inside a consumer group."""

    name: str
    pending: int = 0
    idle: timedelta = field(default_factory=timedelta)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready mapping; ``idle`` is given in nanoseconds."""
        return {"name": self.name, "pending": self.pending, "idle": _nanoseconds(self.idle)}


@dataclass
class GroupInfo:
    """A consumer group attached to a stream."""

    name: str
    pending: int = 0
    last_delivered_id: str = ""
    consumers: list[ConsumerInfo] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready mapping."""
        return {
            "name": self.name,
            "pending": self.pending,
            "last_delivered_id": self.last_delivered_id,
            "consumers": [consumer.to_dict() for consumer in self.consumers],
        }


@dataclass
class TopicInfo:
    """Summary of a stream: size, first and last entries and its groups."""

    stream_name: str
    exists: bool = False
    length: int = 0
    first_entry_id: str = ""
    last_entry_id: str = ""
    groups: list[GroupInfo] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready mapping."""
        return {
            "stream_name": self.stream_name,
            "exists": self.exists,
            "length": self.length,
            "first_entry_id": self.first_entry_id,
            "last_entry_id": self.last_entry_id,
            "groups": [group.to_dict() for group in self.groups],
        }