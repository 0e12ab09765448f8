"""Core value types, handler interfaces and logging helpers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Mapping, Sequence


class Logger(ABC):
    """Minimal printf-style logging interface."""

    @abstractmethod
    def printf(self, fmt: str, *args: Any) -> None:
        """Log a message built from ``fmt % args``."""


class StdLogger(Logger):
    """Logger that writes through the standard :mod:`logging` module."""

    def __init__(self, name: str = "streamqueue") -> None:
        self._logger = logging.getLogger(name)

    def printf(self, fmt: str, *args: Any) -> None:
        self._logger.info(fmt, *args)


class PrefixedLogger(Logger):
    """Logger that prepends a fixed prefix to every message."""

    def __init__(self, logger: Logger, prefix: str = "[mq]") -> None:
        self.logger = logger
        self.prefix = prefix

    def printf(self, fmt: str, *args: Any) -> None:
        self.logger.printf(f"{self.prefix} {fmt}", *args)


@dataclass
class Message:
    """A message read from a stream."""

    id: str = ""
    type: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready mapping."""
        return {"id": self.id, "type": self.type, "data": self.data, "metadata": self.metadata}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        """Build a message from a mapping; missing or null parts become empty."""
        return cls(
            id=data.get("id") or "",
            type=data.get("type") or "",
            data=dict(data.get("data") or {}),
            metadata=dict(data.get("metadata") or {}),
        )


class MessageHandler(ABC):
    """Handles messages of one type, one at a time.

    Raising an exception from :meth:`handle` marks the message as failed.
    """

    message_type: str = ""

    @abstractmethod
    def handle(self, message: Message) -> None:
        """Process a single message."""


class BatchMessageHandler(ABC):
    """Handles messages of one type in batches.

    ``batch_size`` of 0 or less means the queue-wide batch size is used.
    """

    message_type: str = ""
    batch_size: int = 0

    @abstractmethod
    def handle_batch(self, messages: Sequence[Message]) -> None:
        """Process a batch of messages."""


class StartPosition(str, Enum):
    """Where a new consumer group starts reading."""

    LATEST = "$"
    EARLIEST = "0"
    SPECIFIC = "specific"


@dataclass
class CleanupPolicy:
    """When and how already-consumed stream entries are removed."""

    enable_auto_cleanup: bool = False
    cleanup_interval: timedelta = timedelta(minutes=5)
    max_stream_length: int = 10000
    min_retention: timedelta = timedelta(hours=1)
    batch_size: int = 100


@dataclass
class BatchConfig:
    """Batch reading settings for a consumer."""

    enable_batch: bool = False
    batch_size: int = 10
    batch_timeout: timedelta = timedelta(milliseconds=500)
    max_wait_time: timedelta = timedelta(seconds=2)