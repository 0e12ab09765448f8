"""Publishing messages onto a stream."""

from __future__ import annotations

import json
from typing import Any, Mapping

import redis

from .models import Logger, PrefixedLogger, StdLogger
from .types import TopicInfo
from .utils import get_topic_info

_PREFIX = "[mq]"


def _encode(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


class Producer:
    """Appends typed messages with JSON data and metadata to a stream."""

    def __init__(self, client: redis.Redis, stream_name: str) -> None:
        self.client = client
        self.stream_name = stream_name
        self.logger: Logger = PrefixedLogger(StdLogger(), _PREFIX)

    def with_logger(self, logger: Logger) -> "Producer":
        """Log through ``logger`` from now on; returns the producer itself."""
        self.logger = PrefixedLogger(logger, _PREFIX)
        return self

    def publish_message(
        self,
        msg_type: str,
        data: Mapping[str, Any] | None,
        metadata: Mapping[str, str] | None = None,
    ) -> str:
        """Append a message and return the id the stream gave it.

        Data that JSON cannot represent raises before anything is sent.
        """
        data_json = _encode(None if data is None else dict(data))
        metadata_json = _encode(None if metadata is None else dict(metadata))
        raw_id = self.client.xadd(
            self.stream_name,
            {"type": msg_type, "data": data_json, "metadata": metadata_json},
        )
        message_id = raw_id.decode() if isinstance(raw_id, bytes) else str(raw_id)
        self.logger.printf("message published: %s, type: %s", message_id, msg_type)
        return message_id

    def get_topic_info(self) -> TopicInfo:
        """Describe the stream this producer writes to."""
        return get_topic_info(self.client, self.stream_name)