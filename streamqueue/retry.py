"""Delayed retries and dead-lettering of messages that failed to process."""

from __future__ import annotations

import json
import math
import os
import re
import time
from datetime import datetime
from typing import Any

import redis

from .models import Logger, Message, PrefixedLogger, StdLogger

DEFAULT_MAX_RETRIES = 3
REQUEUE_BATCH = 10

_PREFIX = "[mq]"
_INT_RE = re.compile(r"[+-]?[0-9]+")


def is_test_mode() -> bool:
    """Tell whether the ``TEST_MODE`` environment variable asks for short timings."""
    return os.environ.get("TEST_MODE") == "1"


def retry_delay_seconds(retry_count: int) -> int:
    """Exponential back-off: 2**n seconds in test mode, 2**n minutes otherwise."""
    delay = int(math.pow(2, retry_count))
    return delay if is_test_mode() else delay * 60


def _retry_count(metadata: dict[str, str]) -> int:
    text = metadata.get("retry_count", "")
    if not _INT_RE.fullmatch(text):
        return 0
    return int(text)


def _now_rfc3339() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


def _encode(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)


class RetryManager:
    """Moves failed messages to a retry sorted set or to a dead-letter stream.

    The retry queue is ``<stream>.retry``, a sorted set scored by the Unix time
    at which the message is due; the dead-letter queue is the stream
    ``<stream>.dlq``.
    """

    def __init__(
        self,
        client: redis.Redis,
        stream_name: str,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        logger: Logger | None = None,
    ) -> None:
        self.client = client
        self.stream_name = stream_name
        self.max_retries = max_retries
        self.logger: Logger = PrefixedLogger(logger or StdLogger(), _PREFIX)

    @property
    def retry_queue_name(self) -> str:
        return self.stream_name + ".retry"

    @property
    def dead_letter_queue_name(self) -> str:
        return self.stream_name + ".dlq"

    @property
    def effective_max_retries(self) -> int:
        return self.max_retries if self.max_retries > 0 else DEFAULT_MAX_RETRIES

    def _delay(self, retry_count: int) -> int:
        delay = retry_delay_seconds(retry_count)
        if is_test_mode():
            self.logger.printf("test mode: retry delay set to %d seconds", delay)
        return delay

    def handle_failure(self, message: Message, error: BaseException) -> bool:
        """Record a processing failure and route the message onward.

        Returns True when the message went to the dead-letter queue and False
        when a retry was scheduled. Storage errors are logged, not raised.
        """
        self.logger.printf("processing message %s failed: %s", message.id, error)
        retry_count = _retry_count(message.metadata)
        message.metadata["retry_count"] = str(retry_count + 1)
        message.metadata["last_error"] = str(error)
        message.metadata["last_retry_time"] = _now_rfc3339()
        return self._route(message, retry_count, update_count=False)

    def reschedule_stale(self, message: Message) -> bool:
        """Route a message that stayed unacknowledged for too long.

        Returns True when the message went to the dead-letter queue.
        """
        retry_count = _retry_count(message.metadata)
        return self._route(message, retry_count, update_count=True)

    def _route(self, message: Message, retry_count: int, *, update_count: bool) -> bool:
        max_retries = self.effective_max_retries
        try:
            if retry_count >= max_retries:
                self.logger.printf(
                    "message %s exceeded %d retries, sending to the dead-letter queue",
                    message.id,
                    max_retries,
                )
                self.send_to_dead_letter_queue(message)
                return True
            if update_count:
                message.metadata["retry_count"] = str(retry_count + 1)
                message.metadata["last_retry_time"] = _now_rfc3339()
            self.schedule_retry(message, self._delay(retry_count))
        except redis.RedisError as err:
            self.logger.printf("routing failed message %s: %s", message.id, err)
        return retry_count >= max_retries

    def schedule_retry(self, message: Message, delay_seconds: int) -> None:
        """Put the whole message into the retry queue, due in ``delay_seconds``."""
        member = _encode(message.to_dict())
        due = int(time.time() + delay_seconds)
        try:
            self.client.zadd(self.retry_queue_name, {member: float(due)})
        except redis.RedisError as err:
            self.logger.printf("scheduling retry failed: %s", err)
            raise
        self.logger.printf("message %s will be retried in %d seconds", message.id, delay_seconds)

    def send_to_dead_letter_queue(self, message: Message) -> str:
        """Append the message to the dead-letter stream and return its new id."""
        message.metadata["original_id"] = message.id
        message.metadata["failure_time"] = _now_rfc3339()
        fields = {
            "type": message.type,
            "data": _encode(message.data),
            "metadata": _encode(message.metadata),
        }
        try:
            new_id = self.client.xadd(self.dead_letter_queue_name, fields)
        except redis.RedisError as err:
            self.logger.printf("sending message to the dead-letter queue failed: %s", err)
            raise
        self.logger.printf(
            "message %s sent to dead-letter queue %s", message.id, self.dead_letter_queue_name
        )
        return _text(new_id)

    def requeue_due(self) -> list[str]:
        """Move up to ten due retries back onto the stream; return their new ids."""
        queue = self.retry_queue_name
        try:
            members = self.client.zrangebyscore(queue, 0, int(time.time()), start=0, num=REQUEUE_BATCH)
        except redis.RedisError as err:
            self.logger.printf("reading the retry queue failed: %s", err)
            return []

        new_ids: list[str] = []
        for raw in members:
            try:
                decoded = json.loads(_text(raw))
                message = Message.from_dict(decoded)
            except (ValueError, TypeError, AttributeError) as err:
                self.logger.printf("cannot parse retry entry: %s", err)
                self.client.zrem(queue, raw)
                continue

            data_json = _encode(message.data)
            metadata_json = _encode(message.metadata)
            old_id = message.id
            if old_id and not message.metadata.get("original_id"):
                message.metadata["original_id"] = old_id

            try:
                new_id = _text(
                    self.client.xadd(
                        self.stream_name,
                        {"type": message.type, "data": data_json, "metadata": metadata_json},
                    )
                )
            except redis.RedisError as err:
                self.logger.printf("requeueing failed: %s", err)
                continue

            self.logger.printf("message requeued, old id: %s, new id: %s", old_id, new_id)
            self.client.zrem(queue, raw)
            new_ids.append(new_id)
        return new_ids