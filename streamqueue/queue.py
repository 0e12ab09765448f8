"""A consumer of one stream inside a consumer group, with retries and auto-stop."""

from __future__ import annotations

import json
import threading
from datetime import timedelta
from typing import Any, Iterable, Mapping, Sequence

import redis

from .cleaner import MessageCleaner
from .models import (
    BatchConfig,
    BatchMessageHandler,
    CleanupPolicy,
    Logger,
    Message,
    MessageHandler,
    PrefixedLogger,
    StartPosition,
    StdLogger,
)
from .retry import RetryManager, is_test_mode
from .types import TopicInfo
from .utils import extract_ids, get_topic_info, is_stream_or_group_deleted_error

_PREFIX = "[mq]"
_GROUP_EXISTS = "Consumer Group name already exists"
_KEY_REQUIRED = "requires the key to exist"
_PENDING_BATCH = 10
_STALE_BATCH = 100
_RETRY_POLL_SECONDS = 5.0
_NEW_BLOCK = timedelta(seconds=5)
_DELETED_REASON = "stream or consumer group was deleted"


class QueueStoppedError(RuntimeError):
    """Raised when starting a queue that has already been stopped."""


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)


def _millis(delta: timedelta) -> int:
    return int(delta / timedelta(milliseconds=1))


def _decode_object(text: str, field_name: str) -> dict[str, Any]:
    try:
        decoded = json.loads(text)
    except ValueError as err:
        raise ValueError(f"cannot parse {field_name} field: {err}") from err
    if decoded is None:
        return {}
    if not isinstance(decoded, dict):
        raise ValueError(f"cannot parse {field_name} field: not a JSON object")
    return decoded


def _stream_entries(response: Any) -> Iterable[Sequence[Any]]:
    if not response:
        return []
    if isinstance(response, Mapping):
        return list(response.values())
    return [entries for _name, entries in response]


class MessageQueue:
    """Reads a stream as ``consumer_name`` in ``group_name`` and dispatches by type.

    Failed messages are retried with exponential back-off and finally moved to
    a dead-letter stream. When the stream or group disappears the queue stops
    by itself; :attr:`is_auto_stopped` then turns true.
    """

    def __init__(
        self,
        client: redis.Redis,
        stream_name: str,
        group_name: str,
        consumer_name: str,
        *,
        start_position: StartPosition = StartPosition.LATEST,
        specific_id: str = "",
        batch_config: BatchConfig | None = None,
        cleanup_policy: CleanupPolicy | None = None,
        logger: Logger | None = None,
        max_retries: int = 0,
    ) -> None:
        self.client = client
        self.stream_name = stream_name
        self.group_name = group_name
        self.consumer_name = consumer_name
        self.start_position = start_position
        self.specific_id = specific_id
        self.batch_config = batch_config if batch_config is not None else BatchConfig()
        self.cleaner = MessageCleaner(client, stream_name, consumer_name, cleanup_policy)
        base = logger if logger is not None else StdLogger()
        self.logger: Logger = PrefixedLogger(base, _PREFIX)
        self.retry = RetryManager(client, stream_name, max_retries=max_retries, logger=base)
        self._handlers: dict[str, MessageHandler] = {}
        self._batch_handlers: dict[str, BatchMessageHandler] = {}
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._done = threading.Event()
        self._threads: list[threading.Thread] = []
        self._stopped = False
        self._auto_stopped = False

    @property
    def is_auto_stopped(self) -> bool:
        """True when the queue stopped because its stream or group was deleted."""
        with self._lock:
            return self._auto_stopped

    def register_handler(self, handler: MessageHandler) -> None:
        """Dispatch messages of ``handler.message_type`` to ``handler`` one by one."""
        with self._lock:
            self._handlers[handler.message_type] = handler

    def register_batch_handler(self, handler: BatchMessageHandler) -> None:
        """Dispatch messages of ``handler.message_type`` to ``handler`` in batches."""
        with self._lock:
            self._batch_handlers[handler.message_type] = handler

    def start(self) -> None:
        """Create the consumer group if needed and start the worker threads."""
        with self._lock:
            if self._stopped:
                raise QueueStoppedError("message queue has been stopped")
        self._create_consumer_group()
        for target, name in (
            (self._process_pending_messages, "pending"),
            (self._process_new_messages, "read"),
            (self._monitor_retry_queue, "retry"),
            (self._monitor_long_pending_messages, "stale"),
        ):
            thread = threading.Thread(
                target=target, name=f"{name}:{self.consumer_name}", daemon=True
            )
            self._threads.append(thread)
            thread.start()
        self.cleaner.on_start()
        self.logger.printf(
            "message queue started - stream: %s, group: %s, consumer: %s",
            self.stream_name,
            self.group_name,
            self.consumer_name,
        )

    def stop(self) -> None:
        """Stop all workers and wait for them to finish."""
        self._stop(False, "")

    def wait_done(self, timeout: float | None = None) -> bool:
        """Block until the queue has stopped; return False on timeout."""
        return self._done.wait(timeout)

    def _stop(self, auto: bool, reason: str) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            if auto:
                self._auto_stopped = True
        if auto:
            self.logger.printf("consumer %s stopping by itself: %s", self.consumer_name, reason)
        self._stop_event.set()
        self.cleaner.stop()
        self._done.set()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join()
        self.cleaner.wait()
        if auto:
            self.logger.printf("consumer %s stopped", self.consumer_name)
        else:
            self.logger.printf("message queue stopped")

    def _auto_stop(self, reason: str) -> None:
        threading.Thread(target=self._stop, args=(True, reason), daemon=True).start()

    def _start_id(self) -> str:
        if self.start_position == StartPosition.SPECIFIC:
            if not self.specific_id:
                raise ValueError("a specific id is required when starting from a specific id")
            return self.specific_id
        if self.start_position == StartPosition.EARLIEST:
            return "0"
        return "$"

    def _create_consumer_group(self) -> None:
        start_id = self._start_id()
        self.logger.printf("creating consumer group %s, start position: %s", self.group_name, start_id)
        try:
            self.client.xgroup_create(self.stream_name, self.group_name, start_id)
        except redis.ResponseError as err:
            if _GROUP_EXISTS in str(err):
                return
            if _KEY_REQUIRED not in str(err):
                raise
            self.client.xadd(self.stream_name, {"init": "true"})
            try:
                self.client.xgroup_create(self.stream_name, self.group_name, start_id)
            except redis.ResponseError as retry_err:
                if _GROUP_EXISTS not in str(retry_err):
                    raise

    def _claim(self, message_ids: list[str], min_idle_ms: int) -> list[Any]:
        return self.client.xclaim(
            self.stream_name, self.group_name, self.consumer_name, min_idle_ms, message_ids
        ) or []

    def _process_pending_messages(self) -> None:
        while not self._stop_event.is_set():
            try:
                pending = self.client.xpending_range(
                    self.stream_name, self.group_name, min="-", max="+", count=_PENDING_BATCH
                )
            except redis.RedisError as err:
                if is_stream_or_group_deleted_error(err):
                    self.logger.printf("stream or consumer group deleted, stopping")
                    self._auto_stop(_DELETED_REASON)
                    return
                self._stop_event.wait(1.0)
                continue
            if not pending:
                return
            for entry in pending:
                if self._stop_event.is_set():
                    return
                self._process_pending_message(_text(entry.get("message_id")))

    def _process_pending_message(self, message_id: str) -> None:
        try:
            claimed = self._claim([message_id], 0)
        except redis.RedisError as err:
            self.logger.printf("claiming message %s failed: %s", message_id, err)
            return
        if claimed:
            self.handle_messages(self._parse_entries(claimed))

    def _process_new_messages(self) -> None:
        config = self.batch_config
        count = config.batch_size if config.enable_batch else 1
        block_ms = _millis(config.batch_timeout if config.enable_batch else _NEW_BLOCK)
        while not self._stop_event.is_set():
            try:
                response = self.client.xreadgroup(
                    self.group_name,
                    self.consumer_name,
                    {self.stream_name: ">"},
                    count=count,
                    block=block_ms,
                )
            except redis.RedisError as err:
                self.logger.printf("reading messages failed: %s", err)
                if is_stream_or_group_deleted_error(err):
                    self.logger.printf("stream or consumer group deleted, stopping consumer")
                    self._auto_stop(_DELETED_REASON)
                    return
                continue
            for entries in _stream_entries(response):
                if entries:
                    self.handle_messages(self._parse_entries(entries))

    def parse_message(self, fields: Mapping[Any, Any] | None, message_id: str) -> Message:
        """Build a :class:`Message` from raw stream fields; raise ValueError if malformed."""
        values = {_text(key): _text(value) for key, value in (fields or {}).items()}
        if "type" not in values:
            raise ValueError("message has no type field")
        data: dict[str, Any] = {}
        metadata: dict[str, str] = {}
        if "data" in values:
            data = _decode_object(values["data"], "data")
        if "metadata" in values:
            raw_metadata = _decode_object(values["metadata"], "metadata")
            for key, value in raw_metadata.items():
                if not isinstance(value, str):
                    raise ValueError(f"cannot parse metadata field: {key!r} is not a string")
            metadata = raw_metadata
        return Message(id=message_id, type=values["type"], data=data, metadata=metadata)

    def _parse_entries(self, entries: Iterable[Sequence[Any]]) -> list[Message]:
        messages = []
        for raw_id, fields in entries:
            message_id = _text(raw_id)
            try:
                messages.append(self.parse_message(fields, message_id))
            except ValueError as err:
                self.logger.printf("parsing message %s failed: %s", message_id, err)
                self._ack(message_id)
        return messages

    def handle_messages(self, messages: Sequence[Message]) -> None:
        """Dispatch messages to their handlers by type, acknowledging or retrying each."""
        grouped: dict[str, list[Message]] = {}
        for message in messages:
            grouped.setdefault(message.type, []).append(message)
        for msg_type, typed in grouped.items():
            with self._lock:
                single = self._handlers.get(msg_type)
                batch = self._batch_handlers.get(msg_type)
            if batch is not None:
                size = batch.batch_size if batch.batch_size > 0 else self.batch_config.batch_size
                size = max(size, 1)
                for offset in range(0, len(typed), size):
                    chunk = typed[offset : offset + size]
                    try:
                        batch.handle_batch(chunk)
                    except Exception as err:
                        self.logger.printf("batch handling failed, type=%s: %s", msg_type, err)
                        for message in chunk:
                            self._fail(message, err)
                        continue
                    self._ack_all(extract_ids(chunk))
            elif single is not None:
                self.logger.printf(
                    "no batch handler, handling one by one: type=%s, count=%d", msg_type, len(typed)
                )
                for message in typed:
                    try:
                        single.handle(message)
                    except Exception as err:
                        self._fail(message, err)
                        continue
                    self._ack(message.id)
            else:
                self.logger.printf("no handler found for message type: %s", msg_type)
                self._ack_all(extract_ids(typed))

    def _fail(self, message: Message, error: BaseException) -> None:
        self.retry.handle_failure(message, error)
        self._ack(message.id)

    def _ack(self, message_id: str) -> None:
        try:
            self.client.xack(self.stream_name, self.group_name, message_id)
        except redis.RedisError as err:
            self.logger.printf("acknowledging message %s failed: %s", message_id, err)
            if is_stream_or_group_deleted_error(err):
                self.logger.printf("stream or consumer group deleted, acknowledgement failed")
                self._auto_stop(_DELETED_REASON)

    def _ack_all(self, message_ids: Iterable[str]) -> None:
        for message_id in message_ids:
            self._ack(message_id)

    def _monitor_long_pending_messages(self) -> None:
        test_mode = is_test_mode()
        timeout = timedelta(seconds=3) if test_mode else timedelta(minutes=5)
        tick = 1.0 if test_mode else 60.0
        idle_ms = _millis(timeout)
        while not self._stop_event.wait(tick):
            try:
                stale = self.client.xpending_range(
                    self.stream_name,
                    self.group_name,
                    min="-",
                    max="+",
                    count=_STALE_BATCH,
                    idle=idle_ms,
                )
            except redis.RedisError as err:
                if is_stream_or_group_deleted_error(err):
                    self.logger.printf("stream or consumer group deleted, stopping monitor")
                    self._auto_stop(_DELETED_REASON)
                    return
                self.logger.printf("reading long pending messages failed: %s", err)
                continue
            if not stale:
                continue
            self.logger.printf(
                "found %d messages unacknowledged for over %s, reprocessing", len(stale), timeout
            )
            for entry in stale:
                if self._stop_event.is_set():
                    return
                message_id = _text(entry.get("message_id"))
                try:
                    claimed = self._claim([message_id], idle_ms)
                except redis.RedisError as err:
                    self.logger.printf("claiming stale message %s failed: %s", message_id, err)
                    continue
                for raw_id, fields in claimed:
                    claimed_id = _text(raw_id)
                    try:
                        message = self.parse_message(fields, claimed_id)
                    except ValueError as err:
                        self.logger.printf("parsing stale message %s failed: %s", claimed_id, err)
                        self._ack(claimed_id)
                        continue
                    self.retry.reschedule_stale(message)
                    self._ack(message.id)

    def _monitor_retry_queue(self) -> None:
        while not self._stop_event.wait(_RETRY_POLL_SECONDS):
            try:
                self.retry.requeue_due()
            except redis.RedisError as err:
                self.logger.printf("processing the retry queue failed: %s", err)

    def get_topic_info(self) -> TopicInfo:
        """Describe the stream this queue consumes."""
        return get_topic_info(self.client, self.stream_name)

    def terminate_topic(self) -> None:
        """Stop this queue, destroy every consumer group and delete the stream."""
        self.logger.printf("terminating topic: %s", self.stream_name)
        self.stop()
        try:
            groups = self.client.xinfo_groups(self.stream_name)
        except redis.RedisError as err:
            if "no such key" not in str(err):
                self.logger.printf("reading consumer groups failed: %s", err)
            groups = []
        for group in groups:
            name = _text(group.get("name"))
            try:
                self.client.xgroup_destroy(self.stream_name, name)
            except redis.RedisError as err:
                self.logger.printf("destroying consumer group %s failed: %s", name, err)
        if self.client.delete(self.stream_name):
            self.logger.printf("stream deleted: %s", self.stream_name)