"""Helpers for stream entry ids, error classification and topic inspection."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

import redis

from .models import Message
from .types import ConsumerInfo, GroupInfo, TopicInfo

log = logging.getLogger("streamqueue")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_DELETED_PATTERNS = (
    "ERR no such key",
    "no such key",
    "NOGROUP",
    "No such key",
    "consumer group",
    "does not exist",
)


def _parse_int64(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"invalid integer: {text!r}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"integer out of range: {text!r}")
    return value


def _parse_int_or_zero(text: str) -> int:
    try:
        return _parse_int64(text)
    except ValueError:
        return 0


def extract_timestamp_from_message_id(message_id: str) -> int:
    """Return the millisecond timestamp part of a ``<ms>-<seq>`` entry id."""
    parts = message_id.split("-")
    if len(parts) != 2:
        raise ValueError(f"invalid message id format: {message_id}")
    try:
        return _parse_int64(parts[0])
    except ValueError as err:
        raise ValueError(f"cannot parse timestamp of {message_id}: {err}") from err


def compare_message_ids(id1: str, id2: str) -> int:
    """Order two entry ids, returning -1, 0 or 1.

    Ids that cannot be parsed are compared as plain strings.
    """
    if id1 == id2:
        return 0
    try:
        ts1 = extract_timestamp_from_message_id(id1)
        ts2 = extract_timestamp_from_message_id(id2)
    except ValueError:
        return -1 if id1 < id2 else 1
    if ts1 != ts2:
        return -1 if ts1 < ts2 else 1
    seq1 = _parse_int_or_zero(id1.split("-")[1])
    seq2 = _parse_int_or_zero(id2.split("-")[1])
    if seq1 != seq2:
        return -1 if seq1 < seq2 else 1
    return 0


def millis_to_time(millis: int) -> datetime:
    """Convert Unix milliseconds to an aware UTC datetime."""
    return _EPOCH + timedelta(milliseconds=millis)


def is_message_old_enough(message_id: str, min_retention: timedelta) -> bool:
    """Tell whether the entry's id timestamp lies at least ``min_retention`` in the past."""
    try:
        timestamp = extract_timestamp_from_message_id(message_id)
    except ValueError as err:
        log.warning("cannot extract timestamp from %s: %s", message_id, err)
        return False
    return datetime.now(timezone.utc) - millis_to_time(timestamp) >= min_retention


def exclude_id(message_id: str) -> str:
    """Return an exclusive range bound that starts just after ``message_id``."""
    return "(" + message_id


def is_stream_or_group_deleted_error(error: BaseException | None) -> bool:
    """Tell whether an error means the stream or its consumer group is gone."""
    if error is None:
        return False
    text = str(error)
    return any(pattern in text for pattern in _DELETED_PATTERNS)


def extract_ids(messages: Iterable[Message]) -> list[str]:
    """Return the ids of the given messages, in order."""
    return [message.id for message in messages]


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)


def _entry_id(entry: Any) -> str:
    if not entry:
        return ""
    return _text(entry[0])


def _is_missing_key(error: BaseException) -> bool:
    return str(error).removeprefix("ERR ") == "no such key"


def get_topic_info(client: redis.Redis, stream_name: str) -> TopicInfo:
    """Describe a stream: its length, boundary entries, groups and consumers."""
    info = TopicInfo(stream_name=stream_name)
    try:
        stream = client.xinfo_stream(stream_name)
    except redis.ResponseError as err:
        if _is_missing_key(err):
            return info
        raise

    info.exists = True
    info.length = int(stream.get("length") or 0)
    info.first_entry_id = _entry_id(stream.get("first-entry"))
    info.last_entry_id = _entry_id(stream.get("last-entry"))

    for group in client.xinfo_groups(stream_name):
        group_info = GroupInfo(
            name=_text(group.get("name")),
            pending=int(group.get("pending") or 0),
            last_delivered_id=_text(group.get("last-delivered-id")),
        )
        info.groups.append(group_info)
        try:
            consumers = client.xinfo_consumers(stream_name, group_info.name)
        except redis.RedisError as err:
            log.warning("cannot read consumers of group %s: %s", group_info.name, err)
            continue
        group_info.consumers = [
            ConsumerInfo(
                name=_text(consumer.get("name")),
                pending=int(consumer.get("pending") or 0),
                idle=timedelta(milliseconds=int(consumer.get("idle") or 0)),
            )
            for consumer in consumers
        ]
    return info