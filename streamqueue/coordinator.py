"""Coordination of stream cleanup between several consumers of one stream."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import redis

from .lock import AutoExtendMutex, LockError

log = logging.getLogger("streamqueue")

STATS_RETENTION = timedelta(days=7)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)


@dataclass
class CleanupStats:
    """Accumulated cleanup statistics of a stream."""

    stream_name: str
    stats: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready mapping."""
        return {"stream_name": self.stream_name, "stats": dict(self.stats)}


class CleanupCoordinator:
    """Makes sure only one consumer at a time cleans a given stream."""

    def __init__(
        self,
        client: redis.Redis,
        stream_name: str,
        lock_ttl: timedelta = timedelta(minutes=2),
    ) -> None:
        self.client = client
        self.stream_name = stream_name
        self.lock_key = f"cleanup_lock:{stream_name}"
        self.lock_ttl = lock_ttl

    @property
    def stats_key(self) -> str:
        return f"cleanup_stats:{self.stream_name}"

    def try_acquire_cleanup_lock(self, consumer_name: str) -> AutoExtendMutex:
        """Take the cleanup lock in one attempt or raise :class:`LockError`.

        The returned mutex renews itself every half TTL until unlocked.
        """
        mutex = AutoExtendMutex(
            self.client,
            self.lock_key,
            expiry=self.lock_ttl,
            interval=self.lock_ttl / 2,
            value=consumer_name,
            tries=1,
        )
        try:
            mutex.lock()
        except (LockError, redis.RedisError) as err:
            try:
                holder = self.client.get(self.lock_key)
            except redis.RedisError as get_err:
                log.warning("cannot check cleanup lock holder: %s", get_err)
            else:
                if holder is not None:
                    log.info("cleanup lock is held by %s, skipping cleanup", _text(holder))
            raise LockError(f"cannot acquire cleanup lock: {err}") from err

        log.info("consumer %s acquired the cleanup lock", consumer_name)
        return mutex

    def get_cleanup_stats(self) -> CleanupStats:
        """Read the stream's cleanup statistics."""
        raw = self.client.hgetall(self.stats_key)
        stats = {_text(key): _text(value) for key, value in raw.items()}
        return CleanupStats(stream_name=self.stream_name, stats=stats)

    def update_cleanup_stats(self, consumer_name: str, cleaned: int) -> None:
        """Record one finished cleanup run that removed ``cleaned`` entries."""
        now = datetime.now().astimezone().isoformat(timespec="seconds")
        key = self.stats_key
        pipe = self.client.pipeline()
        pipe.hincrby(key, "total_cleaned", cleaned)
        pipe.hincrby(key, "cleanup_count", 1)
        pipe.hset(
            key,
            mapping={
                "last_cleanup_time": now,
                "last_cleanup_by": consumer_name,
                "last_cleaned_count": cleaned,
            },
        )
        pipe.expire(key, STATS_RETENTION)
        pipe.execute()
        log.info("cleanup stats updated: consumer=%s, cleaned=%d", consumer_name, cleaned)

    def is_cleanup_in_progress(self) -> tuple[bool, str]:
        """Return whether the cleanup lock is held, and by whom."""
        holder = self.client.get(self.lock_key)
        if holder is None:
            return False, ""
        return True, _text(holder)