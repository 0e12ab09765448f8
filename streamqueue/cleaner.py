"""Removal of stream entries that every consumer group has already acknowledged."""

from __future__ import annotations

import functools
import logging
import threading
from typing import Any, Iterator, Sequence

import redis

from .coordinator import CleanupCoordinator
from .lock import LockError
from .models import CleanupPolicy
from .utils import compare_message_ids, exclude_id, is_message_old_enough

log = logging.getLogger("streamqueue")

_SCAN_BATCH = 200
_PENDING_CHUNK = 100


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)


class MessageCleaner:
    """Deletes consumed entries of a stream, by hand or on a timer."""

    def __init__(
        self,
        client: redis.Redis,
        stream_name: str,
        consumer_name: str,
        policy: CleanupPolicy | None = None,
    ) -> None:
        self.client = client
        self.stream_name = stream_name
        self.consumer_name = consumer_name
        self.cleanup_policy = policy if policy is not None else CleanupPolicy()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def coordinated_cleanup(self) -> int:
        """Clean under the stream's cleanup lock and record statistics.

        Raises :class:`LockError` when another consumer holds the lock.
        """
        coordinator = CleanupCoordinator(self.client, self.stream_name)
        mutex = coordinator.try_acquire_cleanup_lock(self.consumer_name)
        try:
            cleaned = self.cleanup_messages()
            if cleaned > 0:
                try:
                    coordinator.update_cleanup_stats(self.consumer_name, cleaned)
                except redis.RedisError as err:
                    log.warning("updating cleanup stats failed: %s", err)
            return cleaned
        finally:
            try:
                mutex.unlock()
            except redis.RedisError as err:
                log.warning("releasing cleanup lock failed: %s", err)

    def cleanup_messages(self) -> int:
        """Delete old, fully acknowledged entries and return how many went."""
        policy = self.cleanup_policy
        total = 0
        log.info("cleaning stream %s", self.stream_name)
        for ids in self._find_cleanable_messages(policy, _SCAN_BATCH):
            if not ids:
                continue
            try:
                total += int(self.client.xdel(self.stream_name, *ids))
            except redis.RedisError as err:
                log.warning("deleting a batch of entries failed: %s", err)
        log.info("cleanup finished, %d entries removed", total)
        return total

    def _min_delivered_id(self) -> tuple[list[str], str] | None:
        groups = self.client.xinfo_groups(self.stream_name)
        if not groups:
            return None
        names = [_text(group.get("name")) for group in groups]
        delivered = [_text(group.get("last-delivered-id")) for group in groups]
        lowest = min(delivered, key=functools.cmp_to_key(compare_message_ids))
        if lowest in ("", "0-0"):
            return None
        return names, lowest

    def _find_cleanable_messages(
        self, policy: CleanupPolicy, batch_size: int
    ) -> Iterator[list[str]]:
        bounds = self._min_delivered_id()
        if bounds is None:
            return
        group_names, upper = bounds
        start = "-"
        while True:
            entries = self.client.xrange(self.stream_name, min=start, max=upper, count=batch_size)
            if not entries:
                return
            ids = [_text(entry[0]) for entry in entries]
            start = exclude_id(ids[-1])
            candidates = [i for i in ids if is_message_old_enough(i, policy.min_retention)]
            yield self._fully_acked(candidates, group_names)
            if len(entries) < batch_size:
                return

    def _fully_acked(self, message_ids: Sequence[str], group_names: Sequence[str]) -> list[str]:
        if not message_ids:
            return []
        acked = dict.fromkeys(message_ids, True)
        ordered = sorted(message_ids, key=functools.cmp_to_key(compare_message_ids))
        for group in group_names:
            try:
                summary = self.client.xpending(self.stream_name, group)
            except redis.RedisError as err:
                log.warning("reading pending summary of group %s failed: %s", group, err)
                acked = dict.fromkeys(acked, False)
                continue
            if not int(summary.get("pending") or 0):
                log.debug("group %s has no pending entries", group)
                continue
            for offset in range(0, len(ordered), _PENDING_CHUNK):
                chunk = ordered[offset : offset + _PENDING_CHUNK]
                try:
                    pending = self.client.xpending_range(
                        self.stream_name, group, min=chunk[0], max=chunk[-1], count=len(chunk)
                    )
                except redis.RedisError as err:
                    log.warning("checking pending %s..%s failed: %s", chunk[0], chunk[-1], err)
                    acked.update(dict.fromkeys(chunk, False))
                    continue
                for entry in pending:
                    acked[_text(entry.get("message_id"))] = False
        return [message_id for message_id, ok in acked.items() if ok]

    def on_start(self) -> None:
        """Start the background cleanup thread if the policy enables it."""
        policy = self.cleanup_policy
        if not policy.enable_auto_cleanup:
            return
        self._thread = threading.Thread(
            target=self._auto_cleanup,
            args=(self._stop, policy.cleanup_interval.total_seconds()),
            name=f"cleanup:{self.stream_name}",
            daemon=True,
        )
        self._thread.start()
        log.info("auto cleanup enabled, interval %s", policy.cleanup_interval)

    def stop(self) -> None:
        """Ask the background cleanup thread to finish."""
        self._stop.set()

    def wait(self) -> None:
        """Block until the background cleanup thread has finished."""
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def _auto_cleanup(self, stop: threading.Event, seconds: float) -> None:
        while not stop.wait(seconds):
            try:
                self.perform_cleanup()
            except Exception:
                log.exception("auto cleanup run failed")
        log.info("auto cleanup stopped")

    def perform_cleanup(self) -> int:
        """Run one coordinated cleanup if the stream has grown past its limit."""
        policy = self.cleanup_policy
        if not policy.enable_auto_cleanup:
            return 0
        try:
            info = self.client.xinfo_stream(self.stream_name)
        except redis.RedisError as err:
            if "no such key" not in str(err):
                log.warning("reading stream info failed: %s", err)
            return 0

        length = int(info.get("length") or 0)
        if length <= policy.max_stream_length:
            log.info(
                "stream length %d within limit %d, skipping cleanup",
                length,
                policy.max_stream_length,
            )
            return 0

        log.info("coordinated cleanup of %s, length %d", self.stream_name, length)
        try:
            cleaned = self.coordinated_cleanup()
        except (LockError, redis.RedisError) as err:
            log.info("coordinated cleanup skipped: %s", err)
            return 0
        if cleaned > 0:
            log.info("coordinated cleanup removed %d entries", cleaned)
        return cleaned