"""A Redis-backed mutex that keeps renewing its own expiry while held."""

from __future__ import annotations

import logging
import secrets
import threading
import time
from datetime import timedelta
from types import TracebackType

import redis

log = logging.getLogger("streamqueue")

_EXTEND_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("PEXPIRE", KEYS[1], ARGV[2])
else
    return 0
end
"""

_UNLOCK_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""


class LockError(Exception):
    """Raised when the mutex could not be acquired."""


class AutoExtendMutex:
    """Mutex on a single Redis key whose expiry is renewed every ``interval``.

    The key holds ``value`` so that only the holder can renew or release it.
    An ``interval`` of zero disables automatic renewal.
    """

    def __init__(
        self,
        client: redis.Redis,
        key: str,
        *,
        expiry: timedelta = timedelta(seconds=8),
        interval: timedelta = timedelta(0),
        value: str | None = None,
        tries: int = 1,
        retry_delay: timedelta = timedelta(milliseconds=100),
    ) -> None:
        self.key = key
        self.value = value if value is not None else secrets.token_hex(16)
        self.expiry = expiry
        self.interval = interval
        self._client = client
        self._tries = max(1, tries)
        self._retry_delay = retry_delay
        self._extend_script = client.register_script(_EXTEND_SCRIPT)
        self._unlock_script = client.register_script(_UNLOCK_SCRIPT)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def _expiry_ms(self) -> int:
        return int(self.expiry / timedelta(milliseconds=1))

    def lock(self) -> None:
        """Acquire the lock or raise :class:`LockError`."""
        self._stop = threading.Event()
        for attempt in range(self._tries):
            if self._client.set(self.key, self.value, nx=True, px=self._expiry_ms):
                break
            if attempt < self._tries - 1:
                time.sleep(self._retry_delay.total_seconds())
        else:
            self._stop.set()
            raise LockError(f"lock {self.key!r} is held by someone else")

        if self.interval > timedelta(0):
            self._thread = threading.Thread(
                target=self._auto_extend, args=(self._stop,), name=f"extend:{self.key}", daemon=True
            )
            self._thread.start()

    def unlock(self) -> bool:
        """Stop renewing and release the lock; return whether it was still held."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        return bool(self._unlock_script(keys=[self.key], args=[self.value]))

    def extend(self, max_retries: int = 3) -> bool:
        """Reset the key's expiry if still held, retrying up to ``max_retries`` times."""
        for attempt in range(max_retries):
            try:
                if self._extend_script(keys=[self.key], args=[self.value, self._expiry_ms]):
                    return True
            except redis.RedisError as err:
                log.warning("extending lock %s failed: %s", self.key, err)
            if attempt < max_retries - 1:
                time.sleep(0.1)
        log.warning("extending lock %s failed, retries exhausted", self.key)
        return False

    def _auto_extend(self, stop: threading.Event) -> None:
        seconds = self.interval.total_seconds()
        while not stop.wait(seconds):
            if not self.extend(3):
                return

    def __enter__(self) -> "AutoExtendMutex":
        self.lock()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.unlock()