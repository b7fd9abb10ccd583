"""Distributed locks stored in redis with a keepalive."""

from __future__ import annotations

import random
import threading
from typing import Any

import redis

LOCK_PREFIX = "LOCK_"
LOCK_TTL_MS = 5000
KEEPALIVE_INTERVAL = 1.0

_ERRORS = (redis.exceptions.RedisError, OSError)


class InvalidLockNameError(ValueError):
    """The lock name is empty."""

    def __init__(self, message: str = "invalid lock name") -> None:
        super().__init__(message)


class AlreadyLockedError(Exception):
    """The lock is held by someone else."""

    def __init__(self, message: str = "lock already acquired") -> None:
        super().__init__(message)


def _to_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", "surrogateescape")
    return str(value)


class Lock:
    """A lock acquired in redis, kept alive in the background until released."""

    def __init__(self, db: Any, name: str, value: str) -> None:
        self._db = db
        self.name = name
        self.value = value
        self._held = True
        self._mutex = threading.Lock()
        self._wakeup = threading.Event()
        self._thread: threading.Thread | None = None

    def _start_keepalive(self) -> None:
        self._thread = threading.Thread(
            target=self._keepalive, name=f"keepalive-{self.name}", daemon=True
        )
        self._thread.start()

    def _drop(self) -> None:
        with self._mutex:
            self._held = False

    def _keepalive(self) -> None:
        while True:
            if not self.held():
                return
            try:
                valid = self._is_valid()
            except _ERRORS:
                self._wakeup.wait(KEEPALIVE_INTERVAL)
                continue
            if not valid:
                self._drop()
                return
            conn = self._db.unblocked_get()
            try:
                extended = conn.execute_command("PEXPIRE", self.name, LOCK_TTL_MS)
            except _ERRORS:
                self._wakeup.wait(KEEPALIVE_INTERVAL)
                continue
            finally:
                conn.close()
            if not extended:
                self._drop()
                return
            self._wakeup.wait(KEEPALIVE_INTERVAL)

    def _is_valid(self) -> bool:
        conn = self._db.unblocked_get()
        try:
            current = conn.execute_command("GET", self.name)
        finally:
            conn.close()
        return _to_str(current) == self.value

    def release(self) -> None:
        """Release the lock, deleting the key only if it is still ours."""
        with self._mutex:
            if not self._held:
                return
            self._held = False
        self._wakeup.set()
        conn = self._db.unblocked_get()
        try:
            current = conn.execute_command("GET", self.name)
            if _to_str(current) == self.value:
                conn.execute_command("DEL", self.name)
        except _ERRORS:
            pass
        finally:
            conn.close()

    def held(self) -> bool:
        with self._mutex:
            return self._held

    def __enter__(self) -> Lock:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()


def acquire_lock(db: Any, name: str) -> Lock:
    """Acquire the lock called name, or raise AlreadyLockedError if it is taken."""
    if not name:
        raise InvalidLockNameError()

    lock = Lock(db, LOCK_PREFIX + name, str(random.getrandbits(63)))
    conn = db.unblocked_get()
    try:
        reply = conn.execute_command("SET", lock.name, lock.value, "NX", "PX", LOCK_TTL_MS)
    finally:
        conn.close()
    if not reply:
        raise AlreadyLockedError()

    lock._start_keepalive()
    return lock