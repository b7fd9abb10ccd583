"""Download counters aggregated in memory and committed to redis.

Storage layout:
    STATS_TOTAL                                          all files, all mirrors
    STATS_FILE[_year[_month[_day]]]          path -> downloads
    STATS_MIRROR[_year[_month[_day]]]        mirror ID -> downloads
    STATS_MIRROR_BYTES[_year[_month[_day]]]  mirror ID -> bytes
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import redis

from mirrorbits.filesystem import FileInfo

logger = logging.getLogger(__name__)

PUSH_INTERVAL = 0.5
QUEUE_SIZE = 1000

_POLL_INTERVAL = 0.1
_ERRORS = (redis.exceptions.RedisError, OSError)
_KEY_PREFIXES = {"f": "STATS_FILE", "m": "STATS_MIRROR", "s": "STATS_MIRROR_BYTES"}


class UnknownMirrorError(ValueError):
    def __init__(self, message: str = "stats: unknown mirror") -> None:
        super().__init__(message)


class EmptyFileError(ValueError):
    def __init__(self, message: str = "stats: file parameter is empty") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class _CountItem:
    mirror_id: int
    filepath: str
    size: int
    time: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Stats:
    """Count downloads and periodically commit the counters to the database."""

    def __init__(
        self,
        db: Any,
        *,
        start: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._queue: queue.Queue[_CountItem] = queue.Queue(maxsize=QUEUE_SIZE)
        self.pending: dict[str, int] = {}
        self.downgraded = False
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        if start:
            self._thread = threading.Thread(target=self._process, name="stats", daemon=True)
            self._thread.start()

    def count_download(self, mirror: Any, file_info: FileInfo) -> None:
        """Count one download of file_info served by mirror."""
        if not mirror.name:
            raise UnknownMirrorError()
        if not file_info.path:
            raise EmptyFileError()
        self._queue.put(_CountItem(mirror.id, file_info.path, file_info.size, self._clock()))

    def terminate(self) -> None:
        """Stop counting and commit what is left to the database."""
        self._stop.set()
        logger.info("Saving stats")
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        else:
            self.push_stats()

    def _record(self, item: _CountItem) -> None:
        day = item.time.strftime("%Y_%m_%d|")
        mirror = str(item.mirror_id)
        for key, amount in (
            ("f" + day + item.filepath, 1),
            ("m" + day + mirror, 1),
            ("s" + day + mirror, item.size),
        ):
            self.pending[key] = self.pending.get(key, 0) + amount

    def _collect(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            self._record(item)

    def _process(self) -> None:
        next_push = time.monotonic() + PUSH_INTERVAL
        while not self._stop.is_set():
            remaining = next_push - time.monotonic()
            if remaining <= 0:
                self.push_stats()
                next_push = time.monotonic() + PUSH_INTERVAL
                continue
            try:
                item = self._queue.get(timeout=min(_POLL_INTERVAL, remaining))
            except queue.Empty:
                continue
            with self._lock:
                self._record(item)
        self.push_stats()

    @staticmethod
    def _increment_periods(pipe: Any, key: str, field: str, value: int) -> None:
        for _ in range(4):
            pipe.execute_command("HINCRBY", key, field, value)
            key = key[: key.rfind("_")]

    def push_stats(self) -> None:
        """Commit the pending counters; they are kept in memory if this fails."""
        with self._lock:
            self._collect()
            if not self.pending:
                return

            conn = self._db.get()
            try:
                try:
                    pipe = conn.pipeline(transaction=True)
                except _ERRORS as err:
                    if not self.downgraded:
                        logger.warning("Uncommitted stats kept in-memory: %s", err)
                    self.downgraded = True
                    return

                for key, value in self.pending.items():
                    if value == 0:
                        continue
                    separator = key.find("|")
                    if separator <= 0:
                        logger.critical("Stats: separator not found")
                        continue
                    kind, day, target = key[0], key[1:separator], key[separator + 1:]
                    prefix = _KEY_PREFIXES.get(kind)
                    if prefix is None:
                        logger.warning("Stats: unknown type %s", kind)
                        continue
                    self._increment_periods(pipe, f"{prefix}_{day}", target, value)
                    if kind == "f":
                        pipe.execute_command("INCRBY", "STATS_TOTAL", value)

                try:
                    pipe.execute()
                except _ERRORS as err:
                    logger.error("Stats: could not save stats to redis: %s", err)
                    return

                self.downgraded = False
                self.pending = {}
            finally:
                conn.close()