"""Publish/subscribe dispatching of the events shared between nodes."""

from __future__ import annotations

import logging
import queue
import threading
from enum import Enum
from typing import Any

import redis

from mirrorbits.errors import redis_is_loading

logger = logging.getLogger(__name__)

_RECONNECT_DELAY = 0.5
_RESUBSCRIBE_DELAY = 0.05
_POLL_TIMEOUT = 0.5

_ERRORS = (redis.exceptions.RedisError, OSError)


class PubsubEvent(str, Enum):
    """Channels used to exchange events between the nodes."""

    CLUSTER = "_mirrorbits_cluster"
    FILE_UPDATE = "_mirrorbits_file_update"
    MIRROR_UPDATE = "_mirrorbits_mirror_update"
    MIRROR_FILE_UPDATE = "_mirrorbits_mirror_file_update"

    PUBSUB_RECONNECTED = "_mirrorbits_pubsub_reconnected"


_SUBSCRIBED_CHANNELS = (
    PubsubEvent.CLUSTER,
    PubsubEvent.FILE_UPDATE,
    PubsubEvent.MIRROR_UPDATE,
    PubsubEvent.MIRROR_FILE_UPDATE,
)


def _name(value: Any) -> str:
    if isinstance(value, PubsubEvent):
        return value.value
    if isinstance(value, bytes):
        return value.decode("utf-8", "surrogateescape")
    return str(value)


def _close_quietly(resource: Any) -> None:
    try:
        resource.close()
    except _ERRORS:
        pass


class Pubsub:
    """Listen to the pubsub channels and forward their messages to subscribers."""

    def __init__(self, db: Any, *, start: bool = True) -> None:
        self._db = db
        self._stop = threading.Event()
        self._subscribers: dict[str, list[queue.Queue]] = {}
        self._subscribers_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        if start:
            self._thread = threading.Thread(target=self._update_events, name="pubsub", daemon=True)
            self._thread.start()

    def close(self) -> None:
        """Stop listening and wait for the listener to finish."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()

    def subscribe_event(self, event: PubsubEvent | str, queue: queue.Queue) -> None:
        """Have every message dispatched on the event's channel put into queue."""
        with self._subscribers_lock:
            self._subscribers.setdefault(_name(event), []).append(queue)

    def handle_message(self, channel: PubsubEvent | str | bytes, data: Any) -> None:
        """Hand the message to every subscriber of channel, waiting if needed."""
        with self._subscribers_lock:
            listeners = list(self._subscribers.get(_name(channel), ()))
        text = "" if data is None else _name(data)
        for listener in listeners:
            listener.put(text)

    def _update_events(self) -> None:
        disconnected = False
        while not self._stop.is_set():
            conn = self._db.get()
            try:
                conn.execute_command("PING")
            except _ERRORS as err:
                disconnected = True
                _close_quietly(conn)
                if redis_is_loading(err):
                    # Redis accepts connections but cannot serve the dataset yet.
                    logger.warning("Redis is still loading the dataset in memory")
                self._stop.wait(_RECONNECT_DELAY)
                continue

            logger.debug("Subscribing pubsub")
            pubsub = None
            try:
                pubsub = conn.pubsub()
                pubsub.subscribe(*(event.value for event in _SUBSCRIBED_CHANNELS))
                if disconnected:
                    # Cached data may be outdated after a reconnection.
                    disconnected = False
                    self.handle_message(PubsubEvent.PUBSUB_RECONNECTED, None)
                self._receive(pubsub)
            except _ERRORS as err:
                if self._stop.is_set():
                    return
                logger.error("Pubsub disconnected: %s", err)
                disconnected = True
                self._stop.wait(_RESUBSCRIBE_DELAY)
            finally:
                if pubsub is not None:
                    _close_quietly(pubsub)
                _close_quietly(conn)

    def _receive(self, pubsub: Any) -> None:
        while not self._stop.is_set():
            message = pubsub.get_message(timeout=_POLL_TIMEOUT)
            if message is None:
                continue
            kind = _name(message.get("type", ""))
            if kind == "message":
                self.handle_message(message["channel"], message["data"])
            elif kind in ("subscribe", "unsubscribe"):
                logger.debug(
                    "Redis subscription on channel %s: %s (%s)",
                    _name(message.get("channel", "")),
                    kind,
                    message.get("data"),
                )


def publish(conn: Any, event: PubsubEvent | str, message: str) -> Any:
    """Publish message on the event's channel and return the server's reply."""
    return conn.execute_command("PUBLISH", _name(event), message)


def send_publish(pipeline: Any, event: PubsubEvent | str, message: str) -> None:
    """Queue the publication of message in a pipeline or transaction."""
    pipeline.execute_command("PUBLISH", _name(event), message)