"""Distribution of the mirrors between the nodes of a cluster."""

from __future__ import annotations

import bisect
import logging
import queue
import random
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any

import redis

from mirrorbits.config import get_config
from mirrorbits.pubsub import PubsubEvent, publish

logger = logging.getLogger(__name__)

CLUSTER_ANNOUNCE_PREFIX = "HELLO"
ANNOUNCE_INTERVAL = 1.0
NODE_EXPIRATION = 5

_POLL_INTERVAL = 0.1
_QUEUE_SIZE = 10
_ERRORS = (redis.exceptions.RedisError, OSError)


@dataclass
class Node:
    """A node of the cluster and the time of its last announce (unix seconds)."""

    id: str
    last_announce: int


def _now() -> int:
    return int(time.time())


def _elapsed(since: int, seconds: int) -> bool:
    return _now() - since > seconds


def add_mirror_id_to_slice(ids: list[int], mirror_id: int) -> list[int]:
    """Return the sorted ids with mirror_id inserted, unless already present."""
    idx = bisect.bisect_left(ids, mirror_id)
    if idx < len(ids) and ids[idx] == mirror_id:
        return list(ids)
    return [*ids[:idx], mirror_id, *ids[idx:]]


def remove_mirror_id_from_slice(ids: list[int], mirror_id: int) -> list[int]:
    """Return the sorted ids without mirror_id."""
    idx = bisect.bisect_left(ids, mirror_id)
    if idx < len(ids) and ids[idx] == mirror_id:
        return [*ids[:idx], *ids[idx + 1:]]
    return list(ids)


class Cluster:
    """Announce this node to the others and share the mirrors out between them."""

    def __init__(self, db: Any) -> None:
        self._db = db
        self.nodes: list[Node] = []
        self.node_index = 0
        self.node_total = 0
        self.mirrors_index: list[int] = []
        self.running = False
        self._nodes_lock = threading.RLock()
        self._start_stop_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        hostname = socket.gethostname() or "unknown"
        self.node_id = f"{hostname}-{random.randrange(32000):05d}"
        self.announce_text = CLUSTER_ANNOUNCE_PREFIX + str(get_config().redis_db)

    def start(self) -> None:
        with self._start_stop_lock:
            if self.running:
                return
            logger.debug("Cluster starting...")
            self.running = True
            self._stop = threading.Event()
            self._thread = threading.Thread(
                target=self._cluster_loop, args=(self._stop,), name="cluster", daemon=True
            )
            self._thread.start()

    def stop(self) -> None:
        with self._start_stop_lock:
            if self._stop.is_set():
                return
            self._stop.set()
            if self._thread is not None:
                self._thread.join()
                self._thread = None
            self.running = False
            logger.debug("Cluster stopped")

    def _cluster_loop(self, stop: threading.Event) -> None:
        messages: queue.Queue = queue.Queue(maxsize=_QUEUE_SIZE)
        pubsub = getattr(self._db, "pubsub", None)
        if pubsub is not None:
            pubsub.subscribe_event(PubsubEvent.CLUSTER, messages)
        self.refresh_node_list(self.node_id, self.node_id)

        prefix = self.announce_text + " "
        next_announce = time.monotonic() + ANNOUNCE_INTERVAL
        while not stop.is_set():
            remaining = next_announce - time.monotonic()
            if remaining <= 0:
                self._announce()
                next_announce += ANNOUNCE_INTERVAL
                continue
            try:
                data = messages.get(timeout=min(_POLL_INTERVAL, remaining))
            except queue.Empty:
                continue
            if not data.startswith(prefix):
                continue
            self.refresh_node_list(data[len(prefix):], self.node_id)

    def _announce(self) -> None:
        conn = self._db.get()
        try:
            publish(conn, PubsubEvent.CLUSTER, f"{self.announce_text} {self.node_id}")
        except _ERRORS as err:
            logger.debug("Cluster announce failed: %s", err)
        finally:
            conn.close()

    def refresh_node_list(self, node_id: str, self_id: str) -> None:
        """Record an announce from node_id, expiring the nodes gone silent."""
        with self._nodes_lock:
            found = False
            kept: list[Node] = []
            for node in self.nodes:
                if (
                    _elapsed(node.last_announce, NODE_EXPIRATION)
                    and node.id != node_id
                    and node.id != self_id
                ):
                    logger.info("<- Node %s left the cluster", node.id)
                    continue
                if node.id == node_id:
                    found = True
                    node.last_announce = _now()
                kept.append(node)
            self.nodes = kept

            if not found:
                if node_id != self_id:
                    logger.info("-> Node %s joined the cluster", node_id)
                self.nodes.append(Node(id=node_id, last_announce=_now()))
                self.nodes.sort(key=lambda n: n.id)

            self.node_total = len(self.nodes)
            self.node_index = next(
                (i for i, n in enumerate(self.nodes) if n.id == self_id), self.node_index
            )

    def add_mirror(self, mirror: Any) -> None:
        with self._nodes_lock:
            self.mirrors_index = add_mirror_id_to_slice(self.mirrors_index, mirror.id)

    def remove_mirror(self, mirror: Any) -> None:
        self.remove_mirror_id(mirror.id)

    def remove_mirror_id(self, mirror_id: int) -> None:
        with self._nodes_lock:
            self.mirrors_index = remove_mirror_id_from_slice(self.mirrors_index, mirror_id)

    def is_handled(self, mirror_id: int) -> bool:
        """Tell whether this node is in charge of the given mirror."""
        with self._nodes_lock:
            if self.node_total <= 0:
                return False
            index = bisect.bisect_left(self.mirrors_index, mirror_id)
            m_range = int(len(self.mirrors_index) / self.node_total + 0.5)
            start = m_range * self.node_index
            # The last node takes whatever is left over.
            return index >= start and (
                index < start + m_range or self.node_index == self.node_total - 1
            )