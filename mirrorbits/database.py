"""Connections to the redis database, with sentinel support and readiness tracking."""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Any, Callable, NoReturn

import redis

from mirrorbits.config import get_config
from mirrorbits.core import REDIS_MINIMUM_VERSION
from mirrorbits.errors import (
    DatabaseNotReadyError,
    NotReadyConnection,
    RedisUpgradeRequiredError,
    UnreachableError,
    redis_is_loading,
)
from mirrorbits.lock import AlreadyLockedError
from mirrorbits.pubsub import Pubsub
from mirrorbits.upgrade import upgrade, upgrade_needed

logger = logging.getLogger(__name__)

CONNECTION_TIMEOUT = 0.2
READ_WRITE_TIMEOUT = 300.0
MAX_IDLE = 10
IDLE_TIMEOUT = 240.0

_RECOVER_INTERVAL = 1.0
_UPGRADE_RETRY_DELAY = 0.1
_ERRORS = (redis.exceptions.RedisError, OSError)
_NUMBER = re.compile(r"[+-]?\d+")
_INT64 = 2**63


def _to_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "surrogateescape")
    return str(value)


def _close_quietly(resource: Any) -> None:
    try:
        resource.close()
    except _ERRORS:
        pass


def parse_version(version: str) -> int:
    """Turn a dotted version into a comparable number, or -1 if it is not one."""
    digits = "".join(part.rjust(2, "0") for part in version.split("."))
    if not _NUMBER.fullmatch(digits):
        return -1
    result = int(digits)
    if not -_INT64 <= result < _INT64:
        return -1
    return result


def parse_info(text: str | bytes) -> dict[str, str]:
    """Parse the reply of the INFO command into a mapping."""
    info: dict[str, str] = {}
    for line in _to_str(text).split("\r\n"):
        if line.startswith("#"):
            continue
        key, sep, value = line.partition(":")
        if sep:
            info[key] = value
    return info


def _mirror_map(reply: Any) -> dict[int, str]:
    if reply is None:
        return {}
    if isinstance(reply, dict):
        pairs = list(reply.items())
    else:
        items = list(reply)
        pairs = list(zip(items[::2], items[1::2]))
    mirrors: dict[int, str] = {}
    for key, value in pairs:
        if not isinstance(key, (bytes, str)) or not isinstance(value, (bytes, str)):
            raise TypeError("invalid type for mirrors key")
        try:
            mirror_id = int(_to_str(key))
        except ValueError:
            raise ValueError("invalid type for mirrors ID") from None
        mirrors[mirror_id] = _to_str(value)
    return mirrors


class _FailedConnection:
    """Connection standing for a failed dial: every command raises the dial error."""

    def __init__(self, error: BaseException) -> None:
        self.error = error
        self.closed = False
        self.attempts = 0

    def _fail(self) -> NoReturn:
        self.attempts += 1
        raise self.error

    def execute_command(self, *args: Any, **options: Any) -> NoReturn:
        self._fail()

    def pipeline(self, *args: Any, **kwargs: Any) -> NoReturn:
        self._fail()

    def pubsub(self) -> NoReturn:
        self._fail()

    def close(self) -> None:
        """Mark the placeholder as released."""
        self.closed = True


class PooledConnection:
    """A client borrowed from the pool; close() gives it back."""

    def __init__(self, pool: _DialPool, client: redis.Redis) -> None:
        self._pool = pool
        self.client = client
        self._broken = False
        self._closed = False

    def execute_command(self, *args: Any, **options: Any) -> Any:
        try:
            return self.client.execute_command(*args, **options)
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError, OSError):
            self._broken = True
            raise

    def pipeline(self, transaction: bool = True) -> Any:
        return self.client.pipeline(transaction=transaction)

    def pubsub(self) -> Any:
        return self.client.pubsub()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pool.release(self.client, self._broken)


class _DialPool:
    """Keep idle connections, dialing a new one when none is available."""

    def __init__(self, dial: Callable[[], redis.Redis]) -> None:
        self._dial = dial
        self._idle: list[tuple[redis.Redis, float]] = []
        self._lock = threading.Lock()
        self._closed = False

    def get(self) -> PooledConnection | _FailedConnection:
        while True:
            with self._lock:
                if self._closed:
                    return _FailedConnection(redis.exceptions.ConnectionError("connection pool closed"))
                entry = self._idle.pop() if self._idle else None
            if entry is None:
                break
            client, since = entry
            if time.monotonic() - since > IDLE_TIMEOUT:
                _close_quietly(client)
                continue
            try:
                client.execute_command("PING")
            except _ERRORS as err:
                if not redis_is_loading(err):
                    _close_quietly(client)
                    continue
            return PooledConnection(self, client)

        try:
            client = self._dial()
        except _ERRORS as err:
            return _FailedConnection(err)
        return PooledConnection(self, client)

    def release(self, client: redis.Redis, broken: bool) -> None:
        with self._lock:
            if not self._closed and not broken and len(self._idle) < MAX_IDLE:
                self._idle.append((client, time.monotonic()))
                return
        _close_quietly(client)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            idle, self._idle = self._idle, []
        for client, _ in idle:
            _close_quietly(client)


def _connection_error(conn: Any) -> BaseException | None:
    if isinstance(conn, NotReadyConnection):
        return DatabaseNotReadyError()
    if isinstance(conn, _FailedConnection):
        return conn.error
    return None


class Redis:
    """Handle on the redis database.

    Connections handed out by get() fail with DatabaseNotReadyError until the
    database format checks and upgrades are finished.
    """

    def __init__(self, pool: Any = None, *, ready: bool = False, daemon: bool = False) -> None:
        self.pubsub: Pubsub | None = None
        self.daemon = daemon
        self._failure = False
        self._failure_lock = threading.Lock()
        self._known_master = ""
        self._known_master_lock = threading.Lock()
        self._version = ""
        self._stop = threading.Event()
        self._ready = threading.Event()
        if ready:
            self._ready.set()
        self._pool = pool if pool is not None else _DialPool(self._dial)
        self._recover_thread = threading.Thread(
            target=self._conn_recover, name="redis-recover", daemon=True
        )
        self._recover_thread.start()

    def get(self) -> Any:
        """Return a connection, or a failing placeholder while the database is not ready."""
        if not self._ready.is_set():
            return NotReadyConnection()
        return self._pool.get()

    def unblocked_get(self) -> Any:
        """Return a connection even if the database checks are not finished."""
        return self._pool.get()

    def close(self) -> None:
        """Close every connection to the database."""
        if self._stop.is_set():
            return
        logger.debug("Closing databases connections")
        if self.pubsub is not None:
            self.pubsub.close()
        self._pool.close()
        self._stop.set()

    def connect_pubsub(self) -> None:
        if self.pubsub is None:
            self.pubsub = Pubsub(self)

    def check_version(self) -> None:
        """Raise RedisUpgradeRequiredError if the server is too old."""
        if not self.is_at_least_version(REDIS_MINIMUM_VERSION):
            raise RedisUpgradeRequiredError()

    def is_at_least_version(self, version: str) -> bool:
        return parse_version(self._version) >= parse_version(version)

    def failure(self) -> bool:
        """Tell whether the last connection attempt failed."""
        with self._failure_lock:
            return self._failure

    def _set_failure_state(self, failure: bool) -> None:
        with self._failure_lock:
            self._failure = failure

    def connect(self) -> redis.Redis:
        """Open a new connection to the redis master, through the sentinels if configured."""
        config = get_config()
        sentinels = config.redis_sentinels

        if sentinels:
            if not config.redis_sentinel_master_name:
                self._log_error("Config: RedisSentinelMasterName cannot be empty!")
            else:
                client = self._connect_through_sentinels()
                if client is not None:
                    return client

        if not config.redis_address:
            if not sentinels:
                logger.error("No redis master available")
            raise UnreachableError()

        if sentinels and not self.failure():
            logger.warning(
                "No redis master available, trying using the configured RedisAddress as fallback"
            )

        client = self._connect_to(config.redis_address, authenticate=True)
        try:
            role = self._ask_role(client)
        except _ERRORS as err:
            _close_quietly(client)
            self._log_error("Redis master: %s", err)
            raise UnreachableError() from err
        if role != "master":
            _close_quietly(client)
            self._log_error("Redis master: %s is not a master but a %s", config.redis_address, role)
            raise UnreachableError()
        self._print_connected_master(config.redis_address)

        try:
            self._version = self._ask_version(client)
        except _ERRORS:
            _close_quietly(client)
            raise
        return client

    def _connect_through_sentinels(self) -> redis.Redis | None:
        config = get_config()
        master_name = config.redis_sentinel_master_name
        for sentinel in config.redis_sentinels:
            logger.debug("Connecting to redis sentinel %s", sentinel.host)
            try:
                conn = self._connect_to(sentinel.host, authenticate=False)
                role = self._ask_role(conn)
            except _ERRORS as err:
                self._log_error("Sentinel: %s", err)
                continue
            try:
                if role != "sentinel":
                    self._log_error("Sentinel: %s is not a sentinel but a %s", sentinel.host, role)
                    continue
                try:
                    master = conn.sentinel_get_master_addr_by_name(master_name)
                except _ERRORS as err:
                    self._log_error("Sentinel: %s", err)
                    continue
                if not master:
                    self._log_error(
                        "Sentinel: %s doesn't know the master-name %s", sentinel.host, master_name
                    )
                    continue
                master_host = f"{_to_str(master[0])}:{_to_str(master[1])}"
                try:
                    master_conn = self._connect_to(master_host, authenticate=True)
                except redis.exceptions.AuthenticationError:
                    self._log_error("Redis master: auth failed")
                    continue
                except _ERRORS as err:
                    self._log_error("Redis master: %s", err)
                    continue
                try:
                    role = self._ask_role(master_conn)
                    if role != "master":
                        self._log_error("Redis master: %s is not a master but a %s", master_host, role)
                        _close_quietly(master_conn)
                        continue
                    self._version = self._ask_version(master_conn)
                except _ERRORS as err:
                    self._log_error("Redis master: %s", err)
                    _close_quietly(master_conn)
                    continue
                self._print_connected_master(master_host)
                return master_conn
            finally:
                _close_quietly(conn)
        return None

    def _connect_to(self, address: str, *, authenticate: bool) -> redis.Redis:
        host, sep, port = address.rpartition(":")
        if not sep:
            raise redis.exceptions.ConnectionError(f"missing port in address {address}")
        try:
            port_number = int(port)
        except ValueError:
            raise redis.exceptions.ConnectionError(f"invalid port in address {address}") from None
        options: dict[str, Any] = {
            "host": host.strip("[]") or "localhost",
            "port": port_number,
            "socket_connect_timeout": CONNECTION_TIMEOUT,
            "socket_timeout": READ_WRITE_TIMEOUT,
            "single_connection_client": True,
        }
        if authenticate:
            config = get_config()
            options["password"] = config.redis_password or None
            options["db"] = config.redis_db
        return redis.Redis(**options)

    @staticmethod
    def _ask_role(client: Any) -> str:
        reply = client.execute_command("ROLE")
        if not reply:
            raise redis.exceptions.ResponseError("empty ROLE reply")
        return _to_str(reply[0])

    @staticmethod
    def _ask_version(client: Any) -> str:
        reply = client.execute_command("INFO", "server")
        if isinstance(reply, dict):
            return _to_str(reply.get("redis_version", ""))
        return parse_info(reply).get("redis_version", "")

    def _dial(self) -> redis.Redis:
        try:
            client = self.connect()
        except _ERRORS:
            self._set_failure_state(True)
            raise
        self._set_failure_state(False)
        try:
            self.check_version()
        except RedisUpgradeRequiredError:
            logger.critical(
                "Unsupported Redis version, please upgrade to Redis >= %s", REDIS_MINIMUM_VERSION
            )
            _close_quietly(client)
            raise
        return client

    def _log_error(self, message: str, *args: Any) -> None:
        if self.failure():
            logger.debug(message, *args)
        else:
            logger.error(message, *args)

    def _print_connected_master(self, address: str) -> None:
        with self._known_master_lock:
            if address != self._known_master and self.daemon:
                self._known_master = address
                logger.info("Connected to redis master %s", address)
            else:
                logger.debug("Connected to redis master %s", address)

    def get_list_of_mirrors(self) -> dict[int, str]:
        """Return the known mirrors as a mapping of ID to name."""
        client = self.connect()
        try:
            reply = client.execute_command("HGETALL", "MIRRORS")
        finally:
            _close_quietly(client)
        return _mirror_map(reply)

    def _conn_recover(self) -> None:
        while not self._stop.wait(_RECOVER_INTERVAL):
            if not self.failure():
                continue
            # A successful dial clears the failure state for everyone waiting on it.
            try:
                conn = self.get()
            except RedisUpgradeRequiredError:
                continue
            err = _connection_error(conn)
            if err is not None:
                logger.warning("Database is down: %s", err)
            _close_quietly(conn)

    def _start_db_update_handler(self) -> None:
        threading.Thread(target=self._db_update_handler, name="redis-upgrade", daemon=True).start()

    def _db_update_handler(self) -> None:
        warned = False
        while not self._stop.is_set():
            try:
                needed = upgrade_needed(self)
            except Exception:  # any failure is retried until the database answers
                self._stop.wait(_UPGRADE_RETRY_DELAY)
                continue
            if needed:
                started = time.monotonic()
                try:
                    upgrade(self)
                except AlreadyLockedError:
                    if not warned:
                        logger.warning("Database upgrade running. Waiting for completion...")
                        warned = True
                    self._stop.wait(_UPGRADE_RETRY_DELAY)
                    continue
                except Exception:
                    logger.critical("Upgrade failed", exc_info=True)
                    return
                logger.info(
                    "Database upgrade successful (took %dms), starting normally",
                    round((time.monotonic() - started) * 1000),
                )
            self._ready.set()
            return


def new_redis() -> Redis:
    """Create the database handle and start the format checks in the background."""
    db = Redis(daemon=True)
    db._start_db_update_handler()
    return db