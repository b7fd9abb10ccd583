"""Database format versioning and the upgrade to format version 1."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol

import redis

from mirrorbits.core import DB_VERSION, DB_VERSION_KEY
from mirrorbits.errors import redis_is_loading
from mirrorbits.lock import acquire_lock

logger = logging.getLogger(__name__)

_LOADING_RETRY_DELAY = 0.1

_ERASE_WORK_KEYS_SCRIPT = """
	local keys = redis.call('keys', ARGV[1])
	for i=1,#keys,5000 do
		redis.call('del', unpack(keys, i, math.min(i+4999, #keys)))
	end
	return keys"""


class UnsupportedVersionError(Exception):
    """The database uses a format newer than this program understands."""

    def __init__(
        self, message: str = "unsupported database version, please upgrade mirrorbits"
    ) -> None:
        super().__init__(message)


class Database(Protocol):
    """What the upgraders need from the database handle."""

    def get(self) -> Any: ...

    def unblocked_get(self) -> Any: ...


class Upgrader(Protocol):
    def upgrade(self) -> None: ...


def _to_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "surrogateescape")
    return str(value)


def _strings(reply: Any) -> list[str]:
    if reply is None:
        return []
    return [_to_str(item) for item in reply]


def _string_map(reply: Any) -> dict[str, str]:
    if reply is None:
        return {}
    if isinstance(reply, dict):
        return {_to_str(k): _to_str(v) for k, v in reply.items()}
    items = list(reply)
    if len(items) % 2:
        raise ValueError("expected an even number of values for a hash")
    return {_to_str(k): _to_str(v) for k, v in zip(items[::2], items[1::2])}


class _Connection:
    """Borrow a connection from the database and give it back afterwards."""

    def __init__(self, db: Database) -> None:
        self._conn = db.unblocked_get()

    def __enter__(self) -> Any:
        return self._conn

    def __exit__(self, *exc_info: Any) -> None:
        self._conn.close()


def get_db_format_version(db: Database) -> int:
    """Return the database format version, initialising it on an empty database."""
    with _Connection(db) as conn:
        while True:
            try:
                reply = conn.execute_command("GET", DB_VERSION_KEY)
            except redis.exceptions.RedisError as err:
                if redis_is_loading(err):
                    time.sleep(_LOADING_RETRY_DELAY)
                    continue
                raise
            break

        if reply is not None:
            return int(_to_str(reply))

        if conn.execute_command("EXISTS", "MIRRORS"):
            return 0
        conn.execute_command("SET", DB_VERSION_KEY, DB_VERSION)
        return DB_VERSION


def upgrade_needed(db: Database) -> bool:
    version = get_db_format_version(db)
    if version > DB_VERSION:
        raise UnsupportedVersionError()
    return version != DB_VERSION


def upgrade(db: Database) -> None:
    """Bring the database format up to the current version.

    Raises AlreadyLockedError when another node is running the upgrade.
    """
    version = get_db_format_version(db)
    if version > DB_VERSION:
        raise UnsupportedVersionError()
    if version == DB_VERSION:
        return

    with acquire_lock(db, "upgrade"):
        for target in range(version + 1, DB_VERSION + 1):
            upgrader = get_upgrader(db, target)
            if upgrader is not None:
                logger.warning(
                    "Upgrading database from version %d to version %d...", target - 1, target
                )
                upgrader.upgrade()


def get_upgrader(db: Database, version: int) -> Upgrader | None:
    """Return the upgrader producing the given format version, if any."""
    if version == 1:
        return UpgraderV1(db)
    return None


@dataclass
class UpgradeActions:
    """Key deletions and renames applied atomically at the end of an upgrade."""

    delete: list[str] = field(default_factory=list)
    rename: dict[str, str] = field(default_factory=dict)


def copy_key(conn: Any, src: str, dst: str) -> None:
    """Copy the key src to dst, replacing dst."""
    dump = conn.execute_command("DUMP", src)
    if dump is None:
        raise KeyError(src)
    conn.execute_command("RESTORE", dst, 0, dump, "REPLACE")


def is_err_no_such_key(err: BaseException | None) -> bool:
    if err is None:
        return False
    return str(err) in ("ERR no such key", "no such key")


def _mirror_id(mirrors: dict[int, str], name: str) -> int:
    return next((mid for mid, mname in mirrors.items() if mname == name), 0)


class UpgraderV1:
    """Upgrade from format 0 to 1: mirrors are keyed by a numeric ID instead of their name."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def upgrade(self) -> None:
        actions = UpgradeActions()

        with _Connection(self.db) as conn:
            # Erase work keys left by a previous, failed upgrade
            conn.execute_command("EVAL", _ERASE_WORK_KEYS_SCRIPT, 0, "V1_*")

            mirrors = self.create_mirror_index(actions)
            self.rename_keys(actions, mirrors)
            self.fix_mirror_id(actions, mirrors)
            self.rename_stats(actions, mirrors)

            pipe = conn.pipeline(transaction=True)
            for src, dst in actions.rename.items():
                pipe.execute_command("RENAME", src, dst)
            renamed = set(actions.rename.values())
            for key in actions.delete:
                # Never delete the result of a rename
                if key not in renamed:
                    pipe.execute_command("DEL", key)
            pipe.execute_command("SET", DB_VERSION_KEY, 1)
            # Until this point it is still safe to run a previous version.
            pipe.execute(raise_on_error=False)

    def create_mirror_index(self, actions: UpgradeActions) -> dict[int, str]:
        """Give every mirror of the old list a unique numeric ID."""
        mirrors: dict[int, str] = {}
        with _Connection(self.db) as conn:
            names = _strings(conn.execute_command("LRANGE", "MIRRORS", "0", "-1"))
            for name in names:
                mirror_id = int(conn.execute_command("INCR", "LAST_MID"))
                conn.execute_command("HSET", "V1_MIRRORS", mirror_id, name)
                mirrors[mirror_id] = name

        actions.rename["V1_MIRRORS"] = "MIRRORS"
        return mirrors

    def rename_keys(self, actions: UpgradeActions, mirrors: dict[int, str]) -> None:
        """Plan the renames of keys holding a mirror name so they hold its ID."""
        with _Connection(self.db) as conn:
            for mirror_id, name in mirrors.items():
                try:
                    reply = conn.execute_command("SMEMBERS", f"MIRROR_{name}_FILES")
                except redis.exceptions.ResponseError as err:
                    if is_err_no_such_key(err):
                        continue
                    raise
                if reply is None:
                    continue

                for file in _strings(reply):
                    actions.rename[f"FILEINFO_{name}_{file}"] = f"FILEINFO_{mirror_id}_{file}"

                actions.rename[f"MIRROR_{name}_FILES"] = f"MIRRORFILES_{mirror_id}"
                actions.rename[f"HANDLEDFILES_{name}"] = f"HANDLEDFILES_{mirror_id}"
                # MIRROR_<name> is handled by fix_mirror_id

            files = _strings(conn.execute_command("SMEMBERS", "FILES"))

            for file in files:
                names = _strings(conn.execute_command("SMEMBERS", f"FILEMIRRORS_{file}"))
                pipe = conn.pipeline(transaction=False)
                for name in names:
                    mirror_id = _mirror_id(mirrors, name)
                    if mirror_id == 0:
                        continue
                    pipe.execute_command("SADD", f"V1_FILEMIRRORS_{file}", mirror_id)
                pipe.execute(raise_on_error=False)

                actions.rename[f"V1_FILEMIRRORS_{file}"] = f"FILEMIRRORS_{file}"

    def fix_mirror_id(self, actions: UpgradeActions, mirrors: dict[int, str]) -> None:
        """Copy each mirror hash under its ID, with the ID and name fields set."""
        with _Connection(self.db) as conn:
            pipe = conn.pipeline(transaction=False)
            for mirror_id, name in mirrors.items():
                copy_key(conn, f"MIRROR_{name}", f"V1_MIRROR_{mirror_id}")
                pipe.execute_command("HMSET", f"V1_MIRROR_{mirror_id}", "ID", mirror_id, "name", name)
                actions.rename[f"V1_MIRROR_{mirror_id}"] = f"MIRROR_{mirror_id}"
                actions.delete.append(f"MIRROR_{name}")
            pipe.execute(raise_on_error=False)

    def rename_stats(self, actions: UpgradeActions, mirrors: dict[int, str]) -> None:
        """Rewrite the per-mirror stats hashes to use mirror IDs as fields."""
        with _Connection(self.db) as conn:
            # Covers STATS_MIRROR_* and STATS_MIRROR_BYTES_* for every period
            keys = _strings(conn.execute_command("KEYS", "STATS_MIRROR_*"))

            for key in keys:
                stats = _string_map(conn.execute_command("HGETALL", key))
                pipe = conn.pipeline(transaction=False)
                for identifier, value in stats.items():
                    mirror_id = _mirror_id(mirrors, identifier)
                    if mirror_id == 0:
                        # The mirror has been removed over time
                        continue
                    pipe.execute_command("HSET", "V1_" + key, mirror_id, value)
                    actions.rename["V1_" + key] = key
                pipe.execute(raise_on_error=False)