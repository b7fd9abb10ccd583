"""Errors and the placeholder connection shared by the database layer."""

from __future__ import annotations

from typing import Any, NoReturn

import redis


class DatabaseNotReadyError(redis.exceptions.ConnectionError):
    """The database checks or upgrade have not finished yet.

    The condition is temporary: retrying later is expected to succeed.
    """

    timeout = False
    temporary = True

    def __init__(self, message: str = "database not ready", command: tuple = ()) -> None:
        super().__init__(message)
        self.command = command


class UnreachableError(redis.exceptions.ConnectionError):
    """No redis endpoint could be reached."""

    def __init__(self, message: str = "redis endpoint unreachable") -> None:
        super().__init__(message)


class RedisUpgradeRequiredError(Exception):
    """The redis server runs a version that is too old."""

    def __init__(self, message: str = "unsupported Redis version") -> None:
        super().__init__(message)


class NotReadyConnection:
    """Connection handed out while the database is not ready.

    Every command fails with DatabaseNotReadyError.
    """

    def __init__(self) -> None:
        self.closed = False
        self.attempts = 0

    def close(self) -> None:
        """Mark the placeholder as released."""
        self.closed = True

    def execute_command(self, *args: Any) -> NoReturn:
        self.attempts += 1
        raise DatabaseNotReadyError(command=args)

    def pipeline(self) -> NoReturn:
        self.attempts += 1
        raise DatabaseNotReadyError(command=("MULTI",))


def redis_is_loading(err: BaseException | None) -> bool:
    """Tell whether err reports that redis is still loading its dataset."""
    if err is None:
        return False
    if isinstance(err, redis.exceptions.BusyLoadingError):
        return True
    return str(err).startswith("LOADING")