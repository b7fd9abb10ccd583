import pytest
import redis

from mirrorbits.errors import (
    DatabaseNotReadyError,
    NotReadyConnection,
    RedisUpgradeRequiredError,
    UnreachableError,
    redis_is_loading,
)


def test_not_ready_connection_commands_fail():
    conn = NotReadyConnection()
    with pytest.raises(DatabaseNotReadyError):
        conn.execute_command("GET", "key")


def test_not_ready_connection_pipeline_fails():
    conn = NotReadyConnection()
    with pytest.raises(DatabaseNotReadyError):
        conn.pipeline()


def test_not_ready_connection_close_is_silent_but_commands_still_fail():
    conn = NotReadyConnection()
    assert conn.close() is None
    with pytest.raises(DatabaseNotReadyError):
        conn.execute_command("PING")


def test_database_not_ready_error_is_temporary():
    err = DatabaseNotReadyError()
    assert str(err) == "database not ready"
    assert err.temporary is True
    assert err.timeout is False


def test_database_not_ready_error_is_a_connection_error():
    with pytest.raises(redis.exceptions.ConnectionError):
        NotReadyConnection().execute_command("PING")


def test_error_messages():
    assert str(UnreachableError()) == "redis endpoint unreachable"
    assert str(RedisUpgradeRequiredError()) == "unsupported Redis version"


@pytest.mark.parametrize(
    "err, expected",
    [
        (None, False),
        (redis.exceptions.ResponseError("LOADING Redis is loading the dataset in memory"), True),
        (redis.exceptions.BusyLoadingError("Redis is loading the dataset in memory"), True),
        (redis.exceptions.ResponseError("ERR unknown command"), False),
        (ValueError("not LOADING at start"), False),
    ],
)
def test_redis_is_loading(err, expected):
    assert redis_is_loading(err) is expected