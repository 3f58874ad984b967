import asyncio

import pytest
import redis
from sqlalchemy.exc import IntegrityError

from app.config import RetryPolicy, Settings
from app.database import ConnectionManager, ConnectionStatus
from app.errors import ConfigurationError, TransientInfrastructureError, ValidationError


class FlakyOperation:
    """Fails a fixed number of times, then returns "ok"."""

    def __init__(self, failures: int, error: Exception = None):
        self.failures = failures
        self.error = error or RuntimeError("connection reset")
        self.calls = 0

    def __call__(self, handle):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


def test_retry_policy_schedule():
    policy = RetryPolicy(max_attempts=6, initial_delay_ms=100, max_delay_ms=1000, backoff_factor=2.0)
    assert [policy.delay_for(n) for n in range(1, 7)] == [0.1, 0.2, 0.4, 0.8, 1.0, 1.0]


def test_missing_database_url_fails_closed(tmp_path, sleep):
    manager = ConnectionManager(Settings(ledger_path=str(tmp_path / "orders.json")), sleep=sleep)
    operation = FlakyOperation(failures=0)

    with pytest.raises(ConfigurationError):
        asyncio.run(manager.execute_with_retry(operation, "upsert order"))

    assert operation.calls == 0
    assert sleep.delays == []
    assert manager.status == ConnectionStatus.ERROR
    assert isinstance(manager.last_error, ConfigurationError)


def test_invalid_database_url_is_configuration_error(sleep):
    manager = ConnectionManager(Settings(database_url="nosuchdialect://host/db"), sleep=sleep)

    with pytest.raises(ConfigurationError):
        manager.get_connection()
    assert manager.status == ConnectionStatus.ERROR


def test_connection_lifecycle(manager):
    assert manager.status == ConnectionStatus.NOT_INITIALIZED

    handle = manager.get_connection()

    assert manager.status == ConnectionStatus.CONNECTED
    assert handle.status == ConnectionStatus.CONNECTED
    assert handle.cache is None
    assert manager.get_connection().engine is handle.engine

    manager.close()
    assert manager.status == ConnectionStatus.NOT_INITIALIZED


def test_retry_is_bounded(manager, sleep):
    operation = FlakyOperation(failures=10)

    with pytest.raises(TransientInfrastructureError) as exc_info:
        asyncio.run(manager.execute_with_retry(operation, "upsert order o1"))

    assert operation.calls == 3
    assert sleep.delays == [0.1, 0.2]
    assert exc_info.value.attempts == 3
    assert exc_info.value.context == "upsert order o1"
    assert isinstance(exc_info.value.__cause__, RuntimeError)


def test_retry_recovers_after_transient_failure(manager, sleep):
    operation = FlakyOperation(failures=1)

    assert asyncio.run(manager.execute_with_retry(operation, "list orders")) == "ok"
    assert operation.calls == 2
    assert sleep.delays == [0.1]


def test_validation_error_is_not_retried(manager, sleep):
    operation = FlakyOperation(failures=5, error=ValidationError("bad payload"))

    with pytest.raises(ValidationError):
        asyncio.run(manager.execute_with_retry(operation, "upsert order"))

    assert operation.calls == 1
    assert sleep.delays == []


def test_async_operation_is_awaited(manager):
    async def operation(handle):
        return handle.status

    assert asyncio.run(manager.execute_with_retry(operation)) == ConnectionStatus.CONNECTED


def test_reinitializes_after_error(unreachable_settings, tmp_path, sleep):
    manager = ConnectionManager(unreachable_settings, sleep=sleep)

    with pytest.raises(Exception):
        manager.get_connection()
    assert manager.status == ConnectionStatus.ERROR
    assert manager.last_error is not None

    (tmp_path / "missing").mkdir()
    manager.get_connection()

    assert manager.status == ConnectionStatus.CONNECTED
    assert manager.last_error is None
    manager.close()


def test_unreachable_store_exhausts_retries(unreachable_settings, sleep):
    manager = ConnectionManager(unreachable_settings, sleep=sleep)
    operation = FlakyOperation(failures=0)

    with pytest.raises(TransientInfrastructureError):
        asyncio.run(manager.execute_with_retry(operation, "upsert order"))

    assert operation.calls == 0
    assert sleep.delays == [0.1, 0.2]
    assert manager.status == ConnectionStatus.ERROR


def test_cache_failure_leaves_cache_disabled(settings, sleep, monkeypatch):
    class DownRedis:
        def ping(self):
            raise redis.ConnectionError("connection refused")

    monkeypatch.setattr(redis, "from_url", lambda *args, **kwargs: DownRedis())
    manager = ConnectionManager(
        Settings(database_url=settings.database_url, redis_url="redis://cache:6379/0"), sleep=sleep
    )

    handle = manager.get_connection()

    assert manager.status == ConnectionStatus.CONNECTED
    assert handle.cache is None
    assert manager.cache is None
    manager.close()


def test_integrity_error_is_not_retried(manager, sleep):
    error = IntegrityError("INSERT INTO captured_orders", {}, Exception("NOT NULL constraint failed"))
    operation = FlakyOperation(failures=5, error=error)

    with pytest.raises(ValidationError):
        asyncio.run(manager.execute_with_retry(operation, "upsert order"))

    assert operation.calls == 1
    assert sleep.delays == []


def test_backoff_delay_is_cancellable(settings):
    slow = RetryPolicy(max_attempts=3, initial_delay_ms=10000, max_delay_ms=10000)
    manager = ConnectionManager(Settings(database_url=settings.database_url, retry=slow))
    operation = FlakyOperation(failures=10)

    async def cancel_during_backoff():
        task = asyncio.create_task(manager.execute_with_retry(operation, "upsert order"))
        while operation.calls == 0:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(asyncio.wait_for(cancel_during_backoff(), timeout=5))

    assert operation.calls == 1
    manager.close()
