"""Tests for the bounded retry utility."""

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from subscription_engine.core.exceptions import DataIntegrityViolation, OutOfOrderEvent, PersistenceFailure
from subscription_engine.core.retry import call_with_retry, is_transient_db_error

pytestmark = pytest.mark.unit


class Flaky:
    def __init__(self, exc: Exception, failures: int):
        self.exc = exc
        self.failures = failures
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return value


def _operational() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("database is locked"))


def test_transient_classification():
    assert is_transient_db_error(PersistenceFailure("boom"))
    assert is_transient_db_error(_operational())
    assert is_transient_db_error(ConnectionResetError())
    assert is_transient_db_error(TimeoutError())

    assert not is_transient_db_error(OutOfOrderEvent("subscription.charged", "sub_1"))
    assert not is_transient_db_error(IntegrityError("INSERT", {}, Exception("unique")))
    assert not is_transient_db_error(DataIntegrityViolation("bad payload"))
    assert not is_transient_db_error(ValueError("nope"))


def test_dbapi_error_is_transient_only_when_connection_invalidated():
    dropped = DBAPIError("SELECT 1", {}, Exception("server closed"), connection_invalidated=True)
    other = DBAPIError("SELECT 1", {}, Exception("syntax"))

    assert is_transient_db_error(dropped)
    assert not is_transient_db_error(other)


async def test_retries_until_success():
    fn = Flaky(PersistenceFailure("blip"), failures=2)

    assert await call_with_retry(fn, "ok", min_wait=0.001, max_wait=0.001) == "ok"
    assert fn.calls == 3


async def test_gives_up_after_attempts_and_reraises_original():
    fn = Flaky(PersistenceFailure("still down"), failures=10)

    with pytest.raises(PersistenceFailure, match="still down"):
        await call_with_retry(fn, "ok", attempts=3, min_wait=0.001, max_wait=0.001)
    assert fn.calls == 3


async def test_non_retryable_error_fails_fast():
    fn = Flaky(OutOfOrderEvent("subscription.charged", "sub_1"), failures=1)

    with pytest.raises(OutOfOrderEvent):
        await call_with_retry(fn, "ok", min_wait=0.001, max_wait=0.001)
    assert fn.calls == 1


async def test_custom_predicate():
    fn = Flaky(KeyError("x"), failures=1)

    result = await call_with_retry(
        fn, "ok", predicate=lambda exc: isinstance(exc, KeyError), min_wait=0.001, max_wait=0.001
    )

    assert result == "ok"
