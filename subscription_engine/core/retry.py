"""Bounded retry with exponential backoff for transient store failures.

Built on tenacity. Callers pass a predicate deciding which exceptions are
retryable; everything else propagates on the first attempt.
"""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from subscription_engine.core.exceptions import OutOfOrderEvent, PersistenceFailure

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3


def is_transient_db_error(exc: BaseException) -> bool:
    """True for connection drops, lock timeouts and explicit PersistenceFailure.

    OutOfOrderEvent is excluded: waiting a few hundred milliseconds will not make
    the missing subscription appear, the processor's redelivery will.
    """
    if isinstance(exc, OutOfOrderEvent):
        return False
    if isinstance(exc, PersistenceFailure):
        return True
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError):
        return bool(exc.connection_invalidated)
    return isinstance(exc, (ConnectionError, TimeoutError))


def retrying(
    predicate: Callable[[BaseException], bool] = is_transient_db_error,
    attempts: int = DEFAULT_ATTEMPTS,
    min_wait: float = 0.1,
    max_wait: float = 2.0,
    operation: str = "operation",
) -> AsyncRetrying:
    """Build an AsyncRetrying controller.

    Usage::

        async for attempt in retrying(operation="claim_event"):
            with attempt:
                await do_write()
    """
    return AsyncRetrying(
        retry=retry_if_exception(predicate),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "transient_failure_retrying",
            operation=operation,
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
            error=str(rs.outcome.exception()),
        ),
    )


async def call_with_retry(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    predicate: Callable[[BaseException], bool] = is_transient_db_error,
    attempts: int = DEFAULT_ATTEMPTS,
    min_wait: float = 0.1,
    max_wait: float = 2.0,
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)``, retrying while ``predicate`` accepts the error."""
    controller = retrying(
        predicate=predicate,
        attempts=attempts,
        min_wait=min_wait,
        max_wait=max_wait,
        operation=getattr(fn, "__name__", "operation"),
    )
    async for attempt in controller:
        with attempt:
            return await fn(*args, **kwargs)
    raise RuntimeError("unreachable")  # pragma: no cover
