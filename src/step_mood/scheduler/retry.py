"""Reusable retry-with-backoff combinator for scheduled work.

Usage::

    policy = ExponentialBackoff(base_seconds=5, max_seconds=60)

    @with_retry(3, policy, retry_on=(SQLAlchemyError, OSError))
    async def step() -> int:
        ...

The wrapped coroutine raises :class:`RetryExhaustedError` (chained to the last
failure) once every attempt has failed.  Exceptions outside ``retry_on``
propagate immediately.
"""

from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Every attempt of a retried operation failed."""

    def __init__(self, name: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{name} failed after {attempts} attempt(s): {last_error}")
        self.name = name
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True, slots=True)
class FixedBackoff:
    """Same delay before every retry."""

    seconds: float = 1.0

    def delay(self, attempt: int) -> float:  # noqa: ARG002
        return self.seconds


@dataclass(frozen=True, slots=True)
class ExponentialBackoff:
    """``base * 2**(attempt - 1)`` seconds, capped at ``max_seconds``."""

    base_seconds: float = 5.0
    max_seconds: float = 60.0

    def delay(self, attempt: int) -> float:
        return min(self.base_seconds * (2 ** (attempt - 1)), self.max_seconds)


BackoffPolicy = FixedBackoff | ExponentialBackoff


def with_retry(
    attempts: int,
    policy: BackoffPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_attempt: Callable[[int], None] | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate an async callable so it is retried up to *attempts* times."""
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        name = getattr(func, "__qualname__", repr(func))

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(1, attempts + 1):
                if on_attempt is not None:
                    on_attempt(attempt)
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    if attempt == attempts:
                        logger.error("retry.exhausted", operation=name, attempts=attempts, error=str(exc))
                        raise RetryExhaustedError(name, attempts, exc) from exc
                    delay = policy.delay(attempt)
                    logger.warning(
                        "retry.attempt_failed",
                        operation=name,
                        attempt=attempt,
                        retry_in=delay,
                        error=str(exc),
                    )
                    await sleep(delay)
            raise AssertionError("unreachable")

        return wrapper

    return decorator
