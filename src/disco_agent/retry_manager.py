"""
Retry Manager for the disco agent upload pipeline.

This module provides a generic constant-backoff retry loop. Operations
report failures as tagged outcomes: Retryable(error) keeps the loop going
after the backoff interval, Permanent(error) stops it immediately. The
loop is bounded only by the configured attempt limit (unbounded by default)
and by cancellation of the awaiting task, which interrupts the backoff
sleep at once.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Generic, Optional, TypeVar, Union

from .config import RetryConfig
from .enums import LogLevel
from .exceptions import DiscoAgentError, NetworkError, UnexpectedStatusError

if TYPE_CHECKING:
    from .audit_logger import AuditLogger

T = TypeVar("T")


@dataclass(frozen=True)
class Retryable:
    """A failure that may succeed if the operation is attempted again."""

    error: Exception


@dataclass(frozen=True)
class Permanent:
    """A failure that retrying cannot fix."""

    error: Exception


Outcome = Union[T, Retryable, Permanent]


@dataclass
class RetryResult(Generic[T]):
    """Result of a retry operation."""

    success: bool
    result: Optional[T]
    attempts: int
    last_error: Optional[Exception]


def classify_error(error: DiscoAgentError) -> Union[Retryable, Permanent]:
    """
    Tag an error as retryable or permanent.

    Transport failures and HTTP 5xx responses are transient; everything
    else (4xx, rejected logins, unsupported mechanisms, malformed or
    oversized bodies) is permanent.
    """
    if isinstance(error, NetworkError):
        return Retryable(error)
    if isinstance(error, UnexpectedStatusError) and error.is_server_error:
        return Retryable(error)
    return Permanent(error)


class RetryManager:
    """
    Manages retry logic with a constant backoff.

    Each retryable failure is followed by a sleep of backoff_seconds.
    A permanent failure ends the loop without sleeping.
    """

    def __init__(
        self,
        config: RetryConfig,
        logger: Optional[AuditLogger] = None,
        component: str = "retry",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the retry manager.

        Args:
            config: Retry configuration with backoff interval and attempt limit
            logger: Optional audit logger for retry decisions
            component: Component name used in log entries
            sleep: Awaitable sleep used between attempts
        """
        if config.max_attempts is not None and config.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._config = config
        self._logger = logger
        self._component = component
        self._sleep = sleep

    def _calculate_delay(self, attempt: int) -> float:
        """Constant backoff: the delay does not depend on the attempt number."""
        return self._config.backoff_seconds

    def _attempts_left(self, attempts: int) -> bool:
        max_attempts = self._config.max_attempts
        return max_attempts is None or attempts < max_attempts

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[Outcome[T]]],
    ) -> RetryResult[T]:
        """
        Execute an operation until it succeeds or fails permanently.

        Args:
            operation: Async callable returning a value, Retryable or Permanent.
                       Exceptions it raises are not caught.

        Returns:
            RetryResult containing success status, result, attempts, and last error
        """
        attempts = 0
        last_error: Optional[Exception] = None

        while self._attempts_left(attempts):
            outcome = await operation()
            attempts += 1

            if isinstance(outcome, Permanent):
                self._log(LogLevel.WARN, "not retrying after permanent failure", {
                    "attempt": attempts,
                    "error": str(outcome.error),
                })
                return RetryResult(
                    success=False,
                    result=None,
                    attempts=attempts,
                    last_error=outcome.error,
                )

            if not isinstance(outcome, Retryable):
                return RetryResult(
                    success=True,
                    result=outcome,
                    attempts=attempts,
                    last_error=None,
                )

            last_error = outcome.error
            if not self._attempts_left(attempts):
                break

            delay = self._calculate_delay(attempts - 1)
            self._log(LogLevel.WARN, "retrying after transient failure", {
                "attempt": attempts,
                "delay_seconds": delay,
                "error": str(outcome.error),
            })
            await self._sleep(delay)

        return RetryResult(
            success=False,
            result=None,
            attempts=attempts,
            last_error=last_error,
        )

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self._component, message, data)
