"""
Fault tolerance for chunk processing.

Provides:
- Chunk retry with exponential backoff and jitter
- Skip policies for item-level read and process errors
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from ..utils.logger import get_logger
from ..core.exceptions import RetryLimitExceededError, SkipLimitExceededError, error_registry


ExceptionTypes = Tuple[Type[BaseException], ...]


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: ExceptionTypes = (Exception,)
    no_retry_exceptions: ExceptionTypes = ()

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, self.no_retry_exceptions):
            return False
        return isinstance(exc, self.retryable_exceptions)

    def backoff(self, attempt: int) -> float:
        """Delay before the given retry (attempt numbers start at 1)."""
        delay = min(
            self.initial_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay
        )
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)  # 50%-100% of calculated delay
        return delay


NO_RETRY = RetryPolicy(max_attempts=1, initial_delay=0.0, max_delay=0.0, jitter=False)


@dataclass(frozen=True)
class SkipPolicy:
    """
    Decides whether an item-level error may be skipped.

    A skip_limit of 0 means never skip.
    """
    skip_limit: int = 0
    skippable_exceptions: ExceptionTypes = (Exception,)
    non_skippable_exceptions: ExceptionTypes = ()

    def should_skip(self, exc: BaseException, skip_count: int) -> bool:
        """
        Check whether the failing item may be skipped.

        Args:
            exc: Error raised while reading or processing the item
            skip_count: Items already skipped by the step

        Returns:
            True if the item should be dropped and processing continue

        Raises:
            SkipLimitExceededError: If the error is skippable but the limit is used up
        """
        if self.skip_limit <= 0:
            return False
        if isinstance(exc, self.non_skippable_exceptions):
            return False
        if not isinstance(exc, self.skippable_exceptions):
            return False
        if skip_count >= self.skip_limit:
            raise SkipLimitExceededError(self.skip_limit, exc) from exc
        return True


NEVER_SKIP = SkipPolicy(skip_limit=0)


@dataclass
class RetryTemplate:
    """Runs an async operation under a RetryPolicy."""

    policy: RetryPolicy = field(default_factory=RetryPolicy)
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def __post_init__(self):
        self.logger = get_logger(__name__)

    async def execute(
        self,
        func: Callable[[], Awaitable[Any]],
        operation: str,
        on_failure: Optional[Callable[[BaseException, int], Any]] = None
    ) -> Any:
        """
        Execute function with retry logic.

        Args:
            func: Zero-argument coroutine function to execute
            operation: Name used in logs and errors
            on_failure: Called with (exception, attempt) after every failed attempt

        Returns:
            Function result

        Raises:
            RetryLimitExceededError: When every attempt failed
            Exception: Non-retryable errors are re-raised unchanged
        """
        attempt = 0

        while True:
            attempt += 1
            try:
                result = await func()
                if attempt > 1:
                    self.logger.info(f"{operation} succeeded on attempt {attempt}")
                return result

            except Exception as e:
                error_registry.record_error(e)
                if on_failure is not None:
                    on_failure(e, attempt)

                if not self.policy.is_retryable(e):
                    self.logger.error(f"Non-retryable error in {operation}: {str(e)}")
                    raise

                self.logger.warning(f"{operation} failed on attempt {attempt}/{self.policy.max_attempts}: {str(e)}")

                if attempt >= self.policy.max_attempts:
                    self.logger.error(f"{operation} failed after {attempt} attempts")
                    raise RetryLimitExceededError(operation, attempt, e) from e

                delay = self.policy.backoff(attempt)
                self.logger.info(f"Retrying {operation} in {delay:.2f} seconds")
                await self.sleep(delay)
