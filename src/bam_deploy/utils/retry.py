"""Retry with exponential backoff for throttled AWS calls."""

import random
import time
from functools import wraps
from typing import Callable, Iterable, TypeVar, Union

from bam_deploy.utils.errors import RetryExhaustedError, get_error_code
from bam_deploy.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

THROTTLE_ERROR = 'TooManyRequestsException'


class RetryExecutor:
    """Retries a call only while it fails with a recognized transient error code.

    Any other exception propagates on the first failure. Once ``max_attempts``
    calls have failed with the transient code, ``RetryExhaustedError`` is
    raised with the last error as its cause.
    """

    def __init__(
        self,
        retry_error: Union[str, Iterable[str]] = THROTTLE_ERROR,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize retry executor.

        Args:
            retry_error: AWS error code (or codes) that mark a call as retryable
            max_attempts: Total number of calls before giving up
            base_delay: Delay in seconds before the first retry
            max_delay: Upper bound for a single delay
            exponential_base: Growth factor between consecutive delays
            jitter: Whether to add up to 10% random jitter to each delay
            sleep: Function used to wait between attempts
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        if isinstance(retry_error, str):
            retry_error = [retry_error]
        self.retry_errors = frozenset(retry_error)
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self._sleep = sleep

    def is_transient(self, error: Exception) -> bool:
        """Check whether an error carries one of the retryable codes."""
        return get_error_code(error) in self.retry_errors

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds after the given failed attempt (0-indexed)."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)
        return delay

    def execute(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Call ``func`` with retries on transient errors.

        Returns:
            Result of the first successful call

        Raises:
            RetryExhaustedError: If every attempt failed with a transient code
            Exception: Any non-transient error, unchanged
        """
        last_error = None

        for attempt in range(self.max_attempts):
            try:
                result = func(*args, **kwargs)
                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")
                return result
            except Exception as e:
                if not self.is_transient(e):
                    raise

                last_error = e
                if attempt + 1 >= self.max_attempts:
                    break

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_attempts} throttled "
                    f"({get_error_code(e)}). Retrying in {delay:.2f}s..."
                )
                self._sleep(delay)

        logger.error(f"All {self.max_attempts} attempts were throttled")
        raise RetryExhaustedError(
            f"Gave up after {self.max_attempts} throttled attempts",
            attempts=self.max_attempts,
            cause=last_error,
            suggestions=['Wait a minute and run the command again']
        ) from last_error


def with_retry(
    retry_error: Union[str, Iterable[str]] = THROTTLE_ERROR,
    max_attempts: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0
):
    """Decorator form of RetryExecutor.

    Example:
        @with_retry('TooManyRequestsException', max_attempts=3)
        def create_deployment(client, rest_api_id, stage):
            return client.create_deployment(restApiId=rest_api_id, stageName=stage)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            executor = RetryExecutor(
                retry_error=retry_error,
                max_attempts=max_attempts,
                base_delay=base_delay,
                max_delay=max_delay
            )
            return executor.execute(func, *args, **kwargs)

        return wrapper

    return decorator
