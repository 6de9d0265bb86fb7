"""
Retry utilities for handling transient failures.

Two shapes are provided:

* ``retry_call``: repeated attempts with a fixed or exponential delay,
  used when re-establishing the change subscription.
* ``attempt_with_reconnect``: exactly one reconnect followed by exactly one
  more attempt, returning an explicit ``AttemptResult`` instead of raising.
  Directory lookups use this so a stale connection heals itself without the
  caller seeing it, while a second consecutive failure is reported.
"""

import time
import logging
from dataclasses import dataclass
from typing import Callable, Any, Tuple, Type, Optional

logger = logging.getLogger(__name__)


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


@dataclass(frozen=True)
class AttemptResult:
    """Outcome of a bounded attempt/reconnect/attempt sequence."""

    value: Any = None
    error: Optional[Exception] = None
    attempts: int = 1
    reconnected: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def attempt_with_reconnect(
    operation: Callable[[], Any],
    reconnect: Callable[[], None],
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    operation_name: str = "operation"
) -> AttemptResult:
    """
    Run ``operation``; on failure call ``reconnect`` once and run it again.

    Args:
        operation: Zero-argument callable performing the work
        reconnect: Zero-argument callable re-establishing the connection
        exceptions: Exception types that count as a failed attempt
        operation_name: Label used in log messages

    Returns:
        AttemptResult holding either the value or the final error
    """
    try:
        return AttemptResult(value=operation())
    except exceptions as first_error:
        logger.warning(f"{operation_name} failed ({type(first_error).__name__}: {first_error}), "
                       f"reconnecting and retrying once")

    try:
        reconnect()
    except exceptions as reconnect_error:
        return AttemptResult(error=reconnect_error, attempts=1, reconnected=False)

    try:
        value = operation()
    except exceptions as second_error:
        return AttemptResult(error=second_error, attempts=2, reconnected=True)

    logger.info(f"{operation_name} succeeded after reconnect")
    return AttemptResult(value=value, attempts=2, reconnected=True)


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    sleep: Callable[[float], None] = time.sleep
) -> Any:
    """
    Call a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts
        delay: Initial delay between retries
        backoff: Delay multiplier for exponential backoff
        exceptions: Exception types to catch and retry on
        on_retry: Optional callback for retry events
        sleep: Sleep function, replaceable in tests

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all retry attempts fail
    """
    if kwargs is None:
        kwargs = {}
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_exception = None
    current_delay = delay

    for attempt in range(max_attempts):
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result

        except exceptions as e:
            last_exception = e

            if attempt == max_attempts - 1:
                break

            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}; "
                         f"retrying in {current_delay:.1f} seconds")

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
