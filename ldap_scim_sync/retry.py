"""
Retry utilities for handling transient failures at the transport boundary.

SCIM requests are wrapped with these helpers; a failure that survives every
attempt surfaces as ``MaxRetriesExceeded`` and ends the current run.
"""

import time
import logging
from typing import Callable, Any, Tuple, Type, Optional

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = (429, 500, 502, 503, 504)


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""
    pass


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 30.0,
    exceptions: Tuple[Type[Exception], ...] = (RetryableError,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call a function with bounded exponential backoff.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts, including the first call
        delay: Delay before the first retry in seconds
        backoff: Multiplier applied to the delay after each retry
        max_delay: Upper bound for any single delay
        exceptions: Exception types to catch and retry on; anything else
            propagates immediately
        on_retry: Optional callback invoked as ``on_retry(attempt, exception)``

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all retry attempts fail
    """
    if kwargs is None:
        kwargs = {}

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

            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}")
            logger.debug(f"Retrying in {current_delay:.1f} seconds...")

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(current_delay)
            current_delay = min(current_delay * backoff, max_delay)

    raise MaxRetriesExceeded(max_attempts, last_exception)


def retry_from_config(config: dict, operation_name: str = 'Target API operation') -> Callable[[Callable], Any]:
    """
    Build a callable that runs a zero-argument operation under the configured policy.

    Args:
        config: ``error_handling`` section with ``max_retries``,
            ``retry_wait_seconds``, ``retry_backoff`` and ``retry_max_wait_seconds``
        operation_name: Label for retry log messages

    Returns:
        Function ``run(operation)`` returning the operation's result
    """
    max_attempts = config.get('max_retries', 3) + 1  # +1 for initial attempt
    delay = config.get('retry_wait_seconds', 1.0)
    backoff = config.get('retry_backoff', 2.0)
    max_delay = config.get('retry_max_wait_seconds', 30.0)
    callback = create_retry_callback(operation_name)

    def run(operation: Callable) -> Any:
        return retry_call(
            operation,
            max_attempts=max_attempts,
            delay=delay,
            backoff=backoff,
            max_delay=max_delay,
            exceptions=(RetryableError,),
            on_retry=callback
        )

    return run


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception should trigger a retry.

    Args:
        exception: Exception to check

    Returns:
        True if the exception indicates a transient failure
    """
    if isinstance(exception, RetryableError):
        return True

    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True

    status_code = getattr(exception, 'status_code', None)
    if isinstance(status_code, int) and status_code in TRANSIENT_STATUS_CODES:
        return True

    return False


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
