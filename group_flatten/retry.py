"""
Retry helpers for transient directory failures.

Directory connections and membership mutations are retried a bounded number
of times; everything else fails on the first attempt.
"""

import time
import logging
from typing import Callable, Any, Tuple, Type, Optional

from ldap3.core.exceptions import LDAPSocketOpenError, LDAPSocketReceiveError, LDAPSessionTerminatedByServerError

from group_flatten.ldap_client import DirectoryError, DirectoryConnectionError

logger = logging.getLogger(__name__)

# busy, unavailable. 53 is not here: AD answers a non-member delete with it.
TRANSIENT_RESULT_CODES = (51, 52)


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
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    should_retry: Optional[Callable[[Exception], bool]] = None
) -> Any:
    """
    Call a function, retrying on the given exception types.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts, including the first one
        delay: Initial delay between retries in seconds
        backoff: Delay multiplier applied after each retry
        exceptions: Exception types to catch
        on_retry: Optional callback invoked before each retry
        should_retry: Optional predicate; a caught exception it rejects is
            re-raised immediately instead of being retried

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all attempts fail
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
            if should_retry is not None and not should_retry(e):
                raise

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
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception indicates a transient directory failure.

    Gateway errors are judged by type and LDAP result code only; their
    messages carry group and account names. Message patterns apply to
    any other exception.

    Args:
        exception: Exception to check

    Returns:
        True if the operation is worth retrying
    """
    if isinstance(exception, DirectoryConnectionError):
        return True

    if isinstance(exception, DirectoryError):
        return exception.result_code in TRANSIENT_RESULT_CODES

    if isinstance(exception, (ConnectionError, TimeoutError, RetryableError)):
        return True

    if isinstance(exception, (LDAPSocketOpenError, LDAPSocketReceiveError,
                              LDAPSessionTerminatedByServerError)):
        return True

    error_msg = str(exception).lower()
    transient_patterns = [
        'timeout',
        'timed out',
        'connection reset',
        'connection refused',
        'server is busy',
        'server unavailable',
    ]

    return any(pattern in error_msg for pattern in transient_patterns)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a retry callback that logs each retry as a warning.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
