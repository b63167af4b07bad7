"""
Retrying of transient failures.

Only idempotent calls (directory reads) should go through retry_call; a write
that fails is left for the next reconciliation pass.
"""

import time
import logging
from typing import Callable, Any, Tuple, Type, Optional

logger = logging.getLogger(__name__)


class RetryableError(Exception):
    """Marks a failure as transient."""
    pass


class MaxRetriesExceeded(Exception):
    """Every attempt failed; the last failure is kept in last_exception."""
    
    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Gave up after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: Optional[dict] = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (RetryableError,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call func(*args, **kwargs) until it succeeds or max_attempts is reached.
    
    Only the exception types in `exceptions` are retried; anything else
    propagates at once. The wait starts at `delay` seconds and is multiplied
    by `backoff` after every failed attempt. `on_retry(attempt, error)` runs
    before each wait; an error raised by it is logged and ignored.
    
    Raises:
        MaxRetriesExceeded: If the last attempt failed as well
    """
    kwargs = kwargs or {}
    attempts = max(1, max_attempts)
    wait = delay
    
    for attempt in range(1, attempts + 1):
        try:
            result = func(*args, **kwargs)
        except exceptions as e:
            if attempt == attempts:
                raise MaxRetriesExceeded(attempts, e)
            logger.debug(f"Attempt {attempt}/{attempts} failed ({type(e).__name__}: {e}), "
                         f"waiting {wait:.1f}s")
            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")
            time.sleep(wait)
            wait *= backoff
        else:
            if attempt > 1:
                logger.info(f"Operation succeeded on attempt {attempt}")
            return result


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """Build an on_retry callback that logs a warning naming the operation."""
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")
    
    return on_retry
