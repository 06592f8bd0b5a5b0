import time
import logging
import functools

from ..errors import TransientIOError

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float = 2.0, max_delay: float = 60.0) -> float:
    """Exponential backoff: base ** attempt seconds, capped at max_delay."""
    return min(base**attempt, max_delay)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
    retry_on: tuple = (TransientIOError,),
    sleep=time.sleep,
):
    """Decorator for retrying remote calls with exponential backoff.

    max_retries is the total number of attempts. Only exceptions listed in
    retry_on are retried; anything else propagates on the first failure.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None
            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt == max_retries:
                        raise

                    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
                    logger.warning(
                        f"{func.__name__} failed ({type(e).__name__}: {e}): "
                        f"retry {attempt}/{max_retries - 1} in {delay:.1f}s"
                    )
                    sleep(delay)

            raise last_exception

        return wrapper

    return decorator
