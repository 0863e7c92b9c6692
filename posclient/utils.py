import functools
from typing import Any, Awaitable, Callable

from loguru import logger


def logged_job(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
    """
    Decorator for periodic jobs.

    Logs entry at debug level and turns an exception into an error log so one
    failing run does not disturb the scheduler. Returns None on failure.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        func_name = func.__name__
        logger.debug(f"Running job {func_name}")
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Job {func_name} failed: {type(e).__name__}: {e}")
            return None

    return wrapper
