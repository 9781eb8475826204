"""Utility functions, decorators and error types for media_rec."""

import time
import logging
import asyncio
from functools import wraps
from typing import TypeVar, Callable

logger = logging.getLogger(__name__)

T = TypeVar('T')


class MediaRecError(Exception):
    """Base class for errors raised by media_rec."""


class StoreError(MediaRecError):
    """The relational or vector store could not be reached or written."""


class ItemNotFoundError(MediaRecError):
    """A requested library item does not exist."""


class OracleError(MediaRecError):
    """The language-model oracle failed to produce an answer."""


class TransientOracleError(OracleError):
    """A retryable oracle/embedding failure (rate limit, timeout, 5xx)."""


class QuotaExceededError(OracleError):
    """The external API quota is exhausted. Fatal for the current batch."""


class PipelineStopped(MediaRecError):
    """Raised when a cooperative stop check asks the current job to abort."""


def check_stop(should_stop: Callable[[], bool] | None, where: str = "") -> None:
    """Raise PipelineStopped if the surrounding job asked us to abort."""
    if should_stop is not None and should_stop():
        raise PipelineStopped(f"Stopped{' during ' + where if where else ''}")


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Decorator that retries a function with exponential backoff on failure.

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds before first retry
        backoff_factor: Multiplier for delay between retries (exponential backoff)
        exceptions: Tuple of exception types to catch and retry
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        logger.warning(
                            f"{func.__name__} failed (attempt {attempt + 1}/{max_retries}): {e}. "
                            f"Retrying in {delay:.1f}s..."
                        )
                        time.sleep(delay)
                        delay *= backoff_factor
                    else:
                        logger.error(
                            f"{func.__name__} failed after {max_retries} attempts: {e}"
                        )

            raise last_exception

        return wrapper
    return decorator


def async_retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (TransientOracleError,)
):
    """
    Async decorator that retries a coroutine with exponential backoff on failure.

    Only exceptions listed in ``exceptions`` are retried; anything else
    (notably QuotaExceededError) propagates on the first occurrence.

    Example:
        @async_retry_with_backoff(max_retries=3, initial_delay=2.0)
        async def call_api():
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        logger.warning(
                            f"{func.__name__} failed (attempt {attempt + 1}/{max_retries}): {e}. "
                            f"Retrying in {delay:.1f}s..."
                        )
                        await asyncio.sleep(delay)
                        delay *= backoff_factor
                    else:
                        logger.error(
                            f"{func.__name__} failed after {max_retries} attempts: {e}"
                        )

            raise last_exception

        return wrapper
    return decorator
