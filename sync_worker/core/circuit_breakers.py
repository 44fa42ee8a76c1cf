"""
Retry Logic
Backoff for the OpenAI call behind the daily brief summary.

Microsoft Graph and the token endpoint are NOT retried here: a failed fetch
fails the run, and the next scheduled tick resumes from the saved cursor.
"""
import logging
from functools import wraps
from typing import Awaitable, Callable, TypeVar

from openai import APIConnectionError, APITimeoutError, InternalServerError, RateLimitError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 429, dropped connections, timeouts and 5xx; anything else is a caller bug
OPENAI_TRANSIENT_ERRORS = (RateLimitError, APIConnectionError, APITimeoutError, InternalServerError)

OPENAI_MAX_ATTEMPTS = 3


def with_openai_retry(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """
    Retry an async OpenAI call on transient errors.

    Strategy:
    - OPENAI_MAX_ATTEMPTS attempts
    - Exponential backoff 2s, 4s, 8s (capped at 10s)
    - The last error is re-raised so the caller can fall back
    """

    @wraps(func)
    async def wrapper(*args, **kwargs) -> T:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(OPENAI_TRANSIENT_ERRORS),
            stop=stop_after_attempt(OPENAI_MAX_ATTEMPTS),
            wait=wait_exponential(multiplier=2, min=2, max=10),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        async for attempt in retrying:
            with attempt:
                return await func(*args, **kwargs)

    return wrapper
