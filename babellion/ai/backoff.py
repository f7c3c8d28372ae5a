"""Retry logic with specific backoff strategy."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Delays in seconds
DEFAULT_DELAYS: tuple[float, ...] = (5, 20, 50)


def is_quota_error(exc: BaseException) -> bool:
  """Return True for 429/quota style provider errors."""
  error_msg = str(exc)
  is_quota = "Resource Exhausted" in error_msg or "RESOURCE_EXHAUSTED" in error_msg or "Quota Exceeded" in error_msg
  is_rate_limit = "429" in error_msg or "Too Many Requests" in error_msg
  return is_quota or is_rate_limit


async def retry_with_backoff(func: Callable[..., Awaitable[T]], *args, delays: tuple[float, ...] = DEFAULT_DELAYS, **kwargs) -> T:
  """
  Execute a coroutine function with retries for specific 429/Quota errors.

  Delays: 5s, 20s, 50s.
  """
  for attempt, delay in enumerate(delays):
    try:
      return await func(*args, **kwargs)
    except Exception as e:
      if not is_quota_error(e):
        # Non-retryable error, raise immediately
        raise
      logger.warning("Retry attempt %s/%s needed. Error: %s. Retrying in %ss...", attempt + 1, len(delays), e, delay)
      await asyncio.sleep(delay)

  # Final attempt
  return await func(*args, **kwargs)
