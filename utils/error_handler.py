"""Bounded retry helpers for provider calls"""

import asyncio
import logging
from typing import Tuple, Type

from utils.exception_handler import TransientProviderError

logger = logging.getLogger(__name__)


class RetryConfig:
    """Retry configuration for error handling"""

    def __init__(
        self,
        max_attempts: int = 3,
        delay: float = 1.0,
        max_delay: float = 60.0,
        retry_on: Tuple[Type[BaseException], ...] = (TransientProviderError,),
    ):
        self.max_attempts = max_attempts
        self.delay = delay
        self.max_delay = max_delay
        self.retry_on = retry_on


class RetryHandler:
    """Retry mechanism for recoverable errors"""

    @staticmethod
    def _delay_for(config: RetryConfig, attempt: int) -> float:
        """Linear backoff: delay * attempt number (1-based)"""
        return min(config.delay * attempt, config.max_delay)

    @staticmethod
    async def retry_async(func, config: RetryConfig, *args, **kwargs):
        """Retry async function with linear backoff"""
        last_exception = None

        for attempt in range(1, config.max_attempts + 1):
            try:
                return await func(*args, **kwargs)
            except config.retry_on as e:
                last_exception = e

                if attempt < config.max_attempts:
                    delay = RetryHandler._delay_for(config, attempt)
                    logger.warning(
                        f"Retry attempt {attempt} failed, retrying in {delay}s: {e}"
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"All {config.max_attempts} retry attempts failed: {e}")

        raise last_exception
