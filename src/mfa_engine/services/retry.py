import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from mfa_engine.core.exceptions import ConcurrentUpdateError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_on_conflict(operation: Callable[[], Awaitable[T]], attempts: int = 2) -> T:
    """Run ``operation`` again from scratch when it loses a compare-and-swap race."""
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ConcurrentUpdateError:
            if attempt == attempts:
                raise
            logger.info(f"Concurrent update detected, retrying (attempt {attempt + 1}/{attempts})")
    raise RuntimeError("retry_on_conflict needs at least one attempt")
