"""Bounded retry with exponential backoff for storage conflicts."""

import logging
import time
from typing import Callable, TypeVar

from .errors import ConflictError, TransientError
from .models import Config

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(config: Config, attempt: int) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return min(
        config.retry_base_delay * config.backoff_base ** (attempt - 1),
        config.backoff_max_delay,
    )


def retry_on_conflict(operation: Callable[[], T], config: Config, label: str,
                      sleep: Callable[[float], None] = time.sleep) -> T:
    """Run ``operation`` until it commits without a ConflictError.

    Each attempt must reload whatever it reads. After
    ``config.max_commit_attempts`` conflicts a TransientError is raised.
    """
    attempts = max(1, config.max_commit_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except ConflictError as e:
            if attempt == attempts:
                logger.warning("%s gave up after %d attempts: %s", label, attempt, e)
                raise TransientError() from e
            delay = backoff_delay(config, attempt)
            logger.debug("%s conflicted (attempt %d): %s; retrying in %.3fs", label, attempt, e, delay)
            sleep(delay)
    raise TransientError()
