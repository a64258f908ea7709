from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from taskorch.config import StorageConfig
from taskorch.errors import TransientStorageError
from taskorch.observability import get_logger

logger = get_logger(__name__)

ResultT = TypeVar("ResultT")


@dataclass(slots=True)
class BusyRetryPolicy:
    max_attempts: int = 4
    base_delay_seconds: float = 0.04
    max_delay_seconds: float = 0.4
    jitter_seconds: float = 0.02

    @classmethod
    def from_config(cls, config: StorageConfig) -> BusyRetryPolicy:
        return cls(
            max_attempts=max(1, config.busy_retry_max_attempts),
            base_delay_seconds=config.busy_retry_base_delay_ms / 1000,
            max_delay_seconds=config.busy_retry_max_delay_ms / 1000,
            jitter_seconds=config.busy_retry_jitter_ms / 1000,
        )

    def delay_for(self, attempt: int) -> float:
        delay = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))
        return delay + random.uniform(0.0, self.jitter_seconds)


def call_with_busy_retry(
    operation: Callable[[], ResultT],
    policy: BusyRetryPolicy | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> ResultT:
    """Run a storage operation, retrying only on ``TransientStorageError``."""
    active = policy or BusyRetryPolicy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except TransientStorageError:
            if attempt >= active.max_attempts:
                raise
            delay = active.delay_for(attempt)
            logger.warning("storage busy, retrying (attempt=%s, delay=%.3fs)", attempt, delay)
            sleep(delay)

