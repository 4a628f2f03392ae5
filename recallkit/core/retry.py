"""Retry policy shared by provider calls and ingestion sub-batches."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from recallkit.core.errors import ExtractionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def is_retryable(error: BaseException) -> bool:
    """Default predicate: extraction/provider failures, except non-transient HTTP codes."""
    if not isinstance(error, ExtractionError):
        return False
    status = getattr(error, "status_code", None)
    return status is None or status in _RETRYABLE_STATUS_CODES


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    retryable: Callable[[BaseException], bool] = is_retryable
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    def delay_for(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Seconds to wait after the given 1-based failed attempt.

        A provider-supplied retry-after wins; otherwise ``base_delay * 2**attempt``.
        """
        retry_after = getattr(error, "retry_after", None) if error is not None else None
        if retry_after is not None and retry_after >= 0:
            return min(float(retry_after), self.max_delay)
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def run(self, fn: Callable[[], Awaitable[T]], *, label: str = "call") -> T:
        """Run ``fn`` until it succeeds or the attempt budget is spent.

        The last error is re-raised once attempts are exhausted or when the
        error is not retryable.
        """
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn()
            except Exception as e:
                last_error = e
                if not self.retryable(e):
                    raise
                if attempt >= self.max_attempts:
                    break
                delay = self.delay_for(attempt, e)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    label, attempt, self.max_attempts, delay, e,
                )
                await self.sleep(delay)

        logger.warning("%s failed after %d attempts: %s", label, self.max_attempts, last_error)
        raise last_error or RuntimeError(f"{label} failed after all retries")
