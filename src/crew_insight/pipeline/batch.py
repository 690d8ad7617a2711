"""Sequential, rate-limited summary regeneration."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from crew_insight.errors import InsightError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Spaces the starts of successive calls by at least ``min_interval`` seconds.

    Calls run one at a time, so this also bounds in-flight work to one.
    """

    def __init__(
        self,
        min_interval: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_start: float | None = None

    def wait(self) -> None:
        if self._last_start is not None:
            remaining = self.min_interval - (self._clock() - self._last_start)
            if remaining > 0:
                self._sleep(remaining)
        self._last_start = self._clock()


@dataclass(slots=True)
class BatchItemResult:
    subject_id: int
    success: bool
    summary_id: int | None = None
    tokens_used: int = 0
    error: str | None = None


def regenerate_summaries(
    subject_ids: Iterable[int],
    generate: Callable[[int], tuple[int, int]],
    *,
    limiter: RateLimiter | None = None,
) -> list[BatchItemResult]:
    """Call ``generate(subject_id) -> (summary_id, tokens_used)`` for each subject.

    A failing subject is recorded and the batch moves on to the next one.
    """

    limiter = limiter or RateLimiter()
    results: list[BatchItemResult] = []
    for subject_id in subject_ids:
        limiter.wait()
        try:
            summary_id, tokens_used = generate(subject_id)
        except Exception as exc:
            message = exc.message if isinstance(exc, InsightError) else str(exc) or type(exc).__name__
            logger.warning("Summary regeneration failed for subject %s: %s", subject_id, message)
            results.append(BatchItemResult(subject_id=subject_id, success=False, error=message))
            continue
        results.append(
            BatchItemResult(
                subject_id=subject_id,
                success=True,
                summary_id=summary_id,
                tokens_used=tokens_used,
            )
        )

    succeeded = sum(1 for result in results if result.success)
    logger.info("Regenerated %d of %d summaries", succeeded, len(results))
    return results
