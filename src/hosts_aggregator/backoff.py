"""
Cross-pass backoff for failing sources.

A fetch is never retried inside a pass. Instead, once a source has failed,
scheduled passes leave it alone for an exponentially growing window:
``base * 2^(failures - 1)`` seconds after the last failure, capped at a
maximum. Manual passes ignore the window.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .config import ScheduleConfig
from .models import SourceHealth


@dataclass
class BackoffDecision:
    """Whether a source should be fetched in the current pass."""

    skip: bool
    retry_after_seconds: float = 0.0
    reason: Optional[str] = None


class BackoffPolicy:
    """Exponential backoff keyed on a source's consecutive failures."""

    def __init__(self, config: ScheduleConfig) -> None:
        self._config = config

    def calculate_delay(self, consecutive_failures: int) -> float:
        """
        Length of the backoff window after ``consecutive_failures`` failures.

        Zero failures means no window.
        """
        if consecutive_failures <= 0:
            return 0.0
        delay = self._config.backoff_base_seconds * (2 ** (consecutive_failures - 1))
        return min(delay, self._config.backoff_max_seconds)

    def evaluate(
        self,
        health: Optional[SourceHealth],
        now: Optional[datetime] = None,
    ) -> BackoffDecision:
        """
        Decide whether a scheduled pass should skip a source.

        Args:
            health: Current health of the source, None if never checked
            now: Reference time, defaults to the current UTC time

        Returns:
            BackoffDecision with the remaining wait when skipping
        """
        if health is None or health.consecutive_failures <= 0 or not health.last_failure_at:
            return BackoffDecision(skip=False)

        now = now or datetime.now(timezone.utc)
        last_failure = datetime.fromisoformat(health.last_failure_at)
        elapsed = (now - last_failure).total_seconds()
        window = self.calculate_delay(health.consecutive_failures)

        if elapsed >= window:
            return BackoffDecision(skip=False)

        return BackoffDecision(
            skip=True,
            retry_after_seconds=window - elapsed,
            reason=(
                f"backing off after {health.consecutive_failures} consecutive failures, "
                f"retry in {window - elapsed:.0f}s"
            ),
        )
