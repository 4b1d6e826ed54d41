"""Runner configuration dataclass."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from pendq.core.defaults import (
    DEFAULT_CLAIM_BATCH_SIZE,
    DEFAULT_ERROR_BACKOFF_MAX_MS,
    DEFAULT_ERROR_BACKOFF_MS,
    DEFAULT_POLL_INTERVAL_MS,
)

if TYPE_CHECKING:
    from pendq.core.models.app import AppConfig


@dataclass
class RunnerConfig:
    # Tasks claimed, then executed concurrently, per loop iteration.
    batch_size: int = DEFAULT_CLAIM_BATCH_SIZE
    # Fallback re-check when the queue looked empty and no NOTIFY arrived.
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    # Back-off after a failed claim, doubling per consecutive failure up to the max.
    error_backoff_ms: int = DEFAULT_ERROR_BACKOFF_MS
    error_backoff_max_ms: int = DEFAULT_ERROR_BACKOFF_MAX_MS
    # Consecutive claim failures tolerated before start() gives up. 0 = never give up.
    error_backoff_max_attempts: int = 0
    # Notifications drained after a wake-up; a burst of inserts costs one claim.
    coalesce_notifies: int = 100

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f'batch_size must be >= 1, got {self.batch_size}')
        if self.poll_interval_ms <= 0:
            raise ValueError(
                f'poll_interval_ms must be positive, got {self.poll_interval_ms}'
            )

    @classmethod
    def from_app_config(
        cls,
        app_config: 'AppConfig',
        *,
        batch_size: Optional[int] = None,
        poll_interval_ms: Optional[int] = None,
    ) -> RunnerConfig:
        """Per-process settings from the app config, with command-line overrides."""
        resilience = app_config.resilience
        return cls(
            batch_size=batch_size if batch_size is not None else app_config.claim_batch_size,
            poll_interval_ms=(
                poll_interval_ms
                if poll_interval_ms is not None
                else resilience.poll_interval_ms
            ),
            error_backoff_ms=resilience.error_backoff_ms,
            error_backoff_max_ms=resilience.error_backoff_max_ms,
            error_backoff_max_attempts=resilience.error_backoff_max_attempts,
        )
