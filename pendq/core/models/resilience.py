# pendq/core/models/resilience.py
from __future__ import annotations

from typing import Annotated, Self
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pendq.core.defaults import (
    DEFAULT_ERROR_BACKOFF_MAX_MS,
    DEFAULT_ERROR_BACKOFF_MS,
    DEFAULT_POLL_INTERVAL_MS,
)
from pendq.core.errors import ConfigurationError, ErrorCode, ValidationReport, raise_collected


class RunnerResilienceConfig(BaseModel):
    """
    Configuration for runner resilience behaviors.

    Controls the fallback polling interval when no wake-up notification
    arrives, and the back-off applied after a failed claim.
    """

    model_config = ConfigDict(frozen=True)

    poll_interval_ms: Annotated[int, Field(ge=100, le=300_000)] = Field(
        default=DEFAULT_POLL_INTERVAL_MS,
        description='Fallback poll interval when the queue looks empty (100ms-5min)',
    )
    error_backoff_ms: Annotated[int, Field(ge=100, le=300_000)] = Field(
        default=DEFAULT_ERROR_BACKOFF_MS,
        description='Initial back-off after a store error (100ms-5min)',
    )
    error_backoff_max_ms: Annotated[int, Field(ge=100, le=3_600_000)] = Field(
        default=DEFAULT_ERROR_BACKOFF_MAX_MS,
        description='Maximum back-off after consecutive store errors (100ms-1h)',
    )
    error_backoff_max_attempts: Annotated[int, Field(ge=0, le=10_000)] = Field(
        default=0,
        description=(
            'Consecutive store errors tolerated before the runner stops; 0 means infinite'
        ),
    )

    @model_validator(mode='after')
    def validate_backoff(self) -> Self:
        report = ValidationReport('resilience')
        if self.error_backoff_max_ms < self.error_backoff_ms:
            report.add(
                ConfigurationError(
                    message='error_backoff_max_ms must be >= error_backoff_ms',
                    code=ErrorCode.CONFIG_INVALID_RESILIENCE,
                    notes=[
                        f'error_backoff_ms={self.error_backoff_ms}ms',
                        f'error_backoff_max_ms={self.error_backoff_max_ms}ms',
                    ],
                    help_text='increase error_backoff_max_ms or reduce error_backoff_ms',
                )
            )

        raise_collected(report)
        return self
