from __future__ import annotations

import json
import random
from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar, Literal, Mapping, Optional, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PositiveInt,
    model_validator,
)

from pendq.core.defaults import DEFAULT_PRIORITY, NO_RETRY
from pendq.core.types.status import TaskStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetryPolicy(BaseModel):
    """
    Declarative retry policy for a task type.

    Two strategies supported:
    1. Fixed: uses intervals_ms exactly as specified, one entry per retry
    2. Exponential: uses intervals_ms[0] as base and doubles it on every retry

    Fields:
        max_retries: maximum number of retry attempts (the first run is not counted)
        intervals_ms: delay intervals in milliseconds between attempts
        backoff_strategy: 'fixed' uses intervals as-is, 'exponential' uses intervals_ms[0] as base
        jitter: whether to add +/-25% randomization to delays
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    max_retries: Annotated[
        int, Field(ge=1, le=20, description='Number of retry attempts (1-20)')
    ] = 3
    intervals_ms: Annotated[
        list[
            Annotated[
                PositiveInt,
                Field(le=86_400_000, description='Retry interval in ms (1ms-24h)'),
            ]
        ],
        Field(min_length=1, max_length=20, description='List of retry intervals'),
    ] = [60_000, 300_000, 900_000]  # 1min, 5min, 15min
    backoff_strategy: Literal['fixed', 'exponential'] = 'fixed'
    jitter: bool = False

    @model_validator(mode='after')
    def validate_strategy_consistency(self) -> Self:
        if self.backoff_strategy == 'fixed':
            if len(self.intervals_ms) != self.max_retries:
                raise ValueError(
                    f'Fixed backoff strategy requires intervals_ms length ({len(self.intervals_ms)}) '
                    f'to match max_retries ({self.max_retries}). '
                    f'Either adjust intervals_ms or use exponential strategy.'
                )
        elif len(self.intervals_ms) != 1:
            raise ValueError(
                f'Exponential backoff strategy requires exactly one base interval, '
                f'got {len(self.intervals_ms)} intervals. Use intervals_ms=[base_ms] for exponential backoff.'
            )
        return self

    def delay_ms_for(self, tries: int) -> int:
        """Delay before the next attempt given the attempts made so far, or NO_RETRY."""
        if tries >= self.max_retries:
            return NO_RETRY

        if self.backoff_strategy == 'fixed':
            base_ms = self.intervals_ms[min(tries, len(self.intervals_ms) - 1)]
        else:
            base_ms = min(86_400_000, self.intervals_ms[0] * (2**tries))

        if self.jitter:
            jitter_range = base_ms * 0.25
            base_ms = int(base_ms + random.uniform(-jitter_range, jitter_range))

        return max(0, base_ms)


class Task(BaseModel):
    """
    Runtime task instance.

    Subclasses give every field a default so the class itself is a
    zero-argument constructor, and implement `run()`. The registry stamps
    `type` with the registered name when it builds an instance.
    Everything declared as a field is persisted in the row payload, so a
    claimed row rebuilds the same state (including `tries`).

    Retry behaviour: either set the `retry_policy` class attribute or
    override `next_try()`.
    """

    model_config = ConfigDict(validate_assignment=True, extra='ignore')

    type: str = ''
    priority: int = DEFAULT_PRIORITY
    created_at: datetime = Field(default_factory=_utcnow)
    tries: int = Field(default=0, ge=0)

    retry_policy: ClassVar[Optional[RetryPolicy]] = None

    @abstractmethod
    async def run(self) -> TaskStatus:
        """Execute the task and report the outcome."""
        raise NotImplementedError

    def next_try(self) -> int:
        """Delay in ms before retrying after a failure, or NO_RETRY (negative) to give up."""
        policy = type(self).retry_policy
        if policy is None:
            return NO_RETRY
        return policy.delay_ms_for(self.tries)

    def to_payload(self) -> dict[str, Any]:
        """Full JSON-safe serialization of the instance."""
        return self.model_dump(mode='json')

    def apply_overrides(self, data: Mapping[str, Any]) -> None:
        """Assign fields from a (partial) payload, validating each value.

        Keys that are not fields of this task class are ignored so that rows
        written by an older version of the class still rebuild.
        """
        fields = type(self).model_fields
        for key, value in data.items():
            if key in fields:
                setattr(self, key, value)


@dataclass(slots=True, frozen=True)
class TaskRecord:
    """
    A pending row of the tasks table, detached from any DB session.

    - id: str # uuid4
    - type: str # registry key
    - priority: int # higher is served first
    - payload: dict # Task.to_payload() at insert time
    - maturity_at: datetime # not claimable before this instant
    - created_at: datetime # insert time, tie-break after priority
    - updated_at: datetime # last write
    """

    id: str
    type: str
    priority: int
    payload: dict[str, Any]
    maturity_at: datetime
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> TaskRecord:
        payload = row['payload']
        if isinstance(payload, (str, bytes)):
            payload = json.loads(payload)
        return cls(
            id=str(row['id']),
            type=row['type'],
            priority=row['priority'],
            payload=dict(payload or {}),
            maturity_at=row['maturity_at'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )
