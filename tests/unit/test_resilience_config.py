"""Unit tests for RunnerResilienceConfig validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from pendq.core.errors import ConfigurationError, ErrorCode
from pendq.core.models.resilience import RunnerResilienceConfig


@pytest.mark.unit
class TestResilienceConfigDefaults:
    def test_defaults(self) -> None:
        cfg = RunnerResilienceConfig()
        assert cfg.poll_interval_ms == 1_000
        assert cfg.error_backoff_ms == 5_000
        assert cfg.error_backoff_max_ms == 60_000
        assert cfg.error_backoff_max_attempts == 0


@pytest.mark.unit
class TestResilienceConfigBoundaries:
    def test_poll_interval_below_minimum_raises(self) -> None:
        with pytest.raises(ValidationError, match=r'poll_interval_ms'):
            RunnerResilienceConfig(poll_interval_ms=99)

    def test_poll_interval_at_minimum(self) -> None:
        assert RunnerResilienceConfig(poll_interval_ms=100).poll_interval_ms == 100

    def test_poll_interval_above_maximum_raises(self) -> None:
        with pytest.raises(ValidationError, match=r'poll_interval_ms'):
            RunnerResilienceConfig(poll_interval_ms=300_001)

    def test_negative_max_attempts_raises(self) -> None:
        with pytest.raises(ValidationError, match=r'error_backoff_max_attempts'):
            RunnerResilienceConfig(error_backoff_max_attempts=-1)


@pytest.mark.unit
class TestResilienceConfigCrossField:
    def test_max_below_initial_raises(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            RunnerResilienceConfig(error_backoff_ms=10_000, error_backoff_max_ms=5_000)
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID_RESILIENCE

    def test_max_equal_initial_allowed(self) -> None:
        cfg = RunnerResilienceConfig(error_backoff_ms=2_000, error_backoff_max_ms=2_000)
        assert cfg.error_backoff_max_ms == 2_000
