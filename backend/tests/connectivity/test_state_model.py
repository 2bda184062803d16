"""Tests for the health state model.

Test cases:
- Failures below degraded_at classify as RETRYING
- Failures between thresholds classify as DEGRADED
- Failures at failed_at classify as FAILED
- Success always yields CONNECTED and zeroes the counters
- Instability yields DEGRADED without touching counters, never downgrades FAILED
- Success during an active storm stays DEGRADED
- Same state with a new message refreshes message without a state change
- Connection attempts only move a DISCONNECTED record
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from dephealth.connectivity.config import DependencyThresholds
from dephealth.connectivity.models import DependencyId, DependencyRecord, HealthState
from dephealth.connectivity.state_model import (
    HealthStateModel,
    classify_failures,
    most_severe,
)

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def thresholds() -> DependencyThresholds:
    return DependencyThresholds(degraded_at=2, failed_at=5)


@pytest.fixture
def record() -> DependencyRecord:
    return DependencyRecord(dependency=DependencyId.CACHE)


class TestClassifyFailures:
    """Tests for threshold classification."""

    @pytest.mark.parametrize(
        "failures,expected",
        [
            (1, HealthState.RETRYING),
            (2, HealthState.DEGRADED),
            (4, HealthState.DEGRADED),
            (5, HealthState.FAILED),
            (12, HealthState.FAILED),
        ],
    )
    def test_classification(
        self, failures: int, expected: HealthState, thresholds: DependencyThresholds
    ) -> None:
        assert classify_failures(failures, thresholds) == expected

    def test_most_severe(self) -> None:
        assert most_severe(HealthState.RETRYING, HealthState.DEGRADED) == HealthState.DEGRADED
        assert most_severe(HealthState.FAILED, HealthState.DEGRADED) == HealthState.FAILED


class TestApplyFailure:
    """Tests for failure reports."""

    def test_first_failure_is_retrying(
        self, record: DependencyRecord, thresholds: DependencyThresholds
    ) -> None:
        transition = HealthStateModel.apply_failure(record, thresholds, "refused", NOW)

        assert transition.old_state == HealthState.DISCONNECTED
        assert transition.new_state == HealthState.RETRYING
        assert record.consecutive_failures == 1
        assert record.retry_count == 1
        assert record.last_failure_message == "refused"
        assert record.last_failure_time == NOW

    def test_failure_sequence(
        self, record: DependencyRecord, thresholds: DependencyThresholds
    ) -> None:
        states = [
            HealthStateModel.apply_failure(record, thresholds, "refused", NOW).new_state
            for _ in range(5)
        ]

        assert states == [
            HealthState.RETRYING,
            HealthState.DEGRADED,
            HealthState.DEGRADED,
            HealthState.DEGRADED,
            HealthState.FAILED,
        ]

    def test_failure_with_instability_is_at_least_degraded(
        self, record: DependencyRecord, thresholds: DependencyThresholds
    ) -> None:
        transition = HealthStateModel.apply_failure(
            record, thresholds, "refused", NOW, instability="Rebalance storm detected"
        )

        assert transition.new_state == HealthState.DEGRADED
        assert record.consecutive_failures == 1

    def test_same_state_refreshes_failure_time(
        self, record: DependencyRecord, thresholds: DependencyThresholds
    ) -> None:
        HealthStateModel.apply_failure(record, thresholds, "a", NOW)
        HealthStateModel.apply_failure(record, thresholds, "b", NOW)
        later = NOW + timedelta(seconds=5)

        transition = HealthStateModel.apply_failure(record, thresholds, "c", later)

        assert transition.changed is False
        assert record.last_failure_message == "c"
        assert record.last_failure_time == later


class TestApplySuccess:
    """Tests for success reports."""

    def test_success_from_failed(
        self, record: DependencyRecord, thresholds: DependencyThresholds
    ) -> None:
        for _ in range(5):
            HealthStateModel.apply_failure(record, thresholds, "refused", NOW)

        transition = HealthStateModel.apply_success(record, NOW)

        assert transition.entered_connected is True
        assert record.state == HealthState.CONNECTED
        assert record.consecutive_failures == 0
        assert record.retry_count == 0
        assert record.last_failure_message is None
        assert record.connected_since == NOW

    def test_repeated_success_keeps_connected_since(self, record: DependencyRecord) -> None:
        HealthStateModel.apply_success(record, NOW)
        transition = HealthStateModel.apply_success(record, NOW + timedelta(seconds=30))

        assert transition.changed is False
        assert record.connected_since == NOW

    def test_success_during_storm_stays_degraded(
        self, record: DependencyRecord, thresholds: DependencyThresholds
    ) -> None:
        HealthStateModel.apply_failure(record, thresholds, "refused", NOW)

        transition = HealthStateModel.apply_success(
            record, NOW, instability="Rebalance storm detected (5 within 300s)"
        )

        assert transition.new_state == HealthState.DEGRADED
        assert record.consecutive_failures == 0
        assert record.retry_count == 0
        assert record.last_failure_message == "Rebalance storm detected (5 within 300s)"


class TestApplyInstability:
    """Tests for storm signals."""

    def test_connected_becomes_degraded(self, record: DependencyRecord) -> None:
        HealthStateModel.apply_success(record, NOW)

        transition = HealthStateModel.apply_instability(record, "storm", NOW)

        assert transition.new_state == HealthState.DEGRADED
        assert record.last_failure_message == "storm"
        assert record.consecutive_failures == 0
        assert record.retry_count == 0

    def test_failed_is_not_downgraded(
        self, record: DependencyRecord, thresholds: DependencyThresholds
    ) -> None:
        for _ in range(5):
            HealthStateModel.apply_failure(record, thresholds, "refused", NOW)

        transition = HealthStateModel.apply_instability(record, "storm", NOW)

        assert transition.changed is False
        assert record.state == HealthState.FAILED
        assert record.last_failure_message == "refused"
        assert record.retry_count == 5


class TestConnectingAndReset:
    """Tests for the remaining transition table rows."""

    def test_connecting(self, record: DependencyRecord) -> None:
        transition = HealthStateModel.apply_connecting(record)

        assert transition.old_state == HealthState.DISCONNECTED
        assert transition.new_state == HealthState.CONNECTING

    def test_connecting_only_from_disconnected(
        self, record: DependencyRecord, thresholds: DependencyThresholds
    ) -> None:
        """A newer failure is never overwritten by a connection attempt."""
        HealthStateModel.apply_failure(record, thresholds, "refused", NOW)

        transition = HealthStateModel.apply_connecting(record)

        assert transition.changed is False
        assert record.state == HealthState.RETRYING
        assert record.retry_count == 1

    def test_reset(self, record: DependencyRecord, thresholds: DependencyThresholds) -> None:
        HealthStateModel.apply_failure(record, thresholds, "refused", NOW)
        record.failure_episode_start = 1.0

        transition = HealthStateModel.apply_reset(record)

        assert transition.new_state == HealthState.DISCONNECTED
        assert record.consecutive_failures == 0
        assert record.retry_count == 0
        assert record.failure_episode_start is None
