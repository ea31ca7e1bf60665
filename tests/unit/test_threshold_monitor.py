"""
Tests for the periodic threshold monitor.
"""

from datetime import timedelta

import pytest

from claim_bucketing.core.errors import TransientStoreError
from claim_bucketing.core.threshold_monitor import ThresholdMonitor
from claim_bucketing.domain import (
    BucketStatus,
    Claim,
    CommitCriteria,
    CommitMode,
    Threshold,
    ThresholdType,
    TimeDuration,
)


@pytest.fixture
def daily_threshold(config_store):
    config_store.thresholds.clear()
    config_store.save_threshold(
        Threshold(
            id="th-daily",
            name="daily",
            type=ThresholdType.TIME,
            rule_id="rule-default",
            time_duration=TimeDuration.DAILY,
        )
    )


@pytest.fixture
def monitor(engine, clock):
    return ThresholdMonitor(engine, stale_bucket_days=30, clock=clock)


def _claim(make_claim, claim_id, **kwargs):
    return Claim.model_validate(make_claim(claim_id, **kwargs))


class TestSweep:
    def test_idle_bucket_is_released_by_time(self, engine, monitor, make_claim, clock, publisher, daily_threshold):
        result = engine.process_claim(_claim(make_claim, "c1", paid="10.00"))

        first = monitor.sweep()
        assert first.evaluated == 1
        assert first.released == 0

        clock.advance(hours=24)
        second = monitor.sweep()
        assert second.released == 1
        assert engine.bucket(result.bucket_id).status == BucketStatus.GENERATING
        assert len(publisher.events) == 1

    def test_manual_bucket_is_reported_as_pending(
        self, engine, monitor, config_store, make_claim, clock, daily_threshold
    ):
        config_store.criteria.clear()
        config_store.save_criteria(
            CommitCriteria(id="cc-manual", name="manual", mode=CommitMode.MANUAL, rule_id="rule-default")
        )
        engine.process_claim(_claim(make_claim, "c1", paid="10.00"))
        clock.advance(days=1)

        result = monitor.sweep()
        assert result.awaiting_approval == 1
        assert result.pending_approval_total == 1

    def test_missing_configuration_is_counted(self, engine, monitor, make_claim, clock, daily_threshold):
        engine.process_claim(_claim(make_claim, "c1", paid="10.00", payee="CLINIC_77"))
        clock.advance(days=1)
        assert monitor.sweep().missing_configuration == 1

    def test_only_accumulating_buckets_are_swept(self, engine, monitor, make_claim):
        released = engine.process_claim(_claim(make_claim, "c1", paid="3000.00"))
        assert released.bucket_status == BucketStatus.GENERATING
        assert monitor.sweep().evaluated == 0

    def test_stale_buckets_are_reported(self, engine, monitor, make_claim, clock):
        result = engine.process_claim(_claim(make_claim, "c1", paid="10.00"))
        assert monitor.sweep().stale_bucket_ids == []

        clock.advance(days=30)
        assert monitor.sweep().stale_bucket_ids == [result.bucket_id]

    def test_transient_failure_ends_sweep(self, engine, monitor, make_claim, monkeypatch):
        engine.process_claim(_claim(make_claim, "c1", paid="10.00"))

        def unavailable(bucket_id):
            raise TransientStoreError("connection reset")

        monkeypatch.setattr(engine, "evaluate_thresholds", unavailable)
        with pytest.raises(TransientStoreError):
            monitor.sweep()


class TestStaleWindow:
    def test_custom_stale_window(self, engine, make_claim, clock):
        monitor = ThresholdMonitor(engine, stale_bucket_days=2, clock=clock)
        engine.process_claim(_claim(make_claim, "c1", paid="10.00"))
        clock.advance(days=1, hours=23)
        assert monitor.sweep().stale_bucket_ids == []
        clock.advance(hours=1)
        assert len(monitor.sweep().stale_bucket_ids) == 1

    def test_stale_after_is_a_timedelta(self, engine):
        assert ThresholdMonitor(engine, stale_bucket_days=7).stale_after == timedelta(days=7)
