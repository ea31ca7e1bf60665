"""
Tests for the bucketing service wiring and loop.
"""

import threading

import pytest

from claim_bucketing.config.models import AppConfig
from claim_bucketing.core.checkpoint import FileCheckpointStore
from claim_bucketing.core.service import BucketingService
from claim_bucketing.domain import Payee, Payer
from claim_bucketing.streaming.implementations.memory import InMemoryPublisher


@pytest.fixture
def service(clock, default_rule, amount_threshold, auto_criteria):
    config = AppConfig(feed={"consumer_id": "svc", "poll_interval_seconds": 0.01})
    service = BucketingService(config, memory=True, publisher=InMemoryPublisher(), clock=clock)
    store = service.config_store
    store.save_rule(default_rule)
    store.save_threshold(amount_threshold)
    store.save_criteria(auto_criteria)
    store.save_payer(Payer(payer_id="ACME", name="Acme Health"))
    store.save_payee(Payee(payee_id="CLINIC_9", name="Clinic Nine"))
    yield service
    service.close()


class TestBucketingService:
    def test_single_tick_polls_and_sweeps(self, service, make_claim):
        service.feed_source.append_claim(make_claim("c1", paid="1000.00"))
        service.feed_source.append_claim(make_claim("c2", paid="2500.00"))

        assert service.run(max_ticks=1) == 1

        [event] = service.publisher.events
        assert event.claim_ids == ("c1", "c2")

    def test_status(self, service, make_claim):
        service.feed_source.append_claim(make_claim("c1", paid="10.00"))
        service.poll()

        status = service.status()
        assert status["consumer_id"] == "svc"
        assert status["sequence_number"] == 1
        assert status["total_processed"] == 1
        assert status["feed"] == {"total": 1, "unprocessed": 0}
        assert status["buckets"]["ACCUMULATING"] == 1
        assert status["buckets"]["COMPLETED"] == 0

    def test_stop_event_ends_loop(self, service):
        stop = threading.Event()
        stop.set()
        assert service.run(stop_event=stop) == 0

    def test_failing_step_does_not_stop_loop(self, service, monkeypatch):
        def broken():
            raise RuntimeError("boom")

        monkeypatch.setattr(service, "poll", broken)
        assert service.run(max_ticks=2) == 2

    def test_file_checkpoint_backend(self, tmp_path, clock):
        config = AppConfig(checkpoint={"backend": "file", "checkpoint_dir": str(tmp_path)})
        service = BucketingService(config, memory=True, publisher=InMemoryPublisher(), clock=clock)
        assert isinstance(service.checkpoints, FileCheckpointStore)
        assert service.consumer.checkpoints is service.checkpoints
