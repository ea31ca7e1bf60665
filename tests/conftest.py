"""
Shared test fixtures for claim bucketing tests.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest

from claim_bucketing.core.engine import BucketingEngine
from claim_bucketing.core.feed_consumer import FeedConsumer
from claim_bucketing.db.memory import (
    InMemoryBucketStore,
    InMemoryCheckpointStore,
    InMemoryConfigurationStore,
    InMemoryFeedSource,
)
from claim_bucketing.domain import (
    BucketingRule,
    CommitCriteria,
    CommitMode,
    Payee,
    Payer,
    RuleKind,
    Threshold,
    ThresholdType,
)
from claim_bucketing.streaming.implementations.memory import InMemoryPublisher


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# =============================================================================
# Clock
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at 2025-03-03 09:00."""
    return FakeClock(datetime(2025, 3, 3, 9, 0))


# =============================================================================
# Bucketing configuration
# =============================================================================


@pytest.fixture
def default_rule() -> BucketingRule:
    """Unconditional PAYER_PAYEE rule."""
    return BucketingRule(id="rule-default", name="default", kind=RuleKind.PAYER_PAYEE, priority=1)


@pytest.fixture
def amount_threshold(default_rule: BucketingRule) -> Threshold:
    return Threshold(
        id="th-amount",
        name="amount-3000",
        type=ThresholdType.AMOUNT,
        rule_id=default_rule.id,
        max_amount=Decimal("3000.00"),
    )


@pytest.fixture
def auto_criteria(default_rule: BucketingRule) -> CommitCriteria:
    return CommitCriteria(id="cc-auto", name="auto", mode=CommitMode.AUTO, rule_id=default_rule.id)


@pytest.fixture
def config_store(
    default_rule: BucketingRule,
    amount_threshold: Threshold,
    auto_criteria: CommitCriteria,
) -> InMemoryConfigurationStore:
    """Default rule, $3000 AMOUNT threshold, AUTO commit, payer ACME and payee CLINIC_9."""
    return InMemoryConfigurationStore(
        rules=[default_rule],
        thresholds=[amount_threshold],
        criteria=[auto_criteria],
        payers=[Payer(payer_id="ACME", name="Acme Health")],
        payees=[Payee(payee_id="CLINIC_9", name="Clinic Nine")],
    )


# =============================================================================
# Stores, publisher, engine
# =============================================================================


@pytest.fixture
def bucket_store() -> InMemoryBucketStore:
    return InMemoryBucketStore()


@pytest.fixture
def publisher() -> InMemoryPublisher:
    return InMemoryPublisher()


@pytest.fixture
def engine(
    bucket_store: InMemoryBucketStore,
    config_store: InMemoryConfigurationStore,
    publisher: InMemoryPublisher,
    clock: FakeClock,
) -> BucketingEngine:
    """Engine over in-memory stores; configuration is re-read on every claim."""
    return BucketingEngine(bucket_store, config_store, publisher, cache_ttl_seconds=0, clock=clock)


@pytest.fixture
def feed_source() -> InMemoryFeedSource:
    return InMemoryFeedSource()


@pytest.fixture
def checkpoint_store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def consumer(
    feed_source: InMemoryFeedSource,
    checkpoint_store: InMemoryCheckpointStore,
    engine: BucketingEngine,
    clock: FakeClock,
) -> FeedConsumer:
    return FeedConsumer("test-consumer", feed_source, checkpoint_store, engine, batch_size=10, clock=clock)


# =============================================================================
# Claims
# =============================================================================


@pytest.fixture
def make_claim():
    """Factory for camelCase claim payloads as they appear on the feed."""

    def _make(
        claim_id: str,
        paid: str | None = "100.00",
        payer: str | None = "ACME",
        payee: str | None = "CLINIC_9",
        status: str = "PAID",
        **extra: Any,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": claim_id,
            "claimNumber": f"CLM-{claim_id}",
            "payerId": payer,
            "payeeId": payee,
            "totalChargeAmount": "150.00",
            "paidAmount": paid,
            "status": status,
            "serviceDate": "2025-02-14",
            "patientId": "P-1",
            "patientName": "SMITH, JANE",
        }
        payload.update(extra)
        return payload

    return _make
