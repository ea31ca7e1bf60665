"""
Fixtures for integration tests against a file-backed SQLite database.
"""

import pytest

from claim_bucketing.config.models import AppConfig
from claim_bucketing.db.initialize import init_database
from claim_bucketing.db.sql_store import (
    SqlBucketStore,
    SqlCheckpointStore,
    SqlConfigurationStore,
    SqlFeedSource,
)
from claim_bucketing.domain import Payee, Payer


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig(
        database={"url": f"sqlite:///{tmp_path / 'claim_bucketing.db'}", "pool_size": 1},
        feed={"consumer_id": "it-consumer", "batch_size": 50, "poll_interval_seconds": 0.01},
        release={"backend": "memory"},
        configuration_cache_ttl_seconds=0,
    )


@pytest.fixture
def db_engine(app_config):
    engine = init_database(config=app_config)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_config_store(db_engine, default_rule, amount_threshold, auto_criteria) -> SqlConfigurationStore:
    """Same configuration as the in-memory config_store fixture."""
    store = SqlConfigurationStore(db_engine)
    store.save_payer(Payer(payer_id="ACME", name="Acme Health"))
    store.save_payee(Payee(payee_id="CLINIC_9", name="Clinic Nine"))
    store.save_rule(default_rule)
    store.save_threshold(amount_threshold)
    store.save_criteria(auto_criteria)
    return store


@pytest.fixture
def sql_bucket_store(db_engine) -> SqlBucketStore:
    return SqlBucketStore(db_engine)


@pytest.fixture
def sql_feed_source(db_engine) -> SqlFeedSource:
    return SqlFeedSource(db_engine)


@pytest.fixture
def sql_checkpoint_store(db_engine) -> SqlCheckpointStore:
    return SqlCheckpointStore(db_engine)
