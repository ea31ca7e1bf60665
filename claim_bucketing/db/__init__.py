"""
Database module for the claim bucketing engine.

Provides:
- PostgreSQL/SQLite connection management
- SQLAlchemy stores for configuration, buckets, audit logs and the change feed
- In-memory stores with the same guarantees
- Database initialization
"""

from claim_bucketing.db.connection import (
    create_engine_from_config,
    get_connection_string,
)
from claim_bucketing.db.memory import (
    InMemoryBucketStore,
    InMemoryCheckpointStore,
    InMemoryConfigurationStore,
    InMemoryFeedSource,
)
from claim_bucketing.db.sql_store import (
    SqlBucketStore,
    SqlCheckpointStore,
    SqlConfigurationStore,
    SqlFeedSource,
)

__all__ = [
    "create_engine_from_config",
    "get_connection_string",
    "InMemoryBucketStore",
    "InMemoryCheckpointStore",
    "InMemoryConfigurationStore",
    "InMemoryFeedSource",
    "SqlBucketStore",
    "SqlCheckpointStore",
    "SqlConfigurationStore",
    "SqlFeedSource",
]
