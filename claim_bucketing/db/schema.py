"""
SQLAlchemy Core table definitions.

Column names match the domain model field names so rows map straight onto
the pydantic models. Money is Numeric(15, 2); datetimes are naive local
time, as produced by the engine clock.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

MONEY = Numeric(15, 2)

# ---- Bucketing configuration ----

payers = Table(
    "payers",
    metadata,
    Column("payer_id", String(64), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("active", Boolean, nullable=False, default=True),
)

payees = Table(
    "payees",
    metadata,
    Column("payee_id", String(64), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("active", Boolean, nullable=False, default=True),
)

bucketing_rules = Table(
    "bucketing_rules",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(200), nullable=False, unique=True),
    Column("kind", String(20), nullable=False),
    Column("priority", Integer, nullable=False, default=0),
    Column("linked_payer_id", String(64)),
    Column("linked_payee_id", String(64)),
    Column("grouping_expression", Text),
    Column("description", Text),
    Column("active", Boolean, nullable=False, default=True),
)

bucket_thresholds = Table(
    "bucket_thresholds",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("type", String(20), nullable=False),
    Column("rule_id", String(64), ForeignKey("bucketing_rules.id"), nullable=False, index=True),
    Column("max_claims", Integer),
    Column("max_amount", MONEY),
    Column("time_duration", String(20)),
    Column("active", Boolean, nullable=False, default=True),
)

commit_criteria = Table(
    "commit_criteria",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("mode", String(20), nullable=False),
    Column("rule_id", String(64), ForeignKey("bucketing_rules.id"), nullable=False, index=True),
    Column("auto_commit_threshold", MONEY),
    Column("manual_approval_threshold", MONEY),
    Column("approval_required_roles", JSON, nullable=False, default=list),
    Column("override_permissions", JSON, nullable=False, default=list),
    Column("active", Boolean, nullable=False, default=True),
)

# ---- Buckets and audit ----

buckets = Table(
    "buckets",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("status", String(30), nullable=False, index=True),
    Column("rule_id", String(64), nullable=False),
    Column("rule_name", String(200), nullable=False),
    Column("grouping_key", String(400), nullable=False),
    Column("payer_id", String(64), nullable=False),
    Column("payee_id", String(64), nullable=False),
    Column("bin_number", String(20)),
    Column("pcn_number", String(20)),
    Column("claim_count", Integer, nullable=False, default=0),
    Column("total_amount", MONEY, nullable=False, default=0),
    Column("rejection_count", Integer, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False),
    Column("last_updated", DateTime, nullable=False),
    Column("awaiting_approval_since", DateTime),
    Column("approved_by", String(100)),
    Column("approved_at", DateTime),
    Column("generation_started_at", DateTime),
    Column("generation_completed_at", DateTime),
    Column("last_error_message", Text),
    Column("last_error_at", DateTime),
)

# At most one accumulating bucket per grouping key
Index(
    "uq_buckets_accumulating_key",
    buckets.c.grouping_key,
    unique=True,
    sqlite_where=buckets.c.status == "ACCUMULATING",
    postgresql_where=buckets.c.status == "ACCUMULATING",
)

claim_processing_log = Table(
    "claim_processing_log",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("claim_id", String(64), nullable=False, index=True),
    Column("bucket_id", String(64), ForeignKey("buckets.id"), index=True),
    Column("payer_id", String(64)),
    Column("payee_id", String(64)),
    Column("claim_amount", MONEY),
    Column("paid_amount", MONEY),
    Column("status", String(20), nullable=False),
    Column("rejection_reason", Text),
    Column("processed_at", DateTime, nullable=False),
)

# A claim is counted at most once
Index(
    "uq_processing_log_processed_claim",
    claim_processing_log.c.claim_id,
    unique=True,
    sqlite_where=claim_processing_log.c.status == "PROCESSED",
    postgresql_where=claim_processing_log.c.status == "PROCESSED",
)

bucket_approval_log = Table(
    "bucket_approval_log",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("bucket_id", String(64), ForeignKey("buckets.id"), nullable=False, index=True),
    Column("action", String(20), nullable=False),
    Column("actor", String(100), nullable=False),
    Column("comments", Text),
    Column("scheduled_generation_time", DateTime),
    Column("created_at", DateTime, nullable=False),
)

# ---- Change feed ----

data_changes = Table(
    "data_changes",
    metadata,
    Column("change_id", String(64), primary_key=True),
    Column("feed_version", Integer, nullable=False),
    Column("sequence_number", Integer, nullable=False),
    Column("table_name", String(100), nullable=False),
    Column("operation", String(10), nullable=False),
    Column("row_id", String(64), nullable=False),
    Column("old_values", JSON),
    Column("new_values", JSON),
    Column("processed", Boolean, nullable=False, default=False),
    Column("processed_at", DateTime),
    Column("error_message", Text),
    Column("created_at", DateTime),
    UniqueConstraint("feed_version", "sequence_number", name="uq_data_changes_position"),
)

changefeed_checkpoints = Table(
    "changefeed_checkpoints",
    metadata,
    Column("consumer_id", String(100), primary_key=True),
    Column("last_feed_version", Integer, nullable=False, default=0),
    Column("last_sequence_number", Integer, nullable=False, default=0),
    Column("total_processed", Integer, nullable=False, default=0),
    Column("last_checkpoint_at", DateTime),
)
