"""
SQLAlchemy-backed stores.

Each public method runs in its own transaction. Driver-level connectivity
failures and timeouts are translated to TransientStoreError; unique index
violations on the open-bucket key and the processed-claim entry are
translated to ConcurrentModificationError.
"""

import functools
from collections.abc import Callable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, TypeVar
from uuid import uuid4

import structlog
from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.engine import Engine, RowMapping
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from claim_bucketing.core.errors import (
    BucketNotFoundError,
    ConcurrentModificationError,
    TransientStoreError,
)
from claim_bucketing.db.schema import (
    bucket_approval_log,
    bucket_thresholds,
    bucketing_rules,
    buckets,
    changefeed_checkpoints,
    claim_processing_log,
    commit_criteria,
    data_changes,
    payees,
    payers,
)
from claim_bucketing.domain import (
    ApprovalLogEntry,
    Bucket,
    BucketChanges,
    BucketingRule,
    BucketStatus,
    ChangeEvent,
    ChangeOperation,
    Checkpoint,
    CommitCriteria,
    FeedPosition,
    Payee,
    Payer,
    ProcessingLogEntry,
    ProcessingStatus,
    Threshold,
)

logger = structlog.get_logger()

F = TypeVar("F", bound=Callable[..., Any])


def translate_errors(fn: F) -> F:
    """Translate connectivity failures and timeouts to TransientStoreError."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (OperationalError, PoolTimeoutError) as e:
            logger.warning("store_unavailable", operation=fn.__qualname__, error=str(e))
            raise TransientStoreError(f"{fn.__qualname__} failed: {e}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                logger.warning("store_connection_lost", operation=fn.__qualname__, error=str(e))
                raise TransientStoreError(f"{fn.__qualname__} lost its connection: {e}") from e
            raise

    return wrapper  # type: ignore[return-value]


class _SqlStore:
    def __init__(self, engine: Engine):
        self.engine = engine


# ---- Change feed ----


class SqlFeedSource(_SqlStore):
    """Change feed backed by the data_changes table."""

    @translate_errors
    def fetch_since(self, position: FeedPosition, limit: int) -> list[ChangeEvent]:
        c = data_changes.c
        stmt = (
            select(data_changes)
            .where(
                or_(
                    c.feed_version > position.version,
                    and_(c.feed_version == position.version, c.sequence_number > position.sequence),
                )
            )
            .order_by(c.feed_version, c.sequence_number)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return [self._to_event(row) for row in conn.execute(stmt).mappings()]

    @translate_errors
    def mark_processed(self, events: Sequence[ChangeEvent], processed_at: datetime) -> None:
        if not events:
            return
        stmt = (
            update(data_changes)
            .where(data_changes.c.change_id.in_([e.change_id for e in events]))
            .values(processed=True, processed_at=processed_at, error_message=None)
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    @translate_errors
    def mark_failed(self, event: ChangeEvent, message: str, failed_at: datetime) -> None:
        stmt = (
            update(data_changes)
            .where(data_changes.c.change_id == event.change_id)
            .values(processed=False, processed_at=failed_at, error_message=message)
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    @translate_errors
    def mark_all_unprocessed(self) -> int:
        stmt = (
            update(data_changes)
            .where(data_changes.c.processed.is_(True))
            .values(processed=False, processed_at=None)
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount

    @translate_errors
    def append_claim(
        self,
        payload: dict[str, Any],
        operation: ChangeOperation = ChangeOperation.INSERT,
        table_name: str = "claims",
        feed_version: Optional[int] = None,
        old_values: Optional[dict[str, Any]] = None,
    ) -> ChangeEvent:
        """
        Append a claim change at the next sequence number.

        Without feed_version the latest version in the table is used
        (1 for an empty feed).
        """
        c = data_changes.c
        with self.engine.begin() as conn:
            if feed_version is None:
                feed_version = conn.execute(select(func.max(c.feed_version))).scalar() or 1
            last_sequence = conn.execute(
                select(func.max(c.sequence_number)).where(c.feed_version == feed_version)
            ).scalar()
            sequence = (last_sequence or 0) + 1
            change_id = str(uuid4())
            conn.execute(
                insert(data_changes).values(
                    change_id=change_id,
                    feed_version=feed_version,
                    sequence_number=sequence,
                    table_name=table_name,
                    operation=operation.value,
                    row_id=str(payload.get("id", "")),
                    old_values=old_values,
                    new_values=None if operation == ChangeOperation.DELETE else payload,
                    processed=False,
                    created_at=datetime.now(),
                )
            )
        return ChangeEvent(
            change_id=change_id,
            position=FeedPosition(feed_version, sequence),
            table_name=table_name,
            operation=operation,
            row_id=str(payload.get("id", "")),
            payload=dict(payload),
        )

    @translate_errors
    def counts(self) -> dict[str, int]:
        """Total and unprocessed event counts."""
        c = data_changes.c
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(data_changes)).scalar() or 0
            pending = (
                conn.execute(select(func.count()).select_from(data_changes).where(c.processed.is_(False))).scalar()
                or 0
            )
        return {"total": total, "unprocessed": pending}

    @staticmethod
    def _to_event(row: RowMapping) -> ChangeEvent:
        operation = ChangeOperation(row["operation"])
        if operation == ChangeOperation.UNKNOWN:
            logger.warning("feed_operation_unknown", change_id=row["change_id"], operation=row["operation"])
        if operation == ChangeOperation.DELETE:
            payload = row["old_values"] or {}
        else:
            payload = row["new_values"] or {}
        return ChangeEvent(
            change_id=row["change_id"],
            position=FeedPosition(row["feed_version"], row["sequence_number"]),
            table_name=row["table_name"],
            operation=operation,
            row_id=row["row_id"],
            payload=payload,
            processed=bool(row["processed"]),
            error_message=row["error_message"],
        )


class SqlCheckpointStore(_SqlStore):
    """Checkpoints in the changefeed_checkpoints table."""

    @translate_errors
    def load_checkpoint(self, consumer_id: str) -> Optional[Checkpoint]:
        stmt = select(changefeed_checkpoints).where(changefeed_checkpoints.c.consumer_id == consumer_id)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return Checkpoint.model_validate(dict(row)) if row else None

    @translate_errors
    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        values = checkpoint.model_dump()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(changefeed_checkpoints)
                .where(changefeed_checkpoints.c.consumer_id == checkpoint.consumer_id)
                .values(**values)
            )
            if result.rowcount == 0:
                conn.execute(insert(changefeed_checkpoints).values(**values))

    @translate_errors
    def delete_all_checkpoints(self) -> int:
        with self.engine.begin() as conn:
            return conn.execute(delete(changefeed_checkpoints)).rowcount


# ---- Configuration ----


class SqlConfigurationStore(_SqlStore):
    """Bucketing configuration tables."""

    @translate_errors
    def active_rules(self) -> list[BucketingRule]:
        stmt = select(bucketing_rules).where(bucketing_rules.c.active.is_(True))
        with self.engine.connect() as conn:
            return [BucketingRule.model_validate(dict(row)) for row in conn.execute(stmt).mappings()]

    @translate_errors
    def thresholds_for_rule(self, rule_id: str) -> list[Threshold]:
        c = bucket_thresholds.c
        stmt = select(bucket_thresholds).where(c.rule_id == rule_id, c.active.is_(True)).order_by(c.name, c.id)
        with self.engine.connect() as conn:
            return [Threshold.model_validate(dict(row)) for row in conn.execute(stmt).mappings()]

    @translate_errors
    def commit_criteria_for_rule(self, rule_id: str) -> list[CommitCriteria]:
        c = commit_criteria.c
        stmt = select(commit_criteria).where(c.rule_id == rule_id, c.active.is_(True)).order_by(c.name, c.id)
        with self.engine.connect() as conn:
            return [CommitCriteria.model_validate(dict(row)) for row in conn.execute(stmt).mappings()]

    @translate_errors
    def payer_exists(self, payer_id: str) -> bool:
        stmt = select(payers.c.payer_id).where(payers.c.payer_id == payer_id, payers.c.active.is_(True))
        with self.engine.connect() as conn:
            return conn.execute(stmt).first() is not None

    @translate_errors
    def payee_exists(self, payee_id: str) -> bool:
        stmt = select(payees.c.payee_id).where(payees.c.payee_id == payee_id, payees.c.active.is_(True))
        with self.engine.connect() as conn:
            return conn.execute(stmt).first() is not None

    # ---- Writes (seeding) ----

    def save_rule(self, rule: BucketingRule) -> None:
        self._upsert(bucketing_rules, "id", rule.model_dump(mode="json"))

    def save_threshold(self, threshold: Threshold) -> None:
        values = threshold.model_dump()
        values["type"] = threshold.type.value
        values["time_duration"] = threshold.time_duration.value if threshold.time_duration else None
        self._upsert(bucket_thresholds, "id", values)

    def save_criteria(self, criteria: CommitCriteria) -> None:
        values = criteria.model_dump()
        values["mode"] = criteria.mode.value
        values["approval_required_roles"] = list(criteria.approval_required_roles)
        values["override_permissions"] = list(criteria.override_permissions)
        self._upsert(commit_criteria, "id", values)

    def save_payer(self, payer: Payer) -> None:
        self._upsert(payers, "payer_id", payer.model_dump())

    def save_payee(self, payee: Payee) -> None:
        self._upsert(payees, "payee_id", payee.model_dump())

    @translate_errors
    def _upsert(self, table, key: str, values: dict[str, Any]) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(update(table).where(table.c[key] == values[key]).values(**values))
            if result.rowcount == 0:
                conn.execute(insert(table).values(**values))


# ---- Buckets ----


def _bucket_values(bucket: Bucket) -> dict[str, Any]:
    values = bucket.model_dump()
    values["status"] = bucket.status.value
    return values


class SqlBucketStore(_SqlStore):
    """Buckets, processing log and approval log."""

    @translate_errors
    def get(self, bucket_id: str) -> Optional[Bucket]:
        with self.engine.connect() as conn:
            return self._get(conn, bucket_id)

    @staticmethod
    def _get(conn, bucket_id: str) -> Optional[Bucket]:
        row = conn.execute(select(buckets).where(buckets.c.id == bucket_id)).mappings().first()
        return Bucket.model_validate(dict(row)) if row else None

    @staticmethod
    def _open_for_key(conn, grouping_key: str, exclude_id: Optional[str] = None) -> Optional[Bucket]:
        stmt = select(buckets).where(
            buckets.c.grouping_key == grouping_key,
            buckets.c.status == BucketStatus.ACCUMULATING.value,
        )
        if exclude_id is not None:
            stmt = stmt.where(buckets.c.id != exclude_id)
        row = conn.execute(stmt).mappings().first()
        return Bucket.model_validate(dict(row)) if row else None

    @translate_errors
    def find_open_by_key(self, grouping_key: str) -> Optional[Bucket]:
        with self.engine.connect() as conn:
            return self._open_for_key(conn, grouping_key)

    @translate_errors
    def create(self, bucket: Bucket) -> Bucket:
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(buckets).values(**_bucket_values(bucket)))
        except IntegrityError as e:
            raise ConcurrentModificationError(
                f"Open bucket already exists for key {bucket.grouping_key}"
            ) from e
        return bucket.model_copy()

    @translate_errors
    def accumulate(
        self,
        bucket_id: str,
        amount: Decimal,
        entry: ProcessingLogEntry,
        updated_at: datetime,
    ) -> Bucket:
        c = buckets.c
        try:
            with self.engine.begin() as conn:
                if self._has_processed(conn, entry.claim_id):
                    raise ConcurrentModificationError(f"Claim {entry.claim_id} already processed")
                result = conn.execute(
                    update(buckets)
                    .where(c.id == bucket_id, c.status == BucketStatus.ACCUMULATING.value)
                    .values(
                        claim_count=c.claim_count + 1,
                        total_amount=c.total_amount + amount,
                        last_updated=updated_at,
                    )
                )
                if result.rowcount == 0:
                    current = self._get(conn, bucket_id)
                    if current is None:
                        raise BucketNotFoundError(bucket_id)
                    raise ConcurrentModificationError(
                        f"Bucket {bucket_id} is {current.status.value}, no longer accumulating"
                    )
                conn.execute(insert(claim_processing_log).values(**self._entry_values(entry)))
                return self._get(conn, bucket_id)
        except IntegrityError as e:
            raise ConcurrentModificationError(f"Claim {entry.claim_id} already processed") from e

    @staticmethod
    def _has_processed(conn, claim_id: str) -> bool:
        c = claim_processing_log.c
        stmt = select(c.id).where(c.claim_id == claim_id, c.status == ProcessingStatus.PROCESSED.value)
        return conn.execute(stmt).first() is not None

    @translate_errors
    def has_processed_claim(self, claim_id: str) -> bool:
        with self.engine.connect() as conn:
            return self._has_processed(conn, claim_id)

    @staticmethod
    def _entry_values(entry: ProcessingLogEntry) -> dict[str, Any]:
        values = entry.model_dump()
        values["status"] = entry.status.value
        return values

    @translate_errors
    def append_processing_log(self, entry: ProcessingLogEntry) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(claim_processing_log).values(**self._entry_values(entry)))
        except IntegrityError as e:
            raise ConcurrentModificationError(f"Claim {entry.claim_id} already processed") from e

    @translate_errors
    def transition(
        self,
        bucket_id: str,
        expected: BucketStatus,
        new_status: BucketStatus,
        changes: BucketChanges,
        updated_at: datetime,
        approval: Optional[ApprovalLogEntry] = None,
    ) -> Bucket:
        c = buckets.c
        values: dict[str, Any] = changes.field_updates()
        values["status"] = new_status.value
        values["last_updated"] = updated_at
        if changes.rejection_increment:
            values["rejection_count"] = c.rejection_count + changes.rejection_increment

        try:
            with self.engine.begin() as conn:
                current = self._get(conn, bucket_id)
                if current is None:
                    raise BucketNotFoundError(bucket_id)
                if new_status == BucketStatus.ACCUMULATING:
                    other = self._open_for_key(conn, current.grouping_key, exclude_id=bucket_id)
                    if other is not None:
                        raise ConcurrentModificationError(
                            f"Bucket {other.id} is already accumulating for key {current.grouping_key}"
                        )
                result = conn.execute(
                    update(buckets)
                    .where(c.id == bucket_id, c.status == expected.value)
                    .values(**values)
                )
                if result.rowcount == 0:
                    raise ConcurrentModificationError(
                        f"Bucket {bucket_id} is {current.status.value}, expected {expected.value}"
                    )
                if approval is not None:
                    conn.execute(insert(bucket_approval_log).values(**self._approval_values(approval)))
                return self._get(conn, bucket_id)
        except IntegrityError as e:
            raise ConcurrentModificationError(f"Bucket {bucket_id} conflicts with an accumulating bucket") from e

    @translate_errors
    def record_error(self, bucket_id: str, message: str, at: datetime) -> Bucket:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(buckets)
                .where(buckets.c.id == bucket_id)
                .values(last_error_message=message, last_error_at=at, last_updated=at)
            )
            if result.rowcount == 0:
                raise BucketNotFoundError(bucket_id)
            return self._get(conn, bucket_id)

    @staticmethod
    def _approval_values(entry: ApprovalLogEntry) -> dict[str, Any]:
        values = entry.model_dump()
        values["action"] = entry.action.value
        return values

    @translate_errors
    def list_buckets(self, statuses: Optional[Sequence[BucketStatus]] = None) -> list[Bucket]:
        stmt = select(buckets).order_by(buckets.c.created_at, buckets.c.id)
        if statuses is not None:
            stmt = stmt.where(buckets.c.status.in_([s.value for s in statuses]))
        with self.engine.connect() as conn:
            return [Bucket.model_validate(dict(row)) for row in conn.execute(stmt).mappings()]

    @translate_errors
    def claim_ids(self, bucket_id: str) -> list[str]:
        c = claim_processing_log.c
        stmt = (
            select(c.claim_id)
            .where(c.bucket_id == bucket_id, c.status == ProcessingStatus.PROCESSED.value)
            .order_by(c.processed_at, c.id)
        )
        with self.engine.connect() as conn:
            return list(conn.execute(stmt).scalars())

    @translate_errors
    def processing_log(
        self,
        claim_id: Optional[str] = None,
        bucket_id: Optional[str] = None,
    ) -> list[ProcessingLogEntry]:
        c = claim_processing_log.c
        stmt = select(claim_processing_log).order_by(c.processed_at, c.id)
        if claim_id is not None:
            stmt = stmt.where(c.claim_id == claim_id)
        if bucket_id is not None:
            stmt = stmt.where(c.bucket_id == bucket_id)
        with self.engine.connect() as conn:
            return [ProcessingLogEntry.model_validate(dict(row)) for row in conn.execute(stmt).mappings()]

    @translate_errors
    def approval_log(self, bucket_id: str) -> list[ApprovalLogEntry]:
        c = bucket_approval_log.c
        stmt = select(bucket_approval_log).where(c.bucket_id == bucket_id).order_by(c.created_at, c.id)
        with self.engine.connect() as conn:
            return [ApprovalLogEntry.model_validate(dict(row)) for row in conn.execute(stmt).mappings()]
