"""
Immutable view of bucketing configuration.

The resolver and evaluator work from a snapshot passed in explicitly, never
from live store lookups, so one claim is handled against one consistent set
of rules, thresholds and criteria even while an operator edits them.
"""

import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType

import structlog

from claim_bucketing.db.protocol import ConfigurationStore
from claim_bucketing.domain import BucketingRule, CommitCriteria, Threshold

logger = structlog.get_logger()


def _priority_order(rule: BucketingRule) -> tuple:
    return (-rule.priority, rule.name, rule.id)


@dataclass(frozen=True)
class ConfigurationSnapshot:
    """
    Active rules in resolution order, with thresholds and criteria by rule id.
    """

    rules: tuple[BucketingRule, ...]
    thresholds: Mapping[str, tuple[Threshold, ...]] = field(default_factory=dict)
    criteria: Mapping[str, tuple[CommitCriteria, ...]] = field(default_factory=dict)
    loaded_at: datetime | None = None

    @classmethod
    def build(
        cls,
        rules: Iterable[BucketingRule],
        thresholds: Iterable[Threshold] = (),
        criteria: Iterable[CommitCriteria] = (),
        loaded_at: datetime | None = None,
    ) -> "ConfigurationSnapshot":
        """Build a snapshot from flat lists, dropping inactive entries."""
        ordered = tuple(sorted((r for r in rules if r.active), key=_priority_order))
        by_rule_thresholds: dict[str, list[Threshold]] = {}
        for t in thresholds:
            if t.active:
                by_rule_thresholds.setdefault(t.rule_id, []).append(t)
        by_rule_criteria: dict[str, list[CommitCriteria]] = {}
        for c in criteria:
            if c.active:
                by_rule_criteria.setdefault(c.rule_id, []).append(c)
        return cls(
            rules=ordered,
            thresholds=MappingProxyType({k: tuple(v) for k, v in by_rule_thresholds.items()}),
            criteria=MappingProxyType({k: tuple(v) for k, v in by_rule_criteria.items()}),
            loaded_at=loaded_at,
        )

    @classmethod
    def from_store(cls, store: ConfigurationStore, loaded_at: datetime | None = None) -> "ConfigurationSnapshot":
        rules = store.active_rules()
        thresholds: list[Threshold] = []
        criteria: list[CommitCriteria] = []
        for rule in rules:
            thresholds.extend(store.thresholds_for_rule(rule.id))
            criteria.extend(store.commit_criteria_for_rule(rule.id))
        return cls.build(rules, thresholds, criteria, loaded_at=loaded_at)

    def thresholds_for(self, rule_id: str) -> tuple[Threshold, ...]:
        return self.thresholds.get(rule_id, ())

    def criteria_for(self, rule_id: str) -> tuple[CommitCriteria, ...]:
        return self.criteria.get(rule_id, ())

    def rule(self, rule_id: str) -> BucketingRule | None:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None


class SnapshotProvider:
    """
    Caches a ConfigurationSnapshot for a short TTL.

    A TTL of 0 re-reads the store on every call. invalidate() forces the
    next call to re-read regardless of age.
    """

    def __init__(
        self,
        store: ConfigurationStore,
        ttl_seconds: float = 30.0,
        clock: Callable[[], datetime] = datetime.now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._snapshot: ConfigurationSnapshot | None = None
        self._loaded_at_monotonic = 0.0

    def get(self) -> ConfigurationSnapshot:
        with self._lock:
            now = self._monotonic()
            if self._snapshot is None or now - self._loaded_at_monotonic >= self._ttl:
                self._snapshot = ConfigurationSnapshot.from_store(self._store, loaded_at=self._clock())
                self._loaded_at_monotonic = now
                logger.debug(
                    "configuration_snapshot_loaded",
                    rules=len(self._snapshot.rules),
                )
            return self._snapshot

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None
