"""
Tests for rule resolution and the configuration snapshot.
"""

from datetime import datetime

import pytest

from claim_bucketing.core.config_snapshot import ConfigurationSnapshot, SnapshotProvider
from claim_bucketing.core.errors import NoActiveRulesError
from claim_bucketing.core.rule_resolver import RuleResolver
from claim_bucketing.db.memory import InMemoryConfigurationStore
from claim_bucketing.domain import BucketingRule, Claim, RuleKind


def _rule(rule_id, kind, priority, **kwargs):
    return BucketingRule(id=rule_id, name=rule_id, kind=kind, priority=priority, **kwargs)


@pytest.fixture
def layered_rules():
    """Scoped payer rule (100), BIN/PCN rule (50), unconditional fallback (1)."""
    return [
        _rule("fallback", RuleKind.PAYER_PAYEE, 1),
        _rule("bin-pcn", RuleKind.BIN_PCN, 50),
        _rule("acme-only", RuleKind.PAYER_PAYEE, 100, linked_payer_id="ACME"),
    ]


class TestRuleResolver:
    def test_highest_priority_applicable_rule_wins(self, layered_rules):
        snapshot = ConfigurationSnapshot.build(layered_rules)
        claim = Claim(id="c", payer_id="acme", payee_id="X", bin_number="610014")
        assert RuleResolver().resolve(claim, snapshot).id == "acme-only"

    def test_bin_rule_applies_when_scope_does_not_match(self, layered_rules):
        snapshot = ConfigurationSnapshot.build(layered_rules)
        claim = Claim(id="c", payer_id="OTHER", payee_id="X", bin_number="610014")
        assert RuleResolver().resolve(claim, snapshot).id == "bin-pcn"

    def test_fallback_without_bin(self, layered_rules):
        snapshot = ConfigurationSnapshot.build(layered_rules)
        claim = Claim(id="c", payer_id="OTHER", payee_id="X")
        assert RuleResolver().resolve(claim, snapshot).id == "fallback"

    def test_lowest_priority_rule_is_fallback_when_nothing_applies(self):
        rules = [
            _rule("scoped", RuleKind.PAYER_PAYEE, 10, linked_payer_id="ACME"),
            _rule("bins", RuleKind.BIN_PCN, 5),
        ]
        claim = Claim(id="c", payer_id="OTHER", payee_id="X")
        assert RuleResolver().resolve(claim, ConfigurationSnapshot.build(rules)).id == "bins"

    def test_no_rules_raises(self):
        with pytest.raises(NoActiveRulesError):
            RuleResolver().resolve(Claim(id="c"), ConfigurationSnapshot.build([]))

    def test_inactive_rules_are_ignored(self):
        rules = [
            _rule("inactive", RuleKind.PAYER_PAYEE, 100, active=False),
            _rule("active", RuleKind.PAYER_PAYEE, 1),
        ]
        claim = Claim(id="c", payer_id="A", payee_id="B")
        assert RuleResolver().resolve(claim, ConfigurationSnapshot.build(rules)).id == "active"

    def test_priority_ties_break_by_name(self):
        rules = [
            BucketingRule(id="r2", name="zeta", kind=RuleKind.PAYER_PAYEE, priority=5),
            BucketingRule(id="r1", name="alpha", kind=RuleKind.PAYER_PAYEE, priority=5),
        ]
        claim = Claim(id="c", payer_id="A", payee_id="B")
        assert RuleResolver().resolve(claim, ConfigurationSnapshot.build(rules)).name == "alpha"

    def test_payee_scope_uses_normalized_ids(self):
        rule = _rule("clinic", RuleKind.PAYER_PAYEE, 1, linked_payee_id="clinic-9")
        assert RuleResolver().applies(rule, Claim(id="c", payer_id="A", payee_id="CLINIC 9"))
        assert not RuleResolver().applies(rule, Claim(id="c", payer_id="A", payee_id="CLINIC_10"))

    def test_custom_rule_uses_expression(self):
        rules = [
            _rule("big", RuleKind.CUSTOM, 10, grouping_expression="paid_amount >= 1000"),
            _rule("fallback", RuleKind.PAYER_PAYEE, 1),
        ]
        snapshot = ConfigurationSnapshot.build(rules)
        resolver = RuleResolver()
        assert resolver.resolve(Claim(id="a", paid_amount="1500"), snapshot).id == "big"
        assert resolver.resolve(Claim(id="b", paid_amount="10"), snapshot).id == "fallback"

    def test_expression_failing_on_claim_values_falls_through(self):
        rules = [
            _rule("negated", RuleKind.CUSTOM, 10, grouping_expression="paid_amount = -claim_number"),
            _rule("fallback", RuleKind.PAYER_PAYEE, 1),
        ]
        snapshot = ConfigurationSnapshot.build(rules)
        claim = Claim(id="c", claim_number="CLM-001", payer_id="A", payee_id="B", paid_amount="10")
        assert RuleResolver().resolve(claim, snapshot).id == "fallback"

    def test_invalid_expression_never_matches(self):
        rule = _rule("broken", RuleKind.CUSTOM, 10, grouping_expression="no_such_field = 1")
        resolver = RuleResolver()
        claim = Claim(id="c", payer_id="A", payee_id="B")
        assert not resolver.applies(rule, claim)
        assert not resolver.applies(rule, claim)
        assert resolver._reported_invalid == {"broken"}


class TestSnapshotProvider:
    def test_cached_until_ttl(self, default_rule):
        store = InMemoryConfigurationStore(rules=[default_rule])
        ticks = iter([0.0, 10.0, 31.0])
        provider = SnapshotProvider(store, ttl_seconds=30, clock=lambda: datetime(2025, 1, 1), monotonic=lambda: next(ticks))

        first = provider.get()
        store.save_rule(_rule("new", RuleKind.BIN_PCN, 99))
        assert provider.get() is first
        refreshed = provider.get()
        assert [r.id for r in refreshed.rules] == ["new", "rule-default"]

    def test_invalidate_forces_reload(self, default_rule):
        store = InMemoryConfigurationStore(rules=[default_rule])
        provider = SnapshotProvider(store, ttl_seconds=3600)
        first = provider.get()
        provider.invalidate()
        assert provider.get() is not first

    def test_snapshot_groups_thresholds_by_rule(self, config_store):
        snapshot = ConfigurationSnapshot.from_store(config_store)
        assert [t.id for t in snapshot.thresholds_for("rule-default")] == ["th-amount"]
        assert snapshot.criteria_for("unknown") == ()
        assert snapshot.rule("rule-default").name == "default"
