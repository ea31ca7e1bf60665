"""
Tests for configuration loading, validation and seed files.
"""

from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from claim_bucketing.config.loader import find_config_file, load_config
from claim_bucketing.config.models import AppConfig, DatabaseConfig
from claim_bucketing.config.seed import apply_seed, load_seed
from claim_bucketing.config.validation import check_rule_set, validate_config
from claim_bucketing.core.errors import ConfigurationError
from claim_bucketing.db.memory import InMemoryConfigurationStore
from claim_bucketing.domain import (
    BucketingRule,
    CommitCriteria,
    CommitMode,
    RuleKind,
    Threshold,
    ThresholdType,
)

SEED_YAML = """
payers:
  - payer_id: ACME
    name: Acme Health
payees:
  - payee_id: CLINIC_9
    name: Clinic Nine
rules:
  - id: rule-default
    name: default
    kind: PAYER_PAYEE
    priority: 1
thresholds:
  - id: th-amount
    name: amount-3000
    type: AMOUNT
    rule_id: rule-default
    max_amount: 3000
commit_criteria:
  - id: cc-hybrid
    name: hybrid
    mode: HYBRID
    rule_id: rule-default
    auto_commit_threshold: 5000
    approval_required_roles: [finance_approver]
"""


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config()
        assert config.feed.batch_size == 100
        assert config.feed.settled_statuses == ["PROCESSED", "PAID"]
        assert config.release.backend == "log"

    def test_explicit_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")

    def test_yaml_with_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CB_TEST_DB_HOST", "db.internal")
        monkeypatch.delenv("CB_TEST_DB_PORT", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(
            "database:\n"
            "  host: ${CB_TEST_DB_HOST}\n"
            "  port: ${CB_TEST_DB_PORT:-6543}\n"
            "feed:\n"
            "  consumer_id: nightly\n"
            "  settled_statuses: [paid, ' processed ']\n"
        )

        config = load_config(path)

        assert config.database.host == "db.internal"
        assert config.database.port == 6543
        assert config.feed.consumer_id == "nightly"
        assert config.feed.settled_statuses == ["PAID", "PROCESSED"]

    def test_overrides_are_deep_merged(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("feed:\n  consumer_id: nightly\n  batch_size: 50\n")
        config = load_config(path, override_values={"feed": {"batch_size": 500}})
        assert config.feed.consumer_id == "nightly"
        assert config.feed.batch_size == 500

    def test_environment_overrides_nested_values(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("CLAIM_BUCKETING_FEED__BATCH_SIZE", "250")
        assert load_config().feed.batch_size == 250

    def test_default_locations_are_searched_in_order(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert find_config_file() is None
        (tmp_path / "claim_bucketing.yaml").write_text("feed:\n  batch_size: 20\n")
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "claim_bucketing.yaml").write_text("feed:\n  batch_size: 40\n")

        assert find_config_file() == Path("config/claim_bucketing.yaml")
        assert load_config().feed.batch_size == 40

    def test_file_value_wins_over_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CLAIM_BUCKETING_FEED__BATCH_SIZE", "250")
        path = tmp_path / "config.yaml"
        path.write_text("feed:\n  batch_size: 50\n")
        assert load_config(path).feed.batch_size == 50

    def test_non_mapping_file_is_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- feed\n- database\n")
        with pytest.raises(ValueError, match="mapping of sections"):
            load_config(path)

    def test_unknown_release_backend_is_rejected(self):
        with pytest.raises(ValidationError):
            AppConfig(release={"backend": "kafka"})

    def test_empty_settled_statuses_are_rejected(self):
        with pytest.raises(ValidationError):
            AppConfig(feed={"settled_statuses": []})


class TestDatabaseConfig:
    def test_postgres_connection_string(self):
        config = DatabaseConfig(host="db", port=5433, database="cb", username="svc", password="pw")
        assert config.connection_string == "postgresql+psycopg://svc:pw@db:5433/cb"
        assert not config.is_sqlite

    def test_url_takes_precedence(self):
        config = DatabaseConfig(url="sqlite:///data/cb.db", host="ignored")
        assert config.connection_string == "sqlite:///data/cb.db"
        assert config.is_sqlite


class TestValidateConfig:
    def test_defaults_are_clean(self):
        assert validate_config(AppConfig()) == []

    def test_short_monitor_interval_warns(self):
        config = AppConfig(feed={"poll_interval_seconds": 60}, monitor={"interval_seconds": 30})
        warnings = validate_config(config)
        assert any("Monitor interval" in w for w in warnings)

    def test_sqlite_pool_warns(self):
        config = AppConfig(database={"url": "sqlite:///cb.db", "pool_size": 5})
        assert any("SQLite" in w for w in validate_config(config))

    def test_missing_claim_tables_is_fatal(self):
        with pytest.raises(ConfigurationError, match="claim_tables"):
            validate_config(AppConfig(feed={"claim_tables": []}))

    def test_checkpoint_path_must_be_directory(self, tmp_path):
        not_a_dir = tmp_path / "checkpoints"
        not_a_dir.write_text("")
        config = AppConfig(checkpoint={"backend": "file", "checkpoint_dir": str(not_a_dir)})
        with pytest.raises(ConfigurationError, match="not a directory"):
            validate_config(config)


class TestCheckRuleSet:
    def test_clean_rule_set(self, default_rule, amount_threshold, auto_criteria):
        assert check_rule_set([default_rule], [amount_threshold], [auto_criteria]) == []

    def test_no_active_rules(self, default_rule):
        inactive = default_rule.model_copy(update={"active": False})
        [hazard] = check_rule_set([inactive])
        assert "No active bucketing rules" in hazard

    def test_unconditional_rule_shadows_lower_priority(self, amount_threshold):
        catch_all = BucketingRule(id="rule-default", name="default", kind=RuleKind.PAYER_PAYEE, priority=100)
        bin_rule = BucketingRule(id="rule-bin", name="bin", kind=RuleKind.BIN_PCN, priority=50)
        bin_threshold = Threshold(
            id="th-bin", name="bin", type=ThresholdType.CLAIM_COUNT, rule_id="rule-bin", max_claims=5
        )

        hazards = check_rule_set([catch_all, bin_rule], [amount_threshold, bin_threshold])

        assert any("shadows: bin" in h for h in hazards)

    def test_missing_fallback_and_thresholds(self):
        bin_rule = BucketingRule(id="rule-bin", name="bin", kind=RuleKind.BIN_PCN, priority=50)
        hazards = check_rule_set([bin_rule])
        assert any("No unconditional PAYER_PAYEE rule" in h for h in hazards)
        assert any("no active thresholds" in h for h in hazards)

    def test_shared_priority_and_multiple_criteria(self, default_rule, amount_threshold):
        twin = BucketingRule(id="rule-bin", name="bin", kind=RuleKind.BIN_PCN, priority=1)
        criteria = [
            CommitCriteria(id=f"cc-{n}", name=f"cc-{n}", mode=CommitMode.AUTO, rule_id="rule-default")
            for n in range(2)
        ]
        hazards = check_rule_set(
            [default_rule, twin],
            [amount_threshold, amount_threshold.model_copy(update={"id": "th-bin", "rule_id": "rule-bin"})],
            criteria,
        )
        assert any("share priority 1" in h for h in hazards)
        assert any("2 active commit criteria" in h for h in hazards)


class TestSeed:
    def test_load_and_apply(self, tmp_path):
        path = tmp_path / "seed.yaml"
        path.write_text(SEED_YAML)
        store = InMemoryConfigurationStore()

        counts = apply_seed(load_seed(path), store)

        assert counts == {"payers": 1, "payees": 1, "rules": 1, "thresholds": 1, "commit_criteria": 1}
        assert store.payer_exists("ACME")
        assert store.payee_exists("CLINIC_9")
        [threshold] = store.thresholds_for_rule("rule-default")
        assert threshold.max_amount == Decimal("3000")
        [criteria] = store.commit_criteria_for_rule("rule-default")
        assert criteria.mode == CommitMode.HYBRID
        assert criteria.approval_required_roles == ("finance_approver",)

    def test_apply_twice_is_an_upsert(self, tmp_path):
        path = tmp_path / "seed.yaml"
        path.write_text(SEED_YAML)
        store = InMemoryConfigurationStore()
        seed = load_seed(path)
        apply_seed(seed, store)
        apply_seed(seed, store)
        assert len(store.active_rules()) == 1

    def test_dangling_rule_reference(self, tmp_path):
        path = tmp_path / "seed.yaml"
        path.write_text(
            "thresholds:\n"
            "  - id: th-1\n"
            "    name: orphan\n"
            "    type: CLAIM_COUNT\n"
            "    rule_id: rule-missing\n"
            "    max_claims: 5\n"
        )
        with pytest.raises(ConfigurationError, match="rule-missing"):
            load_seed(path)

    def test_invalid_record(self, tmp_path):
        path = tmp_path / "seed.yaml"
        path.write_text("rules:\n  - id: r1\n    name: custom\n    kind: CUSTOM\n")
        with pytest.raises(ValidationError):
            load_seed(path)
