"""
Bucketing configuration seed files.

A seed file lists payers, payees, rules, thresholds and commit criteria in
YAML. Loading it upserts every record into a configuration store by id, so
the same file can be applied repeatedly.

Example:
    payers:
      - payer_id: ACME
        name: Acme Health
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
"""

from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field

from claim_bucketing.config.loader import load_yaml
from claim_bucketing.config.validation import check_rule_set
from claim_bucketing.core.errors import ConfigurationError
from claim_bucketing.domain.rules import BucketingRule, CommitCriteria, Payee, Payer, Threshold

logger = structlog.get_logger()


@runtime_checkable
class ConfigurationWriter(Protocol):
    """Upsert access to bucketing configuration."""

    def save_rule(self, rule: BucketingRule) -> None:
        ...

    def save_threshold(self, threshold: Threshold) -> None:
        ...

    def save_criteria(self, criteria: CommitCriteria) -> None:
        ...

    def save_payer(self, payer: Payer) -> None:
        ...

    def save_payee(self, payee: Payee) -> None:
        ...


class SeedData(BaseModel):
    """Contents of a seed file."""

    payers: list[Payer] = Field(default_factory=list)
    payees: list[Payee] = Field(default_factory=list)
    rules: list[BucketingRule] = Field(default_factory=list)
    thresholds: list[Threshold] = Field(default_factory=list)
    commit_criteria: list[CommitCriteria] = Field(default_factory=list)

    def dangling_references(self) -> list[str]:
        """Thresholds and criteria pointing at rules not in this file."""
        rule_ids = {r.id for r in self.rules}
        problems = [
            f"Threshold {t.name!r} references unknown rule {t.rule_id!r}"
            for t in self.thresholds
            if t.rule_id not in rule_ids
        ]
        problems.extend(
            f"Commit criteria {c.name!r} references unknown rule {c.rule_id!r}"
            for c in self.commit_criteria
            if c.rule_id not in rule_ids
        )
        return problems


def load_seed(path: str | Path) -> SeedData:
    """
    Load and validate a seed file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigurationError: If a threshold or criteria references a rule
            the file does not define
        ValidationError: If a record is invalid
    """
    seed = SeedData.model_validate(load_yaml(Path(path)))

    problems = seed.dangling_references()
    if problems:
        raise ConfigurationError(
            "Seed file has dangling references:\n" + "\n".join(f"  - {p}" for p in problems)
        )
    return seed


def apply_seed(seed: SeedData, store: ConfigurationWriter) -> dict[str, int]:
    """
    Upsert every record of a seed into a configuration store.

    Records are written parents first (payers, payees, rules) so stores with
    foreign keys accept them. Rule set hazards are logged but do not block
    the load.

    Returns:
        Number of records written per section
    """
    for payer in seed.payers:
        store.save_payer(payer)
    for payee in seed.payees:
        store.save_payee(payee)
    for rule in seed.rules:
        store.save_rule(rule)
    for threshold in seed.thresholds:
        store.save_threshold(threshold)
    for criteria in seed.commit_criteria:
        store.save_criteria(criteria)

    check_rule_set(seed.rules, seed.thresholds, seed.commit_criteria)

    counts = {
        "payers": len(seed.payers),
        "payees": len(seed.payees),
        "rules": len(seed.rules),
        "thresholds": len(seed.thresholds),
        "commit_criteria": len(seed.commit_criteria),
    }
    logger.info("configuration_seeded", **counts)
    return counts
