"""
Configuration validation for the claim bucketing engine.

Provides validation beyond Pydantic model validation: cross-field checks on
the application configuration, and a hazard report on a bucketing rule set.
"""

from collections.abc import Iterable
from pathlib import Path

import structlog

from claim_bucketing.config.models import AppConfig
from claim_bucketing.core.errors import ConfigurationError
from claim_bucketing.domain.enums import RuleKind
from claim_bucketing.domain.rules import BucketingRule, CommitCriteria, Threshold

logger = structlog.get_logger()


def validate_config(config: AppConfig) -> list[str]:
    """
    Validate application configuration.

    Args:
        config: AppConfig to validate

    Returns:
        List of warning messages (non-fatal issues)

    Raises:
        ConfigurationError: If configuration has fatal issues
    """
    warnings: list[str] = []
    errors: list[str] = []

    if config.monitor.enabled and config.monitor.interval_seconds < config.feed.poll_interval_seconds:
        warnings.append(
            f"Monitor interval ({config.monitor.interval_seconds}s) is shorter than the "
            f"poll interval ({config.feed.poll_interval_seconds}s). Sweeps will run "
            "more often than new claims can arrive."
        )

    if config.configuration_cache_ttl_seconds > config.monitor.interval_seconds:
        warnings.append(
            f"Configuration cache TTL ({config.configuration_cache_ttl_seconds}s) exceeds "
            f"the monitor interval ({config.monitor.interval_seconds}s). Threshold edits "
            "may take more than one sweep to apply."
        )

    if config.database.is_sqlite and config.database.pool_size > 1:
        warnings.append(
            "SQLite does not benefit from a connection pool; pool_size is ignored."
        )

    if not config.feed.claim_tables:
        errors.append("feed.claim_tables must list at least one source table")

    if config.checkpoint.backend == "file":
        checkpoint_dir = Path(config.checkpoint.checkpoint_dir)
        if checkpoint_dir.exists() and not checkpoint_dir.is_dir():
            errors.append(f"Checkpoint path is not a directory: {checkpoint_dir}")

    if config.release.backend == "json_file":
        output_dir = Path(config.release.json_file_output_dir)
        if output_dir.exists() and not output_dir.is_dir():
            errors.append(f"Release output path is not a directory: {output_dir}")

    for warning in warnings:
        logger.warning("config_validation_warning", message=warning)

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)

    return warnings


def check_rule_set(
    rules: Iterable[BucketingRule],
    thresholds: Iterable[Threshold] = (),
    criteria: Iterable[CommitCriteria] = (),
) -> list[str]:
    """
    Report hazards in a bucketing rule set.

    Nothing is changed: a rule set that shadows rules or lacks a fallback is
    still used as configured. The hazards are returned and logged so an
    operator can fix them.

    Args:
        rules: Bucketing rules (inactive ones are ignored)
        thresholds: Thresholds, to flag active rules with none linked
        criteria: Commit criteria, to flag rules with several active ones

    Returns:
        List of hazard messages
    """
    active = sorted(
        (r for r in rules if r.active),
        key=lambda r: (-r.priority, r.name, r.id),
    )
    hazards: list[str] = []

    if not active:
        hazards.append("No active bucketing rules; every claim will be rejected")
        for hazard in hazards:
            logger.warning("rule_set_hazard", message=hazard)
        return hazards

    if not any(r.is_unconditional for r in active):
        hazards.append(
            f"No unconditional PAYER_PAYEE rule; claims matching nothing fall back "
            f"to the lowest-priority rule {active[-1].name!r}"
        )

    for index, rule in enumerate(active):
        if rule.is_unconditional:
            shadowed = active[index + 1:]
            if shadowed:
                hazards.append(
                    f"Rule {rule.name!r} (priority {rule.priority}) matches every claim "
                    f"and shadows: {', '.join(r.name for r in shadowed)}"
                )
            break

    seen_priorities: dict[int, str] = {}
    for rule in active:
        if rule.priority in seen_priorities:
            hazards.append(
                f"Rules {seen_priorities[rule.priority]!r} and {rule.name!r} share "
                f"priority {rule.priority}; order is decided by name"
            )
        else:
            seen_priorities[rule.priority] = rule.name

    for rule in active:
        if rule.kind == RuleKind.PAYER_PAYEE and rule.grouping_expression:
            hazards.append(f"Rule {rule.name!r} is PAYER_PAYEE; its grouping_expression is ignored")

    active_thresholds = [t for t in thresholds if t.active]
    linked_rule_ids = {t.rule_id for t in active_thresholds}
    for rule in active:
        if rule.id not in linked_rule_ids:
            hazards.append(f"Rule {rule.name!r} has no active thresholds; its buckets never release")

    criteria_count: dict[str, int] = {}
    for c in criteria:
        if c.active:
            criteria_count[c.rule_id] = criteria_count.get(c.rule_id, 0) + 1
    names = {r.id: r.name for r in active}
    for rule_id, count in criteria_count.items():
        if count > 1 and rule_id in names:
            hazards.append(
                f"Rule {names[rule_id]!r} has {count} active commit criteria; the first is used"
            )

    for hazard in hazards:
        logger.warning("rule_set_hazard", message=hazard)

    return hazards
