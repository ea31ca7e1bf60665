"""
Rule resolver: picks the bucketing rule that applies to a claim.
"""

import threading

import structlog

from claim_bucketing.core.config_snapshot import ConfigurationSnapshot
from claim_bucketing.core.errors import NoActiveRulesError
from claim_bucketing.core.expressions import ExpressionError, compile_expression
from claim_bucketing.domain import BucketingRule, Claim, RuleKind
from claim_bucketing.utils.identifiers import normalize_payer_payee_id

logger = structlog.get_logger()


class RuleResolver:
    """
    Selects exactly one rule per claim.

    Rules are tried in snapshot order (priority descending, then name, then
    id). The first applicable rule wins; if none applies, the lowest-priority
    rule is the fallback. A high-priority unconditional rule therefore hides
    every rule below it. That is reported by check_rule_set, not corrected
    here.
    """

    def __init__(self) -> None:
        self._reported_invalid: set[str] = set()
        self._lock = threading.Lock()

    def resolve(self, claim: Claim, snapshot: ConfigurationSnapshot) -> BucketingRule:
        """
        Resolve the rule for a claim.

        Raises:
            NoActiveRulesError: If the snapshot has no active rules
        """
        if not snapshot.rules:
            raise NoActiveRulesError("No active bucketing rules configured")

        for rule in snapshot.rules:
            if self.applies(rule, claim):
                logger.debug("rule_resolved", claim_id=claim.id, rule=rule.name, priority=rule.priority)
                return rule

        fallback = snapshot.rules[-1]
        logger.debug("rule_fallback", claim_id=claim.id, rule=fallback.name)
        return fallback

    def applies(self, rule: BucketingRule, claim: Claim) -> bool:
        """Whether a rule's applicability test accepts the claim."""
        if rule.kind == RuleKind.PAYER_PAYEE:
            return self._scope_matches(rule, claim)
        if rule.kind == RuleKind.BIN_PCN:
            return claim.has_bin
        if rule.kind == RuleKind.CUSTOM:
            return self._expression_matches(rule, claim)
        return False

    @staticmethod
    def _scope_matches(rule: BucketingRule, claim: Claim) -> bool:
        if rule.linked_payer_id and normalize_payer_payee_id(rule.linked_payer_id) != normalize_payer_payee_id(
            claim.payer_id
        ):
            return False
        if rule.linked_payee_id and normalize_payer_payee_id(rule.linked_payee_id) != normalize_payer_payee_id(
            claim.payee_id
        ):
            return False
        return True

    def _expression_matches(self, rule: BucketingRule, claim: Claim) -> bool:
        try:
            expression = compile_expression(rule.grouping_expression or "")
        except ExpressionError as e:
            with self._lock:
                first_report = rule.id not in self._reported_invalid
                self._reported_invalid.add(rule.id)
            if first_report:
                logger.warning("grouping_expression_invalid", rule=rule.name, rule_id=rule.id, error=str(e))
            return False

        try:
            return expression.matches(claim.field_values())
        except ExpressionError as e:
            logger.warning(
                "grouping_expression_failed",
                rule=rule.name,
                rule_id=rule.id,
                claim_id=claim.id,
                error=str(e),
            )
            return False
