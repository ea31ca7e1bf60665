"""
Bucketing configuration models: rules, thresholds, commit criteria and the
payer/payee directory.

These are business configuration records, keyed by stable identifiers.
They reference each other by id only.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from claim_bucketing.domain.enums import (
    CommitMode,
    RuleKind,
    ThresholdType,
    TimeDuration,
)


class BucketingRule(BaseModel):
    """A rule deciding how claims are grouped into buckets."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    kind: RuleKind
    priority: int = 0  # Higher priority is evaluated first

    # Optional scope for PAYER_PAYEE rules; an unset side matches anything
    linked_payer_id: Optional[str] = None
    linked_payee_id: Optional[str] = None

    grouping_expression: Optional[str] = None  # CUSTOM rules only
    description: Optional[str] = None
    active: bool = True

    @property
    def is_scoped(self) -> bool:
        return bool(self.linked_payer_id or self.linked_payee_id)

    @property
    def is_unconditional(self) -> bool:
        """True if the rule applies to every valid claim."""
        return self.kind == RuleKind.PAYER_PAYEE and not self.is_scoped

    @model_validator(mode="after")
    def custom_needs_expression(self) -> "BucketingRule":
        if self.kind == RuleKind.CUSTOM and not (self.grouping_expression or "").strip():
            raise ValueError(f"CUSTOM rule {self.name!r} requires a grouping_expression")
        return self


class Threshold(BaseModel):
    """A release threshold linked to a bucketing rule."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: ThresholdType
    rule_id: str

    max_claims: Optional[int] = Field(default=None, ge=1)
    max_amount: Optional[Decimal] = Field(default=None, gt=0)
    time_duration: Optional[TimeDuration] = None
    active: bool = True

    @model_validator(mode="after")
    def bound_for_type(self) -> "Threshold":
        """Each single-bound type needs its bound; HYBRID needs at least one."""
        missing = {
            ThresholdType.CLAIM_COUNT: self.max_claims is None,
            ThresholdType.AMOUNT: self.max_amount is None,
            ThresholdType.TIME: self.time_duration is None,
            ThresholdType.HYBRID: (
                self.max_claims is None
                and self.max_amount is None
                and self.time_duration is None
            ),
        }[self.type]
        if missing:
            raise ValueError(f"Threshold {self.name!r} of type {self.type.value} has no bound set")
        return self


class CommitCriteria(BaseModel):
    """Commit policy applied when a rule's threshold fires."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    mode: CommitMode
    rule_id: str

    auto_commit_threshold: Optional[Decimal] = Field(default=None, ge=0)
    manual_approval_threshold: Optional[Decimal] = Field(default=None, ge=0)

    approval_required_roles: tuple[str, ...] = ()
    override_permissions: tuple[str, ...] = ()
    active: bool = True


class Payer(BaseModel):
    """A configured payer."""

    model_config = ConfigDict(frozen=True)

    payer_id: str
    name: str
    active: bool = True


class Payee(BaseModel):
    """A configured payee."""

    model_config = ConfigDict(frozen=True)

    payee_id: str
    name: str
    active: bool = True
