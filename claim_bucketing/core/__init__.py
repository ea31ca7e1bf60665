"""
Core bucketing module for the claim bucketing engine.

Provides:
- Claim filtering, rule resolution and aggregation
- Threshold evaluation, commit policy and bucket lifecycle
- Change feed consumption and the periodic threshold monitor

Components are imported from their own modules; only the error hierarchy is
re-exported here.
"""

from claim_bucketing.core.errors import (
    BucketNotFoundError,
    ClaimBucketingError,
    ClaimValidationError,
    ConcurrentModificationError,
    ConfigurationError,
    InvalidTransitionError,
    MalformedClaimError,
    MissingConfigurationError,
    NoActiveRulesError,
    PermissionDeniedError,
    TransientStoreError,
)

__all__ = [
    "BucketNotFoundError",
    "ClaimBucketingError",
    "ClaimValidationError",
    "ConcurrentModificationError",
    "ConfigurationError",
    "InvalidTransitionError",
    "MalformedClaimError",
    "MissingConfigurationError",
    "NoActiveRulesError",
    "PermissionDeniedError",
    "TransientStoreError",
]
