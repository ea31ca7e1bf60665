"""
Exception hierarchy for the claim bucketing engine.

Every error raised by the engine derives from ClaimBucketingError so callers
(CLI, service loop) can catch engine failures without catching programming
errors.
"""


class ClaimBucketingError(Exception):
    """Base class for all claim bucketing errors."""

    pass


class ConfigurationError(ClaimBucketingError):
    """Raised when application configuration is invalid."""

    pass


class TransientStoreError(ClaimBucketingError):
    """
    A store was unavailable or a storage call timed out.

    The feed consumer stops the current batch without advancing the
    checkpoint past the failing event; the next poll retries it.
    """

    pass


class MalformedClaimError(ClaimBucketingError):
    """A change event payload could not be parsed into a claim."""

    pass


class ClaimValidationError(ClaimBucketingError):
    """A parsed claim failed business validation (missing payer, negative amount)."""

    pass


class NoActiveRulesError(ClaimBucketingError):
    """No active bucketing rule is configured, so no claim can be placed."""

    pass


class MissingConfigurationError(ClaimBucketingError):
    """A payer or payee referenced by a bucket is not configured."""

    def __init__(self, message: str, payer_id: str | None = None, payee_id: str | None = None):
        super().__init__(message)
        self.payer_id = payer_id
        self.payee_id = payee_id


class BucketNotFoundError(ClaimBucketingError):
    """No bucket exists with the requested id."""

    def __init__(self, bucket_id: str):
        super().__init__(f"Bucket not found: {bucket_id}")
        self.bucket_id = bucket_id


class InvalidTransitionError(ClaimBucketingError):
    """The requested status change is not a legal edge of the state machine."""

    def __init__(self, bucket_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot transition bucket {bucket_id} from {current} to {requested}"
        )
        self.bucket_id = bucket_id
        self.current = current
        self.requested = requested


class PermissionDeniedError(ClaimBucketingError):
    """The acting user lacks a role the commit criteria require."""

    pass


class ConcurrentModificationError(ClaimBucketingError):
    """A compare-and-set on bucket status lost to a concurrent writer."""

    pass
