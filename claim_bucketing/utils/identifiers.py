"""
Payer/payee identifier normalization.

Upstream adjudication systems send payer and payee identifiers in whatever
shape they were keyed in ("acme-health ins.", "Acme_Health  Ins"). Buckets
are grouped on the normalized form so that cosmetic differences do not split
a payer/payee pair across several buckets.
"""

import re

import structlog

logger = structlog.get_logger()

_SEPARATORS = re.compile(r"[-\s.]")
_DISALLOWED = re.compile(r"[^A-Z0-9_]")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")
_VALID_ID = re.compile(r"^[A-Z0-9_]+$")


def normalize_payer_payee_id(raw_id: str | None) -> str | None:
    """
    Normalize a payer or payee identifier.

    Rules:
    - Uppercase
    - Hyphens, whitespace and dots become underscores
    - Anything outside A-Z, 0-9 and underscore is dropped
    - Runs of underscores collapse to one, leading/trailing ones are trimmed

    Args:
        raw_id: Identifier as received from the feed

    Returns:
        Normalized identifier. None and "" are returned unchanged; an
        identifier made only of punctuation normalizes to "".
    """
    if not raw_id:
        return raw_id

    normalized = _SEPARATORS.sub("_", raw_id.upper())
    normalized = _DISALLOWED.sub("", normalized)
    normalized = _REPEATED_UNDERSCORES.sub("_", normalized)
    normalized = normalized.strip("_")

    if normalized != raw_id:
        logger.debug("identifier_normalized", raw=raw_id, normalized=normalized)

    return normalized


def is_valid_payer_payee_id(value: str | None) -> bool:
    """Check that an identifier is already in normalized form."""
    return bool(value) and _VALID_ID.match(value) is not None
