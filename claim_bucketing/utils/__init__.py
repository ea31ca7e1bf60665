"""
Utility modules for the claim bucketing engine.

Provides:
- Structured logging configuration
- Payer/payee identifier normalization
"""

from claim_bucketing.utils.identifiers import (
    is_valid_payer_payee_id,
    normalize_payer_payee_id,
)
from claim_bucketing.utils.logging import configure_logging, get_logger

__all__ = [
    # Identifiers
    "is_valid_payer_payee_id",
    "normalize_payer_payee_id",
    # Logging
    "configure_logging",
    "get_logger",
]
