"""
Configuration module for the claim bucketing engine.

This module provides:
- Pydantic configuration models
- YAML configuration loading
- Configuration and rule set validation
"""

from claim_bucketing.config.models import (
    AppConfig,
    CheckpointConfig,
    DatabaseConfig,
    FeedConfig,
    MonitorConfig,
    ReleaseConfig,
)
from claim_bucketing.config.loader import find_config_file, load_config
from claim_bucketing.config.validation import check_rule_set, validate_config

__all__ = [
    "AppConfig",
    "CheckpointConfig",
    "DatabaseConfig",
    "FeedConfig",
    "MonitorConfig",
    "ReleaseConfig",
    "find_config_file",
    "load_config",
    "check_rule_set",
    "validate_config",
]
