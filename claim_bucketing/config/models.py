"""
Pydantic configuration models for the claim bucketing engine.

These models define the structure and validation for application
configuration. Bucketing configuration (rules, thresholds, commit criteria)
is business data and lives in the configuration store, not here.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class DatabaseConfig(BaseModel):
    """Database connection settings."""

    url: str | None = Field(
        default=None,
        description=(
            "Full SQLAlchemy URL. Takes precedence over host/port/database "
            "(e.g. sqlite:///data/claim_bucketing.db)"
        ),
    )
    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    database: str = Field(default="claim_bucketing", description="Database name")
    username: str = Field(default="claim_bucketing", description="Database username")
    password: str = Field(default="", description="Database password")
    pool_size: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Connection pool size",
    )
    statement_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=300,
        description=(
            "Upper bound for a single storage call. A call that exceeds it "
            "is treated as a transient failure and retried on the next poll."
        ),
    )

    @property
    def connection_string(self) -> str:
        """Build the SQLAlchemy connection string."""
        if self.url:
            return self.url
        return (
            f"postgresql+psycopg://{self.username}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )

    @property
    def is_sqlite(self) -> bool:
        return self.connection_string.startswith("sqlite")


class FeedConfig(BaseModel):
    """Change feed consumer settings."""

    consumer_id: str = Field(
        default="claim-bucketing-default",
        min_length=1,
        description="Logical consumer name; owns exactly one checkpoint row",
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Fixed delay between poll ticks",
    )
    batch_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Maximum change events pulled per poll",
    )
    settled_statuses: list[str] = Field(
        default=["PROCESSED", "PAID"],
        description="Adjudication statuses that are eligible for bucketing",
    )
    claim_tables: list[str] = Field(
        default=["claims"],
        description="Source tables whose change events carry claims",
    )

    @field_validator("settled_statuses")
    @classmethod
    def statuses_not_empty(cls, v: list[str]) -> list[str]:
        """Normalize statuses to upper case and require at least one."""
        if not v:
            raise ValueError("At least one settled status is required")
        return [status.strip().upper() for status in v]


class MonitorConfig(BaseModel):
    """Periodic threshold monitor settings."""

    enabled: bool = Field(default=True, description="Run the periodic sweep")
    interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Delay between sweeps of accumulating buckets",
    )
    stale_bucket_days: int = Field(
        default=30,
        ge=1,
        description="Accumulating buckets older than this are reported as stale",
    )


class ReleaseConfig(BaseModel):
    """Release notification settings (bucket ready for file generation)."""

    backend: str = Field(
        default="log",
        description="Release backend: json_file | log | noop",
    )
    json_file_output_dir: str = Field(
        default="data/releases",
        description="Output directory for json_file backend (NDJSON files)",
    )
    log_level: str = Field(
        default="info",
        description="Log level for log backend",
    )

    @field_validator("backend")
    @classmethod
    def known_backend(cls, v: str) -> str:
        """Reject unknown release backends early."""
        backend = v.lower()
        if backend not in {"json_file", "log", "noop", "memory"}:
            raise ValueError(f"Unknown release backend: {v}")
        return backend


class CheckpointConfig(BaseModel):
    """Where the feed consumer keeps its checkpoint."""

    backend: str = Field(
        default="database",
        description="Checkpoint backend: database | file",
    )
    checkpoint_dir: Path = Field(
        default=Path("data/checkpoints"),
        description="Directory for the file backend",
    )

    @field_validator("backend")
    @classmethod
    def known_backend(cls, v: str) -> str:
        backend = v.lower()
        if backend not in {"database", "file"}:
            raise ValueError(f"Unknown checkpoint backend: {v}")
        return backend


class AppConfig(BaseSettings):
    """
    Root application configuration.

    Values can be loaded from YAML files and overridden via environment
    variables, e.g. CLAIM_BUCKETING_FEED__BATCH_SIZE=250.
    """

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    release: ReleaseConfig = Field(default_factory=ReleaseConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)

    configuration_cache_ttl_seconds: float = Field(
        default=30.0,
        ge=0,
        description=(
            "How long a rule/threshold/criteria snapshot is reused before "
            "being re-read. 0 re-reads on every evaluation."
        ),
    )

    model_config = {
        "env_prefix": "CLAIM_BUCKETING_",
        "env_nested_delimiter": "__",
    }
