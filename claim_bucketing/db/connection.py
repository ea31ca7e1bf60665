"""
Database connection management for the claim bucketing engine.

PostgreSQL (psycopg 3) is the default; a SQLite URL is accepted for local
runs and tests.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from claim_bucketing.config.models import DatabaseConfig


def get_connection_string(config: DatabaseConfig) -> str:
    """
    Build the connection string.

    Args:
        config: Database configuration

    Returns:
        SQLAlchemy URL; database.url when set, else a postgresql+psycopg URL
    """
    return config.connection_string


def create_engine_from_config(config: DatabaseConfig) -> Engine:
    """
    Create SQLAlchemy engine from configuration.

    Every connection carries the configured statement timeout, so a stuck
    query surfaces as an OperationalError instead of blocking the poll loop.

    Args:
        config: Database configuration

    Returns:
        SQLAlchemy Engine instance
    """
    connection_string = get_connection_string(config)
    timeout = config.statement_timeout_seconds

    if config.is_sqlite:
        engine = create_engine(
            connection_string,
            connect_args={
                "timeout": timeout,
                "check_same_thread": False,
            },
        )
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_engine(
        connection_string,
        pool_size=config.pool_size,
        pool_pre_ping=True,
        pool_timeout=timeout,
        # Label connections for debugging + per-statement timeout
        connect_args={
            "application_name": "claim_bucketing",
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        },
    )


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
