"""
Database initialization for the claim bucketing engine.

Creates the configuration, bucket, audit and change feed tables.
"""

from pathlib import Path

import structlog
from sqlalchemy.engine import Engine

from claim_bucketing.config import AppConfig, load_config
from claim_bucketing.db.connection import create_engine_from_config
from claim_bucketing.db.schema import metadata

logger = structlog.get_logger()


def init_database(
    config_path: str | Path | None = None,
    drop_existing: bool = False,
    config: AppConfig | None = None,
) -> Engine:
    """
    Initialize the database with all required tables.

    Args:
        config_path: Path to configuration file (ignored when config is given)
        drop_existing: If True, drop all tables before creating
        config: Already loaded configuration

    Returns:
        Engine bound to the initialized database
    """
    if config is None:
        logger.info("loading_configuration")
        config = load_config(config_path)

    logger.info(
        "connecting_to_database",
        host=config.database.host,
        database=config.database.database,
        sqlite=config.database.is_sqlite,
    )
    engine = create_engine_from_config(config.database)

    if drop_existing:
        logger.warning("dropping_existing_tables")
        metadata.drop_all(engine)

    logger.info("creating_tables", tables=len(metadata.tables))
    metadata.create_all(engine)

    logger.info("database_initialized_successfully")
    return engine
