"""
Factory for creating release publisher instances from configuration.
"""

from claim_bucketing.config.models import ReleaseConfig
from claim_bucketing.streaming.publisher import ReleasePublisher


def create_publisher(config: ReleaseConfig) -> ReleasePublisher:
    """
    Create a publisher instance based on configuration.

    Args:
        config: Release configuration

    Returns:
        A ReleasePublisher implementation
    """
    backend = config.backend.lower()

    if backend == "json_file":
        from claim_bucketing.streaming.implementations.json_file import JsonFilePublisher

        return JsonFilePublisher(output_dir=config.json_file_output_dir)

    elif backend == "log":
        from claim_bucketing.streaming.implementations.log import LogPublisher

        return LogPublisher(level=config.log_level)

    elif backend == "memory":
        from claim_bucketing.streaming.implementations.memory import InMemoryPublisher

        return InMemoryPublisher()

    else:
        from claim_bucketing.streaming.implementations.noop import NoopPublisher

        return NoopPublisher()
