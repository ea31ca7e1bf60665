"""
Claim Bucketing Engine
======================

Batches adjudicated healthcare payment claims into buckets, gates each
bucket's release with configurable thresholds and commit policy, and drives
every bucket through an audited lifecycle up to release for file generation.
"""

__version__ = "0.1.0"
__author__ = "Claim Bucketing"
