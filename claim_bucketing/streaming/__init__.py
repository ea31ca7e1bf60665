"""
Release notification package for the claim bucketing engine.

Tells the downstream file generator when a bucket enters GENERATING
(NDJSON files, logging, in-memory capture for tests).
"""
