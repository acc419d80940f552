"""
PathDB Test Suite.

This package contains:
- unit/: Unit tests (codecs, governor, query engine, backends, registry)
- integration/: Integration tests (store, change feed, batches, repositories)
"""
