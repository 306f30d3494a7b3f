"""
Audit Indexer Test Suite.

This package contains:
- unit/: Unit tests (in-memory source and document store)
- integration/: Full indexer lifecycle over in-memory collaborators
- e2e/: End-to-end tests (real PostgreSQL and Elasticsearch)
"""
