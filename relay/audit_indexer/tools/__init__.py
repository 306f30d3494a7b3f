"""
CLI tools for Audit Indexer operations.

This module provides command-line tools for:
- backlog: Compare the Elasticsearch watermark with the audit table

Invariants:
    - Tools never modify the source table or the indices
"""

from .backlog_cli import BacklogReport, BacklogTool

__all__ = ["BacklogReport", "BacklogTool"]
