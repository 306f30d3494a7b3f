"""
Backlog CLI tool for the Audit Indexer.

Reports how far Elasticsearch is behind the audit table: the watermark
the indexer would resume from and the number of rows above it.

Usage:
    audit-indexer-backlog [--json] [-v]

Invariants:
    - Read-only: never creates indices, never deletes rows
    - Uses the same environment variables as the indexer
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, dataclass

from ..config import IndexerConfig
from ..sink import (
    ContainerNaming,
    DocumentStoreClient,
    DocumentStoreError,
    WatermarkError,
    WatermarkResolver,
    create_document_store,
)
from ..source import AuditStatements, SourceClient, SourceError, create_source

logger = logging.getLogger(__name__)


@dataclass
class BacklogReport:
    """Result of a backlog check.

    Attributes:
        index_pattern: Indices the watermark was read from
        watermark: Highest indexed key (None when nothing is indexed)
        pending_rows: Rows in the audit table above the watermark
        table: Audit table checked
    """

    index_pattern: str
    watermark: int | None
    pending_rows: int
    table: str


class BacklogTool:
    """Compares the document store watermark with the audit table.

    Example:
        >>> tool = BacklogTool(IndexerConfig.from_env())
        >>> report = await tool.check()
        >>> print(report.pending_rows)
    """

    def __init__(
        self,
        config: IndexerConfig,
        source: SourceClient | None = None,
        store: DocumentStoreClient | None = None,
    ) -> None:
        self.config = config
        self.source = source or create_source(config.source)
        self.store = store or create_document_store(config.store)

    async def check(self) -> BacklogReport:
        """Resolve the watermark and count the rows above it.

        Raises:
            WatermarkError: If the store could not be read
            SourceError: If the audit table could not be read
        """
        source_config = self.config.source
        columns = source_config.columns
        statements = AuditStatements(source_config.schema, source_config.table, columns)
        resolver = WatermarkResolver(
            store=self.store,
            naming=ContainerNaming.from_config(self.config.store),
            columns=columns,
            pre_create=False,
            label_name=self.config.store.label_name,
            label=self.config.store.label,
        )

        await self.store.connect()
        await self.source.connect()
        try:
            watermark = await resolver.resolve([])
            rows = await self.source.query(statements.count_after(watermark.last_confirmed_key))
        finally:
            await self.source.close()
            await self.store.close()

        return BacklogReport(
            index_pattern=watermark.stream_name,
            watermark=watermark.last_confirmed_key,
            pending_rows=int(rows[0]["total"]) if rows else 0,
            table=f"{source_config.schema}.{source_config.table}",
        )


def main() -> None:
    """CLI entry point for the backlog tool."""
    parser = argparse.ArgumentParser(
        description="Show how many audit rows are not yet indexed in Elasticsearch"
    )
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        config = IndexerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    tool = BacklogTool(config)
    try:
        report = asyncio.run(tool.check())
    except (WatermarkError, SourceError, DocumentStoreError) as e:
        print(f"Backlog check failed: {e}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(asdict(report)))
    else:
        print(f"Table: {report.table}")
        print(f"  Index pattern: {report.index_pattern}")
        print(f"  Watermark: {report.watermark if report.watermark is not None else 'none'}")
        print(f"  Pending rows: {report.pending_rows}")
    sys.exit(0)


if __name__ == "__main__":
    main()
