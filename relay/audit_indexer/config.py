"""
Configuration management for the Audit Indexer.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for connection settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep variable names compatible with existing deployments (PG_*, ES_*, QUEUE_*)
    - Document every new variable in the section docstring that reads it
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .events import EventColumns

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_json(name: str) -> Any:
    value = os.getenv(name)
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"{name} is not valid JSON: {e}")


class BulkAction(Enum):
    """Bulk verb used for every document.

    INDEX overwrites an existing document with the same id, CREATE refuses
    to (conflicts are treated as "already indexed").
    """

    INDEX = "index"
    CREATE = "create"


class DeletionMode(Enum):
    """How indexed rows are removed from the source table."""

    DISABLED = "disabled"
    PER_BATCH = "per_batch"
    HISTORIC_RANGE = "historic_range"


@dataclass(frozen=True)
class SourceConfig:
    """PostgreSQL source configuration.

    Attributes:
        host: Database host
        port: Database port
        database: Database name
        username: Database user
        password: Database password
        ssl: Require SSL for connections
        listen_channel: NOTIFY channel carrying full rows as JSON
        listen_channel_id: NOTIFY channel carrying only the primary key
            (payloads over the 8000 byte NOTIFY limit)
        uid_column: Primary key column
        timestamp_column: Timestamp column used for the watermark search
        order_by_column: Column the historic backfill is ordered by
        stream_column: Column naming the audited table of a row
        schema: Schema of the audit table
        table: Audit table name
        pool_size: Maximum connections in the query pool
    """

    host: str = "localhost"
    port: int = 5432
    database: str = "databasename"
    username: str = "root"
    password: str = ""
    ssl: bool = False
    listen_channel: str = "audit"
    listen_channel_id: str = "audit_id"
    uid_column: str = "event_id"
    timestamp_column: str = "action_timestamp"
    order_by_column: str = "action_timestamp"
    stream_column: str = "table_name"
    schema: str = "audit"
    table: str = "logged_actions"
    pool_size: int = 4

    @classmethod
    def from_env(cls) -> SourceConfig:
        """Load configuration from environment variables."""
        listen_channel = os.getenv("PG_LISTEN_TO", "audit")
        return cls(
            host=os.getenv("PG_HOST", "localhost"),
            port=int(os.getenv("PG_PORT", "5432")),
            database=os.getenv("PG_DATABASE", "databasename"),
            username=os.getenv("PG_USERNAME", "root"),
            password=os.getenv("PG_PASSWORD", ""),
            ssl=_env_flag("PG_SSL"),
            listen_channel=listen_channel,
            listen_channel_id=os.getenv("PG_LISTEN_TO_ID", f"{listen_channel}_id"),
            uid_column=os.getenv("PG_UID_COLUMN", "event_id"),
            timestamp_column=os.getenv("PG_TIMESTAMP_COLUMN", "action_timestamp"),
            order_by_column=os.getenv("PG_ORDER_BY_COLUMN", "action_timestamp"),
            stream_column=os.getenv("PG_STREAM_COLUMN", "table_name"),
            schema=os.getenv("PG_SCHEMA", "audit"),
            table=os.getenv("PG_TABLE", "logged_actions"),
            pool_size=int(os.getenv("PG_POOL_SIZE", "4")),
        )

    @property
    def columns(self) -> EventColumns:
        """Column names used to build change events."""
        return EventColumns(
            uid=self.uid_column,
            timestamp=self.timestamp_column,
            order_by=self.order_by_column,
            stream=self.stream_column,
            default_stream=self.table,
        )


@dataclass(frozen=True)
class DeletionConfig:
    """Source row deletion configuration.

    Attributes:
        delete_on_index: Delete source rows once they are indexed
        delete_after_historic: Only delete the historic backlog, as one
            ranged statement after it fully drained
        chunk_size: Maximum keys per DELETE statement (bind parameter limit)
    """

    delete_on_index: bool = False
    delete_after_historic: bool = False
    chunk_size: int = 34464

    @classmethod
    def from_env(cls) -> DeletionConfig:
        """Load configuration from environment variables."""
        return cls(
            delete_on_index=_env_flag("PG_DELETE_ON_INDEX"),
            delete_after_historic=_env_flag("PG_DELETE_AFTER_HISTORIC"),
            chunk_size=int(os.getenv("PG_DELETE_CHUNK_SIZE", "34464")),
        )

    @property
    def mode(self) -> DeletionMode:
        if not self.delete_on_index:
            return DeletionMode.DISABLED
        if self.delete_after_historic:
            return DeletionMode.HISTORIC_RANGE
        return DeletionMode.PER_BATCH


@dataclass(frozen=True)
class DocumentStoreConfig:
    """Elasticsearch destination configuration.

    Attributes:
        host: Elasticsearch host
        port: Elasticsearch port
        proto: Protocol (http or https)
        username: Basic auth username
        password: Basic auth password
        allow_insecure_ssl: Skip TLS certificate verification
        request_timeout: Request timeout in seconds
        index_prefix: Prefix of every index name
        index_append_table_name: Append the stream (table) name to the index
        index_date_suffix_format: strftime format appended to the index name
        label_name: Attribute stamped onto every document
        label: Value of the label attribute
        mapping: Mappings body used when creating an index
        pre_create_indices: Create indices before the watermark search
        bulk_action: Bulk verb used for documents
    """

    host: str = "localhost"
    port: int = 9200
    proto: str = "https"
    username: str | None = None
    password: str | None = None
    allow_insecure_ssl: bool = False
    request_timeout: float = 30.0
    index_prefix: str = "audit"
    index_append_table_name: bool = False
    index_date_suffix_format: str | None = None
    label_name: str | None = None
    label: str | None = None
    mapping: dict[str, Any] | None = None
    pre_create_indices: bool = True
    bulk_action: BulkAction = BulkAction.INDEX

    @classmethod
    def from_env(cls) -> DocumentStoreConfig:
        """Load configuration from environment variables."""
        action_str = os.getenv("ES_BULK_ACTION", "index").lower()
        try:
            bulk_action = BulkAction(action_str)
        except ValueError:
            raise ValueError(f"Invalid ES_BULK_ACTION '{action_str}'. Must be one of: index, create")

        return cls(
            host=os.getenv("ES_HOST", "localhost"),
            port=int(os.getenv("ES_PORT", "9200")),
            proto=os.getenv("ES_PROTO", "https"),
            username=os.getenv("ES_USERNAME") or None,
            password=os.getenv("ES_PASSWORD") or None,
            allow_insecure_ssl=_env_flag("ES_ALLOW_INSECURE_SSL"),
            request_timeout=float(os.getenv("ES_REQUEST_TIMEOUT", "30")),
            index_prefix=os.getenv("ES_INDEX_PREFIX", "audit"),
            index_append_table_name=_env_flag("ES_INDEX_APPEND_TABLE_NAME"),
            index_date_suffix_format=os.getenv("ES_INDEX_DATE_SUFFIX_FORMAT") or None,
            label_name=os.getenv("ES_LABEL_NAME") or None,
            label=os.getenv("ES_LABEL") or None,
            mapping=_env_json("ES_MAPPING"),
            pre_create_indices=_env_flag("ES_PRE_CREATE_INDICES", default=True),
            bulk_action=bulk_action,
        )

    @property
    def base_url(self) -> str:
        return f"{self.proto}://{self.host}:{self.port}"


@dataclass(frozen=True)
class BatchConfig:
    """Batching and flush configuration.

    Attributes:
        queue_limit: Items per bulk flush, also the flush trigger
        queue_max_bytes: Pending serialized bytes that trigger a flush (0 = off)
        max_post_bytes: Maximum bulk request body size (0 = unlimited)
        queue_timeout_seconds: Maximum time an item waits before a flush
        retry_delay_ms: Pause before a failed batch is retried by a size trigger
    """

    queue_limit: int = 500
    queue_max_bytes: int = 0
    max_post_bytes: int = 0
    queue_timeout_seconds: float = 120.0
    retry_delay_ms: int = 1000

    @classmethod
    def from_env(cls) -> BatchConfig:
        """Load configuration from environment variables."""
        return cls(
            queue_limit=int(os.getenv("QUEUE_LIMIT", "500")),
            queue_max_bytes=int(os.getenv("QUEUE_MAX_BYTES", "0")),
            max_post_bytes=int(os.getenv("ES_MAX_POST_BYTES", "0")),
            queue_timeout_seconds=float(os.getenv("QUEUE_TIMEOUT", "120")),
            retry_delay_ms=int(os.getenv("QUEUE_RETRY_DELAY_MS", "1000")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging and status reporting configuration.

    Attributes:
        debug: Show debug messages
        info: Show info messages (always on when debug is set)
        log_format: Log format (json, text)
        log_timestamp: Include timestamps in text logs
        status_interval_seconds: Interval of status update logs (0 = off)
    """

    debug: bool = False
    info: bool = True
    log_format: str = "json"
    log_timestamp: bool = False
    status_interval_seconds: int = 3600

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        debug = _env_flag("DEBUG")
        return cls(
            debug=debug,
            info=debug or _env_flag("INFO", default=True),
            log_format=os.getenv("LOG_FORMAT", "json").lower(),
            log_timestamp=_env_flag("LOG_TIMESTAMP"),
            status_interval_seconds=int(os.getenv("STATUS_UPDATE_INTERVAL", "3600")),
        )

    @property
    def log_level(self) -> int:
        if self.debug:
            return logging.DEBUG
        if self.info:
            return logging.INFO
        return logging.WARNING


@dataclass
class IndexerConfig:
    """Complete indexer configuration.

    Attributes:
        source: PostgreSQL configuration
        deletion: Source row deletion configuration
        store: Elasticsearch configuration
        batch: Batching configuration
        observability: Logging configuration
    """

    source: SourceConfig = field(default_factory=SourceConfig)
    deletion: DeletionConfig = field(default_factory=DeletionConfig)
    store: DocumentStoreConfig = field(default_factory=DocumentStoreConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> IndexerConfig:
        """Load complete configuration from environment variables.

        Returns:
            IndexerConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            source=SourceConfig.from_env(),
            deletion=DeletionConfig.from_env(),
            store=DocumentStoreConfig.from_env(),
            batch=BatchConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.batch.queue_limit < 1:
            raise ValueError("QUEUE_LIMIT must be at least 1")
        if self.batch.queue_timeout_seconds <= 0:
            raise ValueError("QUEUE_TIMEOUT must be positive")
        if self.batch.queue_max_bytes < 0 or self.batch.max_post_bytes < 0:
            raise ValueError("QUEUE_MAX_BYTES and ES_MAX_POST_BYTES must not be negative")

        if not 1 <= self.deletion.chunk_size <= 65535:
            raise ValueError("PG_DELETE_CHUNK_SIZE must be between 1 and 65535")
        if self.deletion.delete_after_historic and not self.deletion.delete_on_index:
            logger.warning("PG_DELETE_AFTER_HISTORIC has no effect without PG_DELETE_ON_INDEX")

        if self.source.listen_channel == self.source.listen_channel_id:
            raise ValueError("PG_LISTEN_TO and PG_LISTEN_TO_ID must differ")
        if not self.source.uid_column or not self.source.table:
            raise ValueError("PG_UID_COLUMN and PG_TABLE are required")

        if self.store.proto not in ("http", "https"):
            raise ValueError(f"Invalid ES_PROTO '{self.store.proto}'. Must be one of: http, https")
        if not self.store.index_prefix:
            raise ValueError("ES_INDEX_PREFIX is required")
        if bool(self.store.label_name) != bool(self.store.label):
            raise ValueError("ES_LABEL_NAME and ES_LABEL must be set together")
        if self.store.mapping is not None and not isinstance(self.store.mapping, dict):
            raise ValueError("ES_MAPPING must be a JSON object")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Indexer configuration loaded",
            extra={
                "pg_host": self.source.host,
                "pg_database": self.source.database,
                "pg_table": f"{self.source.schema}.{self.source.table}",
                "pg_channels": [self.source.listen_channel, self.source.listen_channel_id],
                "deletion_mode": self.deletion.mode.value,
                "es_url": self.store.base_url,
                "es_auth": bool(self.store.username),
                "es_index_prefix": self.store.index_prefix,
                "es_bulk_action": self.store.bulk_action.value,
                "queue_limit": self.batch.queue_limit,
                "queue_timeout": self.batch.queue_timeout_seconds,
                "log_level": logging.getLevelName(self.observability.log_level),
            },
        )
