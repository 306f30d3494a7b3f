"""
Live change capture over LISTEN/NOTIFY.

The audit trigger publishes every new row on one of two channels:
- the small channel carries the full row as JSON
- the big channel carries only the primary key, for rows whose JSON
  exceeds the 8000 byte NOTIFY payload limit; the row is fetched back

Invariants:
    - Notifications are handled one at a time, in arrival order
    - A bad notification, or a failed lookup of a big-channel row, is
      logged and dropped; it never stops the listener
    - Losing the source connection ends the listener with SourceConnectionError
"""

from __future__ import annotations

import asyncio
import json
import logging

from ..events import ChangeEvent, EventColumns
from ..sink.flush import BatchFlushEngine
from .base import Notification, SourceClient, SourceConnectionError, SourceError
from .statements import AuditStatements

logger = logging.getLogger(__name__)


class LiveCaptureListener:
    """Turns notifications into change events for the flush engine.

    Attributes:
        small_channel: Channel with the full row inline
        big_channel: Channel with only the primary key

    Example:
        >>> listener = LiveCaptureListener(source, statements, columns, engine,
        ...                                "audit", "audit_id")
        >>> task = asyncio.create_task(listener.start())
        >>> ...
        >>> await listener.stop()
    """

    def __init__(
        self,
        source: SourceClient,
        statements: AuditStatements,
        columns: EventColumns,
        engine: BatchFlushEngine,
        small_channel: str,
        big_channel: str,
    ) -> None:
        self.source = source
        self.statements = statements
        self.columns = columns
        self.engine = engine
        self.small_channel = small_channel
        self.big_channel = big_channel

        self._running = False
        self._received_count = 0
        self._dropped_count = 0

    async def start(self) -> None:
        """Consume notifications until stop() is called.

        Raises:
            SourceConnectionError: If the LISTEN connection was lost
        """
        if self._running:
            logger.warning("Listener already running")
            return

        self._running = True
        logger.info(
            "Listening for changes",
            extra={"channels": [self.small_channel, self.big_channel]},
        )
        try:
            async for notification in self.source.listen([self.small_channel, self.big_channel]):
                if not self._running:
                    break
                await self.handle(notification)
        except asyncio.CancelledError:
            logger.info("Listener cancelled")
            raise
        except SourceConnectionError as e:
            logger.critical(f"Lost the LISTEN connection: {e}")
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        """Unsubscribe from both channels."""
        if self._running:
            logger.info("Stopping listener")
        self._running = False
        await self.source.unlisten()

    async def handle(self, notification: Notification) -> None:
        """Enqueue the event carried (or referenced) by one notification."""
        self._received_count += 1
        if notification.channel == self.small_channel:
            event = self._decode_inline(notification)
        elif notification.channel == self.big_channel:
            event = await self._fetch_referenced(notification)
        else:
            logger.warning(f"Notification on unexpected channel {notification.channel}")
            event = None

        if event is None:
            self._dropped_count += 1
            return

        self.engine.enqueue(event)
        logger.debug(
            "Captured change",
            extra={"channel": notification.channel, "stream": event.stream_name, "key": event.primary_key},
        )

    def _decode_inline(self, notification: Notification) -> ChangeEvent | None:
        try:
            row = json.loads(notification.payload)
            if not isinstance(row, dict):
                raise ValueError(f"expected a JSON object, got {type(row).__name__}")
            return ChangeEvent.from_row(row, self.columns)
        except ValueError as e:
            logger.error(
                f"Dropping malformed notification: {e}",
                extra={"channel": notification.channel, "payload": notification.payload[:200]},
            )
            return None

    async def _fetch_referenced(self, notification: Notification) -> ChangeEvent | None:
        try:
            key = int(notification.payload.strip())
        except ValueError:
            logger.error(
                "Dropping notification without a primary key",
                extra={"channel": notification.channel, "payload": notification.payload[:200]},
            )
            return None

        try:
            rows = await self.source.query(self.statements.fetch(key))
        except SourceConnectionError:
            raise
        except SourceError as e:
            logger.error(
                f"Unable to load row {key}, dropping notification: {e}",
                extra={"channel": notification.channel, "key": key},
            )
            return None
        if not rows:
            logger.error(
                f"Row {key} referenced by a notification no longer exists",
                extra={"channel": notification.channel, "key": key},
            )
            return None
        try:
            return ChangeEvent.from_row(rows[0], self.columns)
        except ValueError as e:
            logger.error(f"Dropping unreadable row {key}: {e}", extra={"key": key})
            return None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, int]:
        return {"received": self._received_count, "dropped": self._dropped_count}
