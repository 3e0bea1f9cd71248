"""Change notification bus."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from ticket_mirror.domain.records import AuditAction, RecordType

logger = logging.getLogger(__name__)


class EventBus(Protocol):
    async def publish(self, topic: str, event: dict[str, Any]) -> None: ...


def record_topic(record_type: RecordType, action: AuditAction) -> str:
    return f"records.{record_type.value}.{action.value}"


class LoggingEventBus:
    """Default bus: writes each event to the log and keeps a running count."""

    def __init__(self) -> None:
        self.published = 0

    async def publish(self, topic: str, event: dict[str, Any]) -> None:
        self.published += 1
        logger.debug(
            "Event %s: %s %s (%d fields)",
            topic,
            event.get("record_type"),
            event.get("external_id"),
            len(event.get("changes") or {}),
        )
