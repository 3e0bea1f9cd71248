from __future__ import annotations

import logging

import pytest

from ticket_mirror.domain.records import AuditAction, RecordType
from ticket_mirror.events.bus import LoggingEventBus, record_topic


def test_record_topic() -> None:
    assert record_topic(RecordType.SERVICE_TASK, AuditAction.UPDATED) == "records.sc_task.updated"


@pytest.mark.asyncio
async def test_logging_bus_logs_events(caplog) -> None:
    bus = LoggingEventBus()
    with caplog.at_level(logging.DEBUG, logger="ticket_mirror.events.bus"):
        await bus.publish(
            "records.incident.created",
            {"external_id": "r1", "record_type": "incident", "changes": {"state": {"new": "1"}}},
        )

    assert bus.published == 1
    assert "records.incident.created" in caplog.text
