from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timezone
from typing import Any

import pytest

from ticket_mirror.domain.records import CanonicalRecord, RecordType
from ticket_mirror.rules.models import RecordRules
from ticket_mirror.storage.document_store import SqliteDocumentStore
from ticket_mirror.storage.repository import RecordRepository


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRemote:
    """In-memory remote system keyed by record type."""

    def __init__(self) -> None:
        self.records: dict[RecordType, list[dict[str, Any]]] = {rt: [] for rt in RecordType}
        self.queries: list[tuple[RecordType, str, datetime | None]] = []
        self.query_error: Exception | None = None

    def add(self, record_type: RecordType, raw: dict[str, Any]) -> None:
        self.records[record_type].append(raw)

    async def query(
        self, record_type: RecordType, filter_expression: str, window_start: datetime | None
    ) -> list[dict[str, Any]]:
        self.queries.append((record_type, filter_expression, window_start))
        if self.query_error is not None:
            raise self.query_error
        return list(self.records[record_type])

    async def fetch_one(self, record_type: RecordType, external_id: str) -> dict[str, Any] | None:
        for raw in self.records[record_type]:
            if raw["sys_id"]["value"] == external_id:
                return raw
        return None


class RecordingBus:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, topic: str, event: dict[str, Any]) -> None:
        self.events.append((topic, event))


def pair(value: str, display: str | None = None) -> dict[str, str]:
    return {"value": value, "display_value": value if display is None else display}


def make_raw(
    sys_id: str,
    *,
    number: str | None = None,
    state: str = "2",
    priority: str = "3",
    updated: str = "2024-05-01 10:00:00",
    **extra: dict[str, str],
) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "sys_id": pair(sys_id),
        "number": pair(number or f"INC{sys_id}"),
        "state": pair(state, "In Progress"),
        "priority": pair(priority, "3 - Moderate"),
        "short_description": pair("Mail is down"),
        "description": pair("Users cannot send mail"),
        "work_notes": pair(""),
        "assignment_group": pair("grp-1", "Messaging"),
        "assigned_to": pair("usr-9", "Ana Lima"),
        "caller_id": pair("usr-1", "Caller One"),
        "opened_at": pair("2024-05-01 08:00:00"),
        "sys_updated_on": pair(updated),
    }
    raw.update(extra)
    return raw


def make_record(
    external_id: str = "abc123",
    record_type: RecordType = RecordType.INCIDENT,
    *,
    updated: datetime | None = None,
    **overrides: Any,
) -> CanonicalRecord:
    values: dict[str, Any] = {
        "external_id": external_id,
        "display_number": f"INC{external_id}",
        "record_type": record_type,
        "state": "2",
        "priority": "3",
        "short_description": "Mail is down",
        "description": "Users cannot send mail",
        "caller": "usr-1",
        "assignment_group": "grp-1",
        "opened_at": datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc),
        "remote_updated_at": updated or datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return CanonicalRecord(**values)


@pytest.fixture
def store(tmp_path):
    sqlite_store = SqliteDocumentStore(str(tmp_path / "mirror.sqlite"))
    yield sqlite_store
    sqlite_store.close()


@pytest.fixture
def rules() -> RecordRules:
    return RecordRules()


@pytest.fixture
def repository(store, rules) -> RecordRepository:
    return RecordRepository(store, rules)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()
