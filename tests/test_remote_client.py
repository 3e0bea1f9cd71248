from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from ticket_mirror.config import RemoteSettings
from ticket_mirror.domain.records import RecordType
from ticket_mirror.remote.client import RemoteResponseError, TableApiClient
from ticket_mirror.remote.filters import build_delta_filter, build_window_query


def _client(handler, page_size: int = 2) -> TableApiClient:
    return TableApiClient(
        "https://example.test/",
        username="svc",
        password="secret",
        page_size=page_size,
        transport=httpx.MockTransport(handler),
    )


def test_build_delta_filter() -> None:
    assert build_delta_filter(["1", "2", "3"]) == "state=1^ORstate=2^ORstate=3"
    assert build_delta_filter([]) == ""


def test_build_window_query() -> None:
    start = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    assert build_window_query("state=1^ORstate=2", start) == (
        "sys_updated_on>=2024-05-01 09:00:00^state=1^ORstate=2^ORDERBYsys_updated_on"
    )
    assert build_window_query("", None) == "ORDERBYsys_updated_on"


@pytest.mark.asyncio
async def test_query_paginates_until_short_page() -> None:
    seen: list[httpx.Request] = []
    rows = [{"sys_id": {"value": str(i)}} for i in range(5)]

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        offset = int(request.url.params["sysparm_offset"])
        return httpx.Response(200, json={"result": rows[offset : offset + 2]})

    client = _client(handler)
    start = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    records = await client.query(RecordType.INCIDENT, "state=1", start)
    await client.aclose()

    assert len(records) == 5
    assert [r.url.params["sysparm_offset"] for r in seen] == ["0", "2", "4"]
    first = seen[0]
    assert first.url.path == "/api/now/table/incident"
    assert first.url.params["sysparm_display_value"] == "all"
    assert first.url.params["sysparm_limit"] == "2"
    assert first.url.params["sysparm_query"].startswith("sys_updated_on>=2024-05-01 09:00:00^")
    assert first.headers["Authorization"].startswith("Basic ")


@pytest.mark.asyncio
async def test_query_http_error_propagates() -> None:
    client = _client(lambda request: httpx.Response(503, json={"error": "busy"}))

    with pytest.raises(httpx.HTTPStatusError):
        await client.query(RecordType.CHANGE_TASK, "", None)
    await client.aclose()


@pytest.mark.asyncio
async def test_query_rejects_body_without_result() -> None:
    client = _client(lambda request: httpx.Response(200, json={"token": "x"}))

    with pytest.raises(RemoteResponseError):
        await client.query(RecordType.INCIDENT, "", None)
    await client.aclose()


@pytest.mark.asyncio
async def test_fetch_one() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/sc_task/known"):
            return httpx.Response(200, json={"result": {"sys_id": {"value": "known"}}})
        return httpx.Response(404, json={"error": {"message": "No Record found"}})

    client = _client(handler)
    assert await client.fetch_one(RecordType.SERVICE_TASK, "known") == {
        "sys_id": {"value": "known"}
    }
    assert await client.fetch_one(RecordType.SERVICE_TASK, "missing") is None
    await client.aclose()


def test_from_settings_requires_base_url() -> None:
    with pytest.raises(RuntimeError, match="REMOTE_BASE_URL"):
        TableApiClient.from_settings(RemoteSettings())
