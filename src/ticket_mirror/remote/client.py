"""Remote system-of-record client."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

import httpx

from ticket_mirror.config import RemoteSettings
from ticket_mirror.domain.records import RecordType
from ticket_mirror.remote.filters import build_window_query
from ticket_mirror.utils.masking import redact_sensitive_fields

logger = logging.getLogger(__name__)

RawRecord = dict[str, Any]


class RemoteClient(Protocol):
    async def query(
        self,
        record_type: RecordType,
        filter_expression: str,
        window_start: datetime | None,
    ) -> list[RawRecord]: ...

    async def fetch_one(self, record_type: RecordType, external_id: str) -> RawRecord | None: ...


class RemoteResponseError(RuntimeError):
    """Raised when the remote system answers with an unexpected body."""


class TableApiClient:
    """Table API client over a shared ``httpx.AsyncClient``.

    Records are requested with ``sysparm_display_value=all`` so every field
    arrives as a ``{"value", "display_value"}`` pair. HTTP errors propagate
    unchanged so a wrapping failure gate can count them.
    """

    def __init__(
        self,
        base_url: str,
        *,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 30.0,
        page_size: int = 1000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        auth = httpx.BasicAuth(username, password or "") if username else None
        self._page_size = page_size
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/api/now/table/",
            auth=auth,
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: RemoteSettings) -> "TableApiClient":
        if not settings.base_url:
            raise RuntimeError("REMOTE_BASE_URL is required to reach the remote system")
        return cls(
            settings.base_url,
            username=settings.username,
            password=settings.password,
            timeout=settings.timeout_seconds,
            page_size=settings.page_size,
        )

    async def query(
        self,
        record_type: RecordType,
        filter_expression: str,
        window_start: datetime | None,
    ) -> list[RawRecord]:
        encoded_query = build_window_query(filter_expression, window_start)
        records: list[RawRecord] = []
        offset = 0
        while True:
            response = await self._client.get(
                record_type.value,
                params={
                    "sysparm_query": encoded_query,
                    "sysparm_display_value": "all",
                    "sysparm_exclude_reference_link": "true",
                    "sysparm_limit": str(self._page_size),
                    "sysparm_offset": str(offset),
                },
            )
            response.raise_for_status()
            page = self._result(response)
            if not isinstance(page, list):
                raise RemoteResponseError(f"Expected a list result for {record_type.value}")
            records.extend(page)
            if len(page) < self._page_size:
                break
            offset += len(page)

        logger.info(
            "Fetched %d %s records (query=%s)", len(records), record_type.value, encoded_query
        )
        return records

    async def fetch_one(self, record_type: RecordType, external_id: str) -> RawRecord | None:
        response = await self._client.get(
            f"{record_type.value}/{external_id}",
            params={
                "sysparm_display_value": "all",
                "sysparm_exclude_reference_link": "true",
            },
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        result = self._result(response)
        if not isinstance(result, dict):
            raise RemoteResponseError(f"Expected an object result for {record_type.value}")
        return result

    @staticmethod
    def _result(response: httpx.Response) -> Any:
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteResponseError("Remote response is not valid JSON") from exc
        if not isinstance(body, dict) or "result" not in body:
            logger.warning(
                "Unexpected remote response body: %s",
                redact_sensitive_fields(body),
            )
            raise RemoteResponseError("Remote response has no 'result' member")
        return body["result"]

    async def aclose(self) -> None:
        await self._client.aclose()
