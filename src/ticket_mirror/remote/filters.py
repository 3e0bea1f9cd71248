"""Encoded-query builders for the remote Table API."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from ticket_mirror.utils.time import ensure_utc

_REMOTE_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def build_delta_filter(states: Iterable[str]) -> str:
    """OR-join state conditions: ``state=1^ORstate=2``."""
    conditions = [f"state={state}" for state in states]
    return "^OR".join(conditions)


def format_remote_datetime(value: datetime) -> str:
    return ensure_utc(value).strftime(_REMOTE_DATETIME_FORMAT)


def build_window_query(filter_expression: str, window_start: datetime | None) -> str:
    """Prefix the updated-since condition so the state OR-group stays grouped."""
    parts: list[str] = []
    if window_start is not None:
        parts.append(f"sys_updated_on>={format_remote_datetime(window_start)}")
    if filter_expression:
        parts.append(filter_expression)
    parts.append("ORDERBYsys_updated_on")
    return "^".join(parts)
