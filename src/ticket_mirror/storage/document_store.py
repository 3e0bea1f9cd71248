"""SQLite-backed JSON document store.

Each collection is a table of ``(doc_key, document)`` rows where ``document``
holds the JSON text. Filters and indexes address document fields through
``json_extract`` expressions.
"""

from __future__ import annotations

import re
import sqlite3
import threading
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

from ticket_mirror.utils.serialization import dumps_document, loads_document

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FIELD = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

_COMPARISONS = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}

Document = dict[str, Any]
Filter = Mapping[str, Any]
IndexSpec = Sequence[tuple[str, int | str]]
SortSpec = Sequence[tuple[str, int]]


class DocumentStore(Protocol):
    def upsert(self, collection: str, key: str, document: Document) -> None: ...

    def insert(self, collection: str, document: Document) -> str: ...

    def find(
        self,
        collection: str,
        filter: Filter | None = None,
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Document]: ...

    def find_one(self, collection: str, filter: Filter) -> Document | None: ...

    def count(self, collection: str, filter: Filter | None = None) -> int: ...

    def create_index(
        self, collection: str, spec: IndexSpec, *, unique: bool = False
    ) -> str: ...

    def atomic(self) -> Any: ...

    def close(self) -> None: ...


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid collection name: {name!r}")
    return name


def _field_expr(field: str) -> str:
    if not _FIELD.match(field):
        raise ValueError(f"Invalid field name: {field!r}")
    return f"json_extract(document, '$.{field}')"


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqliteDocumentStore:
    def __init__(self, path: str, wal: bool = True) -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # Reentrant so atomic() blocks can call the write helpers.
        self._lock = threading.RLock()
        self._depth = 0
        self._closed = False
        self._collections: set[str] = set()
        self._text_fields: dict[str, tuple[str, ...]] = {}
        if wal and path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_collection(self, collection: str) -> str:
        table = _check_identifier(collection)
        if table not in self._collections:
            self._conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS "{table}" (
                    doc_key TEXT PRIMARY KEY,
                    document TEXT NOT NULL
                )
                """
            )
            self._collections.add(table)
        return table

    def _commit(self) -> None:
        if self._depth == 0:
            self._conn.commit()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Group every write inside the block into one commit."""
        with self._lock:
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.rollback()
                    # Tables created inside the block may be gone.
                    self._collections.clear()
                raise
            self._depth -= 1
            if self._depth == 0:
                self._conn.commit()

    def upsert(self, collection: str, key: str, document: Document) -> None:
        with self._lock:
            table = self._ensure_collection(collection)
            self._conn.execute(
                f"""
                INSERT INTO "{table}" (doc_key, document) VALUES (?, ?)
                ON CONFLICT(doc_key) DO UPDATE SET document = excluded.document
                """,
                (key, dumps_document(document)),
            )
            self._commit()

    def insert(self, collection: str, document: Document) -> str:
        key = uuid.uuid4().hex
        with self._lock:
            table = self._ensure_collection(collection)
            self._conn.execute(
                f'INSERT INTO "{table}" (doc_key, document) VALUES (?, ?)',
                (key, dumps_document(document)),
            )
            self._commit()
        return key

    def get(self, collection: str, key: str) -> Document | None:
        with self._lock:
            table = self._ensure_collection(collection)
            row = self._conn.execute(
                f'SELECT document FROM "{table}" WHERE doc_key = ?', (key,)
            ).fetchone()
        if row is None:
            return None
        return loads_document(row["document"])

    def find(
        self,
        collection: str,
        filter: Filter | None = None,
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Document]:
        where, params = self._compile_filter(collection, filter or {})
        query = f'SELECT document FROM "{_check_identifier(collection)}"{where}'
        if sort:
            order = ", ".join(
                f"{_field_expr(field)} {'DESC' if direction < 0 else 'ASC'}"
                for field, direction in sort
            )
            query += f" ORDER BY {order}"
        if limit is not None or skip:
            query += " LIMIT ? OFFSET ?"
            params.extend([-1 if limit is None else limit, skip])
        with self._lock:
            self._ensure_collection(collection)
            rows = self._conn.execute(query, params).fetchall()
        return [loads_document(row["document"]) for row in rows]

    def find_one(self, collection: str, filter: Filter) -> Document | None:
        found = self.find(collection, filter, limit=1)
        return found[0] if found else None

    def count(self, collection: str, filter: Filter | None = None) -> int:
        where, params = self._compile_filter(collection, filter or {})
        with self._lock:
            table = self._ensure_collection(collection)
            row = self._conn.execute(f'SELECT COUNT(*) FROM "{table}"{where}', params).fetchone()
        return int(row[0])

    def create_index(
        self, collection: str, spec: IndexSpec, *, unique: bool = False
    ) -> str:
        """Create an expression index; a ``"text"`` direction registers search fields."""
        table = _check_identifier(collection)
        text_fields = tuple(field for field, direction in spec if direction == "text")
        if text_fields:
            for field in text_fields:
                _field_expr(field)
            self._text_fields[table] = text_fields
            return f"{table}_text"

        parts: list[str] = []
        for field, direction in spec:
            suffix = "DESC" if direction == -1 else "ASC"
            parts.append(f"{_field_expr(field)} {suffix}")
        name = "idx_{}_{}".format(
            table, "_".join(field.replace(".", "_") for field, _ in spec)
        )
        with self._lock:
            self._ensure_collection(table)
            self._conn.execute(
                f'CREATE {"UNIQUE " if unique else ""}INDEX IF NOT EXISTS "{name}" '
                f'ON "{table}" ({", ".join(parts)})'
            )
            self._commit()
        return name

    def _compile_filter(self, collection: str, filter: Filter) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for field, condition in filter.items():
            if field == "$text":
                clauses.append(self._compile_text(collection, condition, params))
                continue
            expr = _field_expr(field)
            if isinstance(condition, Mapping):
                for op, value in condition.items():
                    clauses.append(self._compile_operator(expr, op, value, params))
            elif condition is None:
                clauses.append(f"{expr} IS NULL")
            else:
                clauses.append(f"{expr} = ?")
                params.append(condition)
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    @staticmethod
    def _compile_operator(expr: str, op: str, value: Any, params: list[Any]) -> str:
        if op == "$in":
            values = list(value)
            if not values:
                return "0"
            params.extend(values)
            return f"{expr} IN ({', '.join('?' for _ in values)})"
        if op == "$ne":
            if value is None:
                return f"{expr} IS NOT NULL"
            params.append(value)
            return f"({expr} IS NULL OR {expr} != ?)"
        if op in _COMPARISONS:
            params.append(value)
            return f"{expr} {_COMPARISONS[op]} ?"
        raise ValueError(f"Unsupported filter operator: {op}")

    def _compile_text(self, collection: str, condition: Any, params: list[Any]) -> str:
        fields = self._text_fields.get(collection)
        if not fields:
            raise ValueError(f"Collection {collection!r} has no text index")
        if isinstance(condition, Mapping):
            term = str(condition.get("$search", ""))
        else:
            term = str(condition)
        pattern = f"%{_escape_like(term)}%"
        parts = []
        for field in fields:
            parts.append(f"{_field_expr(field)} LIKE ? ESCAPE '\\'")
            params.append(pattern)
        return "(" + " OR ".join(parts) + ")"

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True
