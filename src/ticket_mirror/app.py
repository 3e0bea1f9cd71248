"""Application context assembly."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from ticket_mirror.config import Settings, load_settings
from ticket_mirror.events.bus import LoggingEventBus
from ticket_mirror.gate.breaker import FailureGate, GateConfig
from ticket_mirror.remote.client import TableApiClient
from ticket_mirror.rules.loader import load_rules
from ticket_mirror.rules.models import RecordRules
from ticket_mirror.storage.document_store import SqliteDocumentStore
from ticket_mirror.storage.repository import RecordRepository
from ticket_mirror.sync.reconciler import Reconciler, SyncOptions


@dataclass
class AppContext:
    """Application-wide dependency container.

    Initialized once at startup and cached for the lifetime of the process.
    """

    settings: Settings
    store: SqliteDocumentStore
    rules: RecordRules
    repository: RecordRepository
    gate: FailureGate
    remote: TableApiClient
    event_bus: LoggingEventBus
    reconciler: Reconciler


@lru_cache(maxsize=1)
def get_app_context() -> AppContext:
    """Get or create the application context."""
    settings = load_settings()
    rules = load_rules(settings.rules.path)

    remote = TableApiClient.from_settings(settings.remote)
    store = SqliteDocumentStore(settings.storage.sqlite_path, wal=settings.storage.sqlite_wal)
    repository = RecordRepository(store, rules)
    # One gate for the remote system: every table shares its failure domain.
    gate = FailureGate(GateConfig.from_settings(settings.gate), name="remote")
    event_bus = LoggingEventBus()

    reconciler = Reconciler(
        remote,
        repository,
        gate,
        event_bus=event_bus,
        options=SyncOptions.from_settings(settings.sync),
        max_workers=settings.sync.max_workers,
        actor=settings.sync.actor,
    )

    return AppContext(
        settings=settings,
        store=store,
        rules=rules,
        repository=repository,
        gate=gate,
        remote=remote,
        event_bus=event_bus,
        reconciler=reconciler,
    )
