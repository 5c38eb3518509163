"""RuleEngine: composition root for one independent rule engine instance.

Invariants:
    - Every registry (states, pending creations, id mappings, histories) belongs to
      exactly one engine instance; two engines never share state
    - RuleStore is the only component handed the backend
    - The sweep task only calls StateReconciler.cleanup_expired_states
    - start() is idempotent; stop() cancels the sweep task only, never an operation

Design Decisions:
    - Async context manager mirrors an application lifespan: sweep runs while inside
    - open_engine builds the SQL-backed engine from Settings and disposes the pool on exit
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Callable

from exception_rules.config import Settings, get_settings
from exception_rules.core.error_classification import ErrorClassifier
from exception_rules.core.repository_protocols import CollectionBackend
from exception_rules.infrastructure.database import DatabaseSessionManager
from exception_rules.infrastructure.observability import setup_logging
from exception_rules.infrastructure.sql_backend import SqlCollectionBackend
from exception_rules.services.duplication_detector import DuplicationDetector
from exception_rules.services.integrity_checker import IntegrityChecker
from exception_rules.services.recovery_coordinator import RecoveryCoordinator
from exception_rules.services.rule_store import RuleStore, utc_now
from exception_rules.services.scope_resolver import ScopeResolver
from exception_rules.services.state_reconciler import StateReconciler
from exception_rules.services.task_lifecycle import TaskLifecycle
from exception_rules.services.usage_analytics import UsageAnalytics

logger = logging.getLogger(__name__)


class RuleEngine:
    """Wires the services around one backend and runs the periodic sweep."""

    def __init__(
        self,
        backend: CollectionBackend,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self.store = RuleStore(backend, self.settings, clock)
        self.detector = DuplicationDetector(self.store, self.settings)
        self.scopes = ScopeResolver(self.store, self.detector)
        self.reconciler = StateReconciler(self.store, self.settings, clock)
        self.integrity = IntegrityChecker(self.store, clock)
        self.classifier = ErrorClassifier(self.settings.error_history_size)
        self.recovery = RecoveryCoordinator(
            self.store, self.reconciler, self.integrity, self.detector, self.classifier,
        )
        self.lifecycle = TaskLifecycle(self.store)
        self.analytics = UsageAnalytics(self.store, clock)
        self._sweeper: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def run_sweep(self) -> int:
        return self.reconciler.cleanup_expired_states()

    async def _sweep_loop(self) -> None:
        interval = self.settings.cleanup_interval_seconds
        while True:
            await asyncio.sleep(interval)
            removed = self.run_sweep()
            if removed:
                logger.info(f"Sweep removed {removed} expired entries")

    async def start(self) -> None:
        if self.running:
            return
        self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info(
            f"Rule engine started (sweep every {self.settings.cleanup_interval_seconds}s)",
        )

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None
        logger.info("Rule engine stopped")

    async def __aenter__(self) -> "RuleEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


@asynccontextmanager
async def open_engine(
    settings: Settings | None = None,
    configure_logging: bool = False,
    create_tables: bool = False,
) -> AsyncGenerator[RuleEngine, None]:
    """SQL-backed engine for the configured database_url, running until exit."""
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings.log_level, settings.log_format)
    db = DatabaseSessionManager(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    try:
        if create_tables:
            await db.create_all()
        async with RuleEngine(SqlCollectionBackend(db), settings) as engine:
            yield engine
    finally:
        await db.dispose()
