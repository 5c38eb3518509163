"""Service test fixtures: in-memory backend, frozen clock, wired services.

Invariants:
    - Every test gets a fresh InMemoryBackend (no state shared between tests)
    - The clock only moves when a test calls clock.advance()

Design Decisions:
    - Services built by hand over one store, the way RuleEngine wires them, so a
      test can use a single service without starting the sweep
"""

from datetime import datetime, timedelta, timezone

import pytest

from exception_rules.core.domain_types import RuleScope, RuleType
from exception_rules.infrastructure.memory_backend import InMemoryBackend
from exception_rules.schemas.rule import RuleCreate
from exception_rules.services.duplication_detector import DuplicationDetector
from exception_rules.services.integrity_checker import IntegrityChecker
from exception_rules.services.recovery_coordinator import RecoveryCoordinator
from exception_rules.services.rule_store import RuleStore
from exception_rules.services.scope_resolver import ScopeResolver
from exception_rules.services.state_reconciler import StateReconciler


class FrozenClock:
    """Callable clock that advances only on request."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def store(backend, settings, clock):
    return RuleStore(backend, settings, clock)


@pytest.fixture
def detector(store, settings):
    return DuplicationDetector(store, settings)


@pytest.fixture
def resolver(store, detector):
    return ScopeResolver(store, detector)


@pytest.fixture
def reconciler(store, settings, clock):
    return StateReconciler(store, settings, clock)


@pytest.fixture
def checker(store, clock):
    return IntegrityChecker(store, clock)


@pytest.fixture
def coordinator(store, reconciler, checker, detector):
    return RecoveryCoordinator(store, reconciler, checker, detector)


@pytest.fixture
def make_rule(store):
    """Create a rule through the store with sensible defaults."""
    async def _make(
        name: str,
        rule_type: RuleType = RuleType.PAUSE_ONLY,
        scope: RuleScope = RuleScope.GLOBAL,
        task_id: str | None = None,
        description: str | None = None,
    ):
        return await store.create_rule(RuleCreate(
            name=name, type=rule_type, scope=scope, task_id=task_id, description=description,
        ))
    return _make
