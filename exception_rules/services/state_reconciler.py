"""StateReconciler: optimistic rule creation and temporary-to-real id resolution.

Invariants:
    - Exactly one asyncio.Task per temporary id; every caller awaits that same task
    - Waiters await through asyncio.shield: a cancelled or timed-out waiter never
      cancels the creation
    - Bookkeeping (state, mapping, pending removal) happens inside the task, so it is
      complete before any waiter resumes
    - A failed creation keeps its original exception; wait_for_creation re-raises it
    - cleanup_expired_states forgets entries older than the TTL and never touches a task
    - No automatic retry: resubmission is the caller's decision

Design Decisions:
    - Registries are instance fields: independent reconcilers never share state
    - OptimisticCreation is an explicit two-part handle (provisional rule + awaitable
      result) instead of a bare future
    - Field validation runs synchronously in start_optimistic_creation; only the
      uniqueness check and the write happen in the background
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from exception_rules.config import Settings, get_settings
from exception_rules.core.domain_types import RuleScope, RuleStatus, RuleType
from exception_rules.core.errors import (
    ErrorContext, OperationTimeoutError, RuleEngineError, RuleNotFoundError,
    TemporaryIdConflictError,
)
from exception_rules.core.identifiers import is_temporary_id, new_temporary_id
from exception_rules.core.rule_validation import (
    validate_description, validate_name, validate_scope, validate_type,
)
from exception_rules.schemas.rule import Rule, RuleCreate
from exception_rules.services.rule_store import RuleStore, utc_now

logger = logging.getLogger(__name__)


# ─── Transient Entities ──────────────────────────────────────────

@dataclass
class RuleState:
    id: str
    status: RuleStatus
    created_at: datetime
    updated_at: datetime
    temporary_id: str | None = None
    real_id: str | None = None
    last_validated: datetime | None = None
    validation_errors: list[str] = field(default_factory=list)
    error: BaseException | None = None


@dataclass
class IdMapping:
    temporary_id: str
    real_id: str
    mapped_at: datetime


@dataclass
class PendingCreation:
    temporary_id: str
    data: RuleCreate
    task: asyncio.Task
    created_at: datetime


@dataclass
class RuleIdValidation:
    is_valid: bool
    is_temporary: bool
    real_id: str | None = None
    error: str | None = None


@dataclass
class OptimisticCreation:
    """Provisional rule, usable now, plus the awaitable persisted outcome."""
    temporary_id: str
    provisional_rule: Rule
    task: asyncio.Task

    def done(self) -> bool:
        return self.task.done()

    async def result(self, timeout: float | None = None) -> Rule:
        try:
            return await asyncio.wait_for(asyncio.shield(self.task), timeout)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(
                "rule creation", timeout, ErrorContext(rule_id=self.temporary_id),
            )


def _retrieve_exception(task: asyncio.Task) -> None:
    # Failures live in RuleState.error; nothing is required to await the task.
    if not task.cancelled():
        task.exception()


# ─── Reconciler ──────────────────────────────────────────────────

class StateReconciler:
    """Owns the state table, the pending-creation table and the id-mapping table."""

    def __init__(
        self,
        store: RuleStore,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._clock = clock
        self._ttl = timedelta(seconds=(settings or get_settings()).state_ttl_seconds)
        self._states: dict[str, RuleState] = {}
        self._pending: dict[str, PendingCreation] = {}
        self._mappings: dict[str, IdMapping] = {}

    # ─── State Tracking ──────────────────────────────────────────

    def track_rule_state(
        self,
        rule_id: str,
        status: RuleStatus,
        temporary_id: str | None = None,
        real_id: str | None = None,
    ) -> RuleState:
        now = self._clock()
        state = self._states.get(rule_id)
        if state is None:
            state = RuleState(id=rule_id, status=status, created_at=now, updated_at=now)
            self._states[rule_id] = state
        state.status = status
        state.updated_at = now
        if temporary_id is not None:
            state.temporary_id = temporary_id
        if real_id is not None:
            state.real_id = real_id
        return state

    def get_rule_state(self, rule_id: str) -> RuleState | None:
        return self._states.get(rule_id)

    # ─── Optimistic Creation ─────────────────────────────────────

    def start_optimistic_creation(
        self,
        name: str,
        rule_type: RuleType | str,
        description: str | None = None,
        scope: RuleScope = RuleScope.GLOBAL,
        task_id: str | None = None,
    ) -> OptimisticCreation:
        """Return a provisional rule immediately; persistence continues in one task.

        Must be called with a running event loop.
        """
        scope = RuleScope(scope)
        clean_name = validate_name(name)
        clean_type = validate_type(rule_type, required=True)
        clean_description = validate_description(description)
        owner = validate_scope(scope, task_id)

        temporary_id = new_temporary_id()
        if temporary_id in self._states or temporary_id in self._pending:
            raise TemporaryIdConflictError(temporary_id)

        now = self._clock()
        provisional = Rule(
            id=temporary_id,
            name=clean_name,
            description=clean_description,
            type=clean_type,
            scope=scope,
            task_id=owner,
            created_at=now,
        )
        data = RuleCreate(
            name=clean_name, type=clean_type, description=clean_description,
            scope=scope, task_id=owner,
        )

        self.track_rule_state(temporary_id, RuleStatus.CREATING, temporary_id=temporary_id)
        task = asyncio.create_task(self._perform_creation(temporary_id, data))
        task.add_done_callback(_retrieve_exception)
        self._pending[temporary_id] = PendingCreation(
            temporary_id=temporary_id, data=data, task=task, created_at=now,
        )

        logger.debug("Optimistic creation started", extra={"temporary_id": temporary_id})
        return OptimisticCreation(temporary_id, provisional, task)

    async def _perform_creation(self, temporary_id: str, data: RuleCreate) -> Rule:
        try:
            rule = await self._store.create_rule(data)
        except Exception as e:
            self._on_creation_error(temporary_id, e)
            raise
        self._on_creation_success(temporary_id, rule)
        return rule

    def _on_creation_success(self, temporary_id: str, rule: Rule) -> None:
        self._mappings[temporary_id] = IdMapping(temporary_id, rule.id, self._clock())
        self.track_rule_state(
            temporary_id, RuleStatus.ACTIVE, temporary_id=temporary_id, real_id=rule.id,
        )
        self.track_rule_state(
            rule.id, RuleStatus.ACTIVE, temporary_id=temporary_id, real_id=rule.id,
        )
        self._pending.pop(temporary_id, None)
        logger.info(
            f"Rule creation confirmed: {temporary_id} -> {rule.id}",
            extra={"temporary_id": temporary_id, "rule_id": rule.id},
        )

    def _on_creation_error(self, temporary_id: str, error: BaseException) -> None:
        state = self.track_rule_state(temporary_id, RuleStatus.ERROR)
        state.error = error
        state.validation_errors = [str(error)]
        self._pending.pop(temporary_id, None)
        kind = error.kind.value if isinstance(error, RuleEngineError) else type(error).__name__
        logger.warning(
            f"Rule creation failed: {error}",
            extra={"temporary_id": temporary_id, "error_kind": kind},
        )

    async def wait_for_creation(self, temporary_id: str, timeout: float | None = None) -> Rule:
        pending = self._pending.get(temporary_id)
        if pending is not None:
            try:
                return await asyncio.wait_for(asyncio.shield(pending.task), timeout)
            except asyncio.TimeoutError:
                raise OperationTimeoutError(
                    "rule creation", timeout, ErrorContext(rule_id=temporary_id),
                )

        state = self._states.get(temporary_id)
        if state is not None and state.status == RuleStatus.ERROR and state.error is not None:
            raise state.error

        real_id = self.get_real_rule_id(temporary_id)
        if real_id is None:
            raise RuleNotFoundError(
                temporary_id, f"Temporary rule {temporary_id} does not exist or has expired",
            )
        rule = await self._store.get_rule(real_id)
        if rule is None:
            raise RuleNotFoundError(real_id)
        return rule

    # ─── Resolution ──────────────────────────────────────────────

    def get_real_rule_id(self, rule_id: str) -> str | None:
        """Real id for rule_id, or None while a temporary id is unresolved."""
        mapping = self._mappings.get(rule_id)
        if mapping is not None:
            return mapping.real_id
        state = self._states.get(rule_id)
        if state is not None and state.real_id:
            return state.real_id
        if not is_temporary_id(rule_id):
            return rule_id
        return None

    async def get_rule(self, rule_id: str) -> Rule | None:
        pending = self._pending.get(rule_id)
        if pending is not None:
            try:
                return await asyncio.shield(pending.task)
            except RuleEngineError as e:
                logger.warning(
                    f"Pending rule failed to persist: {e.message}",
                    extra={"temporary_id": rule_id, "error_kind": e.kind.value},
                )
                return None

        real_id = self.get_real_rule_id(rule_id)
        if real_id is None:
            return None
        return await self._store.get_rule(real_id)

    async def rule_exists(self, rule_id: str) -> bool:
        rule = await self.get_rule(rule_id)
        return rule is not None and rule.is_active

    async def validate_rule_id(self, rule_id: str) -> RuleIdValidation:
        state = self._states.get(rule_id)
        if state is not None:
            state.last_validated = self._clock()

        if is_temporary_id(rule_id):
            if rule_id in self._pending:
                return RuleIdValidation(is_valid=True, is_temporary=True)
            real_id = self.get_real_rule_id(rule_id)
            if real_id is not None:
                return RuleIdValidation(is_valid=True, is_temporary=True, real_id=real_id)
            error = (
                str(state.error) if state is not None and state.error is not None
                else "Temporary rule does not exist or has expired"
            )
            return RuleIdValidation(is_valid=False, is_temporary=True, error=error)

        try:
            rule = await self._store.get_rule(rule_id)
        except RuleEngineError as e:
            return RuleIdValidation(is_valid=False, is_temporary=False, error=e.message)
        if rule is None or not rule.is_active:
            return RuleIdValidation(
                is_valid=False, is_temporary=False, real_id=rule_id, error="Rule does not exist",
            )
        return RuleIdValidation(is_valid=True, is_temporary=False, real_id=rule_id)

    # ─── Maintenance ─────────────────────────────────────────────

    def cleanup_expired_states(self, now: datetime | None = None) -> int:
        """Forget bookkeeping older than the TTL. Returns the number of removed entries."""
        cutoff = (now or self._clock()) - self._ttl
        expired_states = [k for k, s in self._states.items() if s.updated_at < cutoff]
        expired_mappings = [k for k, m in self._mappings.items() if m.mapped_at < cutoff]
        expired_pending = [k for k, p in self._pending.items() if p.created_at < cutoff]

        for key in expired_states:
            del self._states[key]
        for key in expired_mappings:
            del self._mappings[key]
        for key in expired_pending:
            del self._pending[key]

        removed = len(expired_states) + len(expired_mappings) + len(expired_pending)
        if removed:
            logger.debug(f"Expired {removed} reconciliation entries")
        return removed

    async def sync_rule_states(self) -> None:
        """Mark every active rule active; forget states of real ids that are not active.

        Soft-deleted rules count as gone, so they never show as ACTIVE.
        """
        rules = await self._store.list_rules()
        existing = {r.id for r in rules}
        for rule in rules:
            self.track_rule_state(rule.id, RuleStatus.ACTIVE, real_id=rule.id)
        for key in [k for k in self._states if not is_temporary_id(k) and k not in existing]:
            del self._states[key]

    def snapshot(self) -> dict:
        return {
            "states": dict(self._states),
            "pending_creations": dict(self._pending),
            "id_mappings": dict(self._mappings),
        }

    def clear(self) -> None:
        self._states.clear()
        self._pending.clear()
        self._mappings.clear()
