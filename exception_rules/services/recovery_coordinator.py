"""RecoveryCoordinator: per-kind recovery strategies and the error propagation policy.

Invariants:
    - Strategies for a kind are tried in descending priority (stable for equal priority)
    - The first strategy that succeeds, or that asks for a user decision, ends the attempt
    - A strategy that raises is logged and skipped, never allowed to replace the original error
    - When nothing resolves, the terminal fallback offers manual_intervention and reset_system
    - run_guarded: validation / uniqueness kinds re-raise untouched; any other kind is offered
      to recovery, an automatic success re-runs the call once, and anything unresolved
      re-raises the ORIGINAL error with error.recovery attached
    - No automatic retry of failed optimistic creations; run_guarded re-runs only on success

Design Decisions:
    - RecoveryAction carries an async handler so callers can present and execute options
      without knowing the coordinator's collaborators
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from exception_rules.core.domain_types import ActionKind, RuleType, rule_type_for_action
from exception_rules.core.error_classification import ErrorClassifier
from exception_rules.core.errors import (
    DuplicateNameError, ErrorKind, RuleEngineError, TypeMismatchError,
)
from exception_rules.core.identifiers import is_temporary_id
from exception_rules.services.duplication_detector import DuplicationDetector
from exception_rules.services.integrity_checker import IntegrityChecker
from exception_rules.services.rule_store import RuleStore
from exception_rules.services.state_reconciler import StateReconciler

logger = logging.getLogger(__name__)

T = TypeVar("T")

IMMEDIATE_KINDS: frozenset[ErrorKind] = frozenset({
    ErrorKind.VALIDATION_ERROR, ErrorKind.INVALID_TYPE, ErrorKind.DUPLICATE_NAME,
})


class StrategyKind(str, Enum):
    AUTO_FIX = "auto_fix"
    USER_CHOICE = "user_choice"
    FALLBACK = "fallback"
    RESET = "reset"


class ActionType(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    DANGER = "danger"


@dataclass
class RecoveryResult:
    success: bool
    message: str
    actions: list["RecoveryAction"] = field(default_factory=list)
    recovered_data: Any = None
    requires_user_action: bool = False


@dataclass
class RecoveryAction:
    id: str
    label: str
    description: str
    type: ActionType
    handler: Callable[[], Awaitable[RecoveryResult]] | None = None

    async def execute(self) -> RecoveryResult:
        if self.handler is None:
            return RecoveryResult(False, f"{self.label} requires manual handling", requires_user_action=True)
        return await self.handler()


@dataclass
class RecoveryContext:
    error_kind: ErrorKind
    operation: str
    operation_data: dict
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    retry_count: int = 0


Handler = Callable[[RuleEngineError, RecoveryContext], Awaitable[RecoveryResult]]


@dataclass
class RecoveryStrategy:
    kind: ErrorKind
    strategy: StrategyKind
    priority: int
    handler: Handler
    name: str = ""


@dataclass
class RecoveryAttempt:
    error: RuleEngineError
    context: RecoveryContext
    result: RecoveryResult
    strategy: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RecoveryCoordinator:
    """Routes errors to registered strategies and enforces the propagation policy."""

    def __init__(
        self,
        store: RuleStore,
        reconciler: StateReconciler,
        checker: IntegrityChecker,
        detector: DuplicationDetector,
        classifier: ErrorClassifier | None = None,
    ):
        self._store = store
        self._reconciler = reconciler
        self._checker = checker
        self._detector = detector
        self.classifier = classifier or ErrorClassifier()
        self._strategies: dict[ErrorKind, list[RecoveryStrategy]] = {}
        self._history: list[RecoveryAttempt] = []
        self._register_defaults()

    # ─── Registry ────────────────────────────────────────────────

    def register_strategy(self, strategy: RecoveryStrategy) -> None:
        strategies = self._strategies.setdefault(strategy.kind, [])
        strategies.append(strategy)
        strategies.sort(key=lambda s: s.priority, reverse=True)

    def strategies_for(self, kind: ErrorKind) -> list[RecoveryStrategy]:
        return list(self._strategies.get(kind, []))

    @property
    def history(self) -> list[RecoveryAttempt]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    # ─── Recovery ────────────────────────────────────────────────

    async def attempt_recovery(
        self,
        error: RuleEngineError,
        context: dict | None = None,
        operation: str = "unknown",
    ) -> RecoveryResult:
        analysis = self.classifier.analyze_error(error)
        ctx = RecoveryContext(error.kind, operation, dict(context or {}))
        logger.info(
            f"Recovering from {error.kind.value} "
            f"(priority {analysis.classification.priority}): {error.message}",
            extra={"error_kind": error.kind.value, "operation": operation},
        )

        for strategy in self._strategies.get(error.kind, []):
            try:
                result = await strategy.handler(error, ctx)
            except Exception as e:
                logger.error(
                    f"Recovery strategy {strategy.name or strategy.strategy.value} failed: {e}",
                    extra={"error_kind": error.kind.value, "operation": operation},
                )
                continue

            self._history.append(RecoveryAttempt(error, ctx, result, strategy.name))
            if result.success:
                logger.info(
                    f"Recovery succeeded: {result.message}",
                    extra={"error_kind": error.kind.value, "operation": operation},
                )
                return result
            if result.requires_user_action:
                return result

        result = self._terminal_fallback(error)
        self._history.append(RecoveryAttempt(error, ctx, result, "terminal_fallback"))
        return result

    async def run_guarded(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        context: dict | None = None,
    ) -> T:
        try:
            return await call()
        except RuleEngineError as error:
            if error.kind in IMMEDIATE_KINDS:
                raise
            result = await self.attempt_recovery(error, context, operation)
            error.recovery = result
            if not result.success:
                raise
        logger.info(f"Re-running {operation} after recovery", extra={"operation": operation})
        return await call()

    def get_recovery_options(self, error: RuleEngineError) -> list[RecoveryAction]:
        kind = error.kind

        if kind == ErrorKind.RULE_NOT_FOUND:
            return [
                RecoveryAction(
                    "create_new_rule", "Create a new rule",
                    "Create a rule to replace the missing one", ActionType.PRIMARY,
                    lambda: self._needs_user("Create a new rule"),
                ),
                RecoveryAction(
                    "select_existing_rule", "Choose an existing rule",
                    "Pick one of the existing rules", ActionType.SECONDARY,
                    self._list_active_rules,
                ),
            ]

        if kind == ErrorKind.DUPLICATE_NAME:
            return [
                RecoveryAction(
                    "use_existing_rule", "Use the existing rule",
                    "Use the rule that already has this name", ActionType.PRIMARY,
                    lambda: self._use_existing_rule(error),
                ),
                RecoveryAction(
                    "rename_rule", "Rename the rule",
                    "Generate a different name for the new rule", ActionType.SECONDARY,
                    lambda: self._suggest_rename(error),
                ),
            ]

        if kind == ErrorKind.TYPE_MISMATCH:
            return [
                RecoveryAction(
                    "create_correct_type", "Create a rule of the matching type",
                    "Create a new rule whose type matches the action", ActionType.PRIMARY,
                    lambda: self._needs_user("Create a rule of the matching type"),
                ),
                RecoveryAction(
                    "select_matching_rule", "Choose a matching rule",
                    "Pick an existing rule whose type matches the action", ActionType.SECONDARY,
                    lambda: self._list_matching_rules(error),
                ),
            ]

        if kind in (ErrorKind.STORAGE_ERROR, ErrorKind.DATA_INTEGRITY_ERROR):
            return [
                RecoveryAction(
                    "retry_operation", "Retry the operation",
                    "Run the failed operation again", ActionType.PRIMARY,
                    lambda: self._needs_user("Retry the operation"),
                ),
                RecoveryAction(
                    "check_data_integrity", "Check data integrity",
                    "Run the integrity check and repair", ActionType.SECONDARY,
                    self._integrity_repair_action,
                ),
            ]

        if kind == ErrorKind.CONCURRENT_MODIFICATION:
            return [
                RecoveryAction(
                    "reload_and_retry", "Reload and retry",
                    "Reload the latest data and run the operation again", ActionType.PRIMARY,
                    lambda: self._needs_user("Reload and retry the operation"),
                ),
            ]

        if kind == ErrorKind.VALIDATION_ERROR:
            return [
                RecoveryAction(
                    "fix_validation", "Correct the input",
                    "Edit the rejected fields and submit again", ActionType.PRIMARY,
                    lambda: self._needs_user("Correct the input"),
                ),
            ]

        return [
            RecoveryAction(
                "generic_recovery", "Resynchronize rule state",
                "Rebuild transient rule state from storage", ActionType.SECONDARY,
                self._sync_states,
            ),
        ]

    # ─── Default Strategies ──────────────────────────────────────

    def _register_defaults(self) -> None:
        self.register_strategy(RecoveryStrategy(
            ErrorKind.RULE_NOT_FOUND, StrategyKind.AUTO_FIX, 100,
            self._await_pending_rule, "await_pending_rule",
        ))
        for kind in (
            ErrorKind.DUPLICATE_NAME, ErrorKind.TYPE_MISMATCH,
            ErrorKind.VALIDATION_ERROR, ErrorKind.CONCURRENT_MODIFICATION,
        ):
            self.register_strategy(RecoveryStrategy(
                kind, StrategyKind.USER_CHOICE, 100, self._offer_user_choice, "user_choice",
            ))
        for kind in (ErrorKind.STORAGE_ERROR, ErrorKind.DATA_INTEGRITY_ERROR):
            self.register_strategy(RecoveryStrategy(
                kind, StrategyKind.AUTO_FIX, 100, self._auto_repair, "integrity_auto_repair",
            ))

    async def _await_pending_rule(self, error: RuleEngineError, ctx: RecoveryContext) -> RecoveryResult:
        rule_id = error.context.rule_id
        if rule_id and is_temporary_id(rule_id):
            try:
                rule = await self._reconciler.wait_for_creation(rule_id)
            except RuleEngineError as e:
                logger.warning(
                    f"Pending rule could not be recovered: {e.message}",
                    extra={"temporary_id": rule_id, "error_kind": e.kind.value},
                )
            else:
                return RecoveryResult(True, "Recovered the rule from its pending creation", recovered_data=rule)
        return RecoveryResult(
            False, "The missing rule cannot be recovered automatically",
            self.get_recovery_options(error), requires_user_action=True,
        )

    async def _offer_user_choice(self, error: RuleEngineError, ctx: RecoveryContext) -> RecoveryResult:
        data = None
        if isinstance(error, DuplicateNameError):
            data = {"existing_rules": list(error.existing_rules)}
        return RecoveryResult(
            False, f"{error.kind.value} needs a decision: {error.message}",
            self.get_recovery_options(error), recovered_data=data, requires_user_action=True,
        )

    async def _auto_repair(self, error: RuleEngineError, ctx: RecoveryContext) -> RecoveryResult:
        report = await self._checker.check_integrity()
        fixable = [i for i in report.issues if i.auto_fixable]
        if fixable:
            results = await self._checker.auto_fix_issues(fixable)
            fixed = sum(1 for r in results if r.success)
            if fixed:
                return RecoveryResult(True, f"Repaired {fixed} data issue(s)", recovered_data=results)
        return RecoveryResult(
            False, "The storage error needs manual handling",
            self.get_recovery_options(error), requires_user_action=True,
        )

    def _terminal_fallback(self, error: RuleEngineError) -> RecoveryResult:
        return RecoveryResult(
            False,
            f"No recovery strategy resolved {error.kind.value}",
            [
                RecoveryAction(
                    "manual_intervention", "Handle manually",
                    "This problem needs to be resolved by hand", ActionType.DANGER,
                ),
                RecoveryAction(
                    "reset_system", "Reset rule state",
                    "Discard all transient rule bookkeeping", ActionType.DANGER,
                    self._reset_state,
                ),
            ],
        )

    # ─── Action Handlers ─────────────────────────────────────────

    async def _needs_user(self, message: str) -> RecoveryResult:
        return RecoveryResult(False, message, requires_user_action=True)

    async def _list_active_rules(self) -> RecoveryResult:
        rules = await self._store.list_rules()
        return RecoveryResult(False, "Choose one of the existing rules", recovered_data=rules, requires_user_action=True)

    async def _use_existing_rule(self, error: RuleEngineError) -> RecoveryResult:
        existing = getattr(error, "existing_rules", [])
        if existing:
            return RecoveryResult(True, "Using the existing rule", recovered_data=existing[0])
        return RecoveryResult(False, "No existing rule is available")

    async def _suggest_rename(self, error: RuleEngineError) -> RecoveryResult:
        name = error.context.rule_name
        if not name:
            return RecoveryResult(False, "No rule name to derive suggestions from")
        existing = [r.name for r in await self._store.list_rules()]
        suggestions = self._detector.generate_name_suggestions(name, existing)
        if not suggestions:
            return RecoveryResult(False, "No alternative name is available")
        return RecoveryResult(
            True, f"Suggested name: {suggestions[0]}",
            recovered_data={"suggested_name": suggestions[0], "suggestions": suggestions},
        )

    async def _list_matching_rules(self, error: RuleEngineError) -> RecoveryResult:
        if not isinstance(error, TypeMismatchError):
            return RecoveryResult(False, "No action to match against")
        wanted: RuleType = rule_type_for_action(ActionKind(error.action))
        rules = await self._store.rules_by_type(wanted)
        return RecoveryResult(
            False, f"Choose a {wanted.value} rule", recovered_data=rules, requires_user_action=True,
        )

    async def _integrity_repair_action(self) -> RecoveryResult:
        report = await self._checker.check_integrity()
        if report.is_clean:
            return RecoveryResult(True, "Data integrity check passed")
        fixable = [i for i in report.issues if i.auto_fixable]
        results = await self._checker.auto_fix_issues(fixable)
        fixed = sum(1 for r in results if r.success)
        return RecoveryResult(
            fixed > 0,
            f"Found {len(report.issues)} issue(s), repaired {fixed}",
            recovered_data=results,
        )

    async def _sync_states(self) -> RecoveryResult:
        await self._reconciler.sync_rule_states()
        return RecoveryResult(True, "Rule state resynchronized")

    async def _reset_state(self) -> RecoveryResult:
        self._reconciler.clear()
        return RecoveryResult(True, "Transient rule state cleared")
