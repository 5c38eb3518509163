"""ScopeResolver: which rules a task may use, and scoped rule creation.

Invariants:
    - Available rules for (task_id, action): active, matching rule type, and either
      global or chain-scoped to task_id
    - Order: chain-scoped first, then usage_count desc
    - Duplicate warnings are logged before creation and never block it
"""

import logging

from exception_rules.core.domain_types import ActionKind, RuleScope, RuleType, as_rule_type
from exception_rules.core.rule_search import sort_for_availability
from exception_rules.schemas.rule import Rule, RuleCreate, RuleUpdate
from exception_rules.services.duplication_detector import DuplicationDetector
from exception_rules.services.rule_store import RuleStore

logger = logging.getLogger(__name__)


class ScopeResolver:
    """Scope-aware views and constructors over RuleStore."""

    def __init__(self, store: RuleStore, detector: DuplicationDetector):
        self._store = store
        self._detector = detector

    async def get_available_rules(self, task_id: str, action: RuleType | ActionKind | str) -> list[Rule]:
        rule_type = as_rule_type(action)
        rules = [
            r for r in await self._store.list_rules()
            if r.type == rule_type
            and (r.scope == RuleScope.GLOBAL or r.task_id == task_id)
        ]
        return sort_for_availability(rules)

    async def create_chain_rule(
        self, task_id: str, name: str, rule_type: RuleType | str, description: str | None = None,
    ) -> Rule:
        await self._warn_duplicates(name)
        return await self._store.create_rule(RuleCreate(
            name=name, type=rule_type, description=description,
            scope=RuleScope.CHAIN, task_id=task_id,
        ))

    async def create_global_rule(
        self, name: str, rule_type: RuleType | str, description: str | None = None,
    ) -> Rule:
        await self._warn_duplicates(name)
        return await self._store.create_rule(RuleCreate(
            name=name, type=rule_type, description=description, scope=RuleScope.GLOBAL,
        ))

    async def check_name_duplication(
        self, name: str, scope: RuleScope, task_id: str | None = None,
    ) -> bool:
        """Case-insensitive name equality among active rules of one scope (and task)."""
        key = name.strip().lower()
        scope = RuleScope(scope)
        for rule in await self._store.list_rules():
            if rule.scope != scope:
                continue
            if scope == RuleScope.CHAIN and rule.task_id != task_id:
                continue
            if rule.name.strip().lower() == key:
                return True
        return False

    async def convert_rule_scope(
        self, rule_id: str, scope: RuleScope, task_id: str | None = None,
    ) -> Rule:
        rule = await self._store.update_rule(rule_id, RuleUpdate(scope=scope, task_id=task_id))
        logger.info(
            f"Rule scope converted to {rule.scope.value}",
            extra={"rule_id": rule_id, "task_id": rule.task_id},
        )
        return rule

    async def chain_rule_count(self, task_id: str) -> int:
        return sum(
            1 for r in await self._store.list_rules()
            if r.scope == RuleScope.CHAIN and r.task_id == task_id
        )

    async def global_rule_count(self) -> int:
        return sum(1 for r in await self._store.list_rules() if r.scope == RuleScope.GLOBAL)

    async def _warn_duplicates(self, name: str) -> None:
        if self._detector.is_common_pattern(name):
            logger.info(f"Rule name '{name}' matches a common pattern")
        for rule, score in await self._detector.find_similar_rules(name):
            logger.warning(
                f"Rule name '{name}' is similar to '{rule.name}' ({score:.2f})",
                extra={"rule_id": rule.id},
            )
