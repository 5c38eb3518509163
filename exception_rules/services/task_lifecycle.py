"""TaskLifecycle: chain rules follow their owning task into and out of the recycle bin.

Invariants:
    - archive_task: active chain rules of the task become is_archived=True, is_active=False
    - restore_task: archived chain rules come back active unless their name now collides
      in the task pool; collisions are skipped and reported, never renamed
    - purge_task: chain rules of the task and every usage record of the task are removed
"""

import logging
from dataclasses import dataclass, field

from exception_rules.core.domain_types import RuleScope
from exception_rules.core.errors import DuplicateNameError
from exception_rules.schemas.rule import Rule, RuleUpdate
from exception_rules.services.rule_store import RuleStore

logger = logging.getLogger(__name__)


@dataclass
class RestoreSummary:
    restored: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass
class PurgeSummary:
    deleted_rules: int = 0
    deleted_records: int = 0


class TaskLifecycle:
    """Archive, restore and purge the chain rules owned by one task."""

    def __init__(self, store: RuleStore):
        self._store = store

    async def _chain_rules(self, task_id: str) -> list[Rule]:
        return [
            r for r in await self._store.list_rules(include_inactive=True)
            if r.scope == RuleScope.CHAIN and r.task_id == task_id
        ]

    async def archive_task(self, task_id: str) -> int:
        archived = 0
        for rule in await self._chain_rules(task_id):
            if not rule.is_active:
                continue
            await self._store.update_rule(rule.id, RuleUpdate(is_archived=True, is_active=False))
            archived += 1
        logger.info(f"Archived {archived} chain rule(s)", extra={"task_id": task_id})
        return archived

    async def restore_task(self, task_id: str) -> RestoreSummary:
        summary = RestoreSummary()
        for rule in await self._chain_rules(task_id):
            if not rule.is_archived:
                continue
            try:
                await self._store.update_rule(rule.id, RuleUpdate(is_archived=False, is_active=True))
            except DuplicateNameError:
                logger.warning(
                    f"Rule '{rule.name}' not restored, name is taken",
                    extra={"task_id": task_id, "rule_id": rule.id},
                )
                summary.skipped.append(rule.id)
                continue
            summary.restored.append(rule.id)
        logger.info(
            f"Restored {len(summary.restored)} chain rule(s), skipped {len(summary.skipped)}",
            extra={"task_id": task_id},
        )
        return summary

    async def purge_task(self, task_id: str) -> PurgeSummary:
        summary = PurgeSummary()
        for rule in await self._chain_rules(task_id):
            summary.deleted_records += await self._store.permanently_delete_rule(rule.id)
            summary.deleted_rules += 1
        summary.deleted_records += await self._store.delete_task_usage_records(task_id)
        logger.info(
            f"Purged {summary.deleted_rules} rule(s), {summary.deleted_records} record(s)",
            extra={"task_id": task_id},
        )
        return summary

    async def deletion_impact(self, task_id: str) -> dict:
        """What purge_task would remove, without removing it."""
        rules = await self._chain_rules(task_id)
        rule_ids = {r.id for r in rules}
        records = await self._store.list_usage_records()
        return {
            "chain_rules": len(rules),
            "active_chain_rules": sum(1 for r in rules if r.is_active),
            "usage_records": sum(
                1 for r in records if r.task_id == task_id or r.rule_id in rule_ids
            ),
        }
