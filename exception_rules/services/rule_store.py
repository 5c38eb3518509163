"""RuleStore: the only component that reads and writes the persisted collections.

Invariants:
    - Every mutation runs under one asyncio.Lock per store: load, change, save
    - Only loads inside the lock pass for_update=True, so a concurrent read never
      refreshes the version a pending save is checked against
    - Among active rules, normalized names are unique per pool (global / chain+task_id)
    - New rules start with usage_count=0, is_active=True, created_at=now, a "rule_" id
    - Usage counts move with usage records: record_usage +1, record deletion and pruning -1
    - A rule id carrying the temporary prefix never reaches the backend
    - Rows failing schema validation on load raise DataIntegrityError

Design Decisions:
    - Whole-collection load/save: the backend is a dumb blob store (see CollectionBackend)
    - Pure field checks live in core/rule_validation.py, ranking in core/rule_search.py;
      this module only sequences IO around them
    - apply_raw hands raw dicts to repair code under the same lock, so integrity fixes
      never race normal writes
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, TypeVar

from pydantic import BaseModel, ValidationError

from exception_rules.config import Settings, get_settings
from exception_rules.core.domain_types import (
    RULES_COLLECTION, USAGE_RECORDS_COLLECTION, ActionKind, RuleScope, RuleType,
)
from exception_rules.core.errors import (
    DataIntegrityError, ErrorContext, RuleNotFoundError, StorageError,
    TemporaryIdConflictError, TypeMismatchError,
)
from exception_rules.core.identifiers import (
    is_temporary_id, new_rule_id, new_usage_record_id,
)
from exception_rules.core.name_matching import normalize_name
from exception_rules.core.repository_protocols import CollectionBackend
from exception_rules.core.rule_search import rank_matches, sort_by_popularity
from exception_rules.core.rule_validation import (
    ensure_unique_name, find_name_conflicts, validate_description, validate_name,
    validate_scope, validate_type,
)
from exception_rules.schemas.rule import (
    ExportBundle, ImportStrategy, Rule, RuleCreate, RuleUpdate, UsageRecord,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ImportSummary:
    strategy: str
    imported_rules: int = 0
    skipped_rules: int = 0
    imported_records: int = 0
    skipped_records: int = 0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RuleStore:
    """CRUD, search, usage recording and raw repair access over one backend."""

    def __init__(
        self,
        backend: CollectionBackend,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._backend = backend
        self._settings = settings or get_settings()
        self._clock = clock
        self._lock = asyncio.Lock()

    # ─── Backend IO ──────────────────────────────────────────────

    async def _read(self, collection: str, for_update: bool = False) -> list[dict]:
        try:
            return await self._backend.load(collection, for_update=for_update)
        except OSError as e:
            raise StorageError(str(e), "load") from e

    async def _write(self, collection: str, items: list[dict]) -> None:
        try:
            await self._backend.save(collection, items)
        except OSError as e:
            raise StorageError(str(e), "save") from e

    async def _load(
        self, collection: str, model: type[BaseModel], for_update: bool = False,
    ) -> list:
        raw = await self._read(collection, for_update)
        try:
            return [model.model_validate(item) for item in raw]
        except ValidationError as e:
            logger.error(
                f"Stored {collection} failed validation: {e.error_count()} error(s)",
                extra={"operation": "load"},
            )
            raise DataIntegrityError(
                f"Stored {collection} failed validation",
                ErrorContext(operation="load", debug_info={
                    "collection": collection, "error_count": e.error_count(),
                }),
            ) from e

    async def _load_rules(self, for_update: bool = False) -> list[Rule]:
        return await self._load(RULES_COLLECTION, Rule, for_update)

    async def _load_records(self, for_update: bool = False) -> list[UsageRecord]:
        return await self._load(USAGE_RECORDS_COLLECTION, UsageRecord, for_update)

    async def _save_rules(self, rules: list[Rule]) -> None:
        for rule in rules:
            if is_temporary_id(rule.id):
                raise TemporaryIdConflictError(rule.id)
        await self._write(RULES_COLLECTION, [r.to_storage() for r in rules])

    async def _save_records(self, records: list[UsageRecord]) -> None:
        await self._write(USAGE_RECORDS_COLLECTION, [r.to_storage() for r in records])

    @staticmethod
    def _index_of(rules: list[Rule], rule_id: str) -> int:
        for index, rule in enumerate(rules):
            if rule.id == rule_id:
                return index
        raise RuleNotFoundError(rule_id)

    # ─── Rule CRUD ───────────────────────────────────────────────

    async def create_rule(self, data: RuleCreate) -> Rule:
        name = validate_name(data.name)
        rule_type = validate_type(data.type, required=True)
        description = validate_description(data.description)
        task_id = validate_scope(data.scope, data.task_id)

        async with self._lock:
            rules = await self._load_rules(for_update=True)
            ensure_unique_name(rules, name, data.scope, task_id)
            rule = Rule(
                id=new_rule_id(),
                name=name,
                description=description,
                type=rule_type,
                scope=data.scope,
                task_id=task_id,
                created_at=self._clock(),
            )
            rules.append(rule)
            await self._save_rules(rules)

        logger.info(
            f"Rule created: {rule.name} ({rule.scope.value})",
            extra={"rule_id": rule.id, "task_id": rule.task_id},
        )
        return rule

    async def update_rule(self, rule_id: str, update: RuleUpdate) -> Rule:
        changes = update.changes()

        async with self._lock:
            rules = await self._load_rules(for_update=True)
            index = self._index_of(rules, rule_id)
            current = rules[index]
            values = current.model_dump()

            if "name" in changes:
                values["name"] = validate_name(changes["name"])
            if "type" in changes:
                values["type"] = validate_type(changes["type"], required=True)
            if "description" in changes:
                values["description"] = validate_description(changes["description"])
            if "scope" in changes or "task_id" in changes:
                scope = RuleScope(changes.get("scope") or current.scope)
                values["scope"] = scope
                values["task_id"] = validate_scope(
                    scope, changes.get("task_id", current.task_id),
                )
            for flag in ("is_active", "is_archived"):
                if changes.get(flag) is not None:
                    values[flag] = changes[flag]

            updated = Rule.model_validate(values)
            pool_changed = (
                normalize_name(updated.name) != normalize_name(current.name)
                or updated.scope != current.scope
                or updated.task_id != current.task_id
                or (updated.is_active and not current.is_active)
            )
            if updated.is_active and pool_changed:
                ensure_unique_name(
                    rules, updated.name, updated.scope, updated.task_id,
                    exclude_id=rule_id,
                )

            rules[index] = updated
            await self._save_rules(rules)

        logger.info(f"Rule updated: {sorted(changes)}", extra={"rule_id": rule_id})
        return updated

    async def delete_rule(self, rule_id: str) -> None:
        """Soft delete: the rule stays stored with is_active=False."""
        async with self._lock:
            rules = await self._load_rules(for_update=True)
            index = self._index_of(rules, rule_id)
            if not rules[index].is_active:
                raise RuleNotFoundError(rule_id, f"Rule id {rule_id} is already deleted")
            rules[index] = rules[index].model_copy(update={"is_active": False})
            await self._save_rules(rules)
        logger.info("Rule deleted", extra={"rule_id": rule_id})

    async def permanently_delete_rule(self, rule_id: str) -> int:
        """Remove the rule and its usage records. Returns the number of removed records."""
        async with self._lock:
            rules = await self._load_rules(for_update=True)
            index = self._index_of(rules, rule_id)
            records = await self._load_records(for_update=True)
            kept = [r for r in records if r.rule_id != rule_id]
            removed = len(records) - len(kept)
            del rules[index]
            await self._save_records(kept)
            await self._save_rules(rules)
        logger.info(
            f"Rule permanently deleted with {removed} usage record(s)",
            extra={"rule_id": rule_id},
        )
        return removed

    # ─── Queries ─────────────────────────────────────────────────

    async def get_rule(self, rule_id: str) -> Rule | None:
        for rule in await self._load_rules():
            if rule.id == rule_id:
                return rule
        return None

    async def list_rules(self, include_inactive: bool = False) -> list[Rule]:
        rules = await self._load_rules()
        if include_inactive:
            return rules
        return [r for r in rules if r.is_active]

    async def rules_by_type(self, rule_type: RuleType) -> list[Rule]:
        rule_type = RuleType(rule_type)
        return [r for r in await self.list_rules() if r.type == rule_type]

    async def search(self, query: str, rule_type: RuleType | None = None) -> list[Rule]:
        rules = await self.list_rules()
        if rule_type is not None:
            rules = [r for r in rules if r.type == RuleType(rule_type)]
        return rank_matches(rules, query or "")

    async def popular_rules(self, limit: int = 10) -> list[Rule]:
        return sort_by_popularity(await self.list_rules())[:limit]

    # ─── Usage Records ───────────────────────────────────────────

    async def record_usage(
        self,
        rule_id: str,
        task_id: str,
        session_id: str,
        action_kind: ActionKind,
        elapsed_seconds: float,
        remaining_seconds: float | None = None,
        pause_duration_seconds: float | None = None,
        auto_resume: bool | None = None,
    ) -> UsageRecord:
        action_kind = ActionKind(action_kind)

        async with self._lock:
            rules = await self._load_rules(for_update=True)
            index = self._index_of(rules, rule_id)
            rule = rules[index]
            if not rule.is_active:
                raise RuleNotFoundError(rule_id, f"Rule id {rule_id} is not active")
            if not rule.serves(action_kind):
                raise TypeMismatchError(
                    rule_id, rule.type.value, action_kind.value,
                    ErrorContext(task_id=task_id, operation="record_usage"),
                )

            now = self._clock()
            record = UsageRecord(
                id=new_usage_record_id(),
                rule_id=rule_id,
                task_id=task_id,
                session_id=session_id,
                used_at=now,
                action_kind=action_kind,
                elapsed_seconds=elapsed_seconds,
                remaining_seconds=remaining_seconds,
                rule_scope=rule.scope,
                pause_duration_seconds=pause_duration_seconds,
                auto_resume=auto_resume,
            )
            records = await self._load_records(for_update=True)
            records.append(record)
            rules[index] = rule.model_copy(update={
                "usage_count": rule.usage_count + 1, "last_used_at": now,
            })
            await self._save_records(records)
            await self._save_rules(rules)

        logger.debug(
            f"Usage recorded for {action_kind.value}",
            extra={"rule_id": rule_id, "task_id": task_id},
        )
        return record

    async def list_usage_records(self) -> list[UsageRecord]:
        return await self._load_records()

    async def usage_records_for_rule(self, rule_id: str, limit: int | None = None) -> list[UsageRecord]:
        records = sorted(
            (r for r in await self._load_records() if r.rule_id == rule_id),
            key=lambda r: r.used_at,
            reverse=True,
        )
        return records[:limit] if limit is not None else records

    async def usage_records_for_task(self, task_id: str) -> list[UsageRecord]:
        return [r for r in await self._load_records() if r.task_id == task_id]

    async def usage_records_for_session(self, session_id: str) -> list[UsageRecord]:
        return [r for r in await self._load_records() if r.session_id == session_id]

    async def delete_usage_record(self, record_id: str) -> bool:
        async with self._lock:
            records = await self._load_records(for_update=True)
            target = next((r for r in records if r.id == record_id), None)
            if target is None:
                return False
            records.remove(target)
            rules = await self._load_rules(for_update=True)
            self._decrement_counts(rules, [target])
            await self._save_records(records)
            await self._save_rules(rules)
        return True

    async def delete_task_usage_records(self, task_id: str) -> int:
        async with self._lock:
            records = await self._load_records(for_update=True)
            removed = [r for r in records if r.task_id == task_id]
            if not removed:
                return 0
            rules = await self._load_rules(for_update=True)
            self._decrement_counts(rules, removed)
            await self._save_records([r for r in records if r.task_id != task_id])
            await self._save_rules(rules)
        return len(removed)

    async def prune_usage_records(self, retention_days: int | None = None) -> int:
        """Drop records older than the retention window. Returns how many were removed."""
        days = retention_days if retention_days is not None else self._settings.usage_record_retention_days
        cutoff = self._clock() - timedelta(days=days)

        async with self._lock:
            records = await self._load_records(for_update=True)
            expired = [r for r in records if r.used_at < cutoff]
            if not expired:
                return 0
            rules = await self._load_rules(for_update=True)
            self._decrement_counts(rules, expired)
            await self._save_records([r for r in records if r.used_at >= cutoff])
            await self._save_rules(rules)

        logger.info(f"Pruned {len(expired)} usage record(s) older than {days} days")
        return len(expired)

    @staticmethod
    def _decrement_counts(rules: list[Rule], removed: list[UsageRecord]) -> None:
        per_rule: dict[str, int] = {}
        for record in removed:
            per_rule[record.rule_id] = per_rule.get(record.rule_id, 0) + 1
        for index, rule in enumerate(rules):
            if rule.id in per_rule:
                rules[index] = rule.model_copy(update={
                    "usage_count": max(0, rule.usage_count - per_rule.pop(rule.id)),
                })

    # ─── Import / Export ─────────────────────────────────────────

    async def export_data(self) -> ExportBundle:
        return ExportBundle(
            rules=await self.list_rules(),
            usage_records=await self._load_records(),
            exported_at=self._clock(),
        )

    async def import_data(
        self, bundle: ExportBundle, strategy: ImportStrategy = "merge",
    ) -> ImportSummary:
        summary = ImportSummary(strategy=strategy)

        async with self._lock:
            if strategy == "replace":
                await self._read(RULES_COLLECTION, for_update=True)
                await self._read(USAGE_RECORDS_COLLECTION, for_update=True)
                await self._save_rules(list(bundle.rules))
                await self._save_records(list(bundle.usage_records))
                summary.imported_rules = len(bundle.rules)
                summary.imported_records = len(bundle.usage_records)
            elif strategy == "merge":
                rules = await self._load_rules(for_update=True)
                records = await self._load_records(for_update=True)
                self._merge(bundle, rules, records, summary)
                await self._save_records(records)
                await self._save_rules(rules)
            else:
                raise ValueError(f"Unknown import strategy: {strategy}")

        logger.info(
            f"Import ({strategy}): {summary.imported_rules} rule(s), "
            f"{summary.imported_records} record(s), {summary.skipped_rules} rule(s) skipped",
        )
        return summary

    @staticmethod
    def _merge(
        bundle: ExportBundle,
        rules: list[Rule],
        records: list[UsageRecord],
        summary: ImportSummary,
    ) -> None:
        id_map: dict[str, str] = {}
        for incoming in bundle.rules:
            conflicts = find_name_conflicts(
                rules, incoming.name, incoming.scope, incoming.task_id,
            ) if incoming.is_active else []
            if conflicts:
                id_map[incoming.id] = conflicts[0].id
                summary.skipped_rules += 1
                continue
            fresh = incoming.model_copy(update={"id": new_rule_id(), "usage_count": 0})
            id_map[incoming.id] = fresh.id
            rules.append(fresh)
            summary.imported_rules += 1

        added: dict[str, int] = {}
        for incoming in bundle.usage_records:
            target = id_map.get(incoming.rule_id)
            if target is None:
                summary.skipped_records += 1
                continue
            records.append(incoming.model_copy(update={
                "id": new_usage_record_id(), "rule_id": target,
            }))
            added[target] = added.get(target, 0) + 1
            summary.imported_records += 1

        for index, rule in enumerate(rules):
            if rule.id in added:
                rules[index] = rule.model_copy(update={
                    "usage_count": rule.usage_count + added[rule.id],
                })

    # ─── Raw Access (integrity repair) ───────────────────────────

    async def load_raw(self, for_update: bool = False) -> tuple[list[dict], list[dict]]:
        """Unvalidated collections, for integrity scanning."""
        return (
            await self._read(RULES_COLLECTION, for_update),
            await self._read(USAGE_RECORDS_COLLECTION, for_update),
        )

    async def apply_raw(self, mutator: Callable[[list[dict], list[dict]], T]) -> T:
        """Run mutator(rules, records) over fresh raw collections and persist both.

        Nothing is saved when the mutator raises.
        """
        async with self._lock:
            rules, records = await self.load_raw(for_update=True)
            result = mutator(rules, records)
            await self._write(USAGE_RECORDS_COLLECTION, records)
            await self._write(RULES_COLLECTION, rules)
        return result
