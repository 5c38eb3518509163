"""Integrity Rules: scan raw collections for invariant violations and apply fixes, pure.

Invariants:
    - scan_integrity is PURE: returns issues with declarative FixAction descriptors, never mutates
    - apply_fix mutates only the raw lists it is handed; the shell persists them
    - Rule fixes address rules by position (no fix ever removes a rule, so positions are stable)
    - Record fixes address records by id, or by full snapshot when the record has no id
    - RECOMPUTE_USAGE_COUNT counts records at fix time, against the rule's current id
    - Records referencing a duplicated id belong to its first holder
    - Duplicate names are grouped by the pool a rule lands in after NORMALIZE_SCOPE,
      so renames and scope repairs never reintroduce a collision
    - Any row the load-time schema rejects is reported as a critical issue

Design Decisions:
    - Fix descriptors instead of closures: reports are inspectable and serializable,
      and a fix re-reads current data instead of acting on a stale snapshot
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from exception_rules.core.domain_types import ActionKind, RuleScope, RuleType
from exception_rules.core.errors import DataIntegrityError
from exception_rules.core.identifiers import is_well_formed_id
from exception_rules.core.name_matching import normalize_name


class IssueKind(str, Enum):
    MISSING_ID = "missing_id"
    DUPLICATE_NAME = "duplicate_name"
    INVALID_TYPE = "invalid_type"
    ORPHANED_RECORD = "orphaned_record"
    MISSING_CREATED_AT = "missing_created_at"
    INVALID_USAGE_COUNT = "invalid_usage_count"


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class FixKind(str, Enum):
    ASSIGN_RULE_ID = "assign_rule_id"
    REASSIGN_RULE_ID = "reassign_rule_id"
    REASSIGN_DUPLICATE_IDS = "reassign_duplicate_ids"
    RENAME_DUPLICATES = "rename_duplicates"
    SET_DEFAULT_TYPE = "set_default_type"
    SET_CREATED_AT = "set_created_at"
    RESET_USAGE_COUNT = "reset_usage_count"
    RECOMPUTE_USAGE_COUNT = "recompute_usage_count"
    DELETE_RECORD = "delete_record"
    SET_RECORD_USED_AT = "set_record_used_at"
    ASSIGN_RECORD_ID = "assign_record_id"
    NORMALIZE_SCOPE = "normalize_scope"
    CLEAR_LAST_USED_AT = "clear_last_used_at"
    REPAIR_RECORD_FIELDS = "repair_record_fields"


DEFAULT_RULE_TYPE: RuleType = RuleType.PAUSE_ONLY

_SCOPES = {s.value for s in RuleScope}
_ACTIONS = {a.value for a in ActionKind}

# Record fields a fix can rebuild from the owning rule.
_REPAIRABLE_RECORD_FIELDS = {"task_id", "action_kind", "rule_scope", "elapsed_seconds"}

# Fields the dedicated checks already report; schema validation only adds the rest.
_CHECKED_RULE_FIELDS = {
    "", "id", "name", "type", "scope", "task_id", "created_at", "last_used_at", "usage_count",
}
_CHECKED_RECORD_FIELDS = {
    "", "id", "rule_id", "used_at", *_REPAIRABLE_RECORD_FIELDS, "session_id",
}

# Returns the dotted locations a raw row fails to validate on ("" for the whole row).
RowValidator = Callable[[dict], list[str]]


@dataclass
class FixAction:
    """Declarative remediation, interpreted by apply_fix."""
    kind: FixKind
    rule_indices: tuple[int, ...] = ()
    record_ref: dict | None = None
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class IntegrityIssue:
    kind: IssueKind
    severity: IssueSeverity
    description: str
    affected_items: list[str]
    auto_fixable: bool
    fix: FixAction | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class IntegritySummary:
    total_issues: int = 0
    critical_issues: int = 0
    warning_issues: int = 0
    info_issues: int = 0
    auto_fixable_issues: int = 0


@dataclass
class IntegrityReport:
    issues: list[IntegrityIssue]
    summary: IntegritySummary
    recommendations: list[str]

    @property
    def is_clean(self) -> bool:
        return not self.issues

    def of_kind(self, kind: IssueKind) -> list[IntegrityIssue]:
        return [i for i in self.issues if i.kind == kind]


@dataclass
class FixResult:
    issue_kind: IssueKind
    success: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)


# ─── Helpers ─────────────────────────────────────────────────────

def _label(rule: dict) -> str:
    name = rule.get("name")
    return name if isinstance(name, str) and name.strip() else "unnamed"


def _item_id(rule: dict, index: int) -> str:
    rid = rule.get("id")
    return rid if isinstance(rid, str) and rid else f"#{index}"


def _is_active(rule: dict) -> bool:
    return bool(rule.get("is_active", True))


def _valid_usage_count(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def parse_timestamp(value: object) -> datetime | None:
    """Aware datetime from a datetime or ISO-8601 string; naive values are read as UTC."""
    if isinstance(value, str) and value:
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _owned_task(rule: dict) -> str | None:
    task_id = rule.get("task_id")
    return task_id if isinstance(task_id, str) and task_id else None


def _pool_key(rule: dict) -> tuple[str, str | None]:
    """The pool a rule belongs to once its scope and task_id agree."""
    scope = rule.get("scope", RuleScope.GLOBAL.value)
    task_id = _owned_task(rule)
    if scope != RuleScope.GLOBAL.value and task_id is not None:
        return RuleScope.CHAIN.value, task_id
    return RuleScope.GLOBAL.value, None


def _scope_problem(rule: dict) -> str | None:
    scope = rule.get("scope", RuleScope.GLOBAL.value)
    if scope not in _SCOPES:
        return f"an invalid scope: {scope!r}"
    if scope == RuleScope.CHAIN.value and _owned_task(rule) is None:
        return "chain scope without a task id"
    if scope == RuleScope.GLOBAL.value and rule.get("task_id") is not None:
        return "global scope with a task id"
    return None


def _valid_seconds(value: object) -> bool:
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return False
    return isinstance(value, (int, float)) and value >= 0


def invalid_record_fields(record: dict) -> list[str]:
    """Fields of a usage record that would fail to load."""
    bad: list[str] = []
    for name in ("task_id", "session_id"):
        if not isinstance(record.get(name), str):
            bad.append(name)
    if record.get("action_kind") not in _ACTIONS:
        bad.append("action_kind")
    if record.get("rule_scope") not in _SCOPES:
        bad.append("rule_scope")
    if "elapsed_seconds" in record and not _valid_seconds(record["elapsed_seconds"]):
        bad.append("elapsed_seconds")
    return bad


def _action_for(rule: dict) -> str:
    if rule.get("type") == RuleType.EARLY_COMPLETION_ONLY.value:
        return ActionKind.EARLY_COMPLETION.value
    return ActionKind.PAUSE.value


def _first_holders(rules: list[dict]) -> dict[str, int]:
    first: dict[str, int] = {}
    for index, rule in enumerate(rules):
        rid = rule.get("id")
        if isinstance(rid, str) and rid and rid not in first:
            first[rid] = index
    return first


def expected_usage_count(rules: list[dict], records: list[dict], index: int) -> int:
    """Records owned by the rule at index; 0 for non-first holders of a shared id."""
    rid = rules[index].get("id")
    if not isinstance(rid, str) or not rid:
        return 0
    if _first_holders(rules).get(rid) != index:
        return 0
    return sum(1 for r in records if r.get("rule_id") == rid)


# ─── Scan ────────────────────────────────────────────────────────

def check_rule_ids(rules: list[dict]) -> list[IntegrityIssue]:
    issues: list[IntegrityIssue] = []
    holders: dict[str, list[int]] = {}

    for index, rule in enumerate(rules):
        rid = rule.get("id")
        if not isinstance(rid, str) or not rid:
            issues.append(IntegrityIssue(
                kind=IssueKind.MISSING_ID,
                severity=IssueSeverity.CRITICAL,
                description=f'Rule "{_label(rule)}" has no id',
                affected_items=[_label(rule)],
                auto_fixable=True,
                fix=FixAction(FixKind.ASSIGN_RULE_ID, rule_indices=(index,)),
                details={"index": index},
            ))
            continue

        holders.setdefault(rid, []).append(index)

        if not is_well_formed_id(rid):
            issues.append(IntegrityIssue(
                kind=IssueKind.MISSING_ID,
                severity=IssueSeverity.WARNING,
                description=f'Rule "{_label(rule)}" has a malformed id: {rid}',
                affected_items=[rid],
                auto_fixable=True,
                fix=FixAction(
                    FixKind.REASSIGN_RULE_ID, rule_indices=(index,),
                    params={"old_id": rid},
                ),
                details={"index": index, "old_id": rid},
            ))

    for rid, indices in holders.items():
        if len(indices) < 2:
            continue
        issues.append(IntegrityIssue(
            kind=IssueKind.MISSING_ID,
            severity=IssueSeverity.CRITICAL,
            description=f"Rule id {rid} is shared by {len(indices)} rules",
            affected_items=[rid],
            auto_fixable=True,
            fix=FixAction(FixKind.REASSIGN_DUPLICATE_IDS, rule_indices=tuple(indices[1:])),
            details={"duplicate_id": rid, "indices": indices},
        ))

    return issues


def check_duplicate_names(rules: list[dict]) -> list[IntegrityIssue]:
    groups: dict[tuple, list[int]] = {}
    for index, rule in enumerate(rules):
        name = rule.get("name")
        if not _is_active(rule) or not isinstance(name, str) or not name.strip():
            continue
        key = (*_pool_key(rule), normalize_name(name))
        groups.setdefault(key, []).append(index)

    issues: list[IntegrityIssue] = []
    for (scope, task_id, _), indices in groups.items():
        if len(indices) < 2:
            continue
        first = rules[indices[0]]
        pool = f"task {task_id}" if scope == RuleScope.CHAIN.value else "global scope"
        issues.append(IntegrityIssue(
            kind=IssueKind.DUPLICATE_NAME,
            severity=IssueSeverity.WARNING,
            description=f'Rule name "{first["name"]}" is used {len(indices)} times in {pool}',
            affected_items=[_item_id(rules[i], i) for i in indices],
            auto_fixable=True,
            fix=FixAction(FixKind.RENAME_DUPLICATES, rule_indices=tuple(indices[1:])),
            details={"name": first["name"], "scope": scope, "task_id": task_id},
        ))
    return issues


def check_rule_fields(rules: list[dict]) -> list[IntegrityIssue]:
    issues: list[IntegrityIssue] = []
    valid_types = {t.value for t in RuleType}

    for index, rule in enumerate(rules):
        item = _item_id(rule, index)
        name = rule.get("name")

        if not isinstance(name, str) or not name.strip():
            issues.append(IntegrityIssue(
                kind=IssueKind.INVALID_TYPE,
                severity=IssueSeverity.CRITICAL,
                description=f"Rule {item} has no name",
                affected_items=[item],
                auto_fixable=False,
                details={"index": index},
            ))

        rule_type = rule.get("type")
        if not rule_type or rule_type not in valid_types:
            missing = not rule_type
            issues.append(IntegrityIssue(
                kind=IssueKind.INVALID_TYPE,
                severity=IssueSeverity.CRITICAL,
                description=(
                    f'Rule "{_label(rule)}" has no type' if missing
                    else f'Rule "{_label(rule)}" has an invalid type: {rule_type}'
                ),
                affected_items=[item],
                auto_fixable=True,
                fix=FixAction(FixKind.SET_DEFAULT_TYPE, rule_indices=(index,)),
                details={"index": index, "invalid_type": rule_type},
            ))

        problem = _scope_problem(rule)
        if problem is not None:
            scope, task_id = _pool_key(rule)
            issues.append(IntegrityIssue(
                kind=IssueKind.INVALID_TYPE,
                severity=IssueSeverity.CRITICAL,
                description=f'Rule "{_label(rule)}" has {problem}',
                affected_items=[item],
                auto_fixable=True,
                fix=FixAction(FixKind.NORMALIZE_SCOPE, rule_indices=(index,)),
                details={"index": index, "scope": scope, "task_id": task_id},
            ))

        last_used = rule.get("last_used_at")
        if last_used is not None and parse_timestamp(last_used) is None:
            issues.append(IntegrityIssue(
                kind=IssueKind.MISSING_CREATED_AT,
                severity=IssueSeverity.WARNING,
                description=f'Rule "{_label(rule)}" has an unreadable last-used time',
                affected_items=[item],
                auto_fixable=True,
                fix=FixAction(FixKind.CLEAR_LAST_USED_AT, rule_indices=(index,)),
                details={"index": index, "invalid_value": last_used},
            ))

        if parse_timestamp(rule.get("created_at")) is None:
            issues.append(IntegrityIssue(
                kind=IssueKind.MISSING_CREATED_AT,
                severity=IssueSeverity.WARNING,
                description=f'Rule "{_label(rule)}" has no creation time',
                affected_items=[item],
                auto_fixable=True,
                fix=FixAction(FixKind.SET_CREATED_AT, rule_indices=(index,)),
                details={"index": index},
            ))

        count = rule.get("usage_count")
        if not _valid_usage_count(count):
            issues.append(IntegrityIssue(
                kind=IssueKind.INVALID_USAGE_COUNT,
                severity=IssueSeverity.WARNING,
                description=f'Rule "{_label(rule)}" has an invalid usage count: {count!r}',
                affected_items=[item],
                auto_fixable=True,
                fix=FixAction(FixKind.RESET_USAGE_COUNT, rule_indices=(index,)),
                details={"index": index, "invalid_count": count},
            ))

    return issues


def check_usage_records(records: list[dict], rules: list[dict]) -> list[IntegrityIssue]:
    issues: list[IntegrityIssue] = []
    owners = {rid: rules[index] for rid, index in _first_holders(rules).items()}
    rule_ids = set(owners)

    for record in records:
        rec_id = record.get("id")
        has_id = isinstance(rec_id, str) and bool(rec_id)
        ref = {"id": rec_id} if has_id else {"snapshot": dict(record)}
        item = rec_id if has_id else "unidentified record"

        # An orphan is deleted whole; its other defects are not reported.
        if record.get("rule_id") not in rule_ids:
            issues.append(IntegrityIssue(
                kind=IssueKind.ORPHANED_RECORD,
                severity=IssueSeverity.WARNING,
                description=f"Usage record references missing rule id {record.get('rule_id')}",
                affected_items=[item],
                auto_fixable=True,
                fix=FixAction(FixKind.DELETE_RECORD, record_ref=ref),
                details={"rule_id": record.get("rule_id")},
            ))
            continue

        if not has_id:
            issues.append(IntegrityIssue(
                kind=IssueKind.MISSING_ID,
                severity=IssueSeverity.CRITICAL,
                description=f"Usage record for rule {record.get('rule_id')} has no id",
                affected_items=[item],
                auto_fixable=True,
                fix=FixAction(FixKind.ASSIGN_RECORD_ID, record_ref=ref),
            ))

        if parse_timestamp(record.get("used_at")) is None:
            issues.append(IntegrityIssue(
                kind=IssueKind.MISSING_CREATED_AT,
                severity=IssueSeverity.WARNING,
                description=f"Usage record {item} has no usage time",
                affected_items=[item],
                auto_fixable=True,
                fix=FixAction(FixKind.SET_RECORD_USED_AT, record_ref=ref),
            ))

        bad_fields = invalid_record_fields(record)
        if bad_fields:
            owner = owners[record["rule_id"]]
            fixable = set(bad_fields) <= _REPAIRABLE_RECORD_FIELDS and (
                "task_id" not in bad_fields
                or _pool_key(owner)[0] == RuleScope.CHAIN.value
            )
            issues.append(IntegrityIssue(
                kind=IssueKind.INVALID_TYPE,
                severity=IssueSeverity.CRITICAL,
                description=f"Usage record {item} has invalid {', '.join(bad_fields)}",
                affected_items=[item],
                auto_fixable=fixable,
                fix=FixAction(
                    FixKind.REPAIR_RECORD_FIELDS, record_ref=ref,
                    params={"fields": bad_fields},
                ) if fixable else None,
                details={"fields": bad_fields},
            ))

    return issues


def check_schema_conformance(
    rules: list[dict],
    records: list[dict],
    validate_rule: RowValidator,
    validate_record: RowValidator,
) -> list[IntegrityIssue]:
    """Rows the load-time schema rejects for reasons no dedicated check covers."""
    issues: list[IntegrityIssue] = []
    rule_ids = set(_first_holders(rules))

    for index, rule in enumerate(rules):
        fields = [f for f in validate_rule(rule) if f not in _CHECKED_RULE_FIELDS]
        if fields:
            item = _item_id(rule, index)
            issues.append(IntegrityIssue(
                kind=IssueKind.INVALID_TYPE,
                severity=IssueSeverity.CRITICAL,
                description=f'Rule "{_label(rule)}" has invalid {", ".join(fields)}',
                affected_items=[item],
                auto_fixable=False,
                details={"index": index, "fields": fields},
            ))

    for record in records:
        if record.get("rule_id") not in rule_ids:
            continue
        fields = [f for f in validate_record(record) if f not in _CHECKED_RECORD_FIELDS]
        if fields:
            rec_id = record.get("id")
            issues.append(IntegrityIssue(
                kind=IssueKind.INVALID_TYPE,
                severity=IssueSeverity.CRITICAL,
                description=f"Usage record {rec_id or 'without id'} has invalid {', '.join(fields)}",
                affected_items=[rec_id if isinstance(rec_id, str) and rec_id else "unidentified record"],
                auto_fixable=False,
                details={"fields": fields},
            ))

    return issues


def check_usage_consistency(rules: list[dict], records: list[dict]) -> list[IntegrityIssue]:
    issues: list[IntegrityIssue] = []
    for index, rule in enumerate(rules):
        actual = expected_usage_count(rules, records, index)
        recorded = rule.get("usage_count")
        if recorded == actual and _valid_usage_count(recorded):
            continue
        issues.append(IntegrityIssue(
            kind=IssueKind.INVALID_USAGE_COUNT,
            severity=IssueSeverity.INFO,
            description=(
                f'Rule "{_label(rule)}" usage count is {recorded!r} '
                f"but {actual} usage record(s) exist"
            ),
            affected_items=[_item_id(rule, index)],
            auto_fixable=True,
            fix=FixAction(FixKind.RECOMPUTE_USAGE_COUNT, rule_indices=(index,)),
            details={"index": index, "actual_count": actual, "recorded_count": recorded},
        ))
    return issues


def scan_integrity(
    rules: list[dict],
    records: list[dict],
    validate_rule: RowValidator | None = None,
    validate_record: RowValidator | None = None,
) -> list[IntegrityIssue]:
    """All issues, ordered: ids, names, fields, records, consistency, schema.

    Without validators the schema pass is skipped and only the dedicated checks run.
    """
    issues = [
        *check_rule_ids(rules),
        *check_duplicate_names(rules),
        *check_rule_fields(rules),
        *check_usage_records(records, rules),
        *check_usage_consistency(rules, records),
    ]
    if validate_rule is not None and validate_record is not None:
        issues.extend(check_schema_conformance(rules, records, validate_rule, validate_record))
    return issues


def summarize(issues: list[IntegrityIssue]) -> IntegritySummary:
    summary = IntegritySummary(total_issues=len(issues))
    for issue in issues:
        if issue.severity == IssueSeverity.CRITICAL:
            summary.critical_issues += 1
        elif issue.severity == IssueSeverity.WARNING:
            summary.warning_issues += 1
        else:
            summary.info_issues += 1
        if issue.auto_fixable:
            summary.auto_fixable_issues += 1
    return summary


def recommend(issues: list[IntegrityIssue]) -> list[str]:
    if not issues:
        return ["Data integrity is good, nothing to repair"]

    recommendations: list[str] = []
    critical = sum(1 for i in issues if i.severity == IssueSeverity.CRITICAL)
    if critical:
        recommendations.append(f"{critical} critical issue(s) found, repair immediately")
    fixable = sum(1 for i in issues if i.auto_fixable)
    if fixable:
        recommendations.append(f"{fixable} issue(s) can be repaired automatically")
    if any(i.kind == IssueKind.DUPLICATE_NAME for i in issues):
        recommendations.append("Give duplicated rule names a distinguishing suffix")
    if any(i.kind == IssueKind.ORPHANED_RECORD for i in issues):
        recommendations.append("Remove usage records that reference deleted rules")
    return recommendations


def build_report(
    rules: list[dict],
    records: list[dict],
    validate_rule: RowValidator | None = None,
    validate_record: RowValidator | None = None,
) -> IntegrityReport:
    issues = scan_integrity(rules, records, validate_rule, validate_record)
    return IntegrityReport(issues=issues, summary=summarize(issues), recommendations=recommend(issues))


# ─── Fix Application ─────────────────────────────────────────────

def _rule_at(rules: list[dict], index: int) -> dict:
    if index < 0 or index >= len(rules):
        raise DataIntegrityError(f"Rule position {index} no longer exists")
    return rules[index]


_MUTABLE_RECORD_FIELDS = ("id", "used_at")


def _stable_view(record: dict) -> dict:
    return {k: v for k, v in record.items() if k not in _MUTABLE_RECORD_FIELDS}


def _record_position(
    records: list[dict],
    ref: dict | None,
    still_broken: Callable[[dict], bool] | None = None,
) -> int:
    """Locate a record by id, or by snapshot ignoring fields that fixes rewrite.

    still_broken restricts snapshot matches to records that still need the fix, so
    identical id-less records are each fixed once.
    """
    if ref is not None:
        for position, record in enumerate(records):
            if "id" in ref and record.get("id") == ref["id"]:
                return position
            if (
                "snapshot" in ref
                and _stable_view(record) == _stable_view(ref["snapshot"])
                and (still_broken is None or still_broken(record))
            ):
                return position
    raise DataIntegrityError(f"Usage record {ref} no longer exists")


def _free_name(rules: list[dict], index: int) -> str:
    rule = rules[index]
    pool = _pool_key(rule)
    taken = {
        normalize_name(r["name"])
        for i, r in enumerate(rules)
        if i != index and _is_active(r) and _pool_key(r) == pool
        and isinstance(r.get("name"), str)
    }
    n = 2
    while True:
        candidate = f"{rule['name']} ({n})"
        if normalize_name(candidate) not in taken:
            return candidate
        n += 1


def apply_fix(
    action: FixAction,
    rules: list[dict],
    records: list[dict],
    now: datetime,
    new_rule_id: Callable[[], str],
    new_record_id: Callable[[], str],
) -> str:
    """Apply one fix in place. Returns a short description of what changed."""
    kind = action.kind

    if kind == FixKind.ASSIGN_RULE_ID:
        rule = _rule_at(rules, action.rule_indices[0])
        rule["id"] = new_rule_id()
        return f"assigned id {rule['id']}"

    if kind == FixKind.REASSIGN_RULE_ID:
        rule = _rule_at(rules, action.rule_indices[0])
        old_id = action.params["old_id"]
        if rule.get("id") != old_id:
            raise DataIntegrityError(f"Rule id changed since scan (expected {old_id})")
        rule["id"] = new_rule_id()
        remapped = 0
        for record in records:
            if record.get("rule_id") == old_id:
                record["rule_id"] = rule["id"]
                remapped += 1
        return f"reassigned {old_id} -> {rule['id']}, remapped {remapped} record(s)"

    if kind == FixKind.REASSIGN_DUPLICATE_IDS:
        for index in action.rule_indices:
            _rule_at(rules, index)["id"] = new_rule_id()
        return f"reassigned {len(action.rule_indices)} duplicate id(s)"

    if kind == FixKind.RENAME_DUPLICATES:
        renamed = []
        for index in action.rule_indices:
            rule = _rule_at(rules, index)
            rule["name"] = _free_name(rules, index)
            renamed.append(rule["name"])
        return f"renamed to {', '.join(renamed)}"

    if kind == FixKind.SET_DEFAULT_TYPE:
        _rule_at(rules, action.rule_indices[0])["type"] = DEFAULT_RULE_TYPE.value
        return f"type set to {DEFAULT_RULE_TYPE.value}"

    if kind == FixKind.SET_CREATED_AT:
        _rule_at(rules, action.rule_indices[0])["created_at"] = now.isoformat()
        return "creation time set to now"

    if kind == FixKind.RESET_USAGE_COUNT:
        _rule_at(rules, action.rule_indices[0])["usage_count"] = 0
        return "usage count reset to 0"

    if kind == FixKind.RECOMPUTE_USAGE_COUNT:
        index = action.rule_indices[0]
        rule = _rule_at(rules, index)
        rule["usage_count"] = expected_usage_count(rules, records, index)
        return f"usage count recomputed to {rule['usage_count']}"

    if kind == FixKind.DELETE_RECORD:
        records.pop(_record_position(records, action.record_ref))
        return "orphaned usage record deleted"

    if kind == FixKind.SET_RECORD_USED_AT:
        position = _record_position(
            records, action.record_ref,
            lambda r: parse_timestamp(r.get("used_at")) is None,
        )
        records[position]["used_at"] = now.isoformat()
        return "usage time set to now"

    if kind == FixKind.ASSIGN_RECORD_ID:
        position = _record_position(
            records, action.record_ref,
            lambda r: not isinstance(r.get("id"), str) or not r.get("id"),
        )
        records[position]["id"] = new_record_id()
        return f"assigned record id {records[position]['id']}"

    if kind == FixKind.NORMALIZE_SCOPE:
        rule = _rule_at(rules, action.rule_indices[0])
        rule["scope"], rule["task_id"] = _pool_key(rule)
        return f"scope set to {rule['scope']}"

    if kind == FixKind.CLEAR_LAST_USED_AT:
        _rule_at(rules, action.rule_indices[0])["last_used_at"] = None
        return "last-used time cleared"

    if kind == FixKind.REPAIR_RECORD_FIELDS:
        position = _record_position(
            records, action.record_ref, lambda r: bool(invalid_record_fields(r)),
        )
        record = records[position]
        first = _first_holders(rules).get(record.get("rule_id"))
        if first is None:
            raise DataIntegrityError(f"Rule {record.get('rule_id')} no longer exists")
        owner = rules[first]
        scope, task_id = _pool_key(owner)
        fields = action.params["fields"]
        if "rule_scope" in fields:
            record["rule_scope"] = scope
        if "action_kind" in fields:
            record["action_kind"] = _action_for(owner)
        if "elapsed_seconds" in fields:
            record["elapsed_seconds"] = 0.0
        if "task_id" in fields:
            if task_id is None:
                raise DataIntegrityError(f"Rule {owner.get('id')} has no task to copy")
            record["task_id"] = task_id
        return f"repaired record field(s): {', '.join(fields)}"

    raise DataIntegrityError(f"Unknown fix kind: {kind}")
