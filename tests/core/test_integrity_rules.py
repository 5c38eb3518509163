"""Integrity Rules: pure scan of raw collections and fix application.

Tests cover:
    - Clean data yields no issues and a "nothing to repair" recommendation
    - Each check: rule ids, duplicate names, fields, usage records, usage consistency
    - Recorded usage_count differing from actual record count is an info issue, fixed by recompute
    - Each fix repairs exactly its issue; stale targets raise DataIntegrityError
    - Applying every fix from one scan leaves a dataset that rescans clean
"""

import itertools
from datetime import datetime, timezone

import pytest

from exception_rules.core.errors import DataIntegrityError
from exception_rules.core.integrity_rules import (
    FixAction, FixKind, IssueKind, IssueSeverity, apply_fix, build_report, parse_timestamp,
    scan_integrity,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def raw_rule(**overrides) -> dict:
    rule = {
        "id": "rule_a", "name": "Bathroom break", "description": None,
        "type": "pause_only", "scope": "global", "task_id": None,
        "created_at": "2026-03-01T09:00:00+00:00", "last_used_at": None,
        "usage_count": 0, "is_active": True, "is_archived": False,
    }
    rule.update(overrides)
    return rule


def raw_record(**overrides) -> dict:
    record = {
        "id": "usage_1", "rule_id": "rule_a", "task_id": "task_1", "session_id": "sess_1",
        "used_at": "2026-03-01T10:00:00+00:00", "action_kind": "pause",
        "elapsed_seconds": 120.0, "remaining_seconds": None, "rule_scope": "global",
        "pause_duration_seconds": None, "auto_resume": None,
    }
    record.update(overrides)
    return record


@pytest.fixture
def fix():
    """apply_fix bound to deterministic id factories."""
    rule_ids = (f"rule_new{i}" for i in itertools.count(1))
    record_ids = (f"usage_new{i}" for i in itertools.count(1))

    def _apply(action, rules, records):
        return apply_fix(
            action, rules, records, NOW,
            new_rule_id=lambda: next(rule_ids),
            new_record_id=lambda: next(record_ids),
        )
    return _apply


# ─── Scan ────────────────────────────────────────────────────────

def test_clean_data_has_no_issues():
    rules = [raw_rule(usage_count=1)]
    records = [raw_record()]
    report = build_report(rules, records)
    assert report.is_clean
    assert report.summary.total_issues == 0
    assert report.recommendations == ["Data integrity is good, nothing to repair"]


def test_missing_rule_id_is_critical(fix):
    rules = [raw_rule(id=None)]
    issues = scan_integrity(rules, [])
    assert [(i.kind, i.severity) for i in issues] == [(IssueKind.MISSING_ID, IssueSeverity.CRITICAL)]
    fix(issues[0].fix, rules, [])
    assert rules[0]["id"] == "rule_new1"


@pytest.mark.parametrize("bad_id", ["rule a", "temp_123"])
def test_malformed_rule_id_is_reassigned_and_records_follow(fix, bad_id):
    rules = [raw_rule(id=bad_id, usage_count=1)]
    records = [raw_record(rule_id=bad_id)]
    issues = scan_integrity(rules, records)
    assert [(i.kind, i.severity) for i in issues] == [(IssueKind.MISSING_ID, IssueSeverity.WARNING)]

    fix(issues[0].fix, rules, records)
    assert rules[0]["id"] == "rule_new1"
    assert records[0]["rule_id"] == "rule_new1"
    assert scan_integrity(rules, records) == []


def test_duplicate_ids_keep_first_holder(fix):
    rules = [
        raw_rule(id="rule_a", name="Water", usage_count=2),
        raw_rule(id="rule_a", name="Stretch"),
    ]
    records = [raw_record(id="usage_1"), raw_record(id="usage_2")]
    issues = scan_integrity(rules, records)
    assert len(issues) == 1
    assert issues[0].severity == IssueSeverity.CRITICAL
    assert issues[0].fix.rule_indices == (1,)

    fix(issues[0].fix, rules, records)
    assert rules[0]["id"] == "rule_a"
    assert rules[1]["id"] == "rule_new1"
    assert all(r["rule_id"] == "rule_a" for r in records)


def test_duplicate_names_in_same_pool(fix):
    rules = [
        raw_rule(id="rule_a", name="Bathroom break"),
        raw_rule(id="rule_b", name="bathroom  BREAK"),
    ]
    issues = scan_integrity(rules, [])
    assert [i.kind for i in issues] == [IssueKind.DUPLICATE_NAME]
    assert issues[0].affected_items == ["rule_a", "rule_b"]

    fix(issues[0].fix, rules, [])
    assert rules[1]["name"] == "bathroom  BREAK (2)"
    assert scan_integrity(rules, []) == []


def test_rename_skips_taken_suffixes(fix):
    rules = [
        raw_rule(id="rule_a", name="Water"),
        raw_rule(id="rule_b", name="Water (2)"),
        raw_rule(id="rule_c", name="water"),
    ]
    issues = scan_integrity(rules, [])
    fix(issues[0].fix, rules, [])
    assert rules[2]["name"] == "water (3)"


def test_same_name_in_other_pools_is_fine():
    rules = [
        raw_rule(id="rule_a", name="Stretch"),
        raw_rule(id="rule_b", name="Stretch", scope="chain", task_id="task_1"),
        raw_rule(id="rule_c", name="Stretch", scope="chain", task_id="task_2"),
        raw_rule(id="rule_d", name="Stretch", is_active=False),
    ]
    assert scan_integrity(rules, []) == []


def test_missing_name_is_not_auto_fixable():
    issues = scan_integrity([raw_rule(name="  ")], [])
    assert len(issues) == 1
    assert issues[0].kind == IssueKind.INVALID_TYPE
    assert issues[0].severity == IssueSeverity.CRITICAL
    assert not issues[0].auto_fixable
    assert issues[0].fix is None


@pytest.mark.parametrize("bad_type", [None, "", "skip_only"])
def test_invalid_type_defaults_to_pause_only(fix, bad_type):
    rules = [raw_rule(type=bad_type)]
    issues = scan_integrity(rules, [])
    assert [(i.kind, i.severity) for i in issues] == [(IssueKind.INVALID_TYPE, IssueSeverity.CRITICAL)]
    fix(issues[0].fix, rules, [])
    assert rules[0]["type"] == "pause_only"


def test_missing_created_at_is_set_to_now(fix):
    rules = [raw_rule(created_at="not a date")]
    issues = scan_integrity(rules, [])
    assert [(i.kind, i.severity) for i in issues] == [
        (IssueKind.MISSING_CREATED_AT, IssueSeverity.WARNING),
    ]
    fix(issues[0].fix, rules, [])
    assert rules[0]["created_at"] == NOW.isoformat()


def test_negative_usage_count(fix):
    rules = [raw_rule(usage_count=-3)]
    issues = scan_integrity(rules, [])
    assert {(i.kind, i.severity) for i in issues} == {
        (IssueKind.INVALID_USAGE_COUNT, IssueSeverity.WARNING),
        (IssueKind.INVALID_USAGE_COUNT, IssueSeverity.INFO),
    }
    for issue in issues:
        fix(issue.fix, rules, [])
    assert rules[0]["usage_count"] == 0


def test_usage_count_drift_is_info_and_recomputed(fix):
    rules = [raw_rule(usage_count=5)]
    records = [raw_record(id="usage_1"), raw_record(id="usage_2")]
    issues = scan_integrity(rules, records)
    assert len(issues) == 1
    issue = issues[0]
    assert issue.kind == IssueKind.INVALID_USAGE_COUNT
    assert issue.severity == IssueSeverity.INFO
    assert issue.details == {"index": 0, "actual_count": 2, "recorded_count": 5}

    fix(issue.fix, rules, records)
    assert rules[0]["usage_count"] == 2


def test_orphaned_record_is_deleted(fix):
    rules = [raw_rule()]
    records = [raw_record(rule_id="rule_gone", used_at=None)]
    issues = scan_integrity(rules, records)
    assert [i.kind for i in issues] == [IssueKind.ORPHANED_RECORD]

    fix(issues[0].fix, rules, records)
    assert records == []


def test_record_without_used_at(fix):
    rules = [raw_rule(usage_count=1)]
    records = [raw_record(used_at=None)]
    issues = scan_integrity(rules, records)
    assert [(i.kind, i.severity) for i in issues] == [
        (IssueKind.MISSING_CREATED_AT, IssueSeverity.WARNING),
    ]
    fix(issues[0].fix, rules, records)
    assert records[0]["used_at"] == NOW.isoformat()


def test_identical_records_without_ids_each_get_one(fix):
    rules = [raw_rule(usage_count=2)]
    records = [raw_record(id=None), raw_record(id=None)]
    issues = scan_integrity(rules, records)
    assert [i.kind for i in issues] == [IssueKind.MISSING_ID, IssueKind.MISSING_ID]

    for issue in issues:
        fix(issue.fix, rules, records)
    assert sorted(r["id"] for r in records) == ["usage_new1", "usage_new2"]


def test_fix_on_vanished_record_raises(fix):
    action = FixAction(FixKind.DELETE_RECORD, record_ref={"id": "usage_missing"})
    with pytest.raises(DataIntegrityError):
        fix(action, [raw_rule()], [])


def test_fix_on_vanished_rule_raises(fix):
    action = FixAction(FixKind.SET_DEFAULT_TYPE, rule_indices=(3,))
    with pytest.raises(DataIntegrityError):
        fix(action, [raw_rule()], [])


def test_reassign_refuses_when_id_changed(fix):
    action = FixAction(FixKind.REASSIGN_RULE_ID, rule_indices=(0,), params={"old_id": "rule x"})
    with pytest.raises(DataIntegrityError):
        fix(action, [raw_rule(id="rule_a")], [])


# ─── Report ──────────────────────────────────────────────────────

def test_summary_and_recommendations():
    rules = [raw_rule(id=None), raw_rule(id="rule_b", name="bathroom break")]
    records = [raw_record(rule_id="rule_gone")]
    report = build_report(rules, records)

    assert report.summary.total_issues == 3
    assert report.summary.critical_issues == 1
    assert report.summary.warning_issues == 2
    assert report.summary.auto_fixable_issues == 3
    assert report.recommendations[0] == "1 critical issue(s) found, repair immediately"
    assert "Give duplicated rule names a distinguishing suffix" in report.recommendations
    assert "Remove usage records that reference deleted rules" in report.recommendations
    assert len(report.of_kind(IssueKind.ORPHANED_RECORD)) == 1


# ─── Repair Closure ──────────────────────────────────────────────

def messy_dataset() -> tuple[list[dict], list[dict]]:
    rules = [
        raw_rule(id=None, name="Water"),
        raw_rule(id="rule b", name="Stretch", usage_count=1),
        raw_rule(id="rule_c", name="Bathroom break", type="bogus", created_at=None, usage_count=5),
        raw_rule(id="rule_c", name="bathroom break"),
    ]
    records = [
        raw_record(id="usage_1", rule_id="rule b"),
        raw_record(id="usage_2", rule_id="rule_c", session_id="sess_2"),
        raw_record(id="usage_3", rule_id="rule_c", session_id="sess_3"),
        raw_record(id="usage_4", rule_id="rule_zzz"),
        raw_record(id=None, rule_id="rule_c", session_id="sess_4", used_at=None),
    ]
    return rules, records


def test_messy_dataset_issue_inventory():
    rules, records = messy_dataset()
    report = build_report(rules, records)
    assert report.summary.total_issues == 10
    assert report.summary.critical_issues == 4
    assert report.summary.warning_issues == 5
    assert report.summary.info_issues == 1
    assert report.summary.auto_fixable_issues == 10


def test_applying_every_fix_rescans_clean(fix):
    rules, records = messy_dataset()
    for issue in scan_integrity(rules, records):
        fix(issue.fix, rules, records)

    assert scan_integrity(rules, records) == []
    assert len(records) == 4
    assert rules[2]["usage_count"] == 3
    assert rules[3]["name"] == "bathroom break (2)"


# ─── Scope And Record Fields ─────────────────────────────────────

@pytest.mark.parametrize("overrides, expected", [
    ({"scope": "chain", "task_id": None}, ("global", None)),
    ({"scope": "global", "task_id": "task_1"}, ("global", None)),
    ({"scope": "sideways", "task_id": "task_1"}, ("chain", "task_1")),
    ({"scope": None}, ("global", None)),
])
def test_inconsistent_scope_is_normalized(fix, overrides, expected):
    rules = [raw_rule(**overrides)]
    issues = scan_integrity(rules, [])
    assert [(i.kind, i.severity) for i in issues] == [(IssueKind.INVALID_TYPE, IssueSeverity.CRITICAL)]
    assert issues[0].fix.kind == FixKind.NORMALIZE_SCOPE

    fix(issues[0].fix, rules, [])
    assert (rules[0]["scope"], rules[0]["task_id"]) == expected
    assert scan_integrity(rules, []) == []


def test_scope_repair_does_not_collide_with_pool_neighbour(fix):
    rules = [
        raw_rule(id="rule_a", name="Stretch"),
        raw_rule(id="rule_b", name="stretch", scope="chain", task_id=None),
    ]
    issues = scan_integrity(rules, [])
    assert [i.kind for i in issues] == [IssueKind.DUPLICATE_NAME, IssueKind.INVALID_TYPE]

    for issue in issues:
        fix(issue.fix, rules, [])
    assert rules[1]["name"] == "stretch (2)"
    assert rules[1]["scope"] == "global"
    assert scan_integrity(rules, []) == []


def test_naive_timestamps_are_read_as_utc():
    assert parse_timestamp("2026-01-01T00:00:00") == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp(datetime(2026, 1, 1)).tzinfo is timezone.utc
    assert scan_integrity([raw_rule(created_at="2026-01-01T00:00:00")], []) == []


def test_unreadable_last_used_at_is_cleared(fix):
    rules = [raw_rule(last_used_at="yesterday")]
    issues = scan_integrity(rules, [])
    assert [(i.kind, i.severity) for i in issues] == [
        (IssueKind.MISSING_CREATED_AT, IssueSeverity.WARNING),
    ]
    fix(issues[0].fix, rules, [])
    assert rules[0]["last_used_at"] is None


def test_record_fields_rebuilt_from_owning_rule(fix):
    rules = [raw_rule(id="rule_a", type="early_completion_only", scope="chain", task_id="task_9", usage_count=1)]
    records = [raw_record(action_kind="skip", rule_scope=None, task_id=None, elapsed_seconds=-5)]
    issues = scan_integrity(rules, records)
    assert len(issues) == 1
    assert issues[0].severity == IssueSeverity.CRITICAL
    assert issues[0].auto_fixable
    assert issues[0].details["fields"] == ["task_id", "action_kind", "rule_scope", "elapsed_seconds"]

    fix(issues[0].fix, rules, records)
    assert records[0]["task_id"] == "task_9"
    assert records[0]["action_kind"] == "early_completion"
    assert records[0]["rule_scope"] == "chain"
    assert records[0]["elapsed_seconds"] == 0.0
    assert scan_integrity(rules, records) == []


def test_record_without_session_is_reported_but_not_fixable():
    rules = [raw_rule(usage_count=1)]
    record = raw_record()
    del record["session_id"]
    issues = scan_integrity(rules, [record])
    assert len(issues) == 1
    assert issues[0].details == {"fields": ["session_id"]}
    assert not issues[0].auto_fixable
    assert issues[0].fix is None


def test_record_task_not_fixable_for_global_rule():
    issues = scan_integrity([raw_rule(usage_count=1)], [raw_record(task_id=None)])
    assert [i.auto_fixable for i in issues] == [False]


def test_schema_validators_report_uncovered_fields():
    def validate_rule(row):
        return ["description", "type"] if row.get("description") == 7 else []

    def validate_record(row):
        return ["auto_resume"] if row.get("auto_resume") == "maybe" else []

    rules = [raw_rule(description=7, usage_count=2)]
    records = [raw_record(auto_resume="maybe"), raw_record(id="usage_2")]
    issues = scan_integrity(rules, records, validate_rule, validate_record)

    assert [i.details["fields"] for i in issues] == [["description"], ["auto_resume"]]
    assert all(i.severity == IssueSeverity.CRITICAL and not i.auto_fixable for i in issues)
    assert scan_integrity(rules, records) == []
