"""IntegrityChecker: scans through the store and repairs with declarative fixes.

Tests cover:
    - A rule whose usage_count (5) exceeds its records (2) is an info issue, fixed to 2
    - check_and_repair brings a corrupted collection back to a clean, loadable state
    - A failing fix is reported without stopping the others
    - Non-fixable issues yield a failed FixResult; fix history accumulates and clears
    - Rows that would fail to load are reported; scope and record fields are rebuilt
"""

import pytest

from exception_rules.core.domain_types import ActionKind, RuleScope
from exception_rules.core.errors import DataIntegrityError
from exception_rules.core.integrity_rules import (
    FixAction, FixKind, IntegrityIssue, IssueKind, IssueSeverity,
)
from exception_rules.infrastructure.memory_backend import InMemoryBackend
from exception_rules.services.integrity_checker import IntegrityChecker
from exception_rules.services.rule_store import RuleStore


def stored_rule(rule_id, name, **overrides) -> dict:
    rule = {
        "id": rule_id, "name": name, "description": None, "type": "pause_only",
        "scope": "global", "task_id": None, "created_at": "2026-02-01T08:00:00+00:00",
        "last_used_at": None, "usage_count": 0, "is_active": True, "is_archived": False,
    }
    rule.update(overrides)
    return rule


def stored_record(record_id, rule_id, **overrides) -> dict:
    record = {
        "id": record_id, "rule_id": rule_id, "task_id": "t1", "session_id": "s1",
        "used_at": "2026-02-01T09:00:00+00:00", "action_kind": "pause",
        "elapsed_seconds": 60.0, "remaining_seconds": None, "rule_scope": "global",
        "pause_duration_seconds": None, "auto_resume": None,
    }
    record.update(overrides)
    return record


@pytest.fixture
def corrupted(settings, clock):
    backend = InMemoryBackend({
        "rules": [
            stored_rule(None, "Water"),
            stored_rule("rule b", "Stretch", usage_count=1),
            stored_rule("rule_c", "Bathroom break", type="bogus", created_at=None, usage_count=7),
            stored_rule("rule_c", "bathroom break"),
        ],
        "usage_records": [
            stored_record("usage_1", "rule b"),
            stored_record("usage_2", "rule_c", session_id="s2"),
            stored_record("usage_3", "rule_gone"),
            stored_record(None, "rule_c", session_id="s3", used_at=None),
        ],
    })
    store = RuleStore(backend, settings, clock)
    return store, IntegrityChecker(store, clock)


@pytest.mark.asyncio
async def test_usage_count_drift(make_rule, store, checker):
    rule = await make_rule("Water")
    await store.record_usage(rule.id, "t1", "s1", ActionKind.PAUSE, 10)
    await store.record_usage(rule.id, "t1", "s2", ActionKind.PAUSE, 20)

    def inflate(rules, records):
        rules[0]["usage_count"] = 5
    await store.apply_raw(inflate)

    report = await checker.check_integrity()
    assert len(report.issues) == 1
    issue = report.issues[0]
    assert issue.kind == IssueKind.INVALID_USAGE_COUNT
    assert issue.severity == IssueSeverity.INFO
    assert issue.auto_fixable

    results = await checker.auto_fix_issues(report.issues)
    assert [r.success for r in results] == [True]
    assert (await store.get_rule(rule.id)).usage_count == 2
    assert (await checker.check_integrity()).is_clean


@pytest.mark.asyncio
async def test_clean_store(make_rule, checker):
    await make_rule("Water")
    report = await checker.check_integrity()
    assert report.is_clean
    assert report.summary.total_issues == 0


@pytest.mark.asyncio
async def test_check_and_repair_restores_a_loadable_store(corrupted):
    store, checker = corrupted
    before = await checker.check_integrity()
    assert before.summary.critical_issues > 0

    after, results = await checker.check_and_repair()
    assert after.is_clean
    assert all(r.success for r in results)
    assert len(results) == before.summary.auto_fixable_issues

    rules = await store.list_rules()
    assert sorted(r.name for r in rules) == ["Bathroom break", "Stretch", "Water", "bathroom break (2)"]
    by_name = {r.name: r for r in rules}
    assert by_name["Bathroom break"].usage_count == 2
    assert by_name["Stretch"].usage_count == 1
    records = await store.list_usage_records()
    assert len(records) == 3
    assert {r.rule_id for r in records} <= {r.id for r in rules}


@pytest.mark.asyncio
async def test_check_does_not_write(corrupted):
    store, checker = corrupted
    raw_before = await store.load_raw()
    await checker.check_integrity()
    assert await store.load_raw() == raw_before


@pytest.mark.asyncio
async def test_failing_fix_does_not_stop_others(make_rule, store, checker):
    rule = await make_rule("Water")

    def break_type(rules, records):
        rules[0]["type"] = "bogus"
    await store.apply_raw(break_type)

    stale = IntegrityIssue(
        kind=IssueKind.ORPHANED_RECORD, severity=IssueSeverity.WARNING,
        description="stale", affected_items=["usage_gone"], auto_fixable=True,
        fix=FixAction(FixKind.DELETE_RECORD, record_ref={"id": "usage_gone"}),
    )
    report = await checker.check_integrity()
    results = await checker.auto_fix_issues([stale, *report.issues])

    assert [r.success for r in results] == [False, True]
    assert results[0].issue_kind == IssueKind.ORPHANED_RECORD
    assert (await store.get_rule(rule.id)).type.value == "pause_only"


@pytest.mark.asyncio
async def test_non_fixable_issue(checker):
    issue = IntegrityIssue(
        kind=IssueKind.INVALID_TYPE, severity=IssueSeverity.CRITICAL,
        description="Rule #0 has no name", affected_items=["#0"], auto_fixable=False,
    )
    results = await checker.auto_fix_issues([issue])
    assert results[0].success is False
    assert results[0].message == "Issue is not auto-fixable"


@pytest.mark.asyncio
async def test_fix_history(corrupted):
    _, checker = corrupted
    await checker.check_and_repair()
    assert len(checker.fix_history) == 10
    checker.clear_fix_history()
    assert checker.fix_history == []


@pytest.mark.asyncio
async def test_unloadable_chain_rule_is_reported_and_repaired(settings, clock):
    backend = InMemoryBackend({"rules": [stored_rule("rule_a", "Stretch", scope="chain")]})
    store = RuleStore(backend, settings, clock)
    checker = IntegrityChecker(store, clock)
    with pytest.raises(DataIntegrityError):
        await store.list_rules()

    report = await checker.check_integrity()
    assert [(i.kind, i.severity, i.auto_fixable) for i in report.issues] == [
        (IssueKind.INVALID_TYPE, IssueSeverity.CRITICAL, True),
    ]

    after, _ = await checker.check_and_repair()
    assert after.is_clean
    assert [r.scope for r in await store.list_rules()] == [RuleScope.GLOBAL]


@pytest.mark.asyncio
async def test_unloadable_record_fields_are_rebuilt(settings, clock):
    backend = InMemoryBackend({
        "rules": [stored_rule("rule_a", "Stretch", usage_count=1)],
        "usage_records": [stored_record("usage_1", "rule_a", action_kind="nap", rule_scope="everywhere")],
    })
    store = RuleStore(backend, settings, clock)
    checker = IntegrityChecker(store, clock)

    after, results = await checker.check_and_repair()
    assert [r.success for r in results] == [True]
    assert after.is_clean
    [record] = await store.list_usage_records()
    assert record.action_kind == ActionKind.PAUSE
    assert record.rule_scope == RuleScope.GLOBAL


@pytest.mark.asyncio
async def test_schema_only_failure_is_reported(settings, clock):
    backend = InMemoryBackend({"rules": [stored_rule("rule_a", "Stretch", description=7)]})
    store = RuleStore(backend, settings, clock)

    report = await IntegrityChecker(store, clock).check_integrity()
    assert len(report.issues) == 1
    assert report.issues[0].details["fields"] == ["description"]
    assert not report.issues[0].auto_fixable
