"""IntegrityChecker: scan stored collections and apply declarative fixes.

Invariants:
    - check_integrity never writes; it scans raw (unvalidated) collections
    - auto_fix_issues applies each fix in its own RuleStore.apply_raw call
    - One failing fix never aborts the others; every issue gets a FixResult
    - Fix history is per checker instance
    - Scans validate every raw row against the Rule and UsageRecord schemas, so a row
      that would make RuleStore loads fail is always reported
"""

import logging
from datetime import datetime
from functools import partial
from typing import Callable

from exception_rules.core.identifiers import new_rule_id, new_usage_record_id
from exception_rules.core.integrity_rules import (
    FixResult, IntegrityIssue, IntegrityReport, IssueSeverity, apply_fix, build_report,
)
from exception_rules.schemas.rule import Rule, UsageRecord, invalid_fields
from exception_rules.services.rule_store import RuleStore, utc_now

logger = logging.getLogger(__name__)


class IntegrityChecker:
    """Runs integrity scans over a RuleStore and applies auto-fixes through it."""

    def __init__(self, store: RuleStore, clock: Callable[[], datetime] = utc_now):
        self._store = store
        self._clock = clock
        self._fix_history: list[FixResult] = []

    @property
    def fix_history(self) -> list[FixResult]:
        return list(self._fix_history)

    def clear_fix_history(self) -> None:
        self._fix_history.clear()

    async def check_integrity(self) -> IntegrityReport:
        rules, records = await self._store.load_raw()
        report = build_report(
            rules, records,
            validate_rule=partial(invalid_fields, Rule),
            validate_record=partial(invalid_fields, UsageRecord),
        )

        for issue in report.issues:
            level = logging.WARNING if issue.severity != IssueSeverity.INFO else logging.INFO
            logger.log(level, issue.description, extra={"issue_kind": issue.kind.value})
        logger.info(
            f"Integrity check: {report.summary.total_issues} issue(s), "
            f"{report.summary.critical_issues} critical, "
            f"{report.summary.auto_fixable_issues} auto-fixable",
        )
        return report

    async def auto_fix_issues(self, issues: list[IntegrityIssue]) -> list[FixResult]:
        results = [await self._fix_one(issue) for issue in issues]
        self._fix_history.extend(results)
        fixed = sum(1 for r in results if r.success)
        logger.info(f"Auto-fix: {fixed}/{len(results)} issue(s) repaired")
        return results

    async def check_and_repair(self) -> tuple[IntegrityReport, list[FixResult]]:
        """Scan, fix everything auto-fixable, and return the follow-up report."""
        report = await self.check_integrity()
        fixable = [i for i in report.issues if i.auto_fixable]
        results = await self.auto_fix_issues(fixable) if fixable else []
        return await self.check_integrity(), results

    async def _fix_one(self, issue: IntegrityIssue) -> FixResult:
        if not issue.auto_fixable or issue.fix is None:
            return FixResult(issue.kind, False, "Issue is not auto-fixable")

        mutator = partial(
            apply_fix, issue.fix,
            now=self._clock(),
            new_rule_id=new_rule_id,
            new_record_id=new_usage_record_id,
        )
        try:
            message = await self._store.apply_raw(mutator)
        except Exception as e:
            logger.warning(
                f"Fix {issue.fix.kind.value} failed: {e}",
                extra={"issue_kind": issue.kind.value},
            )
            return FixResult(issue.kind, False, str(e), {"fix": issue.fix.kind.value})

        logger.info(message, extra={"issue_kind": issue.kind.value})
        return FixResult(issue.kind, True, message, {"fix": issue.fix.kind.value})
