"""UsageAnalytics: usage statistics over the store's records.

Invariants:
    - Read-only: never takes the store lock, never writes
    - Per-rule stats include soft-deleted rules; an unknown rule id raises RuleNotFoundError
"""

import logging
from datetime import datetime
from typing import Callable

from exception_rules.core.errors import RuleNotFoundError
from exception_rules.core.usage_stats import (
    EfficiencyAnalysis, OverallUsageStats, RuleUsageStats, UsageTrend, WindowUsageStats,
    efficiency_analysis, overall_usage_stats, rule_usage_stats, usage_in_window, usage_trend,
)
from exception_rules.schemas.rule import Rule
from exception_rules.services.rule_store import RuleStore, utc_now

logger = logging.getLogger(__name__)


class UsageAnalytics:
    """Loads rules and usage records and hands them to core/usage_stats.py."""

    def __init__(self, store: RuleStore, clock: Callable[[], datetime] = utc_now):
        self._store = store
        self._clock = clock

    async def _require_rule(self, rule_id: str) -> Rule:
        rule = await self._store.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    async def rule_stats(self, rule_id: str) -> RuleUsageStats:
        rule = await self._require_rule(rule_id)
        return rule_usage_stats(rule, await self._store.usage_records_for_rule(rule_id))

    async def overall_stats(self) -> OverallUsageStats:
        rules = await self._store.list_rules(include_inactive=True)
        return overall_usage_stats(rules, await self._store.list_usage_records())

    async def stats_in_window(self, start: datetime, end: datetime) -> WindowUsageStats:
        rules = await self._store.list_rules(include_inactive=True)
        return usage_in_window(rules, await self._store.list_usage_records(), start, end)

    async def rule_trend(self, rule_id: str, days: int = 30) -> UsageTrend:
        await self._require_rule(rule_id)
        records = await self._store.usage_records_for_rule(rule_id)
        trend = usage_trend(records, self._clock(), days)
        logger.debug(
            f"Usage trend over {days} day(s): {trend.total_usage} use(s)",
            extra={"rule_id": rule_id},
        )
        return trend

    async def rule_efficiency(self, rule_id: str) -> EfficiencyAnalysis:
        await self._require_rule(rule_id)
        return efficiency_analysis(await self._store.usage_records_for_rule(rule_id))
