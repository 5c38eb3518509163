"""Usage Stats: read-only aggregations over usage records, pure.

Invariants:
    - Every function takes already-loaded rules/records and never mutates them
    - Counts per action always sum to the total they are reported with
    - Calendar days are UTC dates rendered as YYYY-MM-DD
    - Top lists are ordered by count desc; ties keep first-seen order

Design Decisions:
    - Duck-typed over Rule / UsageRecord attributes, like rule_search, so core never
      imports the pydantic layer
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from exception_rules.core.domain_types import ActionKind

TOP_TASKS_PER_RULE = 5
TOP_RULES_OVERALL = 10
TOP_RULES_IN_WINDOW = 5
UNKNOWN_RULE_NAME = "Unknown rule"

EARLY_PROGRESS = 0.25
LATE_PROGRESS = 0.75


@dataclass(frozen=True)
class TaskUsage:
    task_id: str
    count: int


@dataclass(frozen=True)
class RuleUsageCount:
    rule_id: str
    rule_name: str
    count: int


@dataclass(frozen=True)
class DailyCount:
    date: str
    count: int


@dataclass
class RuleUsageStats:
    rule_id: str
    total_usage: int
    pause_usage: int
    early_completion_usage: int
    last_used_at: datetime | None
    average_elapsed_seconds: float
    most_used_with_tasks: list[TaskUsage] = field(default_factory=list)


@dataclass
class OverallUsageStats:
    total_rules: int
    total_usage: int
    pause_usage: int
    early_completion_usage: int
    most_used_rules: list[RuleUsageCount] = field(default_factory=list)


@dataclass
class WindowUsageStats:
    total_usage: int
    pause_usage: int
    early_completion_usage: int
    daily_usage: list[DailyCount] = field(default_factory=list)
    top_rules: list[RuleUsageCount] = field(default_factory=list)


@dataclass
class UsageTrend:
    trend: list[DailyCount]
    total_usage: int
    average_daily_usage: float
    peak_usage_date: str | None


@dataclass
class UsagePatterns:
    early_usage: int = 0
    mid_usage: int = 0
    late_usage: int = 0


@dataclass
class EfficiencyAnalysis:
    average_task_progress: float
    usage_patterns: UsagePatterns
    recommendations: list[str]


# ─── Helpers ─────────────────────────────────────────────────────

def day_key(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).date().isoformat()


def _action_counts(records: list) -> tuple[int, int]:
    pause = sum(1 for r in records if r.action_kind == ActionKind.PAUSE)
    return pause, len(records) - pause


# ─── Aggregations ────────────────────────────────────────────────

def rule_usage_stats(rule, records: list) -> RuleUsageStats:
    """Stats for one rule from its own usage records."""
    own = [r for r in records if r.rule_id == rule.id]
    pause, early = _action_counts(own)
    total = len(own)
    tasks = Counter(r.task_id for r in own)
    return RuleUsageStats(
        rule_id=rule.id,
        total_usage=total,
        pause_usage=pause,
        early_completion_usage=early,
        last_used_at=rule.last_used_at,
        average_elapsed_seconds=sum(r.elapsed_seconds for r in own) / total if total else 0.0,
        most_used_with_tasks=[
            TaskUsage(task_id, count) for task_id, count in tasks.most_common(TOP_TASKS_PER_RULE)
        ],
    )


def overall_usage_stats(rules: list, records: list) -> OverallUsageStats:
    """Totals over all records; the top list only counts active rules."""
    active = {r.id: r for r in rules if r.is_active}
    pause, early = _action_counts(records)
    per_rule = Counter(r.rule_id for r in records if r.rule_id in active)
    return OverallUsageStats(
        total_rules=len(active),
        total_usage=len(records),
        pause_usage=pause,
        early_completion_usage=early,
        most_used_rules=[
            RuleUsageCount(rule_id, active[rule_id].name, count)
            for rule_id, count in per_rule.most_common(TOP_RULES_OVERALL)
        ],
    )


def usage_in_window(
    rules: list, records: list, start: datetime, end: datetime,
) -> WindowUsageStats:
    """Usage between start and end inclusive, per day and per rule."""
    if end < start:
        raise ValueError("window end precedes its start")
    names = {r.id: r.name for r in rules}
    inside = [r for r in records if start <= r.used_at <= end]
    pause, early = _action_counts(inside)
    per_day = Counter(day_key(r.used_at) for r in inside)
    per_rule = Counter(r.rule_id for r in inside)
    return WindowUsageStats(
        total_usage=len(inside),
        pause_usage=pause,
        early_completion_usage=early,
        daily_usage=[DailyCount(day, per_day[day]) for day in sorted(per_day)],
        top_rules=[
            RuleUsageCount(rule_id, names.get(rule_id, UNKNOWN_RULE_NAME), count)
            for rule_id, count in per_rule.most_common(TOP_RULES_IN_WINDOW)
        ],
    )


def usage_trend(records: list, now: datetime, days: int = 30) -> UsageTrend:
    """Daily counts for the last `days` days, every calendar day present (zeros included).

    The average divides by `days`; the peak is the earliest day with the highest
    non-zero count.
    """
    if days < 1:
        raise ValueError("days must be at least 1")
    start = now - timedelta(days=days)
    inside = [r for r in records if start <= r.used_at <= now]
    per_day = Counter(day_key(r.used_at) for r in inside)

    trend: list[DailyCount] = []
    day = start.astimezone(timezone.utc).date()
    last = now.astimezone(timezone.utc).date()
    while day <= last:
        key = day.isoformat()
        trend.append(DailyCount(key, per_day.get(key, 0)))
        day += timedelta(days=1)

    peak = max((d.count for d in trend), default=0)
    return UsageTrend(
        trend=trend,
        total_usage=len(inside),
        average_daily_usage=len(inside) / days,
        peak_usage_date=next(d.date for d in trend if d.count == peak) if peak else None,
    )


def efficiency_analysis(records: list) -> EfficiencyAnalysis:
    """Where in a task's run the rule gets used, from records that know the remaining time."""
    progress: list[float] = []
    for record in records:
        if record.remaining_seconds is None:
            continue
        total = record.elapsed_seconds + record.remaining_seconds
        progress.append(record.elapsed_seconds / total if total > 0 else 0.0)

    if not progress:
        return EfficiencyAnalysis(0.0, UsagePatterns(), ["Not enough data to analyse yet"])

    patterns = UsagePatterns(
        early_usage=sum(1 for p in progress if p < EARLY_PROGRESS),
        mid_usage=sum(1 for p in progress if EARLY_PROGRESS <= p <= LATE_PROGRESS),
        late_usage=sum(1 for p in progress if p > LATE_PROGRESS),
    )
    average = sum(progress) / len(progress)

    recommendations: list[str] = []
    if patterns.early_usage > patterns.mid_usage + patterns.late_usage:
        recommendations.append("Mostly used early in tasks; task planning may need work")
    if patterns.late_usage > patterns.early_usage + patterns.mid_usage:
        recommendations.append("Mostly used late in tasks; check the task time estimates")
    if average < 0.3:
        recommendations.append("Used at low task progress; consider a smoother task start")
    if average > 0.8:
        recommendations.append("Used close to task completion; tasks may be under time pressure")
    if not recommendations:
        recommendations.append("Usage pattern looks normal")

    return EfficiencyAnalysis(average, patterns, recommendations)
