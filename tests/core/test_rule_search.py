"""Rule Search: match tiers, popularity and availability ordering.

Tests cover:
    - Exact > prefix > substring > description, usage breaks ties within a tier
    - Empty query falls back to popularity order
    - Availability puts chain rules ahead of global ones
"""

from datetime import datetime, timedelta, timezone

from exception_rules.core.domain_types import RuleScope, RuleType
from exception_rules.core.rule_search import (
    DESCRIPTION, EXACT, PREFIX, SUBSTRING, match_tier, rank_matches,
    sort_by_popularity, sort_for_availability,
)
from exception_rules.schemas.rule import Rule

BASE = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _rule(rule_id, name, usage=0, description=None, scope=RuleScope.GLOBAL, task_id=None,
          last_used_minutes=None):
    return Rule(
        id=rule_id, name=name, description=description, type=RuleType.PAUSE_ONLY,
        scope=scope, task_id=task_id, created_at=BASE, usage_count=usage,
        last_used_at=BASE + timedelta(minutes=last_used_minutes) if last_used_minutes else None,
    )


def test_match_tiers():
    assert match_tier(_rule("r1", "Water"), "water") == EXACT
    assert match_tier(_rule("r2", "Water break"), "water") == PREFIX
    assert match_tier(_rule("r3", "Drink water"), "water") == SUBSTRING
    assert match_tier(_rule("r4", "Stretch", description="then some Water"), "water") == DESCRIPTION
    assert match_tier(_rule("r5", "Stretch"), "water") is None


def test_rank_orders_by_tier_then_usage():
    rules = [
        _rule("desc", "Stretch", usage=50, description="water first"),
        _rule("sub", "Drink water", usage=9),
        _rule("prefix_low", "Water bottle", usage=1),
        _rule("prefix_high", "Water break", usage=7),
        _rule("exact", "Water"),
        _rule("miss", "Phone call", usage=99),
    ]
    ranked = rank_matches(rules, "  WATER ")
    assert [r.id for r in ranked] == ["exact", "prefix_high", "prefix_low", "sub", "desc"]


def test_empty_query_returns_popularity_order():
    rules = [_rule("a", "A", usage=1), _rule("b", "B", usage=5)]
    assert [r.id for r in rank_matches(rules, "")] == ["b", "a"]


def test_popularity_ties_break_on_recent_use():
    rules = [
        _rule("old", "A", usage=3, last_used_minutes=5),
        _rule("new", "B", usage=3, last_used_minutes=50),
        _rule("top", "C", usage=8),
    ]
    assert [r.id for r in sort_by_popularity(rules)] == ["top", "new", "old"]


def test_availability_puts_chain_rules_first():
    rules = [
        _rule("global_hot", "A", usage=20),
        _rule("chain_cold", "B", usage=0, scope=RuleScope.CHAIN, task_id="t1"),
        _rule("chain_warm", "C", usage=4, scope=RuleScope.CHAIN, task_id="t1"),
        _rule("global_cold", "D", usage=1),
    ]
    ordered = sort_for_availability(rules)
    assert [r.id for r in ordered] == ["chain_warm", "chain_cold", "global_hot", "global_cold"]
