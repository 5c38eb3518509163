"""Rule Search: ranking and ordering of rule lists, pure.

Invariants:
    - Match tiers: exact name < name prefix < name substring < description substring
    - Within a tier, higher usage_count first
    - Popularity order: usage_count desc, then last_used_at (or created_at) desc
    - Availability order: chain-scoped before global, then usage_count desc
"""

from exception_rules.core.domain_types import RuleScope

EXACT, PREFIX, SUBSTRING, DESCRIPTION = range(4)


def match_tier(rule, query: str) -> int | None:
    """Tier of rule for a lower-cased, stripped query, or None when it does not match."""
    name = rule.name.lower()
    if name == query:
        return EXACT
    if name.startswith(query):
        return PREFIX
    if query in name:
        return SUBSTRING
    if rule.description and query in rule.description.lower():
        return DESCRIPTION
    return None


def rank_matches(rules: list, query: str) -> list:
    q = query.strip().lower()
    if not q:
        return sort_by_popularity(rules)
    tiered = [(match_tier(r, q), r) for r in rules]
    matched = [(tier, r) for tier, r in tiered if tier is not None]
    matched.sort(key=lambda pair: (pair[0], -pair[1].usage_count))
    return [r for _, r in matched]


def sort_by_popularity(rules: list) -> list:
    return sorted(
        rules,
        key=lambda r: (r.usage_count, r.last_used_at or r.created_at),
        reverse=True,
    )


def sort_for_availability(rules: list) -> list:
    return sorted(
        rules,
        key=lambda r: (0 if r.scope == RuleScope.CHAIN else 1, -r.usage_count),
    )
