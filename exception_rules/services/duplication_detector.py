"""DuplicationDetector: exact and fuzzy name duplicates among active rules.

Invariants:
    - Comparison key is normalize_name (core/name_matching.py) everywhere
    - find_similar_rules returns similarity in [threshold, 1.0), descending; exact
      duplicates are reported only by check_duplication
    - suggest_existing_rule: exact match first, else best similarity >= suggestion_threshold
    - Results are advisory: nothing here blocks a write (RuleStore enforces uniqueness)
"""

import logging
from dataclasses import dataclass, field

from exception_rules.config import Settings, get_settings
from exception_rules.core import name_matching
from exception_rules.core.name_matching import normalize_name, similarity
from exception_rules.schemas.rule import Rule
from exception_rules.services.rule_store import RuleStore

logger = logging.getLogger(__name__)


@dataclass
class DuplicationReport:
    name: str
    exact_matches: list[Rule] = field(default_factory=list)
    similar_rules: list[tuple[Rule, float]] = field(default_factory=list)
    suggested_rule: Rule | None = None
    name_suggestions: list[str] = field(default_factory=list)

    @property
    def has_duplicates(self) -> bool:
        return bool(self.exact_matches)

    @property
    def has_similar(self) -> bool:
        return bool(self.similar_rules)


class DuplicationDetector:
    """Name duplicate checks over the store's active rules."""

    def __init__(self, store: RuleStore, settings: Settings | None = None):
        self._store = store
        self._settings = settings or get_settings()

    @staticmethod
    def normalize_name(name: str) -> str:
        return normalize_name(name)

    @staticmethod
    def generate_name_suggestions(base_name: str, existing_names: list[str]) -> list[str]:
        return name_matching.generate_name_suggestions(base_name, existing_names)

    @staticmethod
    def is_common_pattern(name: str) -> bool:
        return name_matching.is_common_pattern(name)

    async def _candidates(self, exclude_id: str | None) -> list[Rule]:
        return [r for r in await self._store.list_rules() if r.id != exclude_id]

    async def check_duplication(self, name: str, exclude_id: str | None = None) -> list[Rule]:
        key = normalize_name(name)
        return [r for r in await self._candidates(exclude_id) if normalize_name(r.name) == key]

    async def find_similar_rules(
        self,
        name: str,
        threshold: float | None = None,
        exclude_id: str | None = None,
    ) -> list[tuple[Rule, float]]:
        if threshold is None:
            threshold = self._settings.similarity_threshold
        key = normalize_name(name)
        scored = [
            (rule, similarity(key, normalize_name(rule.name)))
            for rule in await self._candidates(exclude_id)
        ]
        matches = [(r, s) for r, s in scored if threshold <= s < 1.0]
        matches.sort(key=lambda pair: pair[1], reverse=True)
        return matches

    async def suggest_existing_rule(self, name: str) -> Rule | None:
        exact = await self.check_duplication(name)
        if exact:
            return exact[0]
        similar = await self.find_similar_rules(name, self._settings.suggestion_threshold)
        return similar[0][0] if similar else None

    async def duplication_report(self, name: str, exclude_id: str | None = None) -> DuplicationReport:
        exact = await self.check_duplication(name, exclude_id)
        similar = await self.find_similar_rules(
            name, self._settings.report_similarity_threshold, exclude_id,
        )
        suggested = exact[0] if exact else None
        if suggested is None and similar and similar[0][1] >= self._settings.suggestion_threshold:
            suggested = similar[0][0]

        suggestions: list[str] = []
        if exact:
            existing = [r.name for r in await self._store.list_rules()]
            suggestions = self.generate_name_suggestions(name.strip(), existing)

        return DuplicationReport(
            name=name,
            exact_matches=exact,
            similar_rules=similar,
            suggested_rule=suggested,
            name_suggestions=suggestions,
        )

    async def batch_check_duplication(self, names: list[str]) -> dict[str, list[Rule]]:
        rules = await self._store.list_rules()
        by_key: dict[str, list[Rule]] = {}
        for rule in rules:
            by_key.setdefault(normalize_name(rule.name), []).append(rule)
        return {name: list(by_key.get(normalize_name(name), [])) for name in names}
