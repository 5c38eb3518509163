"""Error Classification: map error kinds to category, severity and priority.

Invariants:
    - classify_error is total: explicit pattern first, then a structural default by kind
    - Confidence is 0.5 without a pattern, else 0.7 + 0.3 * keyword match ratio (capped at 1.0)
    - History is bounded (oldest dropped first); analyze_error records, classify_error does not
    - enhance_error keeps the original kind and context

Design Decisions:
    - Pattern table is module-level data: classification rules are reviewable in one place
    - Classifier holds only its bounded history, so one instance per engine
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum

from exception_rules.core.errors import (
    EnhancedRuleError, ErrorKind, ErrorSeverity, RuleEngineError,
)


class ErrorCategory(str, Enum):
    USER_ERROR = "user_error"
    SYSTEM_ERROR = "system_error"
    DATA_ERROR = "data_error"
    NETWORK_ERROR = "network_error"


@dataclass(frozen=True)
class ErrorClassification:
    category: ErrorCategory
    severity: ErrorSeverity
    priority: int
    recoverable: bool = True
    user_friendly: bool = True
    requires_immediate_action: bool = False


@dataclass(frozen=True)
class ErrorPattern:
    kind: ErrorKind
    keywords: tuple[str, ...]
    classification: ErrorClassification
    common_causes: tuple[str, ...]
    recommended_actions: tuple[str, ...]


@dataclass
class ErrorAnalysis:
    error: RuleEngineError
    classification: ErrorClassification
    pattern: ErrorPattern | None
    confidence: float
    recommendations: list[str]
    related_errors: list[RuleEngineError] = field(default_factory=list)


@dataclass
class ErrorBatchSummary:
    total_errors: int
    critical_errors: int
    recoverable_errors: int
    most_common_kind: ErrorKind | None
    prioritized: list[ErrorAnalysis]


# ─── Pattern Table ───────────────────────────────────────────────

ERROR_PATTERNS: dict[ErrorKind, ErrorPattern] = {
    ErrorKind.RULE_NOT_FOUND: ErrorPattern(
        kind=ErrorKind.RULE_NOT_FOUND,
        keywords=("not found", "id", "missing"),
        classification=ErrorClassification(
            ErrorCategory.DATA_ERROR, ErrorSeverity.MEDIUM, 70,
        ),
        common_causes=(
            "Rule was deleted",
            "Stored data out of sync",
            "Temporary rule creation failed",
        ),
        recommended_actions=(
            "Create a new rule",
            "Choose an existing rule",
            "Check data integrity",
            "Refresh the rule list",
        ),
    ),
    ErrorKind.DUPLICATE_NAME: ErrorPattern(
        kind=ErrorKind.DUPLICATE_NAME,
        keywords=("duplicate", "already exists", "name"),
        classification=ErrorClassification(
            ErrorCategory.USER_ERROR, ErrorSeverity.LOW, 30,
        ),
        common_causes=(
            "Name entered already belongs to a rule",
            "Imported data contained duplicates",
        ),
        recommended_actions=(
            "Use the existing rule",
            "Change the rule name",
            "Merge the duplicate rules",
        ),
    ),
    ErrorKind.TYPE_MISMATCH: ErrorPattern(
        kind=ErrorKind.TYPE_MISMATCH,
        keywords=("type", "cannot be used", "action"),
        classification=ErrorClassification(
            ErrorCategory.USER_ERROR, ErrorSeverity.MEDIUM, 50,
        ),
        common_causes=(
            "Rule of the wrong type was selected",
            "Rule type was set incorrectly",
        ),
        recommended_actions=(
            "Choose a rule of the matching type",
            "Create a rule of the matching type",
            "Change the rule type",
        ),
    ),
    ErrorKind.STORAGE_ERROR: ErrorPattern(
        kind=ErrorKind.STORAGE_ERROR,
        keywords=("storage", "save", "database"),
        classification=ErrorClassification(
            ErrorCategory.SYSTEM_ERROR, ErrorSeverity.HIGH, 80,
            user_friendly=False, requires_immediate_action=True,
        ),
        common_causes=(
            "Disk full",
            "Database connection lost",
            "Insufficient permissions",
            "Corrupted data",
        ),
        recommended_actions=(
            "Check available storage",
            "Retry the operation",
            "Check data integrity",
        ),
    ),
    ErrorKind.DATA_INTEGRITY_ERROR: ErrorPattern(
        kind=ErrorKind.DATA_INTEGRITY_ERROR,
        keywords=("integrity", "data", "corrupt"),
        classification=ErrorClassification(
            ErrorCategory.DATA_ERROR, ErrorSeverity.HIGH, 85,
            user_friendly=False, requires_immediate_action=True,
        ),
        common_causes=(
            "Stored collection corrupted",
            "Concurrent modification",
            "Unclean shutdown",
        ),
        recommended_actions=(
            "Run the integrity repair",
            "Restore from backup",
        ),
    ),
    ErrorKind.NETWORK_ERROR: ErrorPattern(
        kind=ErrorKind.NETWORK_ERROR,
        keywords=("network", "connection", "timeout"),
        classification=ErrorClassification(
            ErrorCategory.NETWORK_ERROR, ErrorSeverity.MEDIUM, 60,
        ),
        common_causes=(
            "Unstable connection",
            "Server response timed out",
        ),
        recommended_actions=(
            "Check the network connection",
            "Retry the operation",
        ),
    ),
}

_DATA_DEFAULT = ErrorClassification(ErrorCategory.DATA_ERROR, ErrorSeverity.MEDIUM, 60)
_USER_DEFAULT = ErrorClassification(ErrorCategory.USER_ERROR, ErrorSeverity.LOW, 30)
_SYSTEM_DEFAULT = ErrorClassification(
    ErrorCategory.SYSTEM_ERROR, ErrorSeverity.HIGH, 80,
    user_friendly=False, requires_immediate_action=True,
)
_NETWORK_DEFAULT = ErrorClassification(ErrorCategory.NETWORK_ERROR, ErrorSeverity.MEDIUM, 50)
_FALLBACK = ErrorClassification(
    ErrorCategory.SYSTEM_ERROR, ErrorSeverity.MEDIUM, 50, user_friendly=False,
)

_DEFAULTS: dict[ErrorKind, ErrorClassification] = {
    ErrorKind.RULE_NOT_FOUND: _DATA_DEFAULT,
    ErrorKind.DATA_INTEGRITY_ERROR: _DATA_DEFAULT,
    ErrorKind.RULE_STATE_INCONSISTENT: _DATA_DEFAULT,
    ErrorKind.DUPLICATE_NAME: _USER_DEFAULT,
    ErrorKind.VALIDATION_ERROR: _USER_DEFAULT,
    ErrorKind.TYPE_MISMATCH: _USER_DEFAULT,
    ErrorKind.STORAGE_ERROR: _SYSTEM_DEFAULT,
    ErrorKind.OPERATION_TIMEOUT: _SYSTEM_DEFAULT,
    ErrorKind.CONCURRENT_MODIFICATION: _SYSTEM_DEFAULT,
    ErrorKind.NETWORK_ERROR: _NETWORK_DEFAULT,
}

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.RULE_NOT_FOUND: "The rule could not be found. It may have been deleted.",
    ErrorKind.DUPLICATE_NAME: "A rule with this name already exists. Please choose another name.",
    ErrorKind.TYPE_MISMATCH: "The selected rule cannot be used for this action.",
    ErrorKind.VALIDATION_ERROR: "Some of the entered information is invalid. Please check and retry.",
    ErrorKind.NETWORK_ERROR: "A network problem occurred. Please check your connection and retry.",
}

CONTACT_SUPPORT = "Contact technical support immediately"
RETRY_OPERATION = "Try the operation again"
RELATED_ERROR_LIMIT = 5


def default_classification(kind: ErrorKind) -> ErrorClassification:
    return _DEFAULTS.get(kind, _FALLBACK)


def match_confidence(error: RuleEngineError, pattern: ErrorPattern | None) -> float:
    if pattern is None:
        return 0.5
    message = error.message.lower()
    matched = sum(1 for kw in pattern.keywords if kw.lower() in message)
    return min(0.7 + matched / len(pattern.keywords) * 0.3, 1.0)


def user_message_for(kind: ErrorKind, message: str) -> str:
    """User-facing text. Internal messages pass through only for unmapped kinds."""
    if kind in USER_MESSAGES:
        return USER_MESSAGES[kind]
    return message


# ─── Classifier ──────────────────────────────────────────────────

class ErrorClassifier:
    """Classifies RuleEngineErrors and keeps a bounded analysis history."""

    def __init__(self, history_size: int = 100):
        self._history_size = history_size
        self._history: list[RuleEngineError] = []

    @property
    def history(self) -> list[RuleEngineError]:
        return list(self._history)

    def classify_error(self, error: RuleEngineError) -> ErrorClassification:
        pattern = ERROR_PATTERNS.get(error.kind)
        if pattern is not None:
            return pattern.classification
        return default_classification(error.kind)

    def analyze_error(self, error: RuleEngineError) -> ErrorAnalysis:
        pattern = ERROR_PATTERNS.get(error.kind)
        classification = self.classify_error(error)
        analysis = ErrorAnalysis(
            error=error,
            classification=classification,
            pattern=pattern,
            confidence=match_confidence(error, pattern),
            recommendations=self._recommendations(classification, pattern),
            related_errors=self._related(error),
        )
        self._record(error)
        return analysis

    def analyze_errors(self, errors: list[RuleEngineError]) -> tuple[list[ErrorAnalysis], ErrorBatchSummary]:
        analyses = [self.analyze_error(e) for e in errors]
        counts = Counter(a.error.kind for a in analyses)
        summary = ErrorBatchSummary(
            total_errors=len(errors),
            critical_errors=sum(
                1 for a in analyses if a.classification.severity == ErrorSeverity.CRITICAL
            ),
            recoverable_errors=sum(1 for a in analyses if a.classification.recoverable),
            most_common_kind=counts.most_common(1)[0][0] if counts else None,
            prioritized=sorted(analyses, key=lambda a: a.classification.priority, reverse=True),
        )
        return analyses, summary

    def enhance_error(self, error: RuleEngineError) -> EnhancedRuleError:
        if isinstance(error, EnhancedRuleError):
            return error
        classification = self.classify_error(error)
        pattern = ERROR_PATTERNS.get(error.kind)
        enhanced = EnhancedRuleError(
            error.message,
            error.kind,
            classification.severity,
            user_message_for(error.kind, error.message),
            list(pattern.recommended_actions) if pattern else [],
            classification.recoverable,
            error.context,
        )
        enhanced.__cause__ = error
        return enhanced

    def statistics(self) -> dict:
        by_kind: Counter = Counter()
        by_severity: Counter = Counter()
        by_category: Counter = Counter()
        for error in self._history:
            classification = self.classify_error(error)
            by_kind[error.kind.value] += 1
            by_severity[classification.severity.value] += 1
            by_category[classification.category.value] += 1
        return {
            "total_errors": len(self._history),
            "errors_by_kind": dict(by_kind),
            "errors_by_severity": dict(by_severity),
            "errors_by_category": dict(by_category),
        }

    def clear_history(self) -> None:
        self._history.clear()

    # ─── Internals ───────────────────────────────────────────────

    def _recommendations(
        self, classification: ErrorClassification, pattern: ErrorPattern | None,
    ) -> list[str]:
        recommendations = list(pattern.recommended_actions) if pattern else []
        if classification.severity == ErrorSeverity.CRITICAL:
            recommendations.insert(0, CONTACT_SUPPORT)
        if classification.recoverable:
            recommendations.append(RETRY_OPERATION)
        return list(dict.fromkeys(recommendations))

    def _related(self, error: RuleEngineError) -> list[RuleEngineError]:
        head = error.message.split(" ")[0]
        related = [
            e for e in self._history
            if e.kind == error.kind or (head and head in e.message)
        ]
        return related[-RELATED_ERROR_LIMIT:]

    def _record(self, error: RuleEngineError) -> None:
        self._history.append(error)
        if len(self._history) > self._history_size:
            del self._history[: len(self._history) - self._history_size]
