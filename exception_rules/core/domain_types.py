"""Domain Types: rich types that replace bare primitives across the codebase.

Invariants:
    - RuleId, TaskId, SessionId, UsageRecordId, TemporaryId wrap str
    - All valid states encoded as Enums, no raw string matching
    - Every RuleType serves exactly one ActionKind

Design Decisions:
    - NewType over dataclass wrappers: zero runtime cost, full type-checker support
    - str Enums: serialize to JSON without custom encoders
"""

from enum import Enum
from typing import NewType


# ─── Identity Types ──────────────────────────────────────────────

RuleId = NewType("RuleId", str)
TemporaryId = NewType("TemporaryId", str)
TaskId = NewType("TaskId", str)
SessionId = NewType("SessionId", str)
UsageRecordId = NewType("UsageRecordId", str)


# ─── Limits ──────────────────────────────────────────────────────

MAX_NAME_LENGTH: int = 100
MAX_DESCRIPTION_LENGTH: int = 500


# ─── Collections ─────────────────────────────────────────────────

RULES_COLLECTION: str = "rules"
USAGE_RECORDS_COLLECTION: str = "usage_records"


# ─── Enums ───────────────────────────────────────────────────────

class RuleType(str, Enum):
    """What a rule may justify."""
    PAUSE_ONLY = "pause_only"
    EARLY_COMPLETION_ONLY = "early_completion_only"


class RuleScope(str, Enum):
    """Where a rule applies: one owning task (chain) or every task."""
    CHAIN = "chain"
    GLOBAL = "global"


class ActionKind(str, Enum):
    """The tracked-activity action a rule is used for."""
    PAUSE = "pause"
    EARLY_COMPLETION = "early_completion"


class RuleStatus(str, Enum):
    """Transient lifecycle state tracked by the StateReconciler."""
    ACTIVE = "active"
    CREATING = "creating"
    UPDATING = "updating"
    DELETING = "deleting"
    ERROR = "error"


_ACTION_RULE_TYPES: dict[ActionKind, RuleType] = {
    ActionKind.PAUSE: RuleType.PAUSE_ONLY,
    ActionKind.EARLY_COMPLETION: RuleType.EARLY_COMPLETION_ONLY,
}


def rule_type_for_action(action: ActionKind) -> RuleType:
    """Map an action kind to the only rule type allowed to justify it."""
    return _ACTION_RULE_TYPES[ActionKind(action)]


def as_rule_type(action: RuleType | ActionKind | str) -> RuleType:
    """Accept either a rule type or an action kind and return the rule type."""
    if isinstance(action, RuleType):
        return action
    if isinstance(action, ActionKind):
        return rule_type_for_action(action)
    try:
        return RuleType(action)
    except ValueError:
        return rule_type_for_action(ActionKind(action))
