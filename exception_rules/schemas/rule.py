"""Rule Schemas: pydantic models for rules, usage records and their inputs.

Invariants:
    - Rule.usage_count >= 0
    - scope=chain requires task_id; scope=global carries no task_id
    - Stored form is model_dump(mode="json"): enums as values, datetimes as ISO-8601
    - Timestamps are always timezone-aware; naive input is read as UTC
    - RuleCreate / RuleUpdate are loosely typed; field rules are enforced by
      core/rule_validation.py so failures surface as RuleEngineError kinds

Design Decisions:
    - model_validator for the scope/owner pairing: one place, checked on load and on build
"""

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from exception_rules.core.domain_types import ActionKind, RuleScope, RuleType


def assume_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Rule(BaseModel):
    """A named, typed exception condition."""
    id: str
    name: str
    description: str | None = None
    type: RuleType
    scope: RuleScope = RuleScope.GLOBAL
    task_id: str | None = None
    created_at: datetime
    last_used_at: datetime | None = None
    usage_count: int = Field(0, ge=0)
    is_active: bool = True
    is_archived: bool = False

    @field_validator("created_at", "last_used_at")
    @classmethod
    def aware_timestamps(cls, v: datetime | None) -> datetime | None:
        return assume_utc(v)

    @model_validator(mode="after")
    def check_scope_owner(self) -> "Rule":
        if self.scope == RuleScope.CHAIN and not self.task_id:
            raise ValueError("chain-scoped rule requires task_id")
        if self.scope == RuleScope.GLOBAL and self.task_id is not None:
            raise ValueError("global rule cannot carry task_id")
        return self

    def serves(self, action: ActionKind) -> bool:
        """Whether this rule's type may justify the given action."""
        if action == ActionKind.PAUSE:
            return self.type == RuleType.PAUSE_ONLY
        return self.type == RuleType.EARLY_COMPLETION_ONLY

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")


class UsageRecord(BaseModel):
    """One use of a rule during a tracked session."""
    id: str
    rule_id: str
    task_id: str
    session_id: str
    used_at: datetime
    action_kind: ActionKind
    elapsed_seconds: float = Field(0.0, ge=0)
    remaining_seconds: float | None = None
    rule_scope: RuleScope
    pause_duration_seconds: float | None = None
    auto_resume: bool | None = None

    @field_validator("used_at")
    @classmethod
    def aware_used_at(cls, v: datetime) -> datetime:
        return assume_utc(v)

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")


class RuleCreate(BaseModel):
    """Rule creation input."""
    name: str = ""
    type: RuleType | str | None = None
    description: str | None = None
    scope: RuleScope = RuleScope.GLOBAL
    task_id: str | None = None


class RuleUpdate(BaseModel):
    """Partial rule update. Only explicitly set fields are applied."""
    name: str | None = None
    description: str | None = None
    type: RuleType | str | None = None
    scope: RuleScope | None = None
    task_id: str | None = None
    is_active: bool | None = None
    is_archived: bool | None = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class ExportBundle(BaseModel):
    """Black-box payload for external import/export collaborators."""
    rules: list[Rule] = Field(default_factory=list)
    usage_records: list[UsageRecord] = Field(default_factory=list)
    exported_at: datetime | None = None

    @field_validator("exported_at")
    @classmethod
    def aware_exported_at(cls, v: datetime | None) -> datetime | None:
        return assume_utc(v)


ImportStrategy = Literal["merge", "replace"]


def invalid_fields(model: type[BaseModel], raw: dict) -> list[str]:
    """Dotted locations raw fails to validate on as model, "" for row-level errors."""
    try:
        model.model_validate(raw)
    except ValidationError as e:
        return sorted({".".join(str(part) for part in err["loc"]) for err in e.errors()})
    return []
