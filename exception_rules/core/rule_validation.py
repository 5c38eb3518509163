"""Rule Validation: field checks and scoped-uniqueness checks, pure.

Invariants:
    - Names are validated after strip(); empty or > MAX_NAME_LENGTH is VALIDATION_ERROR
    - Missing type on create is VALIDATION_ERROR; a non-member type is INVALID_TYPE
    - Description > MAX_DESCRIPTION_LENGTH is VALIDATION_ERROR
    - Uniqueness pools: {active, global} and {active, chain, same task_id}, keyed by normalize_name
"""

from exception_rules.core.domain_types import (
    MAX_DESCRIPTION_LENGTH, MAX_NAME_LENGTH, RuleScope, RuleType,
)
from exception_rules.core.errors import (
    DuplicateNameError, ErrorContext, InvalidTypeError, RuleValidationError,
)
from exception_rules.core.name_matching import normalize_name


def validate_name(name: object) -> str:
    """Return the stripped name or raise RuleValidationError."""
    if not isinstance(name, str) or not name.strip():
        raise RuleValidationError("Rule name cannot be empty", "name")
    name = name.strip()
    if len(name) > MAX_NAME_LENGTH:
        raise RuleValidationError(
            f"Rule name cannot exceed {MAX_NAME_LENGTH} characters", "name",
        )
    return name


def validate_type(value: object, required: bool) -> RuleType | None:
    if value is None or value == "":
        if required:
            raise RuleValidationError(
                f"Rule type is required (received {value!r})", "type",
            )
        return None
    try:
        return RuleType(value)
    except ValueError:
        raise InvalidTypeError(value)


def validate_description(description: object) -> str | None:
    if description is None:
        return None
    if not isinstance(description, str):
        raise RuleValidationError("Rule description must be text", "description")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise RuleValidationError(
            f"Rule description cannot exceed {MAX_DESCRIPTION_LENGTH} characters",
            "description",
        )
    return description


def validate_scope(scope: RuleScope, task_id: str | None) -> str | None:
    """Return the task_id to store for this scope."""
    if scope == RuleScope.CHAIN:
        if not task_id:
            raise RuleValidationError("Chain-scoped rules require a task id", "task_id")
        return task_id
    return None


def same_pool(rule, scope: RuleScope, task_id: str | None) -> bool:
    """Whether an existing rule competes for names with (scope, task_id)."""
    if rule.scope != scope:
        return False
    if scope == RuleScope.CHAIN:
        return rule.task_id == task_id
    return True


def find_name_conflicts(
    rules: list,
    name: str,
    scope: RuleScope,
    task_id: str | None,
    exclude_id: str | None = None,
) -> list:
    """Active rules in the same pool whose normalized name equals name's."""
    key = normalize_name(name)
    return [
        r for r in rules
        if r.is_active
        and r.id != exclude_id
        and same_pool(r, scope, task_id)
        and normalize_name(r.name) == key
    ]


def ensure_unique_name(
    rules: list,
    name: str,
    scope: RuleScope,
    task_id: str | None,
    exclude_id: str | None = None,
) -> None:
    conflicts = find_name_conflicts(rules, name, scope, task_id, exclude_id)
    if conflicts:
        label = f"task {task_id}" if scope == RuleScope.CHAIN else "global scope"
        raise DuplicateNameError(
            name, label, conflicts,
            ErrorContext(task_id=task_id, rule_name=name, operation="uniqueness_check"),
        )
