"""Identifier Namespaces: real, temporary and usage-record ids never overlap.

Invariants:
    - Real rule ids start with "rule_", temporary ids with "temp_", usage records with "usage_"
    - A temporary id can never be mistaken for a real one (prefix check only)
    - A well-formed persisted id is a non-empty str without whitespace and without the temp prefix
"""

import re
from uuid import uuid4

from exception_rules.core.domain_types import RuleId, TemporaryId, UsageRecordId


RULE_ID_PREFIX: str = "rule_"
TEMPORARY_ID_PREFIX: str = "temp_"
USAGE_RECORD_ID_PREFIX: str = "usage_"

_WHITESPACE = re.compile(r"\s")


def new_rule_id() -> RuleId:
    return RuleId(f"{RULE_ID_PREFIX}{uuid4().hex}")


def new_temporary_id() -> TemporaryId:
    return TemporaryId(f"{TEMPORARY_ID_PREFIX}{uuid4().hex}")


def new_usage_record_id() -> UsageRecordId:
    return UsageRecordId(f"{USAGE_RECORD_ID_PREFIX}{uuid4().hex}")


def is_temporary_id(value: str) -> bool:
    return isinstance(value, str) and value.startswith(TEMPORARY_ID_PREFIX)


def is_well_formed_id(value: object) -> bool:
    """True for ids that may be persisted: non-empty, no whitespace, not temporary."""
    return (
        isinstance(value, str)
        and len(value) > 0
        and not _WHITESPACE.search(value)
        and not is_temporary_id(value)
    )
