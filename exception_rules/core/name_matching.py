"""Name Matching: normalization, edit distance and name suggestions, pure.

Invariants:
    - normalize_name is the comparison key for every duplicate check
    - normalize_name: lower-case, trim, collapse whitespace, strip everything that
      is not [0-9a-z_], whitespace or a CJK unified ideograph, then drop all whitespace
    - similarity(a, b) == similarity(b, a); 1.0 iff a == b; 0.0 when exactly one is empty
    - generate_name_suggestions returns at most MAX_SUGGESTIONS, order:
      numbered, bracketed qualifiers, prefixes

Design Decisions:
    - Plain O(n*m) dynamic-programming Levenshtein with a rolling row
"""

import re


MAX_SUGGESTIONS: int = 5

NAME_QUALIFIERS: tuple[str, ...] = (
    "(urgent)", "(brief)", "(necessary)", "(temporary)", "(important)",
)
NAME_PREFIXES: tuple[str, ...] = ("Quick", "5-minute", "Short", "Temporary")

COMMON_PATTERNS: tuple[str, ...] = (
    "bathroom break", "drink water", "take a rest", "answer the phone",
    "check messages", "grab a snack", "stretch", "eye rest",
    "stand up and move", "tidy the desk", "write down an idea",
)

_WHITESPACE_RUN = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^0-9a-z_\s\u4e00-\u9fff]")
_ANY_WHITESPACE = re.compile(r"\s")


def normalize_name(name: str) -> str:
    collapsed = _WHITESPACE_RUN.sub(" ", name.lower().strip())
    return _ANY_WHITESPACE.sub("", _NON_WORD.sub("", collapsed))


def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            if ca == cb:
                current.append(previous[j - 1])
            else:
                current.append(min(
                    previous[j - 1] + 1,  # substitute
                    current[j - 1] + 1,   # insert
                    previous[j] + 1,      # delete
                ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Normalized edit similarity of two already-normalized names."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return 1 - levenshtein_distance(a, b) / max(len(a), len(b))


def name_similarity(a: str, b: str) -> float:
    """similarity() over the normalized forms of two raw names."""
    return similarity(normalize_name(a), normalize_name(b))


def generate_name_suggestions(base_name: str, existing_names: list[str]) -> list[str]:
    taken = {normalize_name(n) for n in existing_names}
    candidates = (
        [f"{base_name} {i}" for i in range(2, 11)]
        + [f"{base_name} {q}" for q in NAME_QUALIFIERS]
        + [f"{p} {base_name}" for p in NAME_PREFIXES]
    )
    suggestions: list[str] = []
    for candidate in candidates:
        key = normalize_name(candidate)
        if key in taken:
            continue
        taken.add(key)
        suggestions.append(candidate)
        if len(suggestions) == MAX_SUGGESTIONS:
            break
    return suggestions


def is_common_pattern(name: str) -> bool:
    key = normalize_name(name)
    if not key:
        return False
    for pattern in COMMON_PATTERNS:
        pattern_key = normalize_name(pattern)
        if key == pattern_key or pattern_key in key:
            return True
    return False
