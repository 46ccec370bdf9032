"""
Event matching against workflow trigger filters.

Branch patterns follow GitHub filter semantics: a pattern without wildcards
is an exact match, `*` matches anything except `/`, `**` matches anything,
`?` matches one character except `/`, and a leading `!` negates. Patterns
are evaluated in order and the last matching pattern decides.
"""

import re
from functools import lru_cache

from ci_common.models import Event, TriggerSpec

_WILDCARDS = ("*", "?")


def matches(event: Event, trigger: TriggerSpec) -> bool:
    """Return True iff the event kind is triggered and its branch is selected."""
    if event.kind not in trigger.branches:
        return False
    return branch_selected(event.branch, trigger.patterns_for(event.kind))


def branch_selected(branch: str, patterns: tuple[str, ...]) -> bool:
    """Evaluate an ordered branch filter list for one branch name."""
    selected = False
    for pattern in patterns:
        negated = pattern.startswith("!")
        if negated:
            pattern = pattern[1:]
        if _pattern_matches(pattern, branch):
            selected = not negated
    return selected


def _pattern_matches(pattern: str, branch: str) -> bool:
    if not any(w in pattern for w in _WILDCARDS):
        return pattern == branch
    return _compile(pattern).fullmatch(branch) is not None


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("".join(parts))
