"""File-conflict detection between tasks.

The regex detector is a heuristic: it looks for file-path-like tokens shared
by two task descriptions where both also talk about changing something. It
is approximate and gives no correctness guarantee; swap in a smarter
detector through the ConflictDetector protocol.
"""

from __future__ import annotations

import re
from typing import Protocol

from conductor.planning.schemas import Task

_FILE_PATTERN = re.compile(
    r"[\w/\-.]+\.(?:ts|tsx|js|jsx|py|java|cpp|h|hpp|go|rs|rb|php|sql|md|json|yaml|yml)\b",
    re.IGNORECASE,
)
_MODIFY_PATTERN = re.compile(
    r"\b(?:modify|modifies|modifying|update|updates|updating|edit|edits|editing|"
    r"change|changes|changing|refactor|refactors|refactoring|rewrite|rewrites|"
    r"delete|deletes|remove|removes|rename|renames)\b",
    re.IGNORECASE,
)


class ConflictDetector(Protocol):
    def conflicts(self, a: Task, b: Task) -> bool: ...


def extract_file_tokens(text: str) -> set[str]:
    return {m.group(0).lower() for m in _FILE_PATTERN.finditer(text)}


def mentions_modification(text: str) -> bool:
    return _MODIFY_PATTERN.search(text) is not None


class RegexConflictDetector:
    """Flags a conflict when both tasks name the same file and both modify."""

    def conflicts(self, a: Task, b: Task) -> bool:
        text_a = f"{a.title}\n{a.description}"
        text_b = f"{b.title}\n{b.description}"
        shared = extract_file_tokens(text_a) & extract_file_tokens(text_b)
        if not shared:
            return False
        return mentions_modification(text_a) and mentions_modification(text_b)
