"""File classification policy.

Assigns every ``FileEntry`` exactly one mutability category.  An explicit
``category`` on the entry wins; otherwise the first matching glob rule of
the template's policy applies; otherwise the policy default.  Globs match
the template path expression, so classification never depends on a render
succeeding.
"""

from __future__ import annotations

import re
from functools import lru_cache

from rescaffold.models import Category, FileEntry, PolicyConfig, PolicyRule


@lru_cache(maxsize=256)
def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a ``**``-aware glob into an anchored regex.

    ``*`` and ``?`` never cross a ``/``; ``**/`` matches zero or more whole
    directories and a trailing ``**`` matches everything below.
    """
    out: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif char == "*":
            out.append("[^/]*")
            i += 1
        elif char == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(char))
            i += 1
    return re.compile("^" + "".join(out) + "$")


def glob_match(path: str, pattern: str) -> bool:
    return _glob_to_regex(pattern).match(path) is not None


class ClassificationPolicy:
    """Maps entries to categories according to a ``PolicyConfig``."""

    def __init__(self, config: PolicyConfig | None = None) -> None:
        self.config = config or PolicyConfig()

    @property
    def default(self) -> Category:
        return self.config.default

    @property
    def rules(self) -> list[PolicyRule]:
        return self.config.rules

    def classify_path(self, template_path: str) -> Category:
        for rule in self.rules:
            if glob_match(template_path, rule.glob):
                return rule.category
        return self.default

    def classify(self, entry: FileEntry) -> Category:
        if entry.category is not None:
            return entry.category
        return self.classify_path(entry.path)

    def split(self, entries: list[FileEntry]) -> tuple[list[tuple[FileEntry, Category]], list[FileEntry]]:
        """Partition *entries* into ``(kept, excluded)``.

        ``kept`` pairs each renderable entry with its category; ``excluded``
        holds the entries classified as never.
        """
        kept: list[tuple[FileEntry, Category]] = []
        excluded: list[FileEntry] = []
        for entry in entries:
            category = self.classify(entry)
            if category is Category.NEVER:
                excluded.append(entry)
            else:
                kept.append((entry, category))
        return kept, excluded
