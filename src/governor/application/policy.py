"""Path policy: protected paths, allow/deny globs and auto-apply categories."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import TYPE_CHECKING

from .safe_paths import normalize_rel_path

if TYPE_CHECKING:
    from ..config import SitePolicy

# Paths that always need a human, whatever the site policy says.
ALWAYS_REQUIRE_APPROVAL_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"(^|/)\.governor/council\.yaml$", re.I),
    re.compile(r"(^|/)\.governor/config\.yaml$", re.I),
    re.compile(r"(^|/)\.governor/rules/.*\.md$", re.I),
    re.compile(r"package\.json$", re.I),
    re.compile(r"pnpm-lock\.yaml$", re.I),
    re.compile(r"(^|/)\.github/", re.I),
]

AUTO_APPLY_CATEGORIES = ("mode-map", "docs", "memory", "rubric")


@lru_cache(maxsize=256)
def glob_to_regex(glob: str) -> re.Pattern[str]:
    """Compile a small glob subset: ``*`` within a segment, ``**`` across segments.

    Patterns are anchored and case-insensitive.
    """
    normalized = normalize_rel_path(glob)
    out = ["^"]
    i = 0
    while i < len(normalized):
        ch = normalized[i]
        if ch == "*":
            if i + 1 < len(normalized) and normalized[i + 1] == "*":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        else:
            out.append(re.escape(ch))
        i += 1
    out.append("$")
    return re.compile("".join(out), re.I)


def matches_any_glob(file_path: str, patterns: list[str]) -> bool:
    if not patterns:
        return False
    normalized = normalize_rel_path(file_path)
    return any(glob_to_regex(p).match(normalized) for p in patterns)


def is_path_allowed(file_path: str, policy: SitePolicy) -> bool:
    """Deny globs win; with no allow globs configured everything is denied."""
    if matches_any_glob(file_path, policy.auto_apply_exclusions):
        return False
    if not policy.auto_apply_patterns:
        return False
    return matches_any_glob(file_path, policy.auto_apply_patterns)


def requires_human_approval(file_path: str) -> bool:
    normalized = normalize_rel_path(file_path)
    return any(p.search(normalized) for p in ALWAYS_REQUIRE_APPROVAL_PATTERNS)


def infer_category_from_path(file_path: str) -> str | None:
    p = normalize_rel_path(file_path).lower()
    if "mode-map" in p or "modemap" in p:
        return "mode-map"
    if p.startswith("docs/") or p.endswith(".md"):
        return "docs"
    if ".governor/memory" in p:
        return "memory"
    if ".governor/rubrics" in p or "rubric" in p:
        return "rubric"
    return None
