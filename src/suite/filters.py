from __future__ import annotations

from typing import Iterable, List, Optional


def build_label_filter(user_filter: Optional[str], exclusions: Iterable[str]) -> str:
    """AND the user's label filter with every fixed exclusion.

    >>> build_label_filter("smoke", ["!backup-restore", "!snapshot"])
    'smoke && !backup-restore && !snapshot'
    """

    clauses: List[str] = []
    if user_filter and user_filter.strip():
        user_filter = user_filter.strip()
        # "||" and "," bind looser than "&&"
        if "||" in user_filter or "," in user_filter:
            user_filter = f"({user_filter})"
        clauses.append(user_filter)
    for exclusion in exclusions:
        exclusion = exclusion.strip()
        if not exclusion:
            continue
        if not exclusion.startswith("!"):
            exclusion = f"!{exclusion}"
        clauses.append(exclusion)
    return " && ".join(clauses)


def build_skip_pattern(patterns: Iterable[str]) -> str:
    return "|".join(p.strip() for p in patterns if p and p.strip())


__all__ = ["build_label_filter", "build_skip_pattern"]
