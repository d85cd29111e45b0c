"""Hashtag extraction and normalization utilities."""

import re
from collections.abc import Iterable

# Match #word patterns: must start with a letter after #, 2-50 chars tag name
HASHTAG_PATTERN = re.compile(r"#([A-Za-z][A-Za-z0-9_]{1,49})")

_MAX_TAGS = 30


def normalize_tag(tag: str) -> str:
    """Lowercase, trim, and drop any leading '#' characters."""
    return tag.strip().lstrip("#").strip().lower()


def normalize_tags(tags: Iterable[object]) -> tuple[str, ...]:
    """Normalize a loosely-typed tag list, skipping non-strings and blanks.

    Deduplicated, first-occurrence order preserved, capped at 30.
    """
    seen: set[str] = set()
    result: list[str] = []
    for raw in tags:
        if not isinstance(raw, str):
            continue
        tag = normalize_tag(raw)
        if tag and tag not in seen:
            seen.add(tag)
            result.append(tag)
        if len(result) >= _MAX_TAGS:
            break
    return tuple(result)


def extract_hashtags(text: str | None) -> tuple[str, ...]:
    """Extract unique hashtags from post text.

    Used when a record carries no explicit ``hashtags`` array.
    """
    if not text:
        return ()
    return normalize_tags(match.group(1) for match in HASHTAG_PATTERN.finditer(text))
