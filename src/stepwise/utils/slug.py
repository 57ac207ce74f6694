"""Utilities for generating consistent, length-limited slugs and plan filenames."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_LOWERCASE_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")
_MARKDOWN_EMPHASIS = re.compile(r"\*\*|\*|__|_|`")
_BRACKET_PREFIX = re.compile(r"^\[([^\]]+)\]")
_VERB_PREFIX = re.compile(
    r"^(task|implement|create|add|fix|update|build|setup|configure):\s*", re.IGNORECASE
)
_WORD_SPLIT = re.compile(r"[^a-zA-Z0-9]+")

PLAN_FILENAME_DESCRIPTION_LENGTH = 40


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalize ``value`` into a lowercase filesystem-friendly slug."""
    source = (value or "").strip().lower() or fallback.lower()
    slug = _normalize(source) or _normalize(fallback.lower()) or "item"
    if len(slug) > max_length:
        slug = abbreviate_slug(slug, max_length=max_length)
    return slug


def abbreviate_slug(segment: str, *, max_length: int = 80) -> str:
    """Trim ``segment`` to ``max_length`` while preserving uniqueness via hashing."""
    slug = segment.strip("-") or "item"
    if len(slug) <= max_length:
        return slug

    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = slug[:prefix_length].rstrip("-") or slug[:prefix_length]
    return f"{prefix}-{digest}"


def short_hash(value: str, *, length: int = 4) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()[:length]


def plan_filename(
    task_description: str,
    task_id: str,
    *,
    max_length: int = PLAN_FILENAME_DESCRIPTION_LENGTH,
) -> str:
    """Return a readable, stable filename stem for a task's plan.

    The stem is the leading words of the description (a ``[label]`` prefix is
    kept, a leading ``Task:``/``Implement:`` style verb is dropped) followed by
    four hex characters of the task id's MD5 digest.
    """
    cleaned = _MARKDOWN_EMPHASIS.sub("", task_description or "").strip()
    words: list[str] = []
    bracket = _BRACKET_PREFIX.match(cleaned)
    if bracket:
        words.extend(word for word in _WORD_SPLIT.split(bracket.group(1)) if word)
        cleaned = cleaned[bracket.end():].strip()
    cleaned = _VERB_PREFIX.sub("", cleaned)
    words.extend(word for word in _WORD_SPLIT.split(cleaned) if word)

    stem = ""
    for word in words:
        candidate = f"{stem}-{word}" if stem else word
        if len(candidate) > max_length:
            break
        stem = candidate

    digest = short_hash(task_id)
    return f"{stem}-{digest}".lower() if stem else digest


def _normalize(value: str) -> str:
    slug = _LOWERCASE_PATTERN.sub("-", value)
    slug = _HYPHEN_COLLAPSE.sub("-", slug)
    return slug.strip("-")


__all__ = ["abbreviate_slug", "plan_filename", "short_hash", "slugify"]
