"""Helpers for normalising file paths mentioned in plans and tool calls."""

from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional

_FILE_EXTENSIONS: set[str] = {
    ".py",
    ".pyi",
    ".txt",
    ".md",
    ".rst",
    ".json",
    ".yaml",
    ".yml",
    ".toml",
    ".cfg",
    ".ini",
    ".js",
    ".jsx",
    ".ts",
    ".tsx",
    ".css",
    ".html",
    ".cs",
    ".go",
    ".rs",
    ".java",
    ".sql",
    ".sh",
}

_PATH_TOKEN_SPLIT_RE = re.compile(r"[^\w./\\-]+")


def normalise_path(value: str) -> str:
    """Return ``value`` with forward slashes and no quoting or leading ``./``."""
    if not isinstance(value, str):
        return ""
    normalised = value.strip().strip("\"'`")
    if not normalised:
        return ""
    normalised = normalised.replace("\\", "/")
    normalised = normalised.lstrip("([{<")
    normalised = normalised.rstrip(".,;:!?)]}>")
    while normalised.startswith("./"):
        normalised = normalised[2:]
    return normalised


def looks_like_file_path(value: str) -> bool:
    normalised = value.replace("\\", "/")
    lowered = normalised.lower()
    if any(lowered.endswith(ext) for ext in _FILE_EXTENSIONS):
        return True
    # Directory-qualified names without a known extension, e.g. "src/Makefile".
    return "/" in normalised and "." in normalised.rsplit("/", 1)[-1]


def extract_paths_from_text(value: str) -> List[str]:
    """Return path-like tokens mentioned in free text, in order of appearance."""
    if not value:
        return []
    results: List[str] = []
    seen: set[str] = set()
    for fragment in _PATH_TOKEN_SPLIT_RE.split(value):
        normalised = normalise_path(fragment)
        if not normalised or normalised in seen:
            continue
        if looks_like_file_path(normalised):
            seen.add(normalised)
            results.append(normalised)
    return results


def text_references_path(text: str, path: str) -> bool:
    """Return True when ``text`` names ``path`` directly or by a trailing suffix."""
    target = normalise_path(path)
    if not target:
        return False
    for candidate in extract_paths_from_text(text):
        if candidate == target:
            return True
        if target.endswith("/" + candidate) or candidate.endswith("/" + target):
            return True
    return False


def workspace_relative(value: str, workspace: Path) -> Optional[str]:
    """Express ``value`` relative to ``workspace``; None when it points elsewhere."""
    normalised = normalise_path(value)
    if not normalised:
        return None
    candidate = Path(normalised)
    if not candidate.is_absolute():
        return normalised
    try:
        return candidate.resolve().relative_to(workspace.resolve()).as_posix()
    except ValueError:
        return None


def resolve_in_workspace(path: str, workspace: Path) -> Path:
    candidate = Path(normalise_path(path))
    if candidate.is_absolute():
        return candidate
    return workspace / candidate


__all__ = [
    "extract_paths_from_text",
    "looks_like_file_path",
    "normalise_path",
    "resolve_in_workspace",
    "text_references_path",
    "workspace_relative",
]
