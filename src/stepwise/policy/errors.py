"""Heuristic classification of step failure messages.

Classification decides whether a failed step is retried or cascades a skip
to its dependents. The default strategy matches the message against a table
of known transient patterns (network, timeout, rate limiting, overloaded
backends). Anything unmatched is permanent: the step stops and its
dependents are skipped rather than retried forever.

Callers that have structured error codes can pass their own
:data:`ErrorClassifier` to the executor instead.
"""

from __future__ import annotations

import re
from typing import Callable, Iterable, Optional, Pattern, Sequence, Tuple

from ..memory.schema import ErrorCategory

ErrorClassifier = Callable[[Optional[str]], ErrorCategory]

TRANSIENT_PATTERNS: tuple[str, ...] = (
    "network error",
    "connection timeout",
    "connection reset",
    "unable to connect",
    "could not connect",
    "timed out",
    "timeout",
    "no connection",
    "connection refused",
    "connection failed",
    "socket error",
    "host unreachable",
    "network unreachable",
    "429",
    "rate limit",
    "too many requests",
    "503",
    "service unavailable",
    "502",
    "bad gateway",
    "504",
    "gateway timeout",
    "500",
    "internal server error",
    "quota exceeded",
    "overloaded",
    "capacity exceeded",
    "try again later",
    "temporarily unavailable",
    "throttled",
)

PERMANENT_PATTERNS: tuple[str, ...] = (
    "401",
    "unauthorized",
    "authentication failed",
    "invalid api key",
    "invalid token",
    "403",
    "forbidden",
    "access denied",
    "permission denied",
    "invalid configuration",
    "invalid model",
    "model not found",
    "invalid parameter",
    "invalid request",
    "bad request",
    "400",
    "syntax error",
    "parse error",
    "validation error",
    "invalid json",
    "invalid format",
    "schema violation",
    "404",
    "not found",
    "does not exist",
    "resource not found",
    "content policy",
    "content filter",
    "safety violation",
    "blocked by policy",
)


def _compile(patterns: Iterable[str]) -> Pattern[str]:
    # Bare status codes only match as whole tokens.
    parts = []
    for pattern in patterns:
        escaped = re.escape(pattern)
        parts.append(rf"\b{escaped}\b" if pattern.isdigit() else escaped)
    if not parts:
        # An empty table must never match.
        return re.compile(r"(?!)")
    return re.compile("|".join(parts), re.IGNORECASE)


class PatternErrorClassifier:
    """Callable classifier backed by transient and permanent pattern tables.

    Transient patterns are checked first. The permanent table never changes
    the outcome (unmatched text is already permanent); it only lets
    :meth:`explain` name the pattern behind a permanent verdict.
    """

    def __init__(
        self,
        transient: Sequence[str] = TRANSIENT_PATTERNS,
        permanent: Sequence[str] = PERMANENT_PATTERNS,
    ) -> None:
        self._transient = _compile(transient)
        self._permanent = _compile(permanent)

    def __call__(self, message: Optional[str]) -> ErrorCategory:
        category, _ = self.explain(message)
        return category

    def explain(self, message: Optional[str]) -> Tuple[ErrorCategory, Optional[str]]:
        """Return the category and the pattern text that decided it, if any."""
        text = (message or "").strip()
        if not text:
            return ErrorCategory.PERMANENT, None
        match = self._transient.search(text)
        if match:
            return ErrorCategory.TRANSIENT, match.group(0).lower()
        match = self._permanent.search(text)
        return ErrorCategory.PERMANENT, match.group(0).lower() if match else None


_DEFAULT_CLASSIFIER = PatternErrorClassifier()


def classify_error(message: Optional[str]) -> ErrorCategory:
    """Classify ``message`` as transient or permanent using the default tables."""
    return _DEFAULT_CLASSIFIER(message)


def explain_error(message: Optional[str]) -> Tuple[ErrorCategory, Optional[str]]:
    """Return the default category for ``message`` with the matching pattern."""
    return _DEFAULT_CLASSIFIER.explain(message)


def is_transient(message: Optional[str], classifier: ErrorClassifier = classify_error) -> bool:
    return classifier(message) == ErrorCategory.TRANSIENT


__all__ = [
    "ErrorCategory",
    "ErrorClassifier",
    "PERMANENT_PATTERNS",
    "PatternErrorClassifier",
    "TRANSIENT_PATTERNS",
    "classify_error",
    "explain_error",
    "is_transient",
]
