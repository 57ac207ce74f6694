from __future__ import annotations

import pytest

from stepwise.memory.schema import ErrorCategory
from stepwise.policy.errors import PatternErrorClassifier, classify_error, explain_error, is_transient


@pytest.mark.parametrize(
    "message",
    [
        "Connection reset by peer",
        "Request TIMED OUT after 30s",
        "HTTP 429 Too Many Requests",
        "upstream returned 503",
        "Model is overloaded, try again later",
    ],
)
def test_transient_messages(message: str) -> None:
    assert classify_error(message) == ErrorCategory.TRANSIENT


@pytest.mark.parametrize(
    "message",
    [
        "SyntaxError: invalid syntax",
        "HTTP 401 Unauthorized",
        "File does not exist: src/app.py",
        "assertion failed in test_widget",
        "",
        None,
    ],
)
def test_permanent_messages(message) -> None:
    assert classify_error(message) == ErrorCategory.PERMANENT


def test_status_codes_only_match_whole_numbers() -> None:
    assert classify_error("processed 15030 records before failing") == ErrorCategory.PERMANENT
    assert classify_error("error code 500") == ErrorCategory.TRANSIENT


def test_transient_patterns_take_precedence() -> None:
    category, pattern = explain_error("permission denied after connection timeout")
    assert category == ErrorCategory.TRANSIENT
    assert pattern == "connection timeout"


def test_explain_names_permanent_pattern() -> None:
    assert explain_error("403 Forbidden") == (ErrorCategory.PERMANENT, "403")
    assert explain_error("widget exploded") == (ErrorCategory.PERMANENT, None)


def test_custom_classifier_tables() -> None:
    classifier = PatternErrorClassifier(transient=("flaky",), permanent=())
    assert classifier("flaky fixture") == ErrorCategory.TRANSIENT
    assert classifier("timeout") == ErrorCategory.PERMANENT
    assert is_transient("flaky fixture", classifier)
    assert not is_transient("timeout", classifier)
