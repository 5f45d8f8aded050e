from __future__ import annotations

import allure
import pytest

from taskloop.dispatch.failure_classifier import FailureClass, classify_worker_failure

pytestmark = [
    allure.epic("Dispatch Engine"),
    allure.feature("Retry Policy"),
]


@pytest.mark.parametrize(
    ("message", "pattern"),
    [
        ("worker exited 1: HTTP 401 from upstream", "401"),
        ("worker exited 1: 403 Forbidden", "403"),
        ("Error: Invalid API key provided", "invalid api key"),
        ('{"type": "authentication_error"}', "authentication_error"),
        ("request was Unauthorized", "unauthorized"),
    ],
)
def test_auth_failures_are_not_retryable(message: str, pattern: str) -> None:
    classified = classify_worker_failure(message)

    assert classified.failure_class == FailureClass.ACCESS_OR_AUTH
    assert classified.matched_pattern == pattern
    assert classified.retryable is False


def test_other_failures_are_transient() -> None:
    classified = classify_worker_failure("worker exited 1: connection reset by peer")

    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.matched_pattern is None
    assert classified.retryable is True


def test_status_code_must_stand_alone() -> None:
    assert classify_worker_failure("processed 4013 rows then crashed").retryable is True
    assert classify_worker_failure("exit 1401").retryable is True
