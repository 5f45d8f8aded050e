"""Deterministic worker failure classification for the dispatch retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    ACCESS_OR_AUTH = "access_or_auth"
    TRANSIENT = "transient"


_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "invalid x-api-key",
    "authentication_error",
)
_AUTH_STATUS_CODES = re.compile(r"\b40[13]\b")


@dataclass(slots=True)
class WorkerFailureClassification:
    failure_class: FailureClass
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class is not FailureClass.ACCESS_OR_AUTH


def classify_worker_failure(message: str) -> WorkerFailureClassification:
    """Classify a worker error message; anything not auth-related is transient."""

    haystack = message.lower()
    status_match = _AUTH_STATUS_CODES.search(haystack)
    if status_match is not None:
        return WorkerFailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            matched_pattern=status_match.group(0),
        )

    for pattern in _ACCESS_OR_AUTH_PATTERNS:
        if pattern in haystack:
            return WorkerFailureClassification(
                failure_class=FailureClass.ACCESS_OR_AUTH,
                matched_pattern=pattern,
            )

    return WorkerFailureClassification(
        failure_class=FailureClass.TRANSIENT,
        matched_pattern=None,
    )
