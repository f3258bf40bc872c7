"""Deterministic classification of abnormal session exits."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

SESSION_FAILURE_CLASSIFIER_VERSION = 1
COMMAND_NOT_FOUND_EXIT_CODE = 127

_TRANSPORT_PATTERNS: tuple[str, ...] = (
    "connection reset",
    "connection closed by",
    "connection timed out",
    "broken pipe",
    "network is unreachable",
    "no route to host",
    "could not resolve host",
    "client_loop: send disconnect",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "usage limit",
    "quota",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
)
_COMMAND_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "command not found",
    "no such file or directory",
)


class SessionFailureClass(str, Enum):
    TRANSPORT = "transport"
    RATE_LIMITED = "rate_limited"
    ACCESS_OR_AUTH = "access_or_auth"
    COMMAND_NOT_FOUND = "command_not_found"
    AGENT_ERROR = "agent_error"


@dataclass(slots=True)
class SessionFailureClassification:
    """Normalized failure classification result."""

    failure_class: SessionFailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def reconnectable(self) -> bool:
        return self.failure_class == SessionFailureClass.TRANSPORT

    def to_event_details(self, *, engine: str, exit_code: int) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": SESSION_FAILURE_CLASSIFIER_VERSION,
            "engine": engine,
            "exit_code": exit_code,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_session_exit(
    *,
    engine: str,
    exit_code: int,
    stderr: str,
    transport_exit_codes: tuple[int, ...],
) -> SessionFailureClassification:
    """Classify a non-zero session exit.

    The transport exit code (ssh exits with 255 when the connection drops)
    takes precedence over stderr text.
    """

    haystack = stderr.lower()
    if exit_code in transport_exit_codes:
        return SessionFailureClassification(
            failure_class=SessionFailureClass.TRANSPORT,
            reason_code=f"{engine}_transport",
            matched_rule="transport_exit_code",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _TRANSPORT_PATTERNS)
    if pattern is not None:
        return SessionFailureClassification(
            failure_class=SessionFailureClass.TRANSPORT,
            reason_code=f"{engine}_transport",
            matched_rule="transport_pattern",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _COMMAND_NOT_FOUND_PATTERNS)
    if pattern is not None or exit_code == COMMAND_NOT_FOUND_EXIT_CODE:
        return SessionFailureClassification(
            failure_class=SessionFailureClass.COMMAND_NOT_FOUND,
            reason_code=f"{engine}_command_not_found",
            matched_rule="command_not_found",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return SessionFailureClassification(
            failure_class=SessionFailureClass.ACCESS_OR_AUTH,
            reason_code=f"{engine}_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return SessionFailureClassification(
            failure_class=SessionFailureClass.RATE_LIMITED,
            reason_code=f"{engine}_rate_limited",
            matched_rule="rate_limited",
            matched_pattern=pattern,
        )

    return SessionFailureClassification(
        failure_class=SessionFailureClass.AGENT_ERROR,
        reason_code=f"{engine}_agent_error",
        matched_rule="fallback_agent_error",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
