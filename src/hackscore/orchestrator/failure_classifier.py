"""Deterministic classification of analysis engine failures."""

from __future__ import annotations

import signal
from dataclasses import dataclass

from hackscore.orchestrator.models import TIMEOUT_ERROR_MESSAGE, FailureClass

SIGTERM_EXIT_CODE = 143
TIMEOUT_EXIT_CODE = 124
_TERMINATION_EXIT_CODES = frozenset(
    {SIGTERM_EXIT_CODE, TIMEOUT_EXIT_CODE, -int(signal.SIGTERM), -int(signal.SIGKILL)},
)

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "credit balance",
    "quota",
    "insufficient",
    "billing",
    "payment",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "invalid x-api-key",
    "invalid api key",
    "authentication",
    "unauthorized",
    "forbidden",
    "permission denied",
    "bad credentials",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "overloaded",
    "too many requests",
    "rate limit",
    "429",
    "529",
    "temporarily unavailable",
    "connection reset",
    "network error",
    "could not resolve host",
)

_AUTH_HINT = (
    "Engine authentication failed. Check that the saved Anthropic API key is valid "
    "and that the GitHub token can read the repository."
)
_BILLING_HINT = "Engine rejected the request for billing or quota reasons."
_TRANSIENT_HINT = "Engine is temporarily unavailable or rate limited."


@dataclass(slots=True)
class ExecutorFailure:
    """Normalized failure with a user-facing message."""

    failure_class: FailureClass
    message: str
    matched_pattern: str | None = None


def classify_exit(*, exit_code: int, stdout: str, stderr: str) -> ExecutorFailure:
    """Classify a non-zero engine exit into a failure class and message."""

    detail = _detail(stdout=stdout, stderr=stderr)
    if exit_code in _TERMINATION_EXIT_CODES:
        return ExecutorFailure(failure_class=FailureClass.TIMEOUT, message=TIMEOUT_ERROR_MESSAGE)

    haystack = f"{stderr}\n{stdout}".lower()

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return ExecutorFailure(
            failure_class=FailureClass.BILLING_OR_QUOTA,
            message=_with_detail(_BILLING_HINT, exit_code=exit_code, detail=detail),
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None or exit_code == 1:
        return ExecutorFailure(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            message=_with_detail(_AUTH_HINT, exit_code=exit_code, detail=detail),
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return ExecutorFailure(
            failure_class=FailureClass.EXECUTOR_TRANSIENT,
            message=_with_detail(_TRANSIENT_HINT, exit_code=exit_code, detail=detail),
            matched_pattern=pattern,
        )

    return ExecutorFailure(
        failure_class=FailureClass.EXECUTOR_ERROR,
        message=_with_detail(
            "Engine process failed.",
            exit_code=exit_code,
            detail=detail,
        ),
    )


def _detail(*, stdout: str, stderr: str, limit: int = 500) -> str:
    text = (stderr.strip() or stdout.strip()).replace("\n", " ")
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def _with_detail(message: str, *, exit_code: int, detail: str) -> str:
    if detail:
        return f"{message} (exit code {exit_code}): {detail}"
    return f"{message} (exit code {exit_code})"


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
