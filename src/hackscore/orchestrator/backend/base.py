"""Task executor interface for repository evaluation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from hackscore.orchestrator.models import (
    ANTHROPIC_SECRET,
    GITHUB_SECRET,
    FailureClass,
    Rubric,
)


@dataclass(slots=True)
class EvaluationRequest:
    """Inputs required to evaluate one repository."""

    repository: str
    rubric: Rubric
    prompt: str
    credentials: dict[str, str]
    max_turns: int
    timeout_seconds: float
    abort_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class TaskError:
    """Executor failure reported as a value."""

    failure_class: FailureClass
    message: str
    exit_code: int | None = None


@dataclass(slots=True)
class EvaluationOutcome:
    """Raw executor output; the worker validates ``payload``."""

    payload: dict[str, Any] | None = None
    error: TaskError | None = None
    num_turns: int | None = None
    total_cost_usd: float | None = None
    duration_ms: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def metadata(self) -> dict[str, Any]:
        """Processing metadata persisted with the result."""

        return {
            "num_turns": self.num_turns,
            "total_cost_usd": self.total_cost_usd,
            "duration_ms": self.duration_ms,
            **self.extra,
        }


class TaskExecutor(Protocol):
    """Protocol implemented by analysis engines."""

    def evaluate(self, request: EvaluationRequest) -> EvaluationOutcome:
        """Evaluate a repository and return its score document or an error."""


def credential_env(credentials: dict[str, str]) -> dict[str, str]:
    """Environment variables the engine reads its credentials from."""

    env: dict[str, str] = {}
    anthropic_key = credentials.get(ANTHROPIC_SECRET)
    if anthropic_key:
        env["ANTHROPIC_API_KEY"] = anthropic_key
    github_token = credentials.get(GITHUB_SECRET)
    if github_token:
        env["GITHUB_TOKEN"] = github_token
        env["GITHUB_PERSONAL_ACCESS_TOKEN"] = github_token
    return env
