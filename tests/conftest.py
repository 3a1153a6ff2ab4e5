"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from hackscore.orchestrator.backend.base import EvaluationOutcome, EvaluationRequest, TaskError
from hackscore.orchestrator.models import TIMEOUT_ERROR_MESSAGE, Criterion, FailureClass, Rubric
from hackscore.storage.database import Database

QUEUE_NAME = "repo_analysis_queue"

OVERALL_RUBRIC = Rubric(
    criteria=(Criterion(id="overall", label="Overall", max_score=100),),
)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


Outcome = EvaluationOutcome | Exception | Callable[[EvaluationRequest], EvaluationOutcome]


class ScriptedExecutor:
    """In-process executor answering from a per-repository script."""

    def __init__(self, script: dict[str, list[Outcome]] | None = None) -> None:
        self.script = script or {}
        self.requests: list[EvaluationRequest] = []

    def add(self, repository: str, *outcomes: Outcome) -> None:
        self.script.setdefault(repository, []).extend(outcomes)

    def evaluate(self, request: EvaluationRequest) -> EvaluationOutcome:
        self.requests.append(request)
        pending = self.script.get(request.repository)
        if not pending:
            raise AssertionError(f"Unexpected evaluation of {request.repository}")
        outcome = pending.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(request)
        return outcome


def scored(score: float, *, rubric: Rubric = OVERALL_RUBRIC) -> EvaluationOutcome:
    """Successful outcome putting the whole ``score`` on the first criterion."""

    items = []
    remaining = score
    for criterion in rubric.criteria:
        value = min(remaining, criterion.max_score)
        remaining -= value
        items.append(
            {
                "id": criterion.id,
                "name": criterion.label,
                "score": value,
                "positives": "Clear structure.",
                "negatives": "Few tests.",
            },
        )
    return EvaluationOutcome(
        payload={"totalScore": score, "items": items, "overallComment": "Solid entry."},
        num_turns=3,
        total_cost_usd=0.12,
        duration_ms=1500,
    )


def timed_out() -> EvaluationOutcome:
    return EvaluationOutcome(
        error=TaskError(failure_class=FailureClass.TIMEOUT, message=TIMEOUT_ERROR_MESSAGE),
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "hackscore.db"


@pytest.fixture()
def db(db_path: Path, clock: FakeClock) -> Iterator[Database]:
    database = Database(db_path, clock=clock)
    database.init_schema()
    yield database
    database.close()
