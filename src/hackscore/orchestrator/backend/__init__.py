"""Task executor implementations."""

from hackscore.orchestrator.backend.base import (
    EvaluationOutcome,
    EvaluationRequest,
    TaskError,
    TaskExecutor,
)
from hackscore.orchestrator.backend.cli_backend import CliTaskExecutor, ExecutorError
from hackscore.orchestrator.backend.http_backend import HttpTaskExecutor

__all__ = [
    "CliTaskExecutor",
    "EvaluationOutcome",
    "EvaluationRequest",
    "ExecutorError",
    "HttpTaskExecutor",
    "TaskError",
    "TaskExecutor",
]
