"""Domain models for the evaluation queue, jobs, results and batches."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Forward-only job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchStatus(str, Enum):
    """Derived batch status, never set by callers."""

    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized failure classes stored next to the job error."""

    TIMEOUT = "timeout"
    EXECUTOR_ERROR = "executor_error"
    EXECUTOR_TRANSIENT = "executor_transient"
    ACCESS_OR_AUTH = "access_or_auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    OUTPUT_INVALID = "output_invalid"
    MISSING_CREDENTIAL = "missing_credential"
    JOB_NOT_FOUND = "job_not_found"
    INVALID_PAYLOAD = "invalid_payload"
    PERSIST_FAILED = "persist_failed"
    UNEXPECTED = "unexpected"


TIMEOUT_ERROR_MESSAGE = (
    "Analysis timed out or was terminated. "
    "Try raising the analysis timeout or reducing the maximum number of turns."
)

ANTHROPIC_SECRET = "anthropic_key"
GITHUB_SECRET = "github_token"


class PayloadError(ValueError):
    """Queue message payload does not describe a job."""


@dataclass(slots=True, frozen=True)
class Criterion:
    """One scored rubric criterion."""

    id: str
    label: str
    max_score: float
    guidance: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "max_score": self.max_score,
            "guidance": self.guidance,
        }


@dataclass(slots=True, frozen=True)
class Rubric:
    """Ordered criteria the engine scores a repository against."""

    criteria: tuple[Criterion, ...]

    @property
    def max_total(self) -> float:
        return sum(criterion.max_score for criterion in self.criteria)

    @property
    def criterion_ids(self) -> list[str]:
        return [criterion.id for criterion in self.criteria]

    def get(self, criterion_id: str) -> Criterion | None:
        for criterion in self.criteria:
            if criterion.id == criterion_id:
                return criterion
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"criteria": [criterion.to_dict() for criterion in self.criteria]}

    @classmethod
    def from_dict(cls, data: Any) -> Rubric:
        """Build a rubric from its serialized form, rejecting malformed input."""

        if not isinstance(data, dict) or not isinstance(data.get("criteria"), list):
            raise ValueError("Rubric must be an object with a `criteria` list.")
        criteria: list[Criterion] = []
        seen: set[str] = set()
        for index, raw in enumerate(data["criteria"]):
            if not isinstance(raw, dict):
                raise ValueError(f"Rubric criterion #{index} must be an object.")
            criterion_id = raw.get("id")
            label = raw.get("label") or raw.get("name")
            max_score = raw.get("max_score")
            if not isinstance(criterion_id, str) or not criterion_id.strip():
                raise ValueError(f"Rubric criterion #{index} has no id.")
            if criterion_id in seen:
                raise ValueError(f"Duplicate rubric criterion id: {criterion_id}")
            if not isinstance(label, str) or not label.strip():
                raise ValueError(f"Rubric criterion {criterion_id} has no label.")
            if isinstance(max_score, bool) or not isinstance(max_score, (int, float)):
                raise ValueError(f"Rubric criterion {criterion_id} has no numeric max_score.")
            if max_score <= 0:
                raise ValueError(f"Rubric criterion {criterion_id} max_score must be > 0.")
            guidance = raw.get("guidance", "")
            seen.add(criterion_id)
            criteria.append(
                Criterion(
                    id=criterion_id,
                    label=label,
                    max_score=max_score,
                    guidance=guidance if isinstance(guidance, str) else "",
                ),
            )
        if not criteria:
            raise ValueError("Rubric must contain at least one criterion.")
        return cls(criteria=tuple(criteria))


DEFAULT_RUBRIC = Rubric(
    criteria=(
        Criterion(
            id="market_advantage",
            label="Market advantage",
            max_score=5,
            guidance="Originality of the idea and how clearly it stands out from alternatives.",
        ),
        Criterion(
            id="technical_strength",
            label="Technical strength",
            max_score=5,
            guidance="Architecture quality, non-trivial engineering and sound use of the stack.",
        ),
        Criterion(
            id="completeness",
            label="Completeness",
            max_score=5,
            guidance="How much of the promised product works end to end.",
        ),
        Criterion(
            id="usability",
            label="Usability",
            max_score=5,
            guidance="Setup experience, documentation and clarity of the user-facing flow.",
        ),
    ),
)


@dataclass(slots=True, frozen=True)
class JobPayload:
    """Typed queue message body for one repository evaluation."""

    job_id: str
    repository: str
    owner_id: str
    rubric: Rubric = DEFAULT_RUBRIC
    parent_batch_id: str | None = None
    is_retry: bool = False
    is_addition: bool = False

    def to_message(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "repository": self.repository,
            "owner_id": self.owner_id,
            "rubric": self.rubric.to_dict(),
            "parent_batch_id": self.parent_batch_id,
            "is_retry": self.is_retry,
            "is_addition": self.is_addition,
        }

    @classmethod
    def from_message(cls, data: Any) -> JobPayload:
        """Validate a raw queue message body."""

        if not isinstance(data, dict):
            raise PayloadError("Message payload must be a JSON object.")
        for key in ("job_id", "repository", "owner_id"):
            value = data.get(key)
            if not isinstance(value, str) or not value.strip():
                raise PayloadError(f"Message payload field `{key}` must be a non-empty string.")
        parent_batch_id = data.get("parent_batch_id")
        if parent_batch_id is not None and not isinstance(parent_batch_id, str):
            raise PayloadError("Message payload field `parent_batch_id` must be a string.")
        for key in ("is_retry", "is_addition"):
            if not isinstance(data.get(key, False), bool):
                raise PayloadError(f"Message payload field `{key}` must be a boolean.")
        raw_rubric = data.get("rubric")
        try:
            rubric = DEFAULT_RUBRIC if raw_rubric is None else Rubric.from_dict(raw_rubric)
        except ValueError as error:
            raise PayloadError(str(error)) from error
        return cls(
            job_id=data["job_id"],
            repository=data["repository"],
            owner_id=data["owner_id"],
            rubric=rubric,
            parent_batch_id=parent_batch_id,
            is_retry=data.get("is_retry", False),
            is_addition=data.get("is_addition", False),
        )


@dataclass(slots=True)
class QueueMessageView:
    """Leased or listed queue message."""

    msg_id: int
    queue_name: str
    payload: Any
    enqueued_at: datetime
    visible_at: datetime
    read_count: int
    archived_at: datetime | None = None


@dataclass(slots=True)
class QueueMetrics:
    """Point-in-time queue statistics."""

    queue_name: str
    queue_length: int
    visible_count: int
    leased_count: int
    archived_count: int
    oldest_message_age_seconds: float | None
    newest_message_age_seconds: float | None


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI, services and worker logic."""

    job_id: str
    batch_id: str | None
    owner_id: str
    repository: str
    status: JobStatus
    payload: JobPayload
    result: dict[str, Any] | None
    error: str | None
    failure_class: FailureClass | None
    is_retry: bool
    is_addition: bool
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class BatchView:
    """Batch with its recomputed rollups."""

    batch_id: str
    owner_id: str
    name: str
    status: BatchStatus
    total_repositories: int
    completed_repositories: int
    average_score: float | None
    rubric: Rubric
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class EvaluationItem:
    """Scored criterion inside an evaluation document."""

    id: str
    label: str
    score: float
    positives: str
    negatives: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "score": self.score,
            "positives": self.positives,
            "negatives": self.negatives,
        }


@dataclass(slots=True)
class EvaluationDocument:
    """Validated engine output for one repository."""

    total_score: float
    items: list[EvaluationItem]
    overall_comment: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_score": self.total_score,
            "items": [item.to_dict() for item in self.items],
            "overall_comment": self.overall_comment,
        }


@dataclass(slots=True)
class ResultView:
    """Persisted evaluation summary with its criterion rows."""

    result_id: int
    job_id: str
    batch_id: str | None
    owner_id: str
    repository: str
    total_score: float
    overall_comment: str | None
    detail: dict[str, Any]
    metadata: dict[str, Any]
    items: list[EvaluationItem]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ProcessOutcome:
    """Result of processing one job payload."""

    job_id: str
    repository: str
    success: bool
    status: JobStatus | None
    error: str | None = None
    failure_class: FailureClass | None = None
    total_score: float | None = None


@dataclass(slots=True)
class ProcessedMessage:
    """One queue message handled by a drain cycle."""

    message_id: int
    job_id: str | None
    resolved: bool
    success: bool


@dataclass(slots=True)
class DrainSummary:
    """Outcome of one drain cycle, or of every cycle of a polling run."""

    cycles: int = 1
    processed_count: int = 0
    processed: list[ProcessedMessage] = field(default_factory=list)
    has_errors: bool = False
    last_error: str | None = None
    stop_reason: str = "queue_empty"
