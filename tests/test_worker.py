from __future__ import annotations

import allure
import pytest
from conftest import (
    OVERALL_RUBRIC,
    QUEUE_NAME,
    FakeClock,
    ScriptedExecutor,
    scored,
    timed_out,
)
from sqlalchemy.exc import OperationalError

from hackscore.orchestrator.backend.base import EvaluationOutcome, EvaluationRequest, TaskError
from hackscore.orchestrator.models import (
    ANTHROPIC_SECRET,
    GITHUB_SECRET,
    TIMEOUT_ERROR_MESSAGE,
    BatchStatus,
    FailureClass,
    JobPayload,
    JobStatus,
)
from hackscore.orchestrator.queue import MessageQueue
from hackscore.orchestrator.results import ResultRepository
from hackscore.orchestrator.secrets import SecretStore
from hackscore.orchestrator.services import BatchService, CreateBatch
from hackscore.orchestrator.worker import MISSING_API_KEY_MESSAGE, DispatchWorker
from hackscore.storage.database import Database

pytestmark = [
    allure.epic("Evaluation Queue"),
    allure.feature("Dispatch Worker"),
]


def _worker(db: Database, executor: ScriptedExecutor, **overrides) -> DispatchWorker:
    options = {
        "db": db,
        "executor": executor,
        "queue_name": QUEUE_NAME,
        "visibility_timeout_seconds": 120,
        "analysis_timeout_seconds": 60,
        "inter_message_delay_seconds": 0,
        "worker_id": "test-worker",
    }
    options.update(overrides)
    return DispatchWorker(**options)


def _service(db: Database) -> BatchService:
    return BatchService(db=db, queue_name=QUEUE_NAME)


def _create_batch(db: Database, *repositories: str, name: str = "Spring") -> str:
    SecretStore(db).put_secret("alice", ANTHROPIC_SECRET, "sk-ant-test")
    batch = _service(db).create_batch(
        CreateBatch(
            owner_id="alice",
            name=name,
            repositories=repositories,
            rubric=OVERALL_RUBRIC,
        ),
    )
    return batch.batch_id


def _jobs_by_repository(db: Database, batch_id: str) -> dict[str, list]:
    grouped: dict[str, list] = {}
    for job in _service(db).get_batch(owner_id="alice", batch_id=batch_id).jobs:
        grouped.setdefault(job.repository, []).append(job)
    return grouped


def test_visibility_timeout_must_exceed_analysis_timeout(db: Database) -> None:
    with pytest.raises(ValueError, match="Visibility timeout must exceed"):
        _worker(db, ScriptedExecutor(), visibility_timeout_seconds=60)


def test_partial_failure_then_retry_completes_batch(db: Database, clock: FakeClock) -> None:
    batch_id = _create_batch(db, "a/1", "a/2")
    executor = ScriptedExecutor({"a/1": [scored(80)], "a/2": [timed_out()]})

    summary = _worker(db, executor).drain()

    assert summary.processed_count == 2
    assert summary.has_errors is True
    assert summary.stop_reason == "queue_empty"
    assert all(processed.resolved for processed in summary.processed)
    jobs = _jobs_by_repository(db, batch_id)
    assert jobs["a/1"][0].status is JobStatus.COMPLETED
    assert jobs["a/2"][0].status is JobStatus.FAILED
    assert jobs["a/2"][0].error == TIMEOUT_ERROR_MESSAGE
    assert jobs["a/2"][0].failure_class is FailureClass.TIMEOUT
    result = ResultRepository(db).get(job_id=jobs["a/1"][0].job_id, repository="a/1")
    assert result is not None
    assert result.total_score == 80
    assert result.metadata["num_turns"] == 3
    batch = _service(db).get_batch(owner_id="alice", batch_id=batch_id).batch
    assert batch.status is BatchStatus.ANALYZING
    assert batch.completed_repositories == 1
    assert batch.total_repositories == 2
    assert batch.average_score == pytest.approx(80)

    failed_job = jobs["a/2"][0]
    clock.advance(1)
    retry = _service(db).retry_repository(owner_id="alice", batch_id=batch_id, repository="a/2")
    assert retry.status is JobStatus.PENDING
    assert retry.is_retry is True
    assert retry.job_id != failed_job.job_id
    assert len(MessageQueue(db).list_messages(QUEUE_NAME)) == 1

    executor.add("a/2", scored(60))
    second = _worker(db, executor).drain()

    assert second.processed_count == 1
    assert second.has_errors is False
    jobs = _jobs_by_repository(db, batch_id)
    assert [job.status for job in jobs["a/2"]] == [JobStatus.FAILED, JobStatus.COMPLETED]
    assert jobs["a/2"][0].error == failed_job.error
    batch = _service(db).get_batch(owner_id="alice", batch_id=batch_id).batch
    assert batch.status is BatchStatus.COMPLETED
    assert batch.completed_repositories == 2
    assert batch.average_score == pytest.approx(70)


def test_failed_message_does_not_block_the_next_one(db: Database) -> None:
    batch_id = _create_batch(db, "a/1", "a/2")
    executor = ScriptedExecutor(
        {"a/1": [RuntimeError("engine crashed")], "a/2": [scored(55)]},
    )

    summary = _worker(db, executor).drain()

    assert [processed.success for processed in summary.processed] == [False, True]
    assert [processed.resolved for processed in summary.processed] == [True, True]
    jobs = _jobs_by_repository(db, batch_id)
    assert jobs["a/1"][0].status is JobStatus.FAILED
    assert jobs["a/1"][0].failure_class is FailureClass.UNEXPECTED
    assert "engine crashed" in (jobs["a/1"][0].error or "")
    assert jobs["a/2"][0].status is JobStatus.COMPLETED
    queue = MessageQueue(db)
    assert queue.list_messages(QUEUE_NAME) == []
    assert len(queue.list_archived(QUEUE_NAME)) == 1


def test_missing_api_key_fails_job_without_calling_executor(db: Database) -> None:
    batch = _service(db).create_batch(
        CreateBatch(owner_id="bob", name="Keyless", repositories=("b/1",), rubric=OVERALL_RUBRIC),
    )
    executor = ScriptedExecutor()

    summary = _worker(db, executor).drain()

    assert executor.requests == []
    assert summary.last_error == MISSING_API_KEY_MESSAGE
    job = _service(db).get_batch(owner_id="bob", batch_id=batch.batch_id).jobs[0]
    assert job.status is JobStatus.FAILED
    assert job.failure_class is FailureClass.MISSING_CREDENTIAL
    refreshed = _service(db).get_batch(owner_id="bob", batch_id=batch.batch_id).batch
    assert refreshed.status is BatchStatus.FAILED


def test_credentials_and_prompt_reach_the_executor(db: Database) -> None:
    _create_batch(db, "a/1")
    SecretStore(db).put_secret("alice", GITHUB_SECRET, "ghp-test")
    executor = ScriptedExecutor({"a/1": [scored(10)]})

    _worker(db, executor, max_turns=7).drain()

    request = executor.requests[0]
    assert request.credentials == {ANTHROPIC_SECRET: "sk-ant-test", GITHUB_SECRET: "ghp-test"}
    assert request.max_turns == 7
    assert request.timeout_seconds == 60
    assert request.rubric == OVERALL_RUBRIC
    assert "a/1" in request.prompt
    assert "overall" in request.prompt


def test_invalid_document_fails_job_as_output_invalid(db: Database) -> None:
    batch_id = _create_batch(db, "a/1")
    bad = EvaluationOutcome(payload={"totalScore": 500, "items": [], "overallComment": ""})
    executor = ScriptedExecutor({"a/1": [bad]})

    summary = _worker(db, executor).drain()

    assert summary.has_errors is True
    job = _jobs_by_repository(db, batch_id)["a/1"][0]
    assert job.status is JobStatus.FAILED
    assert job.failure_class is FailureClass.OUTPUT_INVALID
    assert (job.error or "").startswith("Invalid evaluation result:")


def test_executor_error_is_stored_verbatim(db: Database) -> None:
    batch_id = _create_batch(db, "a/1")
    error = TaskError(failure_class=FailureClass.BILLING_OR_QUOTA, message="Credit balance is low")
    executor = ScriptedExecutor({"a/1": [EvaluationOutcome(error=error)]})

    _worker(db, executor).drain()

    job = _jobs_by_repository(db, batch_id)["a/1"][0]
    assert job.error == "Credit balance is low"
    assert job.failure_class is FailureClass.BILLING_OR_QUOTA


def test_orphan_message_is_archived_without_creating_a_job(db: Database) -> None:
    queue = MessageQueue(db)
    payload = JobPayload(job_id="ghost", repository="g/1", owner_id="alice")
    queue.send(QUEUE_NAME, payload.to_message())
    executor = ScriptedExecutor()

    worker = _worker(db, executor)
    summary = worker.drain()

    assert summary.processed_count == 1
    assert summary.processed[0].resolved is True
    assert summary.processed[0].success is False
    assert "Job not found" in (summary.last_error or "")
    assert worker.jobs.get("ghost") is None
    assert len(queue.list_archived(QUEUE_NAME)) == 1


def test_invalid_payload_is_archived(db: Database) -> None:
    queue = MessageQueue(db)
    queue.send(QUEUE_NAME, {"repository": "a/1"})
    queue.send(QUEUE_NAME, ["not", "an", "object"])

    summary = _worker(db, ScriptedExecutor()).drain()

    assert summary.processed_count == 2
    assert all(processed.resolved for processed in summary.processed)
    assert summary.processed[0].job_id is None
    assert (summary.last_error or "").startswith("Invalid message payload")
    assert len(queue.list_archived(QUEUE_NAME)) == 2


def test_redelivered_completed_job_is_not_evaluated_again(db: Database) -> None:
    batch_id = _create_batch(db, "a/1")
    queue = MessageQueue(db)
    job = _jobs_by_repository(db, batch_id)["a/1"][0]
    worker = _worker(db, ScriptedExecutor({"a/1": [scored(90)]}))
    assert worker.process_one(job.payload).success is True
    assert len(queue.list_messages(QUEUE_NAME)) == 1

    summary = worker.drain()

    assert summary.processed[0].success is True
    assert summary.processed[0].resolved is True
    assert queue.list_messages(QUEUE_NAME) == []
    assert len(worker.executor.requests) == 1  # type: ignore[attr-defined]


def test_expired_lease_is_picked_up_by_the_next_worker(db: Database, clock: FakeClock) -> None:
    batch_id = _create_batch(db, "a/1")
    queue = MessageQueue(db)
    abandoned = queue.lease_read(QUEUE_NAME, visibility_timeout_seconds=120)
    assert len(abandoned) == 1

    assert _worker(db, ScriptedExecutor()).drain().processed_count == 0

    clock.advance(121)
    summary = _worker(db, ScriptedExecutor({"a/1": [scored(40)]})).drain()

    assert summary.processed_count == 1
    assert _jobs_by_repository(db, batch_id)["a/1"][0].status is JobStatus.COMPLETED


def test_failing_delete_call_stops_the_loop(
    db: Database,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _create_batch(db, "a/1", "a/2")
    executor = ScriptedExecutor({"a/1": [scored(20)], "a/2": [scored(30)]})
    worker = _worker(db, executor)

    def _broken_delete(queue_name: str, msg_id: int) -> bool:
        raise OperationalError("DELETE", {}, Exception("disk I/O error"))

    monkeypatch.setattr(worker.queue, "delete", _broken_delete)

    summary = worker.drain()

    assert summary.stop_reason == "unresolved_message"
    assert summary.processed_count == 1
    assert summary.processed[0].resolved is False
    assert summary.has_errors is True
    assert "disk I/O error" in (summary.last_error or "")
    assert len(executor.requests) == 1


def test_message_already_gone_counts_as_resolved(
    db: Database,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _create_batch(db, "a/1", "a/2")
    executor = ScriptedExecutor({"a/1": [scored(20)], "a/2": [scored(30)]})
    worker = _worker(db, executor)
    monkeypatch.setattr(worker.queue, "delete", lambda queue_name, msg_id: False)

    summary = worker.drain()

    assert summary.stop_reason == "queue_empty"
    assert summary.processed_count == 2
    assert all(processed.resolved for processed in summary.processed)
    assert summary.has_errors is False


def test_queue_read_failure_ends_the_cycle_with_an_error(
    db: Database,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _create_batch(db, "a/1")
    worker = _worker(db, ScriptedExecutor())

    def _broken_lease(queue_name: str, **kwargs) -> list:
        raise OperationalError("UPDATE", {}, Exception("database is locked"))

    monkeypatch.setattr(worker.queue, "lease_read", _broken_lease)

    summary = worker.drain()

    assert summary.stop_reason == "queue_error"
    assert summary.processed_count == 0
    assert summary.has_errors is True
    assert summary.last_error is not None
    assert summary.last_error.startswith("Queue read failed")
    assert "database is locked" in summary.last_error
    assert len(MessageQueue(db).list_messages(QUEUE_NAME)) == 1


def test_batch_deleted_during_evaluation_does_not_stall_other_batches(db: Database) -> None:
    doomed_id = _create_batch(db, "d/1", name="Doomed")
    kept_id = _create_batch(db, "k/1", name="Kept")

    def _delete_batch_midway(request: EvaluationRequest) -> EvaluationOutcome:
        assert _service(db).delete_batch(owner_id="alice", batch_id=doomed_id) == 0
        return scored(70)

    executor = ScriptedExecutor({"d/1": [_delete_batch_midway], "k/1": [scored(55)]})

    summary = _worker(db, executor).drain()

    assert summary.stop_reason == "queue_empty"
    assert summary.processed_count == 2
    assert all(processed.resolved for processed in summary.processed)
    assert [request.repository for request in executor.requests] == ["d/1", "k/1"]
    assert _jobs_by_repository(db, kept_id)["k/1"][0].status is JobStatus.COMPLETED
    assert MessageQueue(db).list_messages(QUEUE_NAME) == []
    archived = MessageQueue(db).list_archived(QUEUE_NAME)
    assert [message.payload["repository"] for message in archived] == ["d/1"]


def test_storage_error_leaves_message_for_redelivery(
    db: Database,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _create_batch(db, "a/1")
    worker = _worker(db, ScriptedExecutor())

    def _broken(job_id: str) -> None:
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(worker.jobs, "get", _broken)

    summary = worker.drain()

    assert summary.stop_reason == "unresolved_message"
    assert summary.processed[0].resolved is False
    assert len(MessageQueue(db).list_messages(QUEUE_NAME)) == 1


def test_max_messages_limits_one_cycle(db: Database) -> None:
    _create_batch(db, "a/1", "a/2")
    executor = ScriptedExecutor({"a/1": [scored(20)], "a/2": [scored(30)]})

    summary = _worker(db, executor).drain(max_messages=1)

    assert summary.stop_reason == "max_messages"
    assert summary.processed_count == 1
    assert len(MessageQueue(db).list_messages(QUEUE_NAME)) == 1


def test_run_loop_keeps_polling_after_a_failed_cycle(
    db: Database,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    batch_id = _create_batch(db, "a/1")
    worker = _worker(db, ScriptedExecutor({"a/1": [scored(45)]}))
    real_lease_read = worker.queue.lease_read
    calls: list[int] = []

    def _flaky_lease(queue_name: str, **kwargs) -> list:
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("UPDATE", {}, Exception("database is locked"))
        return real_lease_read(queue_name, **kwargs)

    monkeypatch.setattr(worker.queue, "lease_read", _flaky_lease)

    summary = worker.run_loop(interval_seconds=0.01, max_cycles=2)

    assert summary.cycles == 2
    assert summary.stop_reason == "max_cycles"
    assert summary.processed_count == 1
    assert summary.has_errors is True
    assert _jobs_by_repository(db, batch_id)["a/1"][0].status is JobStatus.COMPLETED


def test_run_loop_returns_immediately_once_stopped(db: Database) -> None:
    worker = _worker(db, ScriptedExecutor())
    worker.request_stop()

    summary = worker.run_loop(interval_seconds=60)

    assert summary.cycles == 0
    assert summary.stop_reason == "stop_requested"


def test_run_loop_requires_positive_interval(db: Database) -> None:
    with pytest.raises(ValueError, match="interval_seconds must be > 0"):
        _worker(db, ScriptedExecutor()).run_loop(interval_seconds=0)


def test_stop_request_aborts_before_leasing(db: Database) -> None:
    _create_batch(db, "a/1")
    worker = _worker(db, ScriptedExecutor())
    worker.request_stop()

    summary = worker.drain()

    assert summary.stop_reason == "stop_requested"
    assert summary.processed_count == 0


def test_stop_during_evaluation_is_visible_to_executor(db: Database) -> None:
    _create_batch(db, "a/1", "a/2")
    worker: DispatchWorker

    def _interrupted(request: EvaluationRequest) -> EvaluationOutcome:
        worker.request_stop()
        assert request.abort_requested is not None
        assert request.abort_requested() is True
        return timed_out()

    executor = ScriptedExecutor({"a/1": [_interrupted]})
    worker = _worker(db, executor)

    summary = worker.drain()

    assert summary.stop_reason == "stop_requested"
    assert summary.processed_count == 1
    assert len(MessageQueue(db).list_messages(QUEUE_NAME)) == 1


def test_process_one_can_create_missing_job(db: Database) -> None:
    SecretStore(db).put_secret("alice", ANTHROPIC_SECRET, "sk-ant-test")
    worker = _worker(db, ScriptedExecutor({"solo/1": [scored(33)]}))
    payload = JobPayload(
        job_id="direct",
        repository="solo/1",
        owner_id="alice",
        rubric=OVERALL_RUBRIC,
    )

    outcome = worker.process_one(payload, create_missing=True)

    assert outcome.success is True
    assert outcome.total_score == 33
    assert worker.jobs.get("direct").status is JobStatus.COMPLETED  # type: ignore[union-attr]


def test_deleted_batch_turns_result_save_into_persist_failure(db: Database) -> None:
    batch_id = _create_batch(db, "a/1")
    job = _jobs_by_repository(db, batch_id)["a/1"][0]

    def _delete_batch_midway(request: EvaluationRequest) -> EvaluationOutcome:
        _service(db).delete_batch(owner_id="alice", batch_id=batch_id)
        return scored(70)

    worker = _worker(db, ScriptedExecutor({"a/1": [_delete_batch_midway]}))

    outcome = worker.process_one(job.payload)

    assert outcome.success is False
    assert outcome.failure_class is FailureClass.PERSIST_FAILED
    assert worker.jobs.get(job.job_id) is None
