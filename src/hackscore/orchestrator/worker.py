"""Dispatch worker that drains the evaluation queue."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

from hackscore.orchestrator.aggregator import BatchAggregator
from hackscore.orchestrator.backend.base import EvaluationRequest, TaskExecutor
from hackscore.orchestrator.errors import BatchNotFoundError, JobNotFoundError
from hackscore.orchestrator.models import (
    ANTHROPIC_SECRET,
    GITHUB_SECRET,
    DrainSummary,
    FailureClass,
    JobPayload,
    JobStatus,
    PayloadError,
    ProcessedMessage,
    ProcessOutcome,
    QueueMessageView,
)
from hackscore.orchestrator.prompts import build_analysis_prompt
from hackscore.orchestrator.queue import MessageQueue
from hackscore.orchestrator.repository import JobRepository
from hackscore.orchestrator.results import ResultRepository
from hackscore.orchestrator.secrets import SecretStore
from hackscore.orchestrator.validator import validate_document
from hackscore.storage.database import Database

logger = logging.getLogger(__name__)

MISSING_API_KEY_MESSAGE = (
    "Anthropic API key not found. Save your key with `hackscore secrets set` before analysing."
)


class DispatchWorker:
    """Lease messages one at a time, evaluate, persist and resolve them.

    ``process_one`` is the unit of work shared by the queue loop and the
    administrative single-job path; it never touches the queue.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        db: Database,
        executor: TaskExecutor,
        queue_name: str,
        visibility_timeout_seconds: float,
        analysis_timeout_seconds: float,
        max_turns: int = 50,
        inter_message_delay_seconds: float = 2.0,
        worker_id: str = "worker",
        queue: MessageQueue | None = None,
        jobs: JobRepository | None = None,
        results: ResultRepository | None = None,
        aggregator: BatchAggregator | None = None,
        secrets: SecretStore | None = None,
    ) -> None:
        if visibility_timeout_seconds <= analysis_timeout_seconds:
            raise ValueError("Visibility timeout must exceed the analysis timeout.")
        self.executor = executor
        self.queue_name = queue_name
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.analysis_timeout_seconds = analysis_timeout_seconds
        self.max_turns = max_turns
        self.inter_message_delay_seconds = inter_message_delay_seconds
        self.worker_id = worker_id
        self.queue = queue or MessageQueue(db)
        self.jobs = jobs or JobRepository(db)
        self.results = results or ResultRepository(db)
        self.aggregator = aggregator or BatchAggregator(db)
        self.secrets = secrets or SecretStore(db)
        self._stop_requested = False
        self._abort = threading.Event()

    def drain(self, *, max_messages: int | None = None) -> DrainSummary:
        """Process messages until the queue is empty or the loop must stop."""

        summary = DrainSummary()
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    summary.stop_reason = "stop_requested"
                    break
                if max_messages is not None and summary.processed_count >= max_messages:
                    summary.stop_reason = "max_messages"
                    break

                try:
                    messages = self.queue.lease_read(
                        self.queue_name,
                        visibility_timeout_seconds=self.visibility_timeout_seconds,
                        max_count=1,
                    )
                except SQLAlchemyError as error:
                    logger.warning("Queue read failed: %s", error)
                    _record_error(summary, f"Queue read failed: {error}")
                    summary.stop_reason = "queue_error"
                    break
                if not messages:
                    summary.stop_reason = "queue_empty"
                    break

                message = messages[0]
                summary.processed_count += 1
                logger.info(
                    "Worker %s leased message %s (read_count=%s)",
                    self.worker_id,
                    message.msg_id,
                    message.read_count,
                )
                if not self._handle_message(message, summary):
                    summary.stop_reason = "unresolved_message"
                    break

                if self.inter_message_delay_seconds > 0:
                    self._sleep_with_stop(self.inter_message_delay_seconds)

        logger.info(
            "Drain finished: processed=%s has_errors=%s reason=%s",
            summary.processed_count,
            summary.has_errors,
            summary.stop_reason,
        )
        return summary

    def run_loop(self, *, interval_seconds: float, max_cycles: int | None = None) -> DrainSummary:
        """Drain the queue every ``interval_seconds`` until stopped.

        A cycle that ends with an error does not end the loop; the next cycle
        picks up whatever is visible by then.
        """

        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0.")
        aggregate = DrainSummary(cycles=0)
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    aggregate.stop_reason = "stop_requested"
                    break
                summary = self.drain()
                aggregate.cycles += 1
                aggregate.processed_count += summary.processed_count
                aggregate.processed.extend(summary.processed)
                if summary.has_errors:
                    _record_error(aggregate, summary.last_error or "Drain cycle failed")
                if summary.stop_reason != "queue_empty":
                    logger.info("Cycle %s ended early: %s", aggregate.cycles, summary.stop_reason)
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    aggregate.stop_reason = "max_cycles"
                    break
                self._sleep_with_stop(interval_seconds)

        logger.info(
            "Polling stopped after %s cycles: processed=%s reason=%s",
            aggregate.cycles,
            aggregate.processed_count,
            aggregate.stop_reason,
        )
        return aggregate

    def _handle_message(self, message: QueueMessageView, summary: DrainSummary) -> bool:
        raw_job_id = message.payload.get("job_id") if isinstance(message.payload, dict) else None
        job_id = raw_job_id if isinstance(raw_job_id, str) else None
        try:
            payload = JobPayload.from_message(message.payload)
        except PayloadError as error:
            logger.warning("Archiving message %s with invalid payload: %s", message.msg_id, error)
            success = False
            _record_error(summary, f"Invalid message payload: {error}")
        else:
            try:
                outcome = self.process_one(payload)
            except SQLAlchemyError as error:
                logger.warning("Storage error while processing job %s: %s", payload.job_id, error)
                _record_error(summary, f"Storage error for job {payload.job_id}: {error}")
                summary.processed.append(
                    ProcessedMessage(
                        message_id=message.msg_id,
                        job_id=job_id,
                        resolved=False,
                        success=False,
                    ),
                )
                return False
            success = outcome.success
            if not success:
                _record_error(summary, outcome.error or f"Job {payload.job_id} failed")

        resolved = self._resolve(message, success=success, summary=summary)
        summary.processed.append(
            ProcessedMessage(
                message_id=message.msg_id,
                job_id=job_id,
                resolved=resolved,
                success=success,
            ),
        )
        return resolved

    def _resolve(self, message: QueueMessageView, *, success: bool, summary: DrainSummary) -> bool:
        """Delete or archive the message; False only when the store call itself fails."""

        action = "delete" if success else "archive"
        try:
            if success:
                resolved = self.queue.delete(self.queue_name, message.msg_id)
            else:
                resolved = self.queue.archive(self.queue_name, message.msg_id)
        except SQLAlchemyError as error:
            logger.warning("Failed to %s message %s: %s", action, message.msg_id, error)
            _record_error(summary, f"Failed to {action} message {message.msg_id}: {error}")
            return False
        if not resolved:
            logger.warning("Message %s was already removed before %s", message.msg_id, action)
        return True

    def process_one(self, payload: JobPayload, *, create_missing: bool = False) -> ProcessOutcome:
        """Run one job to a terminal state without touching the queue.

        A redelivered job that already finished is reported as it stands and
        is not evaluated again.
        """

        job = self.jobs.get(payload.job_id)
        if job is None:
            if not create_missing:
                logger.warning("Job %s not found; message is orphaned", payload.job_id)
                return ProcessOutcome(
                    job_id=payload.job_id,
                    repository=payload.repository,
                    success=False,
                    status=None,
                    error=f"Job not found: {payload.job_id}",
                    failure_class=FailureClass.JOB_NOT_FOUND,
                )
            try:
                self.jobs.ensure_exists(payload)
            except BatchNotFoundError as error:
                return ProcessOutcome(
                    job_id=payload.job_id,
                    repository=payload.repository,
                    success=False,
                    status=None,
                    error=str(error),
                    failure_class=FailureClass.JOB_NOT_FOUND,
                )
        elif job.status is JobStatus.COMPLETED:
            logger.info("Job %s already completed; skipping evaluation", payload.job_id)
            return ProcessOutcome(
                job_id=job.job_id,
                repository=job.repository,
                success=True,
                status=JobStatus.COMPLETED,
                total_score=(job.result or {}).get("total_score"),
            )
        elif job.status is JobStatus.FAILED:
            return ProcessOutcome(
                job_id=job.job_id,
                repository=job.repository,
                success=False,
                status=JobStatus.FAILED,
                error=job.error,
                failure_class=job.failure_class,
            )

        if not self.jobs.mark_processing(payload.job_id):
            current = self.jobs.get(payload.job_id)
            return ProcessOutcome(
                job_id=payload.job_id,
                repository=payload.repository,
                success=current is not None and current.status is JobStatus.COMPLETED,
                status=current.status if current is not None else None,
                error=(
                    current.error if current is not None else f"Job not found: {payload.job_id}"
                ),
                failure_class=(
                    current.failure_class if current is not None else FailureClass.JOB_NOT_FOUND
                ),
            )
        self._recompute(payload)

        try:
            return self._evaluate_and_persist(payload)
        except SQLAlchemyError:
            raise
        except Exception as error:
            logger.exception("Unexpected error while processing job %s", payload.job_id)
            return self._fail_job(
                payload,
                failure_class=FailureClass.UNEXPECTED,
                message=f"Unexpected error: {error}",
            )

    def _evaluate_and_persist(self, payload: JobPayload) -> ProcessOutcome:
        anthropic_key = self.secrets.get_secret(payload.owner_id, ANTHROPIC_SECRET)
        if anthropic_key is None:
            return self._fail_job(
                payload,
                failure_class=FailureClass.MISSING_CREDENTIAL,
                message=MISSING_API_KEY_MESSAGE,
            )
        credentials = {ANTHROPIC_SECRET: anthropic_key}
        github_token = self.secrets.get_secret(payload.owner_id, GITHUB_SECRET)
        if github_token is not None:
            credentials[GITHUB_SECRET] = github_token

        logger.info("Evaluating %s (job %s)", payload.repository, payload.job_id)
        evaluation = self.executor.evaluate(
            EvaluationRequest(
                repository=payload.repository,
                rubric=payload.rubric,
                prompt=build_analysis_prompt(repository=payload.repository, rubric=payload.rubric),
                credentials=credentials,
                max_turns=self.max_turns,
                timeout_seconds=self.analysis_timeout_seconds,
                abort_requested=self._abort.is_set,
            ),
        )
        if evaluation.error is not None:
            return self._fail_job(
                payload,
                failure_class=evaluation.error.failure_class,
                message=evaluation.error.message,
            )

        validation = validate_document(evaluation.payload, rubric=payload.rubric)
        if not validation.is_valid or validation.document is None:
            return self._fail_job(
                payload,
                failure_class=FailureClass.OUTPUT_INVALID,
                message=f"Invalid evaluation result: {validation.error_summary}",
            )
        document = validation.document

        try:
            self.results.save(
                job_id=payload.job_id,
                owner_id=payload.owner_id,
                repository=payload.repository,
                document=document,
                metadata=evaluation.metadata,
            )
        except JobNotFoundError as error:
            logger.warning("Result for %s dropped: %s", payload.repository, error)
            return ProcessOutcome(
                job_id=payload.job_id,
                repository=payload.repository,
                success=False,
                status=None,
                error=f"Failed to save result: {error}",
                failure_class=FailureClass.PERSIST_FAILED,
            )

        completed = self.jobs.complete(
            payload.job_id,
            result={
                "repository": payload.repository,
                "success": True,
                "error": None,
                "total_score": document.total_score,
            },
        )
        self._recompute(payload)
        if not completed:
            logger.warning("Job %s left processing before completion", payload.job_id)
        logger.info(
            "Job %s completed: %s scored %s",
            payload.job_id,
            payload.repository,
            document.total_score,
        )
        return ProcessOutcome(
            job_id=payload.job_id,
            repository=payload.repository,
            success=True,
            status=JobStatus.COMPLETED,
            total_score=document.total_score,
        )

    def _fail_job(
        self,
        payload: JobPayload,
        *,
        failure_class: FailureClass,
        message: str,
    ) -> ProcessOutcome:
        updated = self.jobs.fail(
            payload.job_id,
            error=message,
            failure_class=failure_class,
            result={"repository": payload.repository, "success": False, "error": message},
        )
        self._recompute(payload)
        if updated:
            logger.warning("Job %s failed (%s): %s", payload.job_id, failure_class.value, message)
        else:
            logger.warning("Job %s could not be marked failed: %s", payload.job_id, message)
        return ProcessOutcome(
            job_id=payload.job_id,
            repository=payload.repository,
            success=False,
            status=JobStatus.FAILED if updated else None,
            error=message,
            failure_class=failure_class,
        )

    def _recompute(self, payload: JobPayload) -> None:
        if payload.parent_batch_id is not None:
            self.aggregator.recompute(payload.parent_batch_id)

    def request_stop(self) -> None:
        """Stop leasing new messages and abort the running evaluation."""

        self._stop_requested = True
        self._abort.set()

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.warning("Received %s; aborting the current job", signal.Signals(signum).name)
            self.request_stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _record_error(summary: DrainSummary, message: str) -> None:
    summary.has_errors = True
    summary.last_error = message
