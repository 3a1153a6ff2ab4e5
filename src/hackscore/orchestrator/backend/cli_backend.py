"""Subprocess-based executor for CLI analysis engines."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import tempfile
import time
from pathlib import Path
from typing import IO, Any

from hackscore.orchestrator.backend.base import (
    EvaluationOutcome,
    EvaluationRequest,
    TaskError,
    credential_env,
)
from hackscore.orchestrator.failure_classifier import TIMEOUT_EXIT_CODE, classify_exit
from hackscore.orchestrator.models import TIMEOUT_ERROR_MESSAGE, FailureClass
from hackscore.orchestrator.validator import extract_json_from_text

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TEMPLATE = (
    "claude -p --output-format json --max-turns {max_turns} "
    "--permission-mode bypassPermissions -- {prompt}"
)


class ExecutorError(RuntimeError):
    """Engine could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliTaskExecutor:
    """Run the engine command template once per repository."""

    def __init__(
        self,
        *,
        command_template: str = DEFAULT_COMMAND_TEMPLATE,
        graceful_shutdown_seconds: float = 0,
    ) -> None:
        self.command_template = command_template
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def evaluate(self, request: EvaluationRequest) -> EvaluationOutcome:
        started = time.monotonic()
        with tempfile.TemporaryDirectory(prefix="hackscore-") as tmp:
            workdir = Path(tmp)
            prompt_file = workdir / "prompt.txt"
            rubric_file = workdir / "rubric.json"
            stdout_path = workdir / "stdout.txt"
            stderr_path = workdir / "stderr.txt"
            prompt_file.write_text(request.prompt, "utf-8")
            rubric_file.write_text(
                json.dumps(request.rubric.to_dict(), ensure_ascii=False),
                "utf-8",
            )

            env = os.environ.copy()
            env.update(credential_env(request.credentials))
            try:
                run_args = _build_run_args(
                    command_template=self.command_template,
                    values={
                        "prompt": request.prompt,
                        "prompt_file": str(prompt_file),
                        "rubric_file": str(rubric_file),
                        "max_turns": str(request.max_turns),
                        "repository": request.repository,
                    },
                )
                with (
                    stdout_path.open("w", encoding="utf-8") as stdout_handle,
                    stderr_path.open("w", encoding="utf-8") as stderr_handle,
                ):
                    exit_code, timed_out = _run_subprocess_with_shutdown(
                        run_args=run_args,
                        env=env,
                        cwd=workdir,
                        timeout_seconds=request.timeout_seconds,
                        stdout_handle=stdout_handle,
                        stderr_handle=stderr_handle,
                        shutdown_requested=request.abort_requested,
                        graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                    )
            except ExecutorError as error:
                return _error_outcome(
                    (
                        FailureClass.EXECUTOR_TRANSIENT
                        if error.transient
                        else FailureClass.EXECUTOR_ERROR
                    ),
                    str(error),
                    started=started,
                )
            except FileNotFoundError:
                return _error_outcome(
                    FailureClass.EXECUTOR_ERROR,
                    f"Engine command not found: {run_args[0]}",
                    started=started,
                )
            except OSError as error:
                return _error_outcome(
                    FailureClass.EXECUTOR_TRANSIENT,
                    f"Engine failed to start: {error}",
                    started=started,
                )

            stdout = stdout_path.read_text("utf-8", errors="replace")
            stderr = stderr_path.read_text("utf-8", errors="replace")

        duration_ms = _elapsed_ms(started)
        if timed_out:
            logger.warning("Engine timed out for %s after %sms", request.repository, duration_ms)
            return EvaluationOutcome(
                error=TaskError(
                    failure_class=FailureClass.TIMEOUT,
                    message=TIMEOUT_ERROR_MESSAGE,
                    exit_code=exit_code,
                ),
                duration_ms=duration_ms,
            )
        if exit_code != 0:
            failure = classify_exit(exit_code=exit_code, stdout=stdout, stderr=stderr)
            return EvaluationOutcome(
                error=TaskError(
                    failure_class=failure.failure_class,
                    message=failure.message,
                    exit_code=exit_code,
                ),
                duration_ms=duration_ms,
            )
        return _parse_engine_output(stdout, duration_ms=duration_ms)


def _parse_engine_output(stdout: str, *, duration_ms: int) -> EvaluationOutcome:
    """Unwrap a ``{"type": "result", ...}`` envelope and extract the score document."""

    text = stdout
    num_turns: int | None = None
    total_cost_usd: float | None = None
    envelope = _try_load_envelope(stdout)
    if envelope is not None:
        num_turns = _as_int(envelope.get("num_turns"))
        total_cost_usd = _as_float(envelope.get("total_cost_usd"))
        subtype = envelope.get("subtype", "success")
        if envelope.get("is_error") or subtype != "success":
            return EvaluationOutcome(
                error=TaskError(
                    failure_class=FailureClass.EXECUTOR_ERROR,
                    message=f"Engine finished with status {subtype}: {envelope.get('result', '')}",
                ),
                num_turns=num_turns,
                total_cost_usd=total_cost_usd,
                duration_ms=duration_ms,
            )
        result = envelope.get("result")
        text = result if isinstance(result, str) else ""

    payload = extract_json_from_text(text)
    if payload is None:
        return EvaluationOutcome(
            error=TaskError(
                failure_class=FailureClass.OUTPUT_INVALID,
                message="Failed to extract evaluation JSON from engine output.",
            ),
            num_turns=num_turns,
            total_cost_usd=total_cost_usd,
            duration_ms=duration_ms,
        )
    return EvaluationOutcome(
        payload=payload,
        num_turns=num_turns,
        total_cost_usd=total_cost_usd,
        duration_ms=duration_ms,
    )


def _try_load_envelope(stdout: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(stdout.strip())
    except json.JSONDecodeError:
        return None
    if isinstance(parsed, dict) and parsed.get("type") == "result":
        return parsed
    return None


def _build_run_args(*, command_template: str, values: dict[str, str]) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ExecutorError("Engine command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise ExecutorError(
            "Engine command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except (KeyError, IndexError) as error:
        raise ExecutorError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutorError("Engine command template rendered empty command.", transient=False)
    return argv


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: float,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested,
    graceful_shutdown_seconds: float,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0.0, graceful_shutdown_seconds)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return TIMEOUT_EXIT_CODE, True

        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _error_outcome(
    failure_class: FailureClass,
    message: str,
    *,
    started: float,
) -> EvaluationOutcome:
    return EvaluationOutcome(
        error=TaskError(failure_class=failure_class, message=message),
        duration_ms=_elapsed_ms(started),
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)
