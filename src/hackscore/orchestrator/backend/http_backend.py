"""HTTP executor for analysis engines deployed as a service."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from hackscore.orchestrator.backend.base import EvaluationOutcome, EvaluationRequest, TaskError
from hackscore.orchestrator.models import TIMEOUT_ERROR_MESSAGE, FailureClass
from hackscore.orchestrator.validator import extract_json_from_text

logger = logging.getLogger(__name__)

_BODY_PREVIEW_CHARS = 500


class HttpTaskExecutor:
    """POST one evaluation request to ``<base_url>/evaluate``.

    The endpoint answers with the score document, optionally wrapped as
    ``{"result": {...}, "num_turns": ..., "total_cost_usd": ...}``.
    """

    def __init__(
        self,
        *,
        base_url: str,
        auth_token: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def evaluate(self, request: EvaluationRequest) -> EvaluationOutcome:
        started = time.monotonic()
        body = {
            "repository": request.repository,
            "prompt": request.prompt,
            "rubric": request.rubric.to_dict(),
            "max_turns": request.max_turns,
            "credentials": request.credentials,
        }
        try:
            response = self._client.post(
                "/evaluate",
                json=body,
                timeout=httpx.Timeout(request.timeout_seconds, connect=10.0),
            )
        except httpx.TimeoutException:
            logger.warning("Executor endpoint timed out for %s", request.repository)
            return _error(FailureClass.TIMEOUT, TIMEOUT_ERROR_MESSAGE, started=started)
        except httpx.HTTPError as exc:
            logger.warning("Executor endpoint error for %s: %s", request.repository, exc)
            return _error(
                FailureClass.EXECUTOR_TRANSIENT,
                f"Executor endpoint request failed: {exc}",
                started=started,
            )

        if not response.is_success:
            return _error(
                FailureClass.EXECUTOR_ERROR,
                f"Executor endpoint returned status {response.status_code}: "
                f"{response.text[:_BODY_PREVIEW_CHARS]}",
                started=started,
            )
        return _parse_response(response, started=started)


def _parse_response(response: httpx.Response, *, started: float) -> EvaluationOutcome:
    try:
        data: Any = response.json()
    except ValueError:
        data = extract_json_from_text(response.text)
    if not isinstance(data, dict):
        return _error(
            FailureClass.OUTPUT_INVALID,
            "Executor endpoint did not return a JSON object.",
            started=started,
        )

    num_turns = data.get("num_turns")
    total_cost_usd = data.get("total_cost_usd")
    payload = data.get("result", data)
    if isinstance(payload, str):
        payload = extract_json_from_text(payload)
    if not isinstance(payload, dict):
        return _error(
            FailureClass.OUTPUT_INVALID,
            "Failed to extract evaluation JSON from executor response.",
            started=started,
        )
    return EvaluationOutcome(
        payload=payload,
        num_turns=num_turns if isinstance(num_turns, int) else None,
        total_cost_usd=float(total_cost_usd) if isinstance(total_cost_usd, (int, float)) else None,
        duration_ms=int((time.monotonic() - started) * 1000),
    )


def _error(failure_class: FailureClass, message: str, *, started: float) -> EvaluationOutcome:
    return EvaluationOutcome(
        error=TaskError(failure_class=failure_class, message=message),
        duration_ms=int((time.monotonic() - started) * 1000),
    )
