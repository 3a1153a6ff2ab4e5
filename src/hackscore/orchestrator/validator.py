"""Extraction and validation of evaluation documents produced by the engine."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any

from hackscore.orchestrator.models import EvaluationDocument, EvaluationItem, Rubric

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_SCORE_OBJECT = re.compile(r"\{[^{}]*\"(?:totalScore|total_score)\".*\}", re.DOTALL)

_KEY_ALIASES = {
    "totalScore": "total_score",
    "overallComment": "overall_comment",
}


@dataclass(slots=True)
class ValidationResult:
    """Result of document validation."""

    is_valid: bool
    error_summary: str | None
    document: EvaluationDocument | None


def extract_json_from_text(text: str) -> dict[str, Any] | None:
    """Find the score document inside free-form engine output.

    Tries, in order: the whole text, a fenced ```json block, the span starting
    at the first object that mentions a total score, then first-to-last brace.
    """

    text = text.strip()
    if not text:
        return None

    direct = _try_load_dict(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    scored = _SCORE_OBJECT.search(text)
    if scored is not None:
        payload = _try_load_dict(scored.group(0))
        if payload is not None:
            return payload

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(text[start : end + 1])


def normalize_document(payload: dict[str, Any]) -> dict[str, Any]:
    """Map camelCase engine keys and item ``name`` onto canonical names."""

    normalized = {_KEY_ALIASES.get(key, key): value for key, value in payload.items()}
    items = normalized.get("items")
    if isinstance(items, list):
        normalized["items"] = [
            _normalize_item(item) if isinstance(item, dict) else item for item in items
        ]
    return normalized


def validate_document(payload: Any, *, rubric: Rubric) -> ValidationResult:  # noqa: C901, PLR0911
    """Validate a raw document against the rubric and build the typed form."""

    if not isinstance(payload, dict):
        return _invalid("Evaluation result must be a JSON object.")
    data = normalize_document(payload)

    total_score = data.get("total_score")
    if not _is_number(total_score):
        return _invalid("Evaluation result `total_score` must be a number.")
    if not 0 <= total_score <= rubric.max_total:
        return _invalid(
            f"Evaluation result `total_score` must be between 0 and {_fmt(rubric.max_total)}.",
        )

    raw_items = data.get("items")
    expected = len(rubric.criteria)
    if not isinstance(raw_items, list) or len(raw_items) != expected:
        return _invalid(f"Evaluation result `items` must contain exactly {expected} entries.")

    items: list[EvaluationItem] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            return _invalid(f"Evaluation item #{index} must be an object.")
        item_id = raw.get("id")
        if isinstance(item_id, int) and not isinstance(item_id, bool):
            item_id = str(item_id)
        if not isinstance(item_id, str) or not item_id:
            return _invalid(f"Evaluation item #{index} must have an `id`.")
        criterion = rubric.get(item_id)
        if criterion is None:
            return _invalid(f"Evaluation item `{item_id}` is not a rubric criterion.")
        if item_id in seen:
            return _invalid(f"Evaluation item `{item_id}` appears more than once.")
        seen.add(item_id)

        score = raw.get("score")
        if not _is_number(score) or not 0 <= score <= criterion.max_score:
            return _invalid(
                f"Evaluation item `{item_id}` score must be a number between 0 and "
                f"{_fmt(criterion.max_score)}.",
            )
        for key in ("label", "positives", "negatives"):
            if not isinstance(raw.get(key), str):
                return _invalid(f"Evaluation item `{item_id}` field `{key}` must be a string.")
        items.append(
            EvaluationItem(
                id=item_id,
                label=raw["label"],
                score=score,
                positives=raw["positives"],
                negatives=raw["negatives"],
            ),
        )

    overall_comment = data.get("overall_comment")
    if not isinstance(overall_comment, str):
        return _invalid("Evaluation result `overall_comment` must be a string.")

    return ValidationResult(
        is_valid=True,
        error_summary=None,
        document=EvaluationDocument(
            total_score=total_score,
            items=items,
            overall_comment=overall_comment,
        ),
    )


def _normalize_item(item: dict[str, Any]) -> dict[str, Any]:
    normalized = dict(item)
    if "label" not in normalized and "name" in normalized:
        normalized["label"] = normalized.pop("name")
    return normalized


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _invalid(message: str) -> ValidationResult:
    return ValidationResult(is_valid=False, error_summary=message, document=None)


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
