"""Local deterministic engine for CLI executor demos and integration tests."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

from hackscore.orchestrator.models import DEFAULT_RUBRIC, Rubric


def build_document(*, repository: str, rubric: Rubric, ratio: float) -> dict[str, object]:
    """Score every criterion at ``ratio`` of its maximum."""

    items = [
        {
            "id": criterion.id,
            "name": criterion.label,
            "score": round(criterion.max_score * ratio, 1),
            "positives": f"{repository}: solid {criterion.label.lower()}",
            "negatives": f"{repository}: {criterion.label.lower()} could go further",
        }
        for criterion in rubric.criteria
    ]
    return {
        "totalScore": round(sum(item["score"] for item in items), 1),  # type: ignore[misc]
        "items": items,
        "overallComment": f"Sample evaluation of {repository}.",
    }


def main(argv: list[str] | None = None) -> int:
    """Print a Claude-style JSON result envelope."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--repository", required=True)
    parser.add_argument("--rubric-file")
    parser.add_argument("--prompt-file")
    parser.add_argument("--ratio", type=float, default=0.8)
    parser.add_argument("--sleep-seconds", type=float, default=0.0)
    args = parser.parse_args(argv)

    rubric = DEFAULT_RUBRIC
    if args.rubric_file:
        rubric = Rubric.from_dict(json.loads(Path(args.rubric_file).read_text("utf-8")))
    if args.prompt_file and not Path(args.prompt_file).read_text("utf-8").strip():
        sys.stderr.write("Prompt file is empty.\n")
        return 2
    if args.sleep_seconds > 0:
        time.sleep(args.sleep_seconds)

    document = build_document(repository=args.repository, rubric=rubric, ratio=args.ratio)
    envelope = {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "num_turns": len(rubric.criteria),
        "total_cost_usd": 0.0,
        "result": f"Evaluation complete.\n```json\n{json.dumps(document, indent=2)}\n```",
    }
    sys.stdout.write(json.dumps(envelope))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
