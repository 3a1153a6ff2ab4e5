"""Prompt sent to the analysis engine for one repository."""

from __future__ import annotations

import json

from hackscore.orchestrator.models import Rubric

_ANALYSIS_PROMPT = """\
You are a hackathon judge reviewing the GitHub repository {repository}.

Clone or browse the repository with the tools available to you, read its README,
source code, tests and configuration, then score it against the rubric below.
Scores are numbers from 0 to the criterion maximum. The total score is the sum of
the criterion scores and lies between 0 and {max_total}.

Rubric:
{criteria}

Rules:
- Judge only what is in the repository. Do not invent features.
- Give concrete positives and negatives for every criterion.
- Keep every criterion id exactly as listed.

Finish with one JSON object and nothing after it, in this exact shape:
```json
{example}
```
"""


def build_analysis_prompt(*, repository: str, rubric: Rubric) -> str:
    """Render the judging prompt for ``repository``."""

    criteria = "\n".join(
        f"- {criterion.id} ({criterion.label}, 0-{_fmt(criterion.max_score)}): "
        f"{criterion.guidance or 'Use your judgement.'}"
        for criterion in rubric.criteria
    )
    example = {
        "totalScore": 0,
        "items": [
            {
                "id": criterion.id,
                "name": criterion.label,
                "score": 0,
                "positives": "<what is done well>",
                "negatives": "<what is missing or weak>",
            }
            for criterion in rubric.criteria
        ],
        "overallComment": "<two or three sentence summary>",
    }
    return _ANALYSIS_PROMPT.format(
        repository=repository,
        max_total=_fmt(rubric.max_total),
        criteria=criteria,
        example=json.dumps(example, indent=2, ensure_ascii=False),
    )


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)
