"""
Task Decomposer — turns the raw instruction into an ordered list of
verifiable sub-tasks plus any clarifying questions.

One model call, no retries. Ambiguity is reported back to the controller,
never guessed away here.
"""

import json
import logging
from typing import Any, List

from ralph_agents import request_text
from ralph_errors import DecompositionError
from ralph_events import CancellationToken, NONE_TOKEN
from ralph_models import Clarification, DecomposedTask, DecompositionResult

logger = logging.getLogger(__name__)


DECOMPOSER_SYSTEM_PROMPT = "\n".join([
    "[system]",
    "You are a development-instruction decomposer.",
    "Split the user's instruction into single concrete commands, each with verifiable acceptance criteria.",
    "If the instruction or its acceptance criteria are unclear, you MUST fill the clarifications list.",
    "Give machine-checkable criteriaChecks wherever possible; tasks without them cannot converge.",
    "Output JSON only, no extra text.",
    "JSON Schema:",
    "{",
    '  "tasks": [ { "id": "T1", "instruction": "...", "completionCriteria": "...", "criteriaChecks": [ ... ], "order": 1 } ],',
    '  "clarifications": [ { "question": "...", "why": "..." } ]',
    "}",
    "",
    "Supported criteriaChecks:",
    '- {"type":"diagnostics","maxErrors":0}',
    '- {"type":"fileExists","path":"src/app.py"}',
    '- {"type":"fileContains","path":"src/app.py","text":"def foo"}',
    '- {"type":"globExists","glob":"src/**/*.py","minCount":1}',
    '- {"type":"taskRun","label":"test","timeoutMs":600000}',
    '- {"type":"userConfirm","question":"Does the UI render correctly?"}',
])


def safe_json_parse_object(text: str) -> Any:
    """
    Parse JSON, tolerating accidental wrapping (prose, code fences).

    Tries the whole text first, then the span from the first '{' to the
    last '}'. Raises DecompositionError if neither parses.
    """
    trimmed = (text or "").strip()
    try:
        return json.loads(trimmed)
    except json.JSONDecodeError:
        pass

    first_brace = trimmed.find("{")
    last_brace = trimmed.rfind("}")
    if first_brace >= 0 and last_brace > first_brace:
        try:
            return json.loads(trimmed[first_brace:last_brace + 1])
        except json.JSONDecodeError as e:
            raise DecompositionError(f"Model returned unparseable JSON: {e}") from e
    raise DecompositionError("Model returned unparseable JSON (no JSON object found)")


def parse_decomposition(text: str) -> DecompositionResult:
    data = safe_json_parse_object(text)
    if not isinstance(data, dict):
        raise DecompositionError(f"Expected a JSON object, got {type(data).__name__}")

    raw_tasks = data.get("tasks")
    raw_clarifications = data.get("clarifications")
    raw_tasks = raw_tasks if isinstance(raw_tasks, list) else []
    raw_clarifications = raw_clarifications if isinstance(raw_clarifications, list) else []

    tasks = [
        DecomposedTask.from_dict(t, index=i)
        for i, t in enumerate(raw_tasks) if isinstance(t, dict)
    ]
    clarifications = []
    for c in raw_clarifications:
        if isinstance(c, dict):
            clarifications.append(Clarification(question=str(c.get("question", "")), why=str(c.get("why", ""))))
        elif isinstance(c, str):
            clarifications.append(Clarification(question=c))
    return DecompositionResult(tasks=tasks, clarifications=clarifications)


def sort_tasks(tasks: List[DecomposedTask]) -> List[DecomposedTask]:
    """Ascending by order; ties keep their original position."""
    return sorted(tasks, key=lambda t: t.order)


def decompose_prompt(model, prompt: str, token: CancellationToken = NONE_TOKEN) -> DecompositionResult:
    messages = [
        {"role": "user", "content": DECOMPOSER_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]
    logger.info("Decomposing instruction...")
    text = request_text(model, messages, token)
    result = parse_decomposition(text)
    logger.info(f"  Decomposed into {len(result.tasks)} task(s), {len(result.clarifications)} clarification(s)")
    logger.debug(f"  Tasks: {json.dumps([t.to_dict() for t in result.tasks], ensure_ascii=False)}")
    return result
