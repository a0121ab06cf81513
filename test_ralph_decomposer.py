import json

import pytest

from conftest import ScriptedModel, text
from ralph_decomposer import decompose_prompt, parse_decomposition, safe_json_parse_object, sort_tasks
from ralph_errors import DecompositionError
from ralph_models import (
    DecomposedTask, FileExistsCheck, GlobExistsCheck, TaskRunCheck, UnknownCheck, DEFAULT_TASK_TIMEOUT_MS,
)


def test_parse_tolerates_prose_and_fences():
    raw = 'Sure! Here is the plan:\n```json\n{"tasks": [], "clarifications": ["Which DB?"]}\n```\nGood luck.'
    assert safe_json_parse_object(raw) == {"tasks": [], "clarifications": ["Which DB?"]}


@pytest.mark.parametrize("raw", ["", "no json here", "{ broken: }", "[1, 2]"])
def test_unparseable_or_non_object_output_raises(raw):
    with pytest.raises(DecompositionError):
        parse_decomposition(raw)


def test_tasks_and_checks_are_normalized():
    raw = json.dumps({
        "tasks": [
            {
                "instruction": "Create app",
                "completionCriteria": "app exists",
                "criteriaChecks": [
                    {"type": "fileExists", "path": "app.py"},
                    {"type": "vscodeTask", "label": "build"},
                    {"type": "globExists", "glob": "src/**/*.py", "minCount": 2.7},
                    {"type": "lint"},
                    "not a check",
                ],
                "order": 2.5,
            },
            "not a task",
        ],
    })
    result = parse_decomposition(raw)

    assert len(result.tasks) == 1
    task = result.tasks[0]
    assert task.id == "T1"
    assert task.order == 2
    assert task.criteria_checks == [
        FileExistsCheck(path="app.py"),
        TaskRunCheck(label="build", timeout_ms=DEFAULT_TASK_TIMEOUT_MS),
        GlobExistsCheck(glob="src/**/*.py", min_count=2),
        UnknownCheck(raw_type="lint"),
    ]
    assert result.clarifications == []
    assert not result.is_ambiguous


def test_clarifications_accept_objects_and_strings():
    raw = json.dumps({
        "tasks": [{"id": "A", "instruction": "x", "completionCriteria": "y"}],
        "clarifications": [{"question": "Which port?", "why": "not stated"}, "Which DB?"],
    })
    result = parse_decomposition(raw)
    assert [c.question for c in result.clarifications] == ["Which port?", "Which DB?"]
    assert result.clarifications[0].why == "not stated"
    assert result.is_ambiguous


def test_empty_task_list_is_ambiguous():
    assert parse_decomposition('{"tasks": []}').is_ambiguous


def test_sort_is_stable_by_order():
    tasks = [
        DecomposedTask(id="c", instruction="", completion_criteria="", order=2),
        DecomposedTask(id="a", instruction="", completion_criteria="", order=1),
        DecomposedTask(id="d", instruction="", completion_criteria="", order=2),
        DecomposedTask(id="b", instruction="", completion_criteria="", order=1),
    ]
    assert [t.id for t in sort_tasks(tasks)] == ["a", "b", "c", "d"]


def test_decompose_prompt_sends_framing_then_instruction():
    reply = json.dumps({"tasks": [{"id": "T1", "instruction": "i", "completionCriteria": "c"}]})
    model = ScriptedModel([text(reply[:10]) + text(reply[10:])])

    result = decompose_prompt(model, "Build the thing")

    assert [t.id for t in result.tasks] == ["T1"]
    messages = model.calls[0]["messages"]
    assert len(messages) == 2
    assert "decomposer" in messages[0]["content"]
    assert messages[1]["content"] == "Build the thing"
    assert model.calls[0]["tools"] is None
