"""
Shared fakes for the Ralph loop tests.

No network and no model: the chat model replays scripted rounds, the task
runner fires its notifications synchronously, diagnostics come from a dict.
"""

import json
from pathlib import Path
from typing import Dict, List

import pytest

from ralph_agents import TextPart, ToolCallPart
from ralph_config import Config, ModelConfig
from ralph_events import EventEmitter
from ralph_tasks import NamedTask, TaskEndEvent, TaskExecution, TaskProcessEndEvent
from ralph_workspace import (
    Diagnostic, FixedAnswerPrompt, LocalFileSearch, LocalFileSystem, Severity, Workspace,
)


class ScriptedModel:
    """
    Replays one scripted round per send().

    A round is a list of events, an exception to raise, or a callable taking
    the messages and returning a list of events. Once the script runs out
    every round is an empty text reply.
    """

    def __init__(self, rounds=None):
        self.rounds = list(rounds or [])
        self.calls: List[dict] = []

    def send(self, messages, tools=None):
        self.calls.append({"messages": list(messages), "tools": tools})
        if not self.rounds:
            return iter([TextPart("")])
        round_ = self.rounds.pop(0)
        if isinstance(round_, Exception):
            raise round_
        if callable(round_):
            round_ = round_(messages)
        return iter(round_)


def decomposition_reply(tasks, clarifications=None) -> List[TextPart]:
    return [TextPart(json.dumps({"tasks": tasks, "clarifications": clarifications or []}))]


def text(value: str) -> List[TextPart]:
    return [TextPart(value)]


def tool_call(name: str, call_id: str = "c1", **input_) -> ToolCallPart:
    return ToolCallPart(call_id=call_id, name=name, input=input_)


class StaticDiagnostics:
    """Diagnostics contract over a {path: [Diagnostic]} dict the test controls."""

    def __init__(self, items: Dict[str, List[Diagnostic]] = None):
        self.items = dict(items or {})

    def set_errors(self, path: str, count: int):
        if count:
            self.items[path] = [Diagnostic(Severity.ERROR, f"error {i + 1}") for i in range(count)]
        else:
            self.items.pop(path, None)

    def get_all(self):
        return [(p, list(ds)) for p, ds in self.items.items() if ds]

    def get_for(self, path: str):
        return list(self.items.get(path, []))


class FakeTaskRunner:
    """
    TaskRunner contract with scripted exit codes.

    ``tasks`` maps a label to an exit code, or to None for a task that never
    finishes on its own. execute() fires process-end then end synchronously.
    """

    def __init__(self, tasks: Dict[str, object] = None, launch_error: Exception = None):
        self.tasks = dict(tasks or {})
        self.launch_error = launch_error
        self.executions: List[str] = []
        self.on_did_end_task = EventEmitter()
        self.on_did_end_task_process = EventEmitter()

    def list(self):
        return [NamedTask(label=label, command=f"echo {label}") for label in self.tasks]

    def execute(self, task: NamedTask) -> TaskExecution:
        self.executions.append(task.label)
        if self.launch_error is not None:
            raise self.launch_error
        execution = TaskExecution(task)
        exit_code = self.tasks.get(task.label)
        if exit_code is not None:
            self.on_did_end_task_process.fire(TaskProcessEndEvent(execution, exit_code))
            self.on_did_end_task.fire(TaskEndEvent(execution))
        return execution

    def count(self, label: str) -> int:
        return self.executions.count(label)


@pytest.fixture
def config() -> Config:
    return Config(
        model=ModelConfig(name="fake", provider="ollama", model_id="fake"),
        confirm_mode="yes",
    )


@pytest.fixture
def diagnostics() -> StaticDiagnostics:
    return StaticDiagnostics()


@pytest.fixture
def workspace(tmp_path: Path, diagnostics: StaticDiagnostics) -> Workspace:
    return Workspace(
        root=tmp_path,
        fs=LocalFileSystem(tmp_path),
        search=LocalFileSearch(tmp_path),
        diagnostics=diagnostics,
        prompt=FixedAnswerPrompt(True),
    )


@pytest.fixture
def runner() -> FakeTaskRunner:
    return FakeTaskRunner({"build": 0, "test": 0})
