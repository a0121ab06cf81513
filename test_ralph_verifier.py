import pytest

from conftest import FakeTaskRunner
from ralph_events import CancellationTokenSource
from ralph_models import (
    DecomposedTask, DiagnosticsCheck, FileContainsCheck, FileExistsCheck, GlobExistsCheck,
    LoopRuntime, TaskRunCheck, UnknownCheck, UserConfirmCheck,
)
from ralph_verifier import Verifier
from ralph_workspace import FixedAnswerPrompt


def _task(task_id, *checks, order=0):
    return DecomposedTask(
        id=task_id, instruction=f"do {task_id}", completion_criteria="", criteria_checks=list(checks), order=order,
    )


@pytest.fixture
def verifier(workspace, runner, config):
    return Verifier(workspace, runner, config)


def test_all_checks_pass(verifier, workspace):
    workspace.write_text("src/app.py", "def main():\n    pass\n")
    task = _task(
        "T1",
        FileExistsCheck("src/app.py"),
        FileContainsCheck("src/app.py", "def main"),
        GlobExistsCheck("src/**/*.py", 1),
        DiagnosticsCheck(0),
        TaskRunCheck("build"),
        UserConfirmCheck("Looks right?"),
    )
    report = verifier.verify_tasks([task])
    assert report.all_passed
    assert report.errors == 0
    assert report.to_dict() == {"allPassed": True, "errors": 0, "failures": []}


def test_every_failing_check_is_reported(verifier, workspace, runner, diagnostics):
    runner.tasks["test"] = 2
    workspace.prompt = FixedAnswerPrompt(False)
    diagnostics.set_errors("broken.py", 2)
    workspace.write_text("notes.md", "nothing useful")

    t1 = _task(
        "T1",
        FileExistsCheck("missing.py"),
        FileContainsCheck("notes.md", "TODO"),
        FileContainsCheck("absent.md", "x"),
        GlobExistsCheck("**/*.rs", 1),
    )
    t2 = _task(
        "T2",
        DiagnosticsCheck(1),
        TaskRunCheck("test"),
        TaskRunCheck("nope"),
        UserConfirmCheck("Ship?"),
        UnknownCheck("lint"),
        FileExistsCheck("../escape"),
    )
    report = verifier.verify_tasks([t1, t2])

    reasons = [(f.task_id, f.reason) for f in report.failures]
    assert len(report.failures) == 11
    assert reasons[0] == ("T1", "File does not exist: missing.py")
    assert reasons[1][1].startswith("Text not found in notes.md")
    assert reasons[2][1].startswith("Cannot read absent.md")
    assert reasons[3][1].startswith("Matched 0 file(s)")
    assert reasons[4] == ("T2", "Diagnostics error count 2 > 1")
    assert reasons[5] == ("T2", "Task 'test' exited with code 2")
    assert reasons[6][1].startswith("Task not found: nope")
    assert reasons[7] == ("T2", "User confirmation declined")
    assert reasons[8] == ("T2", "Unknown check type: lint")
    assert reasons[9][1].startswith("Unsafe or invalid path")
    assert reasons[10] == (None, "Workspace still has 2 diagnostic error(s)")
    assert report.errors == 2
    assert not report.all_passed


def test_task_without_checks_is_unverifiable(verifier):
    report = verifier.verify_tasks([_task("T1"), _task("T2", DiagnosticsCheck(0))])
    assert len(report.failures) == 1
    assert report.failures[0].task_id == "T1"
    assert report.failures[0].reason.startswith("Unverifiable task")


def test_aggregate_diagnostics_recheck_applies_even_when_tasks_allow_errors(verifier, diagnostics):
    diagnostics.set_errors("a.py", 1)
    report = verifier.verify_tasks([_task("T1", DiagnosticsCheck(max_errors=5))])
    assert [f.reason for f in report.failures] == ["Workspace still has 1 diagnostic error(s)"]


def test_user_confirm_fails_fast_when_cancelled(verifier, workspace):
    asked = []
    workspace.prompt = type("Recorder", (), {"ask": lambda self, q: asked.append(q) or True})()
    cts = CancellationTokenSource()
    cts.cancel()

    failure = verifier.verify_one(UserConfirmCheck("Ship?"), cts.token)

    assert failure.reason == "Cancelled"
    assert asked == []


def test_task_run_uses_iteration_cache(verifier, runner):
    runtime = LoopRuntime()
    runtime.begin_iteration(1)
    task = _task("T1", TaskRunCheck("build", 60_000), TaskRunCheck("build", 60_000))

    verifier.verify_tasks([task], runtime=runtime)
    verifier.verify_tasks([task], runtime=runtime)
    assert runner.count("build") == 1

    runtime.begin_iteration(2)
    verifier.verify_tasks([task], runtime=runtime)
    assert runner.count("build") == 2


def test_task_run_without_runtime_always_executes(verifier, runner):
    check = TaskRunCheck("build")
    assert verifier.verify_one(check) is None
    assert verifier.verify_one(check) is None
    assert runner.count("build") == 2


def test_task_launch_error_is_a_failure(workspace, config):
    runner = FakeTaskRunner({"build": 0}, launch_error=OSError("bash missing"))
    failure = Verifier(workspace, runner, config).verify_one(TaskRunCheck("build"))
    assert failure.reason == "bash missing"


def test_empty_task_label_fails(verifier):
    assert verifier.verify_one(TaskRunCheck("  ")).reason == "Task label is empty"


def test_failure_serializes_with_check(verifier):
    failure = verifier.verify_one(FileExistsCheck("gone.txt"))
    assert failure.to_dict() == {
        "check": {"type": "fileExists", "path": "gone.txt"},
        "reason": "File does not exist: gone.txt",
    }
