import sys
import threading

import pytest

from conftest import FakeTaskRunner
from ralph_errors import TaskTimeoutError
from ralph_events import CancellationTokenSource, Disposable
from ralph_models import LoopRuntime
from ralph_tasks import (
    LocalTaskRunner, TaskExecution, TaskProcessEndEvent, TaskEndEvent, TaskRunOutcome, TaskRunResolution,
    TaskRunSettlement, clamp_timeout_ms, run_task_by_label, run_task_cached, task_cache_key,
)


# ---- settlement ----

def test_first_settle_wins_and_disposes_listeners():
    settlement = TaskRunSettlement("build")
    released = []
    settlement.track(Disposable(lambda: released.append("a")))
    settlement.track(Disposable(lambda: released.append("b")))

    assert settlement.settle(TaskRunOutcome(TaskRunResolution.SUCCESS, exit_code=0))
    assert not settlement.settle(TaskRunOutcome(TaskRunResolution.TIMEOUT, error="late"))
    assert settlement.outcome.resolution == TaskRunResolution.SUCCESS
    assert released == ["a", "b"]


def test_tracking_after_settle_disposes_immediately():
    settlement = TaskRunSettlement("build")
    settlement.settle(TaskRunOutcome(TaskRunResolution.CANCELLED))
    d = Disposable(lambda: None)
    settlement.track(d)
    assert d.disposed


def test_racing_settles_resolve_exactly_once():
    settlement = TaskRunSettlement("build")
    barrier = threading.Barrier(8)
    wins = []

    def _racer(i):
        barrier.wait()
        if settlement.settle(TaskRunOutcome(TaskRunResolution.SUCCESS, exit_code=i)):
            wins.append(i)

    threads = [threading.Thread(target=_racer, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1
    assert settlement.outcome.exit_code == wins[0]


def test_result_raises_task_timeout():
    settlement = TaskRunSettlement("slow")
    with pytest.raises(TaskTimeoutError) as excinfo:
        settlement.result(10)
    assert isinstance(excinfo.value, TimeoutError)


# ---- run_task_by_label ----

def test_success_reports_exit_code_and_releases_listeners(runner):
    outcome = run_task_by_label(runner, "build", 1_000)
    assert outcome.resolution == TaskRunResolution.SUCCESS
    assert outcome.exit_code == 0
    assert runner.on_did_end_task.listener_count == 0
    assert runner.on_did_end_task_process.listener_count == 0


def test_unknown_label_lists_available_tasks(runner):
    outcome = run_task_by_label(runner, "deploy", 1_000)
    assert outcome.resolution == TaskRunResolution.NOT_FOUND
    assert "build, test" in outcome.error
    assert runner.executions == []


def test_timeout_when_task_never_finishes():
    runner = FakeTaskRunner({"hang": None})
    outcome = run_task_by_label(runner, "hang", 50)
    assert outcome.resolution == TaskRunResolution.TIMEOUT
    assert "timed out after 50ms" in outcome.error
    assert runner.on_did_end_task.listener_count == 0


def test_cancellation_settles_the_run():
    runner = FakeTaskRunner({"hang": None})
    cts = CancellationTokenSource()
    timer = threading.Timer(0.05, cts.cancel)
    timer.start()
    try:
        outcome = run_task_by_label(runner, "hang", 10_000, cts.token)
    finally:
        timer.cancel()
    assert outcome.resolution == TaskRunResolution.CANCELLED


def test_already_cancelled_token_never_launches():
    runner = FakeTaskRunner({"build": 0})
    cts = CancellationTokenSource()
    cts.cancel()
    outcome = run_task_by_label(runner, "build", 1_000, cts.token)
    assert outcome.resolution == TaskRunResolution.CANCELLED
    assert runner.executions == []


def test_launch_error():
    runner = FakeTaskRunner({"build": 0}, launch_error=RuntimeError("no shell"))
    outcome = run_task_by_label(runner, "build", 1_000)
    assert outcome.resolution == TaskRunResolution.LAUNCH_ERROR
    assert outcome.error == "no shell"


def test_end_without_process_settles_with_minus_one():
    class EndOnlyRunner(FakeTaskRunner):
        def execute(self, task):
            execution = TaskExecution(task)
            self.on_did_end_task.fire(TaskEndEvent(execution))
            self.on_did_end_task_process.fire(TaskProcessEndEvent(execution, 5))
            return execution

    outcome = run_task_by_label(EndOnlyRunner({"build": 0}), "build", 1_000)
    assert outcome.exit_code == -1


def test_missing_exit_code_becomes_minus_one():
    class NoCodeRunner(FakeTaskRunner):
        def execute(self, task):
            execution = TaskExecution(task)
            self.on_did_end_task_process.fire(TaskProcessEndEvent(execution, None))
            return execution

    outcome = run_task_by_label(NoCodeRunner({"build": 0}), "build", 1_000)
    assert outcome.resolution == TaskRunResolution.SUCCESS
    assert outcome.exit_code == -1


@pytest.mark.skipif(sys.platform == "win32", reason="needs bash")
def test_local_runner_runs_shell_commands(tmp_path):
    runner = LocalTaskRunner(tmp_path, {"ok": "echo hi > out.txt", "fail": "exit 3"})
    assert [t.label for t in runner.list()] == ["ok", "fail"]

    ok = run_task_by_label(runner, "ok", 10_000)
    assert ok.exit_code == 0
    assert (tmp_path / "out.txt").read_text().strip() == "hi"
    assert run_task_by_label(runner, "fail", 10_000).exit_code == 3


@pytest.mark.skipif(sys.platform == "win32", reason="needs bash")
def test_local_runner_kills_on_timeout(tmp_path):
    runner = LocalTaskRunner(tmp_path, {"sleep": "sleep 30"})
    outcome = run_task_by_label(runner, "sleep", 200)
    assert outcome.resolution == TaskRunResolution.TIMEOUT


# ---- cache ----

def test_cache_runs_once_per_key_per_iteration(runner):
    runtime = LoopRuntime()
    runtime.begin_iteration(1)

    first = run_task_cached(runner, runtime, "build", 1_000)
    second = run_task_cached(runner, runtime, "build", 1_000)
    assert first is second
    assert runner.count("build") == 1

    run_task_cached(runner, runtime, "build", 2_000)
    assert runner.count("build") == 2
    assert set(runtime.cache.task_runs) == {task_cache_key("build", 1_000), task_cache_key("build", 2_000)}


def test_cache_force_reruns(runner):
    runtime = LoopRuntime()
    run_task_cached(runner, runtime, "build", 1_000)
    run_task_cached(runner, runtime, "build", 1_000, force=True)
    assert runner.count("build") == 2


def test_cache_is_empty_at_each_new_iteration(runner):
    runtime = LoopRuntime()
    runtime.begin_iteration(1)
    run_task_cached(runner, runtime, "build", 1_000)
    runtime.begin_iteration(2)
    assert runtime.cache.task_runs == {}
    assert runtime.cache.verify_report is None
    run_task_cached(runner, runtime, "build", 1_000)
    assert runner.count("build") == 2


@pytest.mark.parametrize("value, expected", [
    (None, 300_000), ("5000", 300_000), (True, 300_000), (float("inf"), 300_000),
    (10, 1_000), (2500.9, 2_500), (60_000, 60_000),
])
def test_clamp_timeout(value, expected):
    assert clamp_timeout_ms(value) == expected
