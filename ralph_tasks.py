"""
External task execution — the TaskRunner contract, a local shell runner,
exactly-once run resolution and the per-iteration task-run cache.

A task run can end in four ways: the process exits, the wall-clock timeout
fires, the run is cancelled, or the task fails to launch. Process-exit
notifications arrive on a watcher thread while the control thread waits on
the timeout, so every path goes through TaskRunSettlement.settle() and only
the first one counts.
"""

import math
import subprocess
import threading
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any

from ralph_errors import TaskTimeoutError
from ralph_events import CancellationToken, Disposable, EventEmitter, NONE_TOKEN
from ralph_models import LoopRuntime, TaskRunCacheEntry, DEFAULT_TASK_TIMEOUT_MS

logger = logging.getLogger(__name__)

MIN_TASK_TIMEOUT_MS = 1_000
MAX_LISTED_TASKS = 50


@dataclass
class NamedTask:
    label: str
    command: str
    source: str = "config"
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {"label": self.label, "source": self.source, "detail": self.detail or self.command}


class TaskExecution:
    """Handle for one launched task."""

    def __init__(self, task: NamedTask, process: Optional[subprocess.Popen] = None):
        self.task = task
        self.process = process
        self.output = ""

    @property
    def has_process(self) -> bool:
        return self.process is not None

    def terminate(self):
        if self.process is not None and self.process.poll() is None:
            logger.warning(f"  Terminating task '{self.task.label}' (pid {self.process.pid})")
            self.process.kill()


@dataclass
class TaskEndEvent:
    execution: TaskExecution


@dataclass
class TaskProcessEndEvent:
    execution: TaskExecution
    exit_code: Optional[int]


class LocalTaskRunner:
    """
    TaskRunner contract over shell commands declared in config.

    Each task runs with `bash -c` in the working directory; a watcher thread
    waits for the process and fires the process-end then end notifications.
    """

    def __init__(self, working_dir: Path, tasks: Dict[str, str]):
        self.working_dir = Path(working_dir)
        self._tasks = dict(tasks)
        self.on_did_end_task: EventEmitter[TaskEndEvent] = EventEmitter()
        self.on_did_end_task_process: EventEmitter[TaskProcessEndEvent] = EventEmitter()

    def list(self) -> List[NamedTask]:
        return [NamedTask(label=label, command=cmd) for label, cmd in self._tasks.items()]

    def execute(self, task: NamedTask) -> TaskExecution:
        logger.info(f"  ▶ task '{task.label}': {task.command[:100]}")
        process = subprocess.Popen(
            ["bash", "-c", task.command],
            cwd=self.working_dir,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
        execution = TaskExecution(task, process)
        watcher = threading.Thread(
            target=self._watch, args=(execution,),
            name=f"task-{task.label}", daemon=True,
        )
        watcher.start()
        return execution

    def _watch(self, execution: TaskExecution):
        out, _ = execution.process.communicate()
        execution.output = (out or "")[-4000:]
        exit_code = execution.process.returncode
        logger.debug(f"  task '{execution.task.label}' exited with {exit_code}")
        self.on_did_end_task_process.fire(TaskProcessEndEvent(execution, exit_code))
        self.on_did_end_task.fire(TaskEndEvent(execution))


# ============================================================
# Exactly-once resolution
# ============================================================

class TaskRunResolution(Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    LAUNCH_ERROR = "launch_error"
    NOT_FOUND = "not_found"


@dataclass
class TaskRunOutcome:
    resolution: TaskRunResolution
    exit_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.resolution == TaskRunResolution.SUCCESS


class TaskRunSettlement:
    """
    Two-state machine: pending -> settled.

    settle() is the only transition. The first caller wins; later callers get
    False and their outcome is dropped. Settling disposes every tracked
    listener.
    """

    def __init__(self, label: str):
        self.label = label
        self.outcome: Optional[TaskRunOutcome] = None
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._disposables: List[Disposable] = []

    @property
    def settled(self) -> bool:
        return self._done.is_set()

    def track(self, disposable: Disposable):
        with self._lock:
            if not self._done.is_set():
                self._disposables.append(disposable)
                return
        disposable.dispose()

    def settle(self, outcome: TaskRunOutcome) -> bool:
        with self._lock:
            if self._done.is_set():
                return False
            self.outcome = outcome
            disposables, self._disposables = self._disposables, []
            self._done.set()
        for d in disposables:
            d.dispose()
        logger.debug(f"  task '{self.label}' settled: {outcome.resolution.value}")
        return True

    def wait(self, timeout_s: float) -> bool:
        return self._done.wait(timeout_s)

    def result(self, timeout_ms: int) -> TaskRunOutcome:
        """Block until settled; raises TaskTimeoutError if the budget runs out first."""
        if not self.wait(timeout_ms / 1000):
            raise TaskTimeoutError(f"Task timed out after {timeout_ms}ms: {self.label}")
        return self.outcome


def clamp_timeout_ms(value: Any, default: int = DEFAULT_TASK_TIMEOUT_MS,
                     minimum: int = MIN_TASK_TIMEOUT_MS) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return default
    return max(minimum, int(math.floor(value)))


def run_task_by_label(runner, label: str, timeout_ms: int,
                      token: CancellationToken = NONE_TOKEN) -> TaskRunOutcome:
    """Run a named task and wait for exactly one resolution."""
    tasks = runner.list()
    task = next((t for t in tasks if t.label == label), None)
    if task is None:
        available = [t.label for t in tasks][:MAX_LISTED_TASKS]
        return TaskRunOutcome(
            TaskRunResolution.NOT_FOUND,
            error=f"Task not found: {label}. Available tasks (max {MAX_LISTED_TASKS}): {', '.join(available)}",
        )

    settlement = TaskRunSettlement(label)
    started: Dict[str, Optional[TaskExecution]] = {"execution": None}

    def _is_ours(execution: TaskExecution) -> bool:
        if started["execution"] is not None:
            return execution is started["execution"]
        # Not assigned yet (very fast exit): match on the label
        return execution.task.label == label

    def _on_end(e: TaskEndEvent):
        # Process tasks report their exit code on the process-end event;
        # only tasks without a process finish here.
        if settlement.settled or not _is_ours(e.execution) or e.execution.has_process:
            return
        settlement.settle(TaskRunOutcome(TaskRunResolution.SUCCESS, exit_code=-1))

    def _on_process_end(e: TaskProcessEndEvent):
        if settlement.settled or not _is_ours(e.execution):
            return
        exit_code = e.exit_code if e.exit_code is not None else -1
        settlement.settle(TaskRunOutcome(TaskRunResolution.SUCCESS, exit_code=exit_code))

    def _on_cancel(_):
        settlement.settle(TaskRunOutcome(TaskRunResolution.CANCELLED, error=f"Task cancelled: {label}"))

    settlement.track(runner.on_did_end_task.subscribe(_on_end))
    settlement.track(runner.on_did_end_task_process.subscribe(_on_process_end))
    settlement.track(token.on_cancellation_requested(_on_cancel))

    if not settlement.settled:
        try:
            started["execution"] = runner.execute(task)
        except Exception as e:
            settlement.settle(TaskRunOutcome(TaskRunResolution.LAUNCH_ERROR, error=str(e)))

    try:
        settlement.result(timeout_ms)
    except TaskTimeoutError as e:
        settlement.settle(TaskRunOutcome(TaskRunResolution.TIMEOUT, error=str(e)))

    outcome = settlement.outcome
    execution = started["execution"]
    if execution is not None and outcome.resolution in (TaskRunResolution.TIMEOUT, TaskRunResolution.CANCELLED):
        execution.terminate()
    if execution is not None and execution.output:
        logger.debug(f"  task '{label}' output tail:\n{execution.output[-1000:]}")
    return outcome


# ============================================================
# Task Run Cache
# ============================================================

def task_cache_key(label: str, timeout_ms: int) -> str:
    return f"{label}::{timeout_ms}"


def run_task_cached(runner, runtime: LoopRuntime, label: str, timeout_ms: int,
                    token: CancellationToken = NONE_TOKEN, force: bool = False) -> TaskRunCacheEntry:
    """
    Run a task at most once per iteration per (label, timeout).

    The controller replaces runtime.cache at the start of every iteration, so
    edits made between iterations are always observed by a fresh run.
    """
    key = task_cache_key(label, timeout_ms)
    if not force:
        cached = runtime.cache.task_runs.get(key)
        if cached is not None:
            logger.debug(f"  task '{label}' served from iteration {runtime.iteration} cache")
            return cached

    outcome = run_task_by_label(runner, label, timeout_ms, token)
    entry = TaskRunCacheEntry(ok=outcome.ok, exit_code=outcome.exit_code, error=outcome.error)
    runtime.cache.task_runs[key] = entry
    return entry
