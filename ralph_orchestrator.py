"""
Ralph Loop Controller — the iteration/convergence state machine.

Implements: INIT → DECOMPOSING → {NEEDS_CLARIFICATION | EXECUTING}
and, per iteration: REQUEST → APPLY_COMPAT_EDITS → VERIFY → DECIDE.

The model's own claim of completion is never trusted on its own. A run is
DONE only when the verifier passes AND the last line of the model's output
equals the completion promise exactly.
"""

import os
import json
import re
import signal
import threading
import logging
from datetime import datetime
from typing import Dict, List, Optional

from ralph_agents import request_with_tools, truncate_to_budget
from ralph_config import Config
from ralph_decomposer import decompose_prompt, sort_tasks
from ralph_errors import CompatEditError, LoopAlreadyRunningError
from ralph_events import CancellationToken, CancellationTokenSource, NONE_TOKEN
from ralph_models import (
    DecomposedTask, IterationPhase, LoopConfig, LoopResult, LoopRuntime, LoopState,
)
from ralph_session import SessionManager
from ralph_tools import ToolContext, create_private_tools, find_tool
from ralph_verifier import Verifier
from ralph_workspace import Workspace, sanitize_relative_path

logger = logging.getLogger(__name__)

_EDITS_BLOCK = re.compile(r"<edits>([\s\S]*?)</edits>", re.IGNORECASE)
DIAGNOSTICS_PROMPT_BUDGET = 8_000


# ============================================================
# Single active run
# ============================================================

class ActiveRun:
    """Handle for the one running loop: its cancellation source, start time and config."""

    def __init__(self, loop_config: LoopConfig):
        self.cts = CancellationTokenSource()
        self.started_at = datetime.now()
        self.config = loop_config

    @property
    def token(self) -> CancellationToken:
        return self.cts.token


class ActiveRunSlot:
    """
    Nullable ownership slot. acquire() fills it or raises; release() empties
    it. There is no queue: a second start while one is active is rejected.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._run: Optional[ActiveRun] = None

    @property
    def active(self) -> Optional[ActiveRun]:
        return self._run

    def acquire(self, loop_config: LoopConfig) -> ActiveRun:
        with self._lock:
            if self._run is not None:
                raise LoopAlreadyRunningError(
                    "A Ralph loop is already running. Cancel it or wait for it to finish."
                )
            self._run = ActiveRun(loop_config)
            return self._run

    def release(self, run: ActiveRun):
        with self._lock:
            if self._run is run:
                self._run = None
        run.cts.dispose()

    def cancel(self) -> bool:
        """Request cancellation of the active run. Returns False if there was none."""
        with self._lock:
            run = self._run
        if run is None:
            return False
        run.cts.cancel()
        return True


ACTIVE_RUN = ActiveRunSlot()


# ============================================================
# Helpers
# ============================================================

def last_non_empty_line(text: str) -> str:
    for line in reversed(re.split(r"\r?\n", text or "")):
        if line.strip():
            return line.strip()
    return ""


def extract_edits(text: str) -> List[Dict[str, str]]:
    """
    Pull [{path, content}] out of a legacy <edits>...</edits> block.

    Anything that is not a JSON list is ignored; entries without a string
    path are dropped.
    """
    match = _EDITS_BLOCK.search(text or "")
    if not match:
        return []
    try:
        parsed = json.loads(match.group(1).strip())
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    edits = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        path = item.get("path") if isinstance(item.get("path"), str) else ""
        content = item.get("content") if isinstance(item.get("content"), str) else ""
        if path:
            edits.append({"path": path, "content": content})
    return edits


# ============================================================
# Controller
# ============================================================

class LoopController:
    """
    Drives one run of the loop against one workspace.

    The controller owns the per-iteration runtime (cache included); the
    verifier and the tools only read it through the providers handed to
    ToolContext.
    """

    def __init__(self, config: Config, loop_config: LoopConfig, workspace: Workspace,
                 task_runner, model, token: CancellationToken = NONE_TOKEN):
        self.config = config
        self.loop_config = loop_config
        self.workspace = workspace
        self.task_runner = task_runner
        self.model = model
        self.token = token

        self.session = SessionManager(workspace, config)
        self.verifier = Verifier(workspace, task_runner, config)
        self.runtime = LoopRuntime()
        self.tasks: List[DecomposedTask] = []
        self.state = LoopState.INIT
        self.phase: Optional[IterationPhase] = None
        self.tools = create_private_tools(ToolContext(
            workspace=workspace,
            task_runner=task_runner,
            verifier=self.verifier,
            config=config,
            tasks_provider=lambda: self.tasks,
            runtime_provider=lambda: self.runtime,
        ))

    def run(self) -> LoopResult:
        lc = self.loop_config
        logger.info(f"{'='*60}")
        logger.info("RALPH LOOP STARTING")
        logger.info(f"Prompt: {lc.prompt[:200]}")
        logger.info(f"Completion promise: {lc.completion_promise!r}")
        logger.info(f"Max iterations: {lc.max_iterations}")
        logger.info(f"Working directory: {self.workspace.root}")
        logger.info(f"{'='*60}")

        try:
            self.session.write_scratch(lc, 1)

            self.state = LoopState.DECOMPOSING
            decomposition = decompose_prompt(self.model, lc.prompt, self.token)
            self.tasks = sort_tasks(decomposition.tasks)

            if decomposition.is_ambiguous:
                path = self.session.write_clarifications(lc, decomposition)
                logger.warning(f"⚠️ Instruction is ambiguous: answer the questions in {path} and re-run")
                self.state = LoopState.NEEDS_CLARIFICATION
                return LoopResult(state=self.state, iterations=0)

            path = self.session.write_plan(lc, self.tasks)
            logger.info(f"📋 Plan written to {path} ({len(self.tasks)} task(s))")
            self.state = LoopState.EXECUTING
            return self._iterate()
        finally:
            self.session.delete_scratch()

    # ------------------------------------------------------------
    # Iterations
    # ------------------------------------------------------------

    def _iterate(self) -> LoopResult:
        lc = self.loop_config
        last_failure = ""
        report = None
        iteration = 0

        for iteration in range(1, lc.max_iterations + 1):
            if self.token.is_cancellation_requested:
                logger.info("🛑 Cancelled")
                self.state = LoopState.CANCELLED
                return LoopResult(self.state, iteration - 1, last_failure, report)

            self.runtime.begin_iteration(iteration)
            self.session.write_scratch(lc, iteration)

            logger.info(f"\n{'='*60}")
            logger.info(f"ITERATION {iteration}/{lc.max_iterations}")
            logger.info(f"{'='*60}")

            # REQUEST
            self._enter_phase(IterationPhase.REQUEST)
            prompt = self._build_prompt(self._diagnostics_snapshot(), last_failure)
            messages = [
                {"role": "user", "content": f"[system] This is iteration {iteration}."},
                {"role": "user", "content": prompt},
            ]
            try:
                text = request_with_tools(
                    self.model, messages, self.tools, self.token, self.config.max_tool_rounds,
                )
            except Exception as e:
                last_failure = f"Model request failed: {e}"
                logger.error(f"❌ {last_failure}")
                continue

            # APPLY_COMPAT_EDITS
            self._enter_phase(IterationPhase.APPLY_COMPAT_EDITS)
            try:
                self._apply_compat_edits(text)
            except CompatEditError as e:
                last_failure = f"File write failed: {e}"
                logger.error(f"❌ {last_failure}")
                continue

            last_line = last_non_empty_line(text)
            logger.info(f"  Last line: {last_line[:200]}")

            # VERIFY
            self._enter_phase(IterationPhase.VERIFY)
            report = self.verifier.verify_tasks(self.tasks, self.token, self.runtime)
            self.runtime.cache.verify_report = report

            # DECIDE
            self._enter_phase(IterationPhase.DECIDE)
            promised = last_line == lc.completion_promise
            if report.all_passed and promised:
                logger.info("✅ Verifier passed AND completion promise matched")
                self.state = LoopState.DONE
                return LoopResult(self.state, iteration, "", report)

            if report.all_passed:
                last_failure = "\n".join([
                    "Verification passed, but your last line was not the completion promise.",
                    f"Make the last line (no trailing blank lines) exactly: {lc.completion_promise}",
                ])
                logger.warning("⚠️ Verifier passed but completion promise missing")
            elif promised:
                last_failure = "\n".join([
                    "You output the completion promise early, but verification failed "
                    "(strict rule: no early completion).",
                    "Failure details (fix each one):",
                    report.to_json(),
                ])
                logger.warning(f"⚠️ Premature completion promise: {len(report.failures)} failure(s)")
            else:
                last_failure = "\n".join([
                    "Verification not passed (next iteration is for debugging).",
                    "completion-promise matched: false",
                    "Verifier report:",
                    report.to_json(),
                ])
                logger.warning(f"⚠️ Verification failed: {len(report.failures)} failure(s)")

        logger.error(
            f"❌ MAX ITERATIONS ({lc.max_iterations}) REACHED: task NOT completed, "
            f"completion promise never verified"
        )
        self.state = LoopState.EXHAUSTED
        return LoopResult(self.state, iteration, last_failure, report)

    def _enter_phase(self, phase: IterationPhase):
        self.phase = phase
        logger.debug(f"  Phase: {phase.value}")

    def _diagnostics_snapshot(self) -> str:
        result = find_tool(self.tools, "get_diagnostics").invoke({}, self.token)
        return truncate_to_budget(result.to_json(), DIAGNOSTICS_PROMPT_BUDGET, "diagnostics")

    def _build_prompt(self, diagnostics: str, last_failure: str) -> str:
        lc = self.loop_config
        lines = [
            "You will modify the current workspace to complete the task.",
            "Every iteration you receive the same original instruction plus the previous failure details.",
            "Follow the task list and its acceptance criteria strictly; use the tools to read/write/search/diagnose.",
            "IMPORTANT: only output the completion promise once the verifier passes (verify returns allPassed=true).",
            "Outputting the completion promise early is treated as a failure and starts another iteration.",
            "",
            "To change a file, call write_file (whole-file overwrite).",
            "To read or locate code, call read_file / search / list_files.",
            "To validate, prefer list_tasks / run_task (e.g. build/test); get_diagnostics reports errors/warnings.",
            f"Strict last-line rule: only when you are sure every criterion is met, output: {lc.completion_promise}",
            "Otherwise make the last line anything else (never equal to the completion promise).",
            "",
            "--- Original instruction ---",
            lc.prompt,
            "",
            "--- Tasks (complete in order) ---",
        ]
        for t in self.tasks:
            lines.append(f"({t.order}) {t.id}\n- instruction: {t.instruction}\n- criteria: {t.completion_criteria}")
        lines += [
            "",
            "--- Current diagnostics ---",
            diagnostics,
            "",
            "--- Previous failure ---",
            last_failure or "(none)",
        ]
        return "\n".join(lines)

    def _apply_compat_edits(self, text: str) -> int:
        """Write every legacy edit in order; the first bad one stops the rest."""
        edits = extract_edits(text)
        if not edits:
            return 0
        logger.info(f"  <edits> block found: applying {len(edits)} whole-file write(s)")
        for edit in edits:
            safe = sanitize_relative_path(edit["path"])
            if not safe:
                raise CompatEditError(f"Refusing to write unsafe path: {edit['path']}")
            try:
                self.workspace.write_text(safe, edit["content"])
            except (OSError, ValueError) as e:
                raise CompatEditError(f"{safe}: {e}") from e
            logger.info(f"  [write] {safe} ({len(edit['content'])} chars)")
        return len(edits)


# ============================================================
# Start / cancel
# ============================================================

def start_loop(config: Config, loop_config: LoopConfig, workspace: Workspace, task_runner, model,
               slot: ActiveRunSlot = ACTIVE_RUN) -> LoopResult:
    """Run a loop to completion. Raises LoopAlreadyRunningError if one is active."""
    run = slot.acquire(loop_config)
    try:
        controller = LoopController(config, loop_config, workspace, task_runner, model, run.token)
        return controller.run()
    finally:
        slot.release(run)


def cancel_loop(session: SessionManager, slot: ActiveRunSlot = ACTIVE_RUN) -> bool:
    """
    Ask the active run to stop at its next iteration boundary and remove the
    scratch record, whether or not anything was running.

    A run owned by another process (the pid in its scratch record) is sent
    SIGINT, which its CLI turns into the same cooperative cancellation.
    """
    was_active = slot.cancel()
    if not was_active:
        was_active = _signal_owner(session.scratch_pid())
    session.delete_scratch()
    if was_active:
        logger.info("🛑 Cancellation requested (waiting for the current iteration to finish)")
    else:
        logger.info("No Ralph loop is running")
    return was_active


def _signal_owner(pid: Optional[int]) -> bool:
    if pid is None or pid == os.getpid():
        return False
    try:
        os.kill(pid, signal.SIGINT)
    except ProcessLookupError:
        logger.info(f"Scratch record names pid {pid}, which is no longer running")
        return False
    except PermissionError as e:
        logger.warning(f"⚠️ Cannot signal Ralph loop process {pid}: {e}")
        return False
    logger.info(f"Sent SIGINT to Ralph loop process {pid}")
    return True

