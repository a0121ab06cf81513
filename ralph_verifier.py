"""
Verification Engine.

Evaluates every task's criteria checks against the workspace and produces a
VerificationReport. The report is exhaustive: one failing check never stops
the others from running, so the model sees the whole picture each iteration.
"""

import time
import logging
from typing import Optional, List, Callable, Dict

from ralph_config import Config
from ralph_errors import CancellationError, VerificationCheckError
from ralph_events import CancellationToken, NONE_TOKEN
from ralph_models import (
    CriterionCheck, DecomposedTask, LoopRuntime, TaskRunCacheEntry,
    VerificationFailure, VerificationReport,
    DiagnosticsCheck, FileExistsCheck, FileContainsCheck, GlobExistsCheck,
    TaskRunCheck, UserConfirmCheck,
)
from ralph_tasks import clamp_timeout_ms, run_task_by_label, run_task_cached
from ralph_workspace import Workspace, count_errors, sanitize_relative_path

logger = logging.getLogger(__name__)


class Verifier:
    """Runs acceptance checks. One handler per check variant, keyed on `type`."""

    def __init__(self, workspace: Workspace, task_runner, config: Config):
        self.workspace = workspace
        self.task_runner = task_runner
        self.config = config
        self._handlers: Dict[str, Callable[..., Optional[str]]] = {
            "diagnostics": self._check_diagnostics,
            "fileExists": self._check_file_exists,
            "fileContains": self._check_file_contains,
            "globExists": self._check_glob_exists,
            "taskRun": self._check_task_run,
            "userConfirm": self._check_user_confirm,
        }

    def workspace_error_count(self) -> int:
        return count_errors(self.workspace.diagnostics.get_all())

    # ------------------------------------------------------------
    # Individual checks: each returns a failure reason or None
    # ------------------------------------------------------------

    def _check_diagnostics(self, check: DiagnosticsCheck, token, runtime) -> Optional[str]:
        error_count = self.workspace_error_count()
        if error_count > check.max_errors:
            return f"Diagnostics error count {error_count} > {check.max_errors}"
        return None

    def _check_file_exists(self, check: FileExistsCheck, token, runtime) -> Optional[str]:
        safe = sanitize_relative_path(check.path)
        if not safe:
            return f"Unsafe or invalid path: {check.path}"
        try:
            self.workspace.fs.stat(safe)
        except (OSError, ValueError):
            return f"File does not exist: {safe}"
        return None

    def _check_file_contains(self, check: FileContainsCheck, token, runtime) -> Optional[str]:
        safe = sanitize_relative_path(check.path)
        if not safe:
            return f"Unsafe or invalid path: {check.path}"
        try:
            text = self.workspace.fs.read(safe).decode("utf-8")
        except (OSError, ValueError) as e:
            raise VerificationCheckError(f"Cannot read {safe}: {e}") from e
        if check.text not in text:
            return f"Text not found in {safe}: {check.text[:80]!r}"
        return None

    def _check_glob_exists(self, check: GlobExistsCheck, token, runtime) -> Optional[str]:
        glob = (check.glob or "**/*").strip()
        min_count = max(0, check.min_count)
        try:
            matches = self.workspace.search.find(
                glob, self.config.exclude_glob, self.config.glob_scan_limit,
            )
        except (OSError, ValueError) as e:
            raise VerificationCheckError(f"Glob {glob!r} failed: {e}") from e
        if len(matches) < min_count:
            return f"Matched {len(matches)} file(s) for {glob!r} < {min_count}"
        return None

    def _check_task_run(self, check: TaskRunCheck, token, runtime) -> Optional[str]:
        label = (check.label or "").strip()
        if not label:
            return "Task label is empty"
        timeout_ms = clamp_timeout_ms(
            check.timeout_ms, self.config.default_task_timeout_ms, self.config.min_task_timeout_ms,
        )
        if runtime is not None:
            run = run_task_cached(self.task_runner, runtime, label, timeout_ms, token)
        else:
            outcome = run_task_by_label(self.task_runner, label, timeout_ms, token)
            run = TaskRunCacheEntry(ok=outcome.ok, exit_code=outcome.exit_code, error=outcome.error)
        if not run.ok:
            return run.error or f"Task '{label}' failed"
        if run.exit_code != 0:
            return f"Task '{label}' exited with code {run.exit_code}"
        return None

    def _check_user_confirm(self, check: UserConfirmCheck, token, runtime) -> Optional[str]:
        if token.is_cancellation_requested:
            raise CancellationError("Cancelled")
        if not self.workspace.prompt.ask(check.question):
            return "User confirmation declined"
        return None

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------

    def verify_one(self, check: CriterionCheck, token: CancellationToken = NONE_TOKEN,
                   runtime: Optional[LoopRuntime] = None) -> Optional[VerificationFailure]:
        """Evaluate a single check. Never raises; problems become failures."""
        handler = self._handlers.get(check.type)
        if handler is None:
            kind = getattr(check, "raw_type", check.type)
            return VerificationFailure(check=check, reason=f"Unknown check type: {kind}")
        try:
            reason = handler(check, token, runtime)
        except (VerificationCheckError, CancellationError, OSError, ValueError) as e:
            reason = str(e)
        if reason is None:
            return None
        return VerificationFailure(check=check, reason=reason)

    def verify_tasks(self, tasks: List[DecomposedTask], token: CancellationToken = NONE_TOKEN,
                     runtime: Optional[LoopRuntime] = None) -> VerificationReport:
        """
        Evaluate every check of every task, in order, then the workspace-wide
        diagnostics count. A task with no checks cannot be verified and fails.
        """
        started = time.time()
        failures: List[VerificationFailure] = []
        checks_run = 0

        for task in tasks:
            if not task.criteria_checks:
                failures.append(VerificationFailure(
                    task_id=task.id,
                    reason="Unverifiable task: no criteriaChecks (add or rewrite machine-checkable criteria)",
                ))
                continue
            for check in task.criteria_checks:
                checks_run += 1
                failure = self.verify_one(check, token, runtime)
                if failure:
                    failure.task_id = task.id
                    failures.append(failure)

        # Always re-count workspace errors, even if a task already checked them
        error_count = self.workspace_error_count()
        if error_count > 0:
            failures.append(VerificationFailure(
                reason=f"Workspace still has {error_count} diagnostic error(s)",
            ))

        report = VerificationReport(errors=error_count, failures=failures)
        logger.info(
            f"  Verification: {checks_run} check(s), {len(failures)} failure(s), "
            f"{error_count} diagnostic error(s) ({time.time() - started:.1f}s)"
        )
        return report
