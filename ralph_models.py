"""
Data models for the Ralph loop.

Zero external dependencies beyond Python stdlib.
"""

import json
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any, Union


class LoopState(Enum):
    INIT = "init"
    DECOMPOSING = "decomposing"
    NEEDS_CLARIFICATION = "needs_clarification"
    EXECUTING = "executing"
    DONE = "done"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


class IterationPhase(Enum):
    REQUEST = "request"
    APPLY_COMPAT_EDITS = "apply_compat_edits"
    VERIFY = "verify"
    DECIDE = "decide"


@dataclass(frozen=True)
class LoopConfig:
    """Validated run parameters. Never mutated after parsing."""
    prompt: str
    completion_promise: str
    max_iterations: int


# ============================================================
# Criterion checks — closed set, one class per variant
# ============================================================

DEFAULT_TASK_TIMEOUT_MS = 5 * 60_000


@dataclass(frozen=True)
class DiagnosticsCheck:
    max_errors: int = 0
    type: str = field(default="diagnostics", init=False)


@dataclass(frozen=True)
class FileExistsCheck:
    path: str
    type: str = field(default="fileExists", init=False)


@dataclass(frozen=True)
class FileContainsCheck:
    path: str
    text: str
    type: str = field(default="fileContains", init=False)


@dataclass(frozen=True)
class GlobExistsCheck:
    glob: str = "**/*"
    min_count: int = 1
    type: str = field(default="globExists", init=False)


@dataclass(frozen=True)
class TaskRunCheck:
    label: str
    timeout_ms: int = DEFAULT_TASK_TIMEOUT_MS
    type: str = field(default="taskRun", init=False)


@dataclass(frozen=True)
class UserConfirmCheck:
    question: str
    type: str = field(default="userConfirm", init=False)


@dataclass(frozen=True)
class UnknownCheck:
    """A check whose discriminant we don't recognise. Always fails."""
    raw_type: str
    type: str = field(default="unknown", init=False)


CriterionCheck = Union[
    DiagnosticsCheck, FileExistsCheck, FileContainsCheck,
    GlobExistsCheck, TaskRunCheck, UserConfirmCheck, UnknownCheck,
]


def _as_int(value: Any, default: int) -> int:
    """Floor a JSON number; anything non-finite or non-numeric gives default."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)) and math.isfinite(value):
        return int(math.floor(value))
    return default


def check_from_dict(data: dict) -> CriterionCheck:
    """Build a CriterionCheck from the model's JSON, keyed on its "type"."""
    kind = str(data.get("type", ""))
    if kind == "diagnostics":
        return DiagnosticsCheck(max_errors=_as_int(data.get("maxErrors"), 0))
    if kind == "fileExists":
        return FileExistsCheck(path=str(data.get("path", "")))
    if kind == "fileContains":
        return FileContainsCheck(path=str(data.get("path", "")), text=str(data.get("text", "")))
    if kind == "globExists":
        return GlobExistsCheck(
            glob=str(data.get("glob") or "**/*"),
            min_count=max(0, _as_int(data.get("minCount"), 1)),
        )
    # "vscodeTask" is what older prompts asked for
    if kind in ("taskRun", "vscodeTask"):
        return TaskRunCheck(
            label=str(data.get("label", "")),
            timeout_ms=_as_int(data.get("timeoutMs"), DEFAULT_TASK_TIMEOUT_MS),
        )
    if kind == "userConfirm":
        return UserConfirmCheck(question=str(data.get("question", "")))
    return UnknownCheck(raw_type=kind)


def check_to_dict(check: CriterionCheck) -> dict:
    """Wire form of a check, as the model wrote it."""
    if isinstance(check, DiagnosticsCheck):
        return {"type": check.type, "maxErrors": check.max_errors}
    if isinstance(check, FileExistsCheck):
        return {"type": check.type, "path": check.path}
    if isinstance(check, FileContainsCheck):
        return {"type": check.type, "path": check.path, "text": check.text}
    if isinstance(check, GlobExistsCheck):
        return {"type": check.type, "glob": check.glob, "minCount": check.min_count}
    if isinstance(check, TaskRunCheck):
        return {"type": check.type, "label": check.label, "timeoutMs": check.timeout_ms}
    if isinstance(check, UserConfirmCheck):
        return {"type": check.type, "question": check.question}
    return {"type": check.raw_type}


# ============================================================
# Decomposition
# ============================================================

@dataclass
class DecomposedTask:
    id: str
    instruction: str
    completion_criteria: str
    criteria_checks: List[CriterionCheck] = field(default_factory=list)
    order: int = 0

    @classmethod
    def from_dict(cls, data: dict, index: int = 0) -> "DecomposedTask":
        raw_checks = data.get("criteriaChecks")
        checks = []
        if isinstance(raw_checks, list):
            checks = [check_from_dict(c) for c in raw_checks if isinstance(c, dict)]
        return cls(
            id=str(data.get("id") or f"T{index + 1}"),
            instruction=str(data.get("instruction", "")),
            completion_criteria=str(data.get("completionCriteria", "")),
            criteria_checks=checks,
            order=_as_int(data.get("order"), 0),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instruction": self.instruction,
            "completionCriteria": self.completion_criteria,
            "criteriaChecks": [check_to_dict(c) for c in self.criteria_checks],
            "order": self.order,
        }


@dataclass
class Clarification:
    question: str
    why: str = ""


@dataclass
class DecompositionResult:
    tasks: List[DecomposedTask] = field(default_factory=list)
    clarifications: List[Clarification] = field(default_factory=list)

    @property
    def is_ambiguous(self) -> bool:
        return bool(self.clarifications) or not self.tasks


# ============================================================
# Verification
# ============================================================

@dataclass
class VerificationFailure:
    reason: str
    task_id: Optional[str] = None
    check: Optional[CriterionCheck] = None

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {}
        if self.task_id is not None:
            data["taskId"] = self.task_id
        if self.check is not None:
            data["check"] = check_to_dict(self.check)
        data["reason"] = self.reason
        return data


@dataclass
class VerificationReport:
    errors: int = 0
    failures: List[VerificationFailure] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict:
        return {
            "allPassed": self.all_passed,
            "errors": self.errors,
            "failures": [f.to_dict() for f in self.failures],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False)


# ============================================================
# Runtime state
# ============================================================

@dataclass
class TaskRunCacheEntry:
    ok: bool
    exit_code: Optional[int] = None
    error: Optional[str] = None
    ran_at: float = field(default_factory=time.time)


@dataclass
class RuntimeCache:
    task_runs: Dict[str, TaskRunCacheEntry] = field(default_factory=dict)
    verify_report: Optional[VerificationReport] = None


@dataclass
class LoopRuntime:
    iteration: int = 0
    cache: RuntimeCache = field(default_factory=RuntimeCache)

    def begin_iteration(self, iteration: int):
        self.iteration = iteration
        self.cache = RuntimeCache()


@dataclass
class ToolResult:
    ok: bool
    data: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {"ok": self.ok}
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


@dataclass
class LoopResult:
    state: LoopState
    iterations: int = 0
    last_failure: str = ""
    report: Optional[VerificationReport] = None

    @property
    def success(self) -> bool:
        return self.state == LoopState.DONE

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "iterations": self.iterations,
            "last_failure": self.last_failure,
            "report": self.report.to_dict() if self.report else None,
        }
