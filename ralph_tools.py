"""
The fixed tool registry offered to the model every iteration.

Tools never raise into the session: any failure comes back as
ToolResult(ok=False, error=...), which the model sees as JSON.
"""

import re
import logging
import functools
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from ralph_config import Config
from ralph_errors import ToolExecutionError
from ralph_events import CancellationToken
from ralph_models import DecomposedTask, LoopRuntime, ToolResult
from ralph_tasks import clamp_timeout_ms, run_task_cached
from ralph_verifier import Verifier
from ralph_workspace import Workspace, sanitize_relative_path

logger = logging.getLogger(__name__)

READ_DEFAULT_MAX_CHARS = 20_000
READ_MIN_MAX_CHARS = 200
LIST_DEFAULT_RESULTS = 50
LIST_MAX_RESULTS = 200
SEARCH_CANDIDATE_FILES = 2_000
SEARCH_MAX_FILES = 200
SEARCH_MAX_CHARS_PER_FILE = 200_000
SEARCH_LINE_CLIP = 300
DIAGNOSTIC_ITEMS_LIMIT = 200


@dataclass
class PrivateTool:
    name: str
    description: str
    input_schema: dict
    invoke: Callable[[Dict[str, Any], CancellationToken], ToolResult]

    def to_spec(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


@dataclass
class ToolContext:
    workspace: Workspace
    task_runner: Any
    verifier: Verifier
    config: Config
    tasks_provider: Callable[[], List[DecomposedTask]]
    runtime_provider: Callable[[], LoopRuntime]


def _guarded(fn):
    """Turn any exception raised by a tool into a failed ToolResult."""
    @functools.wraps(fn)
    def wrapper(input_: Dict[str, Any], token: CancellationToken) -> ToolResult:
        try:
            return fn(input_ or {}, token)
        except Exception as e:
            return ToolResult(ok=False, error=str(e) or type(e).__name__)
    return wrapper


def _int_arg(value: Any, default: int, lo: int, hi: int = None) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    try:
        result = max(lo, int(value))
    except (OverflowError, ValueError):
        return default
    return min(hi, result) if hi is not None else result


def _safe_path(raw: Any) -> str:
    safe = sanitize_relative_path(str(raw or ""))
    if not safe:
        raise ToolExecutionError("invalid path")
    return safe


def diagnostics_items(workspace: Workspace, path: str = None) -> List[dict]:
    if path:
        pairs = [(path, workspace.diagnostics.get_for(path))]
    else:
        pairs = workspace.diagnostics.get_all()
    return [
        {
            "path": p,
            "severity": d.severity.value,
            "message": d.message,
            "range": d.range,
            "source": d.source,
            "code": d.code,
        }
        for p, items in pairs for d in items
    ]


def create_private_tools(ctx: ToolContext) -> List[PrivateTool]:
    ws = ctx.workspace
    config = ctx.config

    @_guarded
    def list_tasks(input_, token):
        return ToolResult(ok=True, data={"tasks": [t.to_dict() for t in ctx.task_runner.list()]})

    @_guarded
    def run_task(input_, token):
        label = str(input_.get("label") or "").strip()
        if not label:
            raise ToolExecutionError("label is required")
        timeout_ms = clamp_timeout_ms(
            input_.get("timeoutMs"), config.default_task_timeout_ms, config.min_task_timeout_ms,
        )
        runtime = ctx.runtime_provider()
        run = run_task_cached(ctx.task_runner, runtime, label, timeout_ms, token,
                              force=bool(input_.get("force")))
        if not run.ok:
            return ToolResult(ok=False, error=run.error)
        return ToolResult(ok=True, data={
            "label": label, "exitCode": run.exit_code, "cachedAtIteration": runtime.iteration,
        })

    @_guarded
    def verify(input_, token):
        runtime = ctx.runtime_provider()
        if not input_.get("force") and runtime.cache.verify_report is not None:
            report = runtime.cache.verify_report
        else:
            report = ctx.verifier.verify_tasks(ctx.tasks_provider(), token, runtime)
            runtime.cache.verify_report = report
        return ToolResult(ok=True, data={**report.to_dict(), "cachedAtIteration": runtime.iteration})

    @_guarded
    def read_file(input_, token):
        safe = _safe_path(input_.get("path"))
        text = ws.fs.read(safe).decode("utf-8", errors="replace")
        start_line = _int_arg(input_.get("startLine"), 1, 1)
        end_line = input_.get("endLine")
        if start_line != 1 or end_line is not None:
            lines = re.split(r"\r?\n", text)
            end = _int_arg(end_line, len(lines), start_line)
            text = "\n".join(lines[start_line - 1:end])
        max_chars = _int_arg(input_.get("maxChars"), READ_DEFAULT_MAX_CHARS, READ_MIN_MAX_CHARS)
        if len(text) > max_chars:
            text = text[:max_chars] + "\n\n...<truncated>..."
        return ToolResult(ok=True, data={"path": safe, "content": text})

    @_guarded
    def write_file(input_, token):
        safe = _safe_path(input_.get("path"))
        content = str(input_.get("content") or "")
        ws.write_text(safe, content)
        logger.debug(f"  TOOL write_file: {safe} ({len(content)} chars)")
        return ToolResult(ok=True, data={"path": safe, "bytes": len(content)})

    @_guarded
    def list_files(input_, token):
        glob = str(input_.get("glob") or "**/*")
        max_results = _int_arg(input_.get("maxResults"), LIST_DEFAULT_RESULTS, 1, LIST_MAX_RESULTS)
        files = ws.search.find(glob, config.exclude_glob, max_results)
        return ToolResult(ok=True, data={"glob": glob, "files": files})

    @_guarded
    def search(input_, token):
        query = str(input_.get("query") or "").strip()
        if not query:
            raise ToolExecutionError("empty query")
        is_regex = bool(input_.get("isRegex"))
        max_results = _int_arg(input_.get("maxResults"), LIST_DEFAULT_RESULTS, 1, LIST_MAX_RESULTS)
        include = input_.get("includePattern")
        include = include.strip() if isinstance(include, str) and include.strip() else "**/*"
        try:
            regex = re.compile(query) if is_regex else None
        except re.error as e:
            raise ToolExecutionError(f"invalid regex: {e}")

        files = ws.search.find(include, config.exclude_glob, SEARCH_CANDIDATE_FILES)[:SEARCH_MAX_FILES]
        results = []
        for path in files:
            if len(results) >= max_results:
                break
            try:
                text = ws.fs.read(path).decode("utf-8")
            except (OSError, ValueError):
                continue
            text = text[:SEARCH_MAX_CHARS_PER_FILE]
            for i, line in enumerate(re.split(r"\r?\n", text), start=1):
                if len(results) >= max_results:
                    break
                if (regex.search(line) if regex else query in line):
                    results.append({"path": path, "line": i, "text": line[:SEARCH_LINE_CLIP]})

        return ToolResult(ok=True, data={
            "query": query, "isRegex": is_regex, "includePattern": include,
            "scannedFiles": len(files), "results": results,
        })

    @_guarded
    def get_diagnostics(input_, token):
        raw_path = input_.get("path")
        path = None
        if isinstance(raw_path, str) and raw_path.strip():
            path = _safe_path(raw_path)
        items = diagnostics_items(ws, path)
        return ToolResult(ok=True, data={"count": len(items), "items": items[:DIAGNOSTIC_ITEMS_LIMIT]})

    return [
        PrivateTool(
            name="list_tasks",
            description="List the named tasks that can be run for verification (build/test/...). Input: {}",
            input_schema={"type": "object", "properties": {}},
            invoke=list_tasks,
        ),
        PrivateTool(
            name="run_task",
            description="Run a named task and return its exit code (cached within the iteration). "
                        "Input: {label, timeoutMs?, force?}",
            input_schema={
                "type": "object",
                "properties": {
                    "label": {"type": "string"},
                    "timeoutMs": {"type": "number"},
                    "force": {"type": "boolean"},
                },
                "required": ["label"],
            },
            invoke=run_task,
        ),
        PrivateTool(
            name="verify",
            description="Run the acceptance verifier (cached within the iteration) and report whether "
                        "all criteriaChecks pass. Input: {force?}",
            input_schema={"type": "object", "properties": {"force": {"type": "boolean"}}},
            invoke=verify,
        ),
        PrivateTool(
            name="read_file",
            description="Read a workspace file. Input: {path, startLine?, endLine?, maxChars?}",
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "startLine": {"type": "number"},
                    "endLine": {"type": "number"},
                    "maxChars": {"type": "number"},
                },
                "required": ["path"],
            },
            invoke=read_file,
        ),
        PrivateTool(
            name="write_file",
            description="Write a workspace file (whole-file overwrite). Input: {path, content}",
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "content": {"type": "string"},
                },
                "required": ["path", "content"],
            },
            invoke=write_file,
        ),
        PrivateTool(
            name="list_files",
            description="List workspace files matching a glob. Input: {glob, maxResults?}",
            input_schema={
                "type": "object",
                "properties": {
                    "glob": {"type": "string"},
                    "maxResults": {"type": "number"},
                },
                "required": ["glob"],
            },
            invoke=list_files,
        ),
        PrivateTool(
            name="search",
            description="Search workspace text. Input: {query, isRegex?, maxResults?, includePattern?}",
            input_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "isRegex": {"type": "boolean"},
                    "maxResults": {"type": "number"},
                    "includePattern": {"type": "string"},
                },
                "required": ["query"],
            },
            invoke=search,
        ),
        PrivateTool(
            name="get_diagnostics",
            description="Get workspace diagnostics (errors/warnings). Input: {path?}",
            input_schema={"type": "object", "properties": {"path": {"type": "string"}}},
            invoke=get_diagnostics,
        ),
    ]


def find_tool(tools: List[PrivateTool], name: str) -> PrivateTool:
    for tool in tools:
        if tool.name == name:
            return tool
    raise KeyError(name)
