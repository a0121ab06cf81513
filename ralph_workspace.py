"""
Workspace collaborators — file system, file search, diagnostics, human prompt.

The loop only ever talks to these through the small interfaces below, always
with workspace-relative forward-slash paths. The local implementations work
against a directory on disk.
"""

import os
import re
import logging
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatch
from pathlib import Path
from typing import Optional, List, Tuple, Iterator

logger = logging.getLogger(__name__)


_DRIVE_ROOT = re.compile(r"^[a-zA-Z]:/")


def sanitize_relative_path(p: str) -> Optional[str]:
    """
    Normalize a model-supplied path to a safe workspace-relative one.

    Returns None for empty input, absolute paths, drive-letter roots and any
    path with a '..' segment.
    """
    normalized = (p or "").replace("\\", "/").strip()
    if not normalized:
        return None
    if normalized.startswith("/") or _DRIVE_ROOT.match(normalized):
        return None
    if any(part == ".." for part in normalized.split("/")):
        return None
    return normalized


# ============================================================
# File system
# ============================================================

class LocalFileSystem:
    """FileSystem contract over a root directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        """Resolve path and ensure it stays within root. Raises ValueError on traversal."""
        full_path = (self.root / path).resolve()
        root_resolved = self.root.resolve()
        if full_path != root_resolved and root_resolved not in full_path.parents:
            raise ValueError(f"Path traversal blocked: '{path}' resolves outside the workspace")
        return full_path

    def stat(self, path: str) -> os.stat_result:
        return self._resolve(path).stat()

    def read(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def write(self, path: str, data: bytes):
        self._resolve(path).write_bytes(data)

    def create_dir(self, path: str):
        self._resolve(path).mkdir(parents=True, exist_ok=True)

    def delete(self, path: str):
        self._resolve(path).unlink()


# ============================================================
# File search
# ============================================================

def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """
    Translate a workspace glob to a regex over relative posix paths.

    Supports '**' (any number of segments), '*', '?', '[...]' and '{a,b}'.
    """
    i, out = 0, []
    while i < len(pattern):
        ch = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
            continue
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
            continue
        if ch == "*":
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        elif ch == "{":
            end = pattern.find("}", i)
            if end == -1:
                out.append(re.escape(ch))
            else:
                alternatives = pattern[i + 1:end].split(",")
                out.append("(?:" + "|".join(glob_to_regex(a).pattern[:-2] for a in alternatives) + ")")
                i = end + 1
                continue
        elif ch == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(ch))
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end + 1
                continue
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z")


def _is_excluded(rel: str, exclude: Optional[str]) -> bool:
    if not exclude:
        return False
    return fnmatch(rel, exclude) or fnmatch("/" + rel, exclude)


class LocalFileSearch:
    """FileSearch contract: walk the root, prune excluded dirs, match the glob."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _walk(self, exclude: Optional[str]) -> Iterator[str]:
        for dirpath, dirnames, filenames in os.walk(self.root):
            rel_dir = Path(dirpath).relative_to(self.root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir + "/"
            dirnames[:] = sorted(
                d for d in dirnames
                if d != ".git" and not _is_excluded(f"{rel_dir}{d}/", exclude)
            )
            for name in sorted(filenames):
                rel = f"{rel_dir}{name}"
                if not _is_excluded(rel, exclude):
                    yield rel

    def find(self, glob: str, exclude: Optional[str] = None, limit: Optional[int] = None) -> List[str]:
        regex = glob_to_regex(glob.strip() or "**/*")
        matches: List[str] = []
        for rel in self._walk(exclude):
            if regex.match(rel):
                matches.append(rel)
                if limit is not None and len(matches) >= limit:
                    break
        return matches


# ============================================================
# Diagnostics
# ============================================================

class Severity(Enum):
    ERROR = "Error"
    WARNING = "Warning"
    INFORMATION = "Information"
    HINT = "Hint"


@dataclass
class Diagnostic:
    severity: Severity
    message: str
    range: str = "1:1-1:1"  # "startLine:startCol-endLine:endCol", 1-based
    source: Optional[str] = None
    code: Optional[str] = None


def count_errors(all_diagnostics: List[Tuple[str, List[Diagnostic]]]) -> int:
    return sum(
        1 for _, items in all_diagnostics for d in items if d.severity == Severity.ERROR
    )


class PythonSyntaxDiagnostics:
    """
    Diagnostics contract backed by compiling every .py file in the workspace.

    Syntax errors become error-severity diagnostics; files that compile
    cleanly contribute nothing.
    """

    SKIP_DIRS = {".git", "__pycache__", "venv", ".venv", "node_modules", ".pytest_cache"}

    def __init__(self, root: Path):
        self.root = Path(root)

    def _python_files(self) -> Iterator[Path]:
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if d not in self.SKIP_DIRS)
            for name in sorted(filenames):
                if name.endswith(".py"):
                    yield Path(dirpath) / name

    def _check_file(self, full_path: Path) -> List[Diagnostic]:
        try:
            source = full_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return [Diagnostic(Severity.WARNING, f"Could not read file: {e}", source="python")]
        try:
            compile(source, str(full_path), "exec", dont_inherit=True)
        except SyntaxError as e:
            line = e.lineno or 1
            col = e.offset or 1
            end_line = getattr(e, "end_lineno", None) or line
            end_col = getattr(e, "end_offset", None) or col
            return [Diagnostic(
                Severity.ERROR, e.msg or "invalid syntax",
                range=f"{line}:{col}-{end_line}:{end_col}",
                source="python", code=type(e).__name__,
            )]
        except ValueError as e:  # e.g. null bytes in source
            return [Diagnostic(Severity.ERROR, str(e), source="python", code="ValueError")]
        return []

    def get_all(self) -> List[Tuple[str, List[Diagnostic]]]:
        results = []
        for full_path in self._python_files():
            items = self._check_file(full_path)
            if items:
                results.append((full_path.relative_to(self.root).as_posix(), items))
        return results

    def get_for(self, path: str) -> List[Diagnostic]:
        full_path = self.root / path
        if not full_path.is_file() or full_path.suffix != ".py":
            return []
        return self._check_file(full_path)


# ============================================================
# Human prompt
# ============================================================

class ConsolePrompt:
    """Blocking yes/no question on the terminal."""

    def ask(self, question: str) -> bool:
        try:
            answer = input(f"\n❓ {question} [y/N] ")
        except EOFError:
            logger.warning("No terminal input available — treating confirmation as declined")
            return False
        return answer.strip().lower() in ("y", "yes")


class FixedAnswerPrompt:
    """Answers every question the same way (unattended runs)."""

    def __init__(self, answer: bool):
        self.answer = answer

    def ask(self, question: str) -> bool:
        logger.info(f"Auto-{'approved' if self.answer else 'declined'} confirmation: {question}")
        return self.answer


def make_prompt(mode: str):
    if mode == "yes":
        return FixedAnswerPrompt(True)
    if mode == "no":
        return FixedAnswerPrompt(False)
    return ConsolePrompt()


# ============================================================
# Workspace bundle
# ============================================================

@dataclass
class Workspace:
    """The collaborators the loop needs, rooted at one directory."""
    root: Path
    fs: LocalFileSystem
    search: LocalFileSearch
    diagnostics: PythonSyntaxDiagnostics
    prompt: object  # anything with ask(question) -> bool

    @classmethod
    def local(cls, root: Path, confirm_mode: str = "console") -> "Workspace":
        root = Path(root)
        return cls(
            root=root,
            fs=LocalFileSystem(root),
            search=LocalFileSearch(root),
            diagnostics=PythonSyntaxDiagnostics(root),
            prompt=make_prompt(confirm_mode),
        )

    def write_text(self, relative_path: str, content: str) -> str:
        """Whole-file overwrite of a workspace file, creating parent dirs."""
        safe = sanitize_relative_path(relative_path)
        if not safe:
            raise ValueError(f"Unsafe path: {relative_path}")
        parts = [p for p in safe.split("/") if p]
        if len(parts) > 1:
            self.fs.create_dir("/".join(parts[:-1]))
        self.fs.write(safe, content.encode("utf-8"))
        return safe

    def read_text(self, relative_path: str) -> str:
        safe = sanitize_relative_path(relative_path)
        if not safe:
            raise ValueError(f"Unsafe path: {relative_path}")
        return self.fs.read(safe).decode("utf-8")
