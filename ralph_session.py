"""
Session artifacts for the Ralph loop.

Key files (workspace-relative, configurable):
- .claude/ralph-loop.local.md: scratch record, rewritten every iteration,
  removed whenever the loop stops
- ralph-loop.plan.md: the ordered task plan
- ralph-loop.clarifications.md: questions for the user when the
  instruction was too ambiguous to plan
"""

import os
import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

from ralph_config import Config
from ralph_models import DecomposedTask, DecompositionResult, LoopConfig
from ralph_workspace import Workspace

logger = logging.getLogger(__name__)


class SessionManager:
    """Writes and removes the loop's on-disk artifacts."""

    def __init__(self, workspace: Workspace, config: Config):
        self.workspace = workspace
        self.config = config

    @property
    def scratch_path(self):
        return self.workspace.root / self.config.scratch_file

    def has_scratch_record(self) -> bool:
        return self.scratch_path.exists()

    def write_scratch(self, loop_config: LoopConfig, iteration: int):
        content = "\n".join([
            "# ralph-loop.local",
            "",
            f"startedAt: {datetime.now(timezone.utc).isoformat()}",
            f"iteration: {iteration}",
            f"maxIterations: {loop_config.max_iterations}",
            f"completionPromise: {json.dumps(loop_config.completion_promise, ensure_ascii=False)}",
            f"pid: {os.getpid()}",
            "",
            "prompt:",
            "```",
            loop_config.prompt,
            "```",
            "",
        ])
        self.workspace.write_text(self.config.scratch_file, content)
        logger.debug(f"Scratch record saved: iteration={iteration}")

    def scratch_pid(self) -> Optional[int]:
        """Process id of the loop that owns the scratch record, if recorded."""
        try:
            content = self.scratch_path.read_text(encoding="utf-8")
        except OSError:
            return None
        for line in content.splitlines():
            if line.startswith("pid: "):
                try:
                    return int(line[len("pid: "):].strip())
                except ValueError:
                    return None
        return None

    def delete_scratch(self):
        try:
            self.workspace.fs.delete(self.config.scratch_file)
            logger.debug("Scratch record removed")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove scratch record: {e}")

    def write_clarifications(self, loop_config: LoopConfig, decomposition: DecompositionResult) -> str:
        lines = [
            "# Ralph Loop — Information Needed",
            "",
            "Original instruction:",
            "",
            "```",
            loop_config.prompt,
            "```",
            "",
            "## Clarifications",
        ]
        for i, c in enumerate(decomposition.clarifications, start=1):
            lines.append(f"{i}. {c.question}\n   - why: {c.why}")
        if not decomposition.tasks:
            lines.append("")
            lines.append("_The instruction could not be split into any verifiable task._")
        lines += ["", "Add the missing details, then run the command again.", ""]
        return self.workspace.write_text(self.config.clarifications_file, "\n".join(lines))

    def write_plan(self, loop_config: LoopConfig, tasks: List[DecomposedTask]) -> str:
        lines = [
            "# Ralph Loop — Execution Plan",
            "",
            "## Original instruction",
            "```",
            loop_config.prompt,
            "```",
            "",
            "## completion-promise (exact string match)",
            "```",
            loop_config.completion_promise,
            "```",
            "",
            "## Tasks (executed by order)",
        ]
        for t in tasks:
            lines.append(
                f"- [{t.id}] (order={t.order})\n"
                f"  - instruction: {t.instruction}\n"
                f"  - criteria: {t.completion_criteria}"
            )
        lines.append("")
        return self.workspace.write_text(self.config.plan_file, "\n".join(lines))
