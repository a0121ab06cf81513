"""
Configuration for the Ralph loop.

Defines the chat-model endpoint, loop limits, artifact locations and the
named tasks the local task runner can execute. Defaults come from the
environment; a JSON file can override any of them.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict

from ralph_errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class ModelConfig:
    """Configuration for a model endpoint."""
    name: str
    provider: str  # "ollama" or "anthropic"
    model_id: str
    endpoint: Optional[str] = None  # HTTP base URL for ollama
    api_key_env: Optional[str] = None  # env var name for API key
    temperature: float = 0.0
    max_tokens: int = 16384
    timeout_seconds: int = 900


@dataclass
class Config:
    """Main configuration container."""
    model: ModelConfig
    max_tool_rounds: int = 30
    default_max_iterations: Optional[int] = None  # used when the command omits --max-iterations
    scratch_file: str = ".claude/ralph-loop.local.md"
    plan_file: str = "ralph-loop.plan.md"
    clarifications_file: str = "ralph-loop.clarifications.md"
    glob_scan_limit: int = 500
    exclude_glob: str = "**/node_modules/**"
    default_task_timeout_ms: int = 5 * 60_000
    min_task_timeout_ms: int = 1_000
    confirm_mode: str = "console"  # "console", "yes" or "no"
    tasks: Dict[str, str] = field(default_factory=dict)  # label -> shell command


CONFIRM_MODES = ("console", "yes", "no")


def default_config() -> Config:
    """
    Default configuration: a local Ollama instance, overridable via env.

      RALPH_MODEL_PROVIDER  ollama | anthropic
      RALPH_MODEL_ID        model name on that provider
      OLLAMA_URL            Ollama base URL
      RALPH_CONFIRM_MODE    console | yes | no
    """
    provider = os.environ.get("RALPH_MODEL_PROVIDER", "ollama")
    if provider == "anthropic":
        model = ModelConfig(
            name="Anthropic",
            provider="anthropic",
            model_id=os.environ.get("RALPH_MODEL_ID", "claude-sonnet-4-5"),
            api_key_env="ANTHROPIC_API_KEY",
            max_tokens=8192,
            timeout_seconds=300,
        )
    else:
        model = ModelConfig(
            name="Ollama (local)",
            provider="ollama",
            endpoint=os.environ.get("OLLAMA_URL", "http://127.0.0.1:11434"),
            model_id=os.environ.get("RALPH_MODEL_ID", "qwen2.5-coder:14b"),
        )

    return Config(
        model=model,
        confirm_mode=os.environ.get("RALPH_CONFIRM_MODE", "console"),
    )


def load_config(config_path: Optional[Path] = None) -> Config:
    """Load config from JSON file, falling back to defaults."""
    config = default_config()

    if not config_path:
        return config
    if not config_path.exists():
        logger.warning(f"Config file not found: {config_path} (using defaults)")
        return config

    try:
        with open(config_path, encoding="utf-8") as f:
            overrides = json.load(f)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid config file {config_path}: {e}")
    if not isinstance(overrides, dict):
        raise ValidationError(f"Config file {config_path} must hold a JSON object")

    mo = overrides.get("model")
    if isinstance(mo, dict):
        for key in ("name", "provider", "model_id", "endpoint", "api_key_env",
                    "temperature", "max_tokens", "timeout_seconds"):
            if key in mo:
                setattr(config.model, key, mo[key])

    for key in ("max_tool_rounds", "default_max_iterations", "scratch_file", "plan_file",
                "clarifications_file", "glob_scan_limit", "exclude_glob",
                "default_task_timeout_ms", "min_task_timeout_ms", "confirm_mode"):
        if key in overrides:
            setattr(config, key, overrides[key])

    if "tasks" in overrides:
        tasks = overrides["tasks"]
        if not isinstance(tasks, dict):
            raise ValidationError("'tasks' must map task labels to shell commands")
        config.tasks = {str(label): str(cmd) for label, cmd in tasks.items()}

    if config.confirm_mode not in CONFIRM_MODES:
        raise ValidationError(
            f"Unknown confirm_mode '{config.confirm_mode}' (expected one of {', '.join(CONFIRM_MODES)})"
        )

    return config
