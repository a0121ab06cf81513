"""
Command-surface parsing.

    /ralph-loop "<prompt>" --completion-promise "<phrase>" --max-iterations <N>

The command arrives as one free-text string (typed into a prompt box or passed
as a single CLI argument), so we tokenize it ourselves instead of relying on a
shell.
"""

import math
from typing import List, Optional

from ralph_errors import ValidationError
from ralph_models import LoopConfig

VERBS = ("/ralph-loop", "ralph-loop")

USAGE = '/ralph-loop "<prompt>" --completion-promise "DONE" --max-iterations 50'


def tokenize_args(raw: str) -> List[str]:
    """
    Split on whitespace, honouring "..." and '...' quoting.

    Inside quotes a backslash escapes the active quote character or another
    backslash; any other backslash is kept literally. A closed empty pair of
    quotes yields an empty token.
    """
    tokens: List[str] = []
    current = ""
    quoted = False
    quote: Optional[str] = None
    i = 0
    while i < len(raw):
        ch = raw[i]
        if quote:
            if ch == quote:
                quote = None
                i += 1
                continue
            if ch == "\\" and i + 1 < len(raw) and raw[i + 1] in (quote, "\\"):
                current += raw[i + 1]
                i += 2
                continue
            current += ch
            i += 1
            continue

        if ch in ('"', "'"):
            quote = ch
            quoted = True
        elif ch.isspace():
            if current or quoted:
                tokens.append(current)
                current = ""
                quoted = False
        else:
            current += ch
        i += 1

    if current or quoted:
        tokens.append(current)
    return tokens


def _parse_iterations(value: Optional[str]) -> int:
    try:
        number = float(value) if value is not None else 0.0
    except ValueError:
        return 0
    if not math.isfinite(number):
        return 0
    return max(0, int(math.floor(number)))


def _flag_value(tokens: List[str], i: int) -> Optional[str]:
    if i + 1 < len(tokens) and not tokens[i + 1].startswith("--"):
        return tokens[i + 1]
    return None


def parse_loop_tokens(tokens: List[str], default_max_iterations: Optional[int] = None) -> LoopConfig:
    """Validate already-tokenized arguments into a LoopConfig."""
    if tokens and tokens[0] in VERBS:
        tokens = tokens[1:]
    if not tokens or tokens[0].startswith("--"):
        raise ValidationError(f"Missing prompt. Example: {USAGE}")

    prompt = tokens[0]
    completion_promise = ""
    max_iterations = default_max_iterations or 0

    i = 1
    while i < len(tokens):
        t = tokens[i]
        if t in ("--completion-promise", "--max-iterations"):
            value = _flag_value(tokens, i)
            if t == "--completion-promise":
                completion_promise = value or ""
            else:
                max_iterations = _parse_iterations(value)
            # A following flag is never consumed as a value
            i += 1 if value is None else 2
            continue
        i += 1

    if not prompt.strip():
        raise ValidationError(f"Missing prompt. Example: {USAGE}")
    if not completion_promise:
        raise ValidationError("Missing --completion-promise (the exact-match exit phrase).")
    if max_iterations <= 0:
        raise ValidationError("Missing or invalid --max-iterations (must be a positive integer).")

    return LoopConfig(
        prompt=prompt,
        completion_promise=completion_promise,
        max_iterations=max_iterations,
    )


def parse_loop_command(raw: str, verb: Optional[str] = None,
                       default_max_iterations: Optional[int] = None) -> LoopConfig:
    """
    Parse a raw command line into a LoopConfig, raising ValidationError.

    ``verb`` names an extra leading token to skip (e.g. the CLI name the user
    typed); the built-in /ralph-loop verbs are always skipped.
    """
    tokens = tokenize_args(raw or "")
    if verb and tokens and tokens[0] == verb:
        tokens = tokens[1:]
    return parse_loop_tokens(tokens, default_max_iterations=default_max_iterations)
