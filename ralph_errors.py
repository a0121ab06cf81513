"""
Error taxonomy for the Ralph loop.

Every error the loop raises on purpose derives from RalphLoopError so the CLI
can tell "expected" failures from crashes.
"""


class RalphLoopError(Exception):
    """Base class for all loop errors."""


class ValidationError(RalphLoopError):
    """Malformed command or config. Raised before any run state exists."""


class LoopAlreadyRunningError(RalphLoopError):
    """A second start was requested while a run is active."""


class DecompositionError(RalphLoopError):
    """The decomposer could not parse the model's JSON."""


class TransportError(RalphLoopError):
    """The chat-model call failed (connection, timeout, HTTP error)."""


class ToolExecutionError(RalphLoopError):
    """A tool invocation failed."""


class CompatEditError(RalphLoopError):
    """An <edits> block contained an unsafe path or could not be written."""


class VerificationCheckError(RalphLoopError):
    """A check could not be evaluated (unreadable file, bad glob...)."""


class TaskTimeoutError(RalphLoopError, TimeoutError):
    """An external task exceeded its wall-clock budget."""


class CancellationError(RalphLoopError):
    """The active run was cancelled."""
