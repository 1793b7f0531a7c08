"""
netharness/base/exceptions.py
Error taxonomy for the test interpreter.

Every error raised by the engine carries an ErrorKind and, when known,
the label of the step that detected the problem. The interpreter uses the
label to report where a run failed.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    UNKNOWN_LABEL = "UnknownLabel"
    NO_SUCH_TRAIT = "NoSuchTrait"
    SPAWN_FAILED = "SpawnFailed"
    PROCESS_EXIT_FAILURE = "ProcessExitFailure"
    TIMEOUT = "Timeout"
    MALFORMED_MESSAGE = "MalformedMessage"
    DOUBLE_SIGNAL = "DoubleSignal"
    STEP_FAILED = "StepFailed"


class SpawnFailure(str, Enum):
    NOT_FOUND = "not-found"
    INSUFFICIENT_PRIVILEGE = "insufficient-privilege"


class HarnessError(Exception):
    """Base exception for all netharness errors."""

    kind: ErrorKind = ErrorKind.STEP_FAILED

    def __init__(self, message: str, label: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.label = label

    def __str__(self) -> str:
        if self.label:
            return f"{self.kind.value} at `{self.label}': {self.message}"
        return f"{self.kind.value}: {self.message}"


class UnknownLabelError(HarnessError):
    """Raised when a label does not name a step that already ran."""
    kind = ErrorKind.UNKNOWN_LABEL

    def __init__(self, target: str, label: Optional[str] = None):
        super().__init__(f"no executed step labelled `{target}'", label)
        self.target = target


class NoSuchTraitError(HarnessError):
    """Raised when a step does not offer the requested trait."""
    kind = ErrorKind.NO_SUCH_TRAIT

    def __init__(self, name: str, index: int = 0, label: Optional[str] = None):
        super().__init__(f"no trait `{name}'[{index}]", label)
        self.name = name
        self.index = index


class SpawnFailedError(HarnessError):
    """Raised before spawning when a helper binary cannot be executed."""
    kind = ErrorKind.SPAWN_FAILED

    def __init__(self, path: str, reason: SpawnFailure, label: Optional[str] = None):
        super().__init__(f"{path}: {reason.value}", label)
        self.path = path
        self.reason = reason


class ProcessExitFailure(HarnessError):
    """Raised when a supervised child exits nonzero or by signal."""
    kind = ErrorKind.PROCESS_EXIT_FAILURE

    def __init__(self, path: str, status: Any, returncode: Optional[int], label: Optional[str] = None):
        super().__init__(f"{path} exited {getattr(status, 'value', status)} (code {returncode})", label)
        self.path = path
        self.status = status
        self.returncode = returncode


class HarnessTimeoutError(HarnessError):
    kind = ErrorKind.TIMEOUT


class MalformedMessageError(HarnessError):
    """Raised for an inbound message no handler accepts."""
    kind = ErrorKind.MALFORMED_MESSAGE

    def __init__(self, message: str, tag: Optional[int] = None, label: Optional[str] = None):
        super().__init__(message, label)
        self.tag = tag


class DoubleSignalError(HarnessError):
    kind = ErrorKind.DOUBLE_SIGNAL


class StepFailedError(HarnessError):
    kind = ErrorKind.STEP_FAILED
