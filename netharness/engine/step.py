"""
netharness/engine/step.py
The unit of scripted work.

A Step offers four operations to the interpreter:

    run(interpreter)      start the work; may return an awaitable
    finish(continuation)  optional; True when already done, otherwise the
                          continuation is called exactly once later
    cleanup()             release everything the step owns; may return an
                          awaitable; called exactly once if run() was called
    traits(name, index)   borrowed, read-only view of part of the state

Subclasses keep their own state as plain attributes. Other steps never see
the concrete class; they go through interpreter.lookup(label).traits(...).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterator, Optional

from netharness.base.exceptions import HarnessError, ProcessExitFailure
from netharness.base.traits import TraitTable
from netharness.engine.async_context import AsyncContext
from netharness.engine.supervisor import ExitStatus, ProcessHandle

if TYPE_CHECKING:
    from netharness.engine.interpreter import Interpreter

logger = logging.getLogger(__name__)


class Step:
    """Base class for all script steps."""

    # When True the interpreter moves on right after run() even though the
    # step has a finish(); a later Finish step waits for it.
    asynchronous_finish: bool = False

    def __init__(self, label: str):
        if not label:
            raise ValueError("Step label must be a non-empty string")
        self.label = label
        self.interpreter: Optional["Interpreter"] = None
        self.started = False
        self.cleaned_up = False
        self.start_time: Optional[float] = None
        self.finish_time: Optional[float] = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.label!r}>"

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------
    def run(self, interpreter: "Interpreter") -> Optional[Awaitable[Any]]:
        raise NotImplementedError

    def finish(self, continuation: Callable[[], None]) -> bool:
        return True

    def cleanup(self) -> Optional[Awaitable[Any]]:
        return None

    def trait_table(self) -> TraitTable:
        return TraitTable(self.label)

    def traits(self, name: str, index: int = 0) -> Any:
        return self.trait_table().get(name, index)

    # ------------------------------------------------------------------
    # Interpreter hooks
    # ------------------------------------------------------------------
    @property
    def supports_finish(self) -> bool:
        return type(self).finish is not Step.finish

    def bind(self, interpreter: "Interpreter") -> None:
        self.interpreter = interpreter

    def cancel(self) -> None:
        """Called right before cleanup(); drops pending completion signals."""

    def iter_steps(self) -> Iterator["Step"]:
        """This step and every step nested in it, in script order."""
        yield self


class AsyncStep(Step):
    """A step that completes through its own AsyncContext."""

    def __init__(self, label: str, strict: bool = False):
        super().__init__(label)
        self.ac = AsyncContext(label, strict=strict)

    def bind(self, interpreter: "Interpreter") -> None:
        super().bind(interpreter)
        self.ac.bind(interpreter)

    def cancel(self) -> None:
        self.ac.cancel()

    def finish(self, continuation: Callable[[], None]) -> bool:
        return self.ac.attach(continuation)

    def trait_table(self) -> TraitTable:
        return super().trait_table().add("async-context", self.ac)

    def escalate(self, error: HarnessError) -> None:
        """
        Report a failure detected by this step. Goes through the context
        while the step is pending, straight to the interpreter once the step
        has already completed.
        """
        if error.label is None:
            error.label = self.label
        if self.ac.cancelled:
            logger.debug(f"[{self.label}] failure after cleanup ignored: {error}")
            return
        if not self.ac.fired:
            self.ac.fail(error)
        elif self.interpreter is not None:
            self.interpreter.fail(error, self.label)


class ExitPolicy(str, Enum):
    ESCALATE = "escalate"
    RECORD = "record"


class ProcessStep(AsyncStep):
    """
    An AsyncStep whose completion is tied to a supervised child process.
    Clean exit finishes the step; a failed or signalled exit is escalated
    to the interpreter unless the policy says to only record it.
    """

    def __init__(self, label: str, exit_policy: ExitPolicy = ExitPolicy.ESCALATE):
        super().__init__(label)
        self.exit_policy = exit_policy
        self.exit_error: Optional[ProcessExitFailure] = None

    def on_process_exit(self, handle: ProcessHandle, status: ExitStatus, returncode: Optional[int]) -> None:
        if status is ExitStatus.CLEAN:
            logger.debug(f"[{self.label}] {handle.path} exited cleanly")
            self.ac.finish()
            return
        error = ProcessExitFailure(handle.path, status, returncode, label=self.label)
        self.exit_error = error
        if self.exit_policy is ExitPolicy.ESCALATE:
            self.escalate(error)
        else:
            logger.warning(f"[{self.label}] recorded: {error}")
            self.ac.finish()
