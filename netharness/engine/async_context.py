"""
One-shot completion signal for steps that cannot finish synchronously.

PURPOSE:
A step that waits on something external (a child exiting, a peer message,
a timer) owns an AsyncContext. Whatever code path detects completion calls
finish() or fail(); the first call wins and later ones are no-ops. The
stored continuation is never called inline: it is scheduled on the event
loop so the detecting callback returns before the interpreter advances.

CANCELLATION:
The interpreter cancels the context right before the owning step's
cleanup. After that, signals are ignored and the continuation is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Callable, Optional

from netharness.base.exceptions import DoubleSignalError, HarnessError

if TYPE_CHECKING:
    from netharness.engine.interpreter import Interpreter

logger = logging.getLogger(__name__)

Continuation = Callable[[], None]


class AsyncContext:
    """Write-once completion flag with a deferred continuation."""

    def __init__(self, label: str, strict: bool = False):
        self.label = label
        self.strict = strict
        self.fired = False
        self.cancelled = False
        self.error: Optional[HarnessError] = None
        self._continuation: Optional[Continuation] = None
        self._interpreter: Optional["Interpreter"] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._deferred = False

    def bind(self, interpreter: "Interpreter") -> None:
        """Attach to the interpreter that will run the owning step."""
        self._interpreter = interpreter
        self._loop = interpreter.loop
        if self._deferred and self._loop is not None:
            self._deferred = False
            self._loop.call_soon(self._dispatch)

    @property
    def finished(self) -> bool:
        return self.fired and self.error is None

    @property
    def failed(self) -> bool:
        return self.fired and self.error is not None

    def attach(self, continuation: Continuation) -> bool:
        """
        finish() protocol for the owning step.

        Returns True if the context already completed successfully.
        Otherwise stores `continuation`, which is invoked exactly once when
        finish() is later signalled (and never after cancel()).
        """
        if self.cancelled:
            return False
        if self.fired:
            return self.error is None
        self._continuation = continuation
        return False

    def finish(self) -> bool:
        """Signal success. Returns False if this signal was ignored."""
        return self._signal(None)

    def fail(self, error: HarnessError) -> bool:
        """Signal failure; the interpreter's fail() runs on the next loop turn."""
        if error.label is None:
            error.label = self.label
        return self._signal(error)

    def cancel(self) -> None:
        if not self.cancelled:
            logger.debug(f"[AsyncContext:{self.label}] cancelled")
        self.cancelled = True
        self._continuation = None

    def _signal(self, error: Optional[HarnessError]) -> bool:
        if self.cancelled:
            logger.debug(f"[AsyncContext:{self.label}] signal after cancel ignored")
            return False
        if self.fired:
            if self.strict:
                raise DoubleSignalError("context signalled twice", label=self.label)
            logger.debug(f"[AsyncContext:{self.label}] already fired, signal ignored")
            return False
        self.fired = True
        self.error = error
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                # signalled while the script is still being built
                logger.debug(f"[AsyncContext:{self.label}] signalled before binding, dispatch deferred")
                self._deferred = True
                return True
        loop.call_soon(self._dispatch)
        return True

    def _dispatch(self) -> None:
        if self.cancelled:
            return
        if self.error is not None:
            if self._interpreter is not None:
                self._interpreter.fail(self.error, self.label)
            else:
                logger.error(f"[AsyncContext:{self.label}] failure with no interpreter bound: {self.error}")
            return
        continuation, self._continuation = self._continuation, None
        if continuation is not None:
            continuation()
