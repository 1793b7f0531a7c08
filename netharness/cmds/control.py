"""
netharness/cmds/control.py
Steps that shape control flow rather than touching the network.

- Batch: a group of steps run in order as one script entry
- make_unblocking / Finish: let a long step run in the background and
  join it later
- BlockUntilExternalTrigger: wait until code outside the script says go
- Sleep: wait a fixed time
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Iterator, List, Optional, Sequence

from netharness.base.exceptions import HarnessTimeoutError, StepFailedError
from netharness.base.traits import TraitTable
from netharness.engine.step import AsyncStep, Step

if TYPE_CHECKING:
    from netharness.engine.interpreter import Interpreter

logger = logging.getLogger(__name__)


class Batch(Step):
    """
    Run nested steps in order inside one script entry. Nested labels take
    part in lookup like top-level ones.
    """

    def __init__(self, label: str, steps: Sequence[Step]):
        super().__init__(label)
        self.steps: List[Step] = list(steps)
        self.completed = 0

    async def run(self, interpreter: "Interpreter") -> None:
        for step in self.steps:
            if interpreter.failed:
                return
            await interpreter.execute(step)
            if not interpreter.failed:
                self.completed += 1
        logger.debug(f"[{self.label}] batch of {len(self.steps)} done")

    def iter_steps(self) -> Iterator[Step]:
        yield self
        for step in self.steps:
            yield from step.iter_steps()

    def trait_table(self) -> TraitTable:
        return super().trait_table().add("batch-steps", tuple(self.steps))


def make_unblocking(step: Step) -> Step:
    """
    Let the script move on right after `step`'s run(). Its completion is
    picked up later by a Finish step.
    """
    if not step.supports_finish:
        raise ValueError(f"step `{step.label}' has no finish() to wait for later")
    step.asynchronous_finish = True
    return step


class Finish(AsyncStep):
    """Wait for an unblocked step to complete, at most `timeout` seconds."""

    def __init__(self, label: str, async_label: str, timeout: float):
        super().__init__(label)
        self.async_label = async_label
        self.timeout = timeout
        self._timer: Optional[asyncio.TimerHandle] = None

    def run(self, interpreter: "Interpreter") -> None:
        target = interpreter.lookup(self.async_label)
        if not target.supports_finish:
            raise StepFailedError(f"step `{self.async_label}' cannot be finished", label=self.label)
        if target.finish(self._target_done):
            self.ac.finish()
            return
        self._timer = interpreter.loop.call_later(self.timeout, self._on_timeout)

    def _target_done(self) -> None:
        self._cancel_timer()
        self.ac.finish()

    def _on_timeout(self) -> None:
        self._timer = None
        logger.error(f"[{self.label}] `{self.async_label}' did not finish within {self.timeout}s")
        self.escalate(
            HarnessTimeoutError(f"`{self.async_label}' did not finish within {self.timeout}s", label=self.label)
        )

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def cleanup(self) -> None:
        self._cancel_timer()


class BlockUntilExternalTrigger(AsyncStep):
    """Completes once trigger() is called, before or after the step runs."""

    def run(self, interpreter: "Interpreter") -> None:
        if self.ac.fired:
            logger.debug(f"[{self.label}] already triggered")

    def trigger(self) -> bool:
        logger.debug(f"[{self.label}] triggered")
        return self.ac.finish()


class Sleep(AsyncStep):
    def __init__(self, label: str, seconds: float):
        super().__init__(label)
        self.seconds = seconds
        self._timer: Optional[asyncio.TimerHandle] = None

    def run(self, interpreter: "Interpreter") -> None:
        self._timer = interpreter.loop.call_later(self.seconds, self.ac.finish)

    def cleanup(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
