"""
netharness/engine/interpreter.py
Sequential driver for a script of steps.

PURPOSE:
The interpreter walks an ordered list of steps with one cursor. Each step's
run() is called once; the interpreter then waits for the step to complete
(run returning, finish() reporting done, or the step's continuation firing)
before moving on. A single pending step may itself wait on several external
events at once; the interpreter only cares about its completion.

FAILURE:
fail() may be called from anywhere (a step, an exit watcher, a message
handler, the watchdog). The first call wins. The interpreter stops waiting
on the in-flight step and unwinds: cleanup() on every started step in
reverse start order, then any child process still alive is reaped.

USAGE:
    from netharness.engine.interpreter import run, end

    exit_code = run([NetjailStart("netjail-start", "2", "1"), ..., end()], timeout=60)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from itertools import takewhile
from typing import Any, Iterable, List, Optional

from netharness.base.config import HarnessConfig, get_config
from netharness.base.exceptions import (
    HarnessError,
    HarnessTimeoutError,
    StepFailedError,
    UnknownLabelError,
)
from netharness.engine.step import Step
from netharness.engine.supervisor import ProcessSupervisor
from netharness.utils.async_helpers import cancel_and_wait

logger = logging.getLogger(__name__)


class _EndMarker:
    """Script terminator. Everything after it is ignored."""

    def __repr__(self) -> str:
        return "END"


END = _EndMarker()


def end() -> _EndMarker:
    return END


def script_steps(steps: Iterable[Any]) -> List[Step]:
    """Steps up to (not including) the END marker."""
    return list(takewhile(lambda s: s is not END, steps))


@dataclass
class RunResult:
    ok: bool
    error: Optional[HarnessError] = None
    failed_label: Optional[str] = None
    steps_started: int = 0

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


class Interpreter:
    """Runs one script once. Create a new instance for every run."""

    def __init__(
        self,
        steps: Iterable[Any],
        timeout: Optional[float] = None,
        config: Optional[HarnessConfig] = None,
    ):
        self.config = config or get_config()
        self.steps: List[Step] = script_steps(steps)
        self.timeout = self.config.default_timeout_seconds if timeout is None else timeout
        self.supervisor = ProcessSupervisor(self.config.process)
        self.loop: Optional[asyncio.AbstractEventLoop] = None

        self.failed = False
        self.error: Optional[HarnessError] = None
        self.failed_label: Optional[str] = None

        self._check_labels()
        self._started: List[Step] = []
        self._cursor = -1
        self._failure_event: Optional[asyncio.Event] = None
        self._watchdog: Optional[asyncio.TimerHandle] = None
        self._ran = False

    def _check_labels(self) -> None:
        seen = set()
        for top in self.steps:
            if not isinstance(top, Step):
                raise TypeError(f"Script entries must be Step instances, got {top!r}")
            for step in top.iter_steps():
                if step.label in seen:
                    raise ValueError(f"Duplicate step label `{step.label}'")
                seen.add(step.label)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def current_label(self) -> Optional[str]:
        if self._started:
            return self._started[-1].label
        return None

    @property
    def cursor(self) -> int:
        return self._cursor

    async def run_all(self) -> RunResult:
        if self._ran:
            raise RuntimeError("An Interpreter runs its script only once")
        self._ran = True
        self.loop = asyncio.get_running_loop()
        self._failure_event = asyncio.Event()
        if self.failed:
            self._failure_event.set()
        if self.timeout and self.timeout > 0:
            self._watchdog = self.loop.call_later(self.timeout, self._on_timeout)

        logger.info(f"[Interpreter] Running {len(self.steps)} steps (timeout {self.timeout}s)")
        try:
            for index, step in enumerate(self.steps):
                if self.failed:
                    break
                self._cursor = index
                await self.execute(step)
            if not self.failed:
                logger.debug("[Interpreter] Running step END")
        finally:
            if self._watchdog is not None:
                self._watchdog.cancel()
                self._watchdog = None
            await self._unwind()

        if self.failed:
            logger.error(f"[Interpreter] Run failed at `{self.failed_label}': {self.error}")
        else:
            logger.info("[Interpreter] Run completed successfully")
        return RunResult(
            ok=not self.failed,
            error=self.error,
            failed_label=self.failed_label,
            steps_started=len(self._started),
        )

    async def execute(self, step: Step) -> None:
        """
        Run one step to completion. Used for top-level steps and by Batch for
        nested ones. Errors are turned into fail(); nothing propagates.
        """
        if self.failed:
            return
        step.bind(self)
        step.started = True
        step.start_time = self.loop.time()
        self._started.append(step)
        logger.debug(f"[Interpreter] Running step `{step.label}'")

        try:
            result = step.run(self)
            if inspect.isawaitable(result):
                await self._await_progress(asyncio.ensure_future(result))
            if self.failed:
                return
            if step.supports_finish and not step.asynchronous_finish:
                waiter = self.loop.create_future()

                def _continue() -> None:
                    if not waiter.done():
                        waiter.set_result(None)

                if not step.finish(_continue):
                    await self._await_progress(waiter)
        except HarnessError as exc:
            self.fail(exc, step.label)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"[Interpreter] Step `{step.label}' raised {type(exc).__name__}: {exc}", exc_info=exc)
            error = StepFailedError(f"{type(exc).__name__}: {exc}", label=step.label)
            error.__cause__ = exc
            self.fail(error, step.label)
        else:
            if not self.failed:
                step.finish_time = self.loop.time()
                logger.debug(f"[Interpreter] Step `{step.label}' done")

    def lookup(self, label: str) -> Step:
        """
        Find a step that has already started.

        Raises:
            UnknownLabelError: no such label, or that step has not run yet
        """
        # Most lookups refer to recent steps; search backwards.
        for step in reversed(self._started):
            if step.label == label:
                return step
        logger.error(f"[Interpreter] Step not found: {label}")
        raise UnknownLabelError(label, label=self.current_label)

    def get_trait(self, label: str, name: str, index: int = 0) -> Any:
        return self.lookup(label).traits(name, index)

    def fail(self, error: HarnessError, label: Optional[str] = None) -> None:
        """Mark the run failed and stop waiting on the in-flight step."""
        if self.failed:
            logger.debug(f"[Interpreter] Already failed, ignoring: {error}")
            return
        label = label or error.label or self.current_label
        if error.label is None:
            error.label = label
        self.failed = True
        self.error = error
        self.failed_label = label
        logger.error(f"[Interpreter] Failed at step `{label}': {error}")
        if self._failure_event is not None:
            self._failure_event.set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _await_progress(self, fut: asyncio.Future) -> None:
        """Wait for `fut` unless the run fails first; then abandon it."""
        failure = self.loop.create_task(self._failure_event.wait())
        try:
            await asyncio.wait({fut, failure}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            failure.cancel()
        if not fut.done():
            await cancel_and_wait(fut)
            return
        fut.result()

    def _on_timeout(self) -> None:
        self._watchdog = None
        logger.error("[Interpreter] Terminating test due to timeout")
        self.fail(
            HarnessTimeoutError(f"no completion within {self.timeout}s", label=self.current_label)
        )

    async def _unwind(self) -> None:
        label = self.current_label or "END"
        logger.info(f"[Interpreter] Executing shutdown at `{label}'")
        for step in reversed(self._started):
            await self._cleanup(step)
        leftovers = await self.supervisor.terminate_all()
        if leftovers:
            logger.warning(f"[Interpreter] Reaped {leftovers} leftover child process(es)")

    async def _cleanup(self, step: Step) -> None:
        if step.cleaned_up:
            return
        step.cleaned_up = True
        step.cancel()
        logger.debug(f"[Interpreter] Cleaning up step `{step.label}'")
        try:
            result = step.cleanup()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            # Keep unwinding the remaining steps; the run still fails.
            logger.error(f"[Interpreter] Cleanup of `{step.label}' failed: {exc}", exc_info=exc)
            error = StepFailedError(f"cleanup failed: {exc}", label=step.label)
            error.__cause__ = exc
            self.fail(error, step.label)


async def run_async(
    steps: Iterable[Any],
    timeout: Optional[float] = None,
    config: Optional[HarnessConfig] = None,
) -> RunResult:
    return await Interpreter(steps, timeout=timeout, config=config).run_all()


def run(
    steps: Iterable[Any],
    timeout: Optional[float] = None,
    config: Optional[HarnessConfig] = None,
) -> int:
    """Run a script on a fresh event loop and return the process exit code."""
    result = asyncio.run(run_async(steps, timeout=timeout, config=config))
    return result.exit_code
