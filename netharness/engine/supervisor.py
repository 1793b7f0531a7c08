"""
netharness/engine/supervisor.py
Spawning, watching and reaping helper processes.

PURPOSE:
Namespace scripts, per-node helpers and peer binaries all run as children
of the harness. The supervisor starts them, reports how they ended, and
makes sure none outlives the run.

KEY RESPONSIBILITIES:
- Pre-spawn checks that tell "binary not found" apart from "binary present
  but not executable / not privileged"
- Exit watchers that classify termination as clean, failed or signalled
- terminate(): SIGTERM, short grace period, SIGKILL, then wait until reaped
- terminate_all(): the last line of defence at the end of every run
"""

from __future__ import annotations

import asyncio
import logging
import os
import stat
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from netharness.base.config import ProcessConfig
from netharness.base.exceptions import HarnessError, SpawnFailedError, SpawnFailure, StepFailedError
from netharness.utils.async_helpers import cancel_and_wait, create_safe_task

logger = logging.getLogger(__name__)


class ExitStatus(str, Enum):
    CLEAN = "clean"
    FAILED = "failed"
    SIGNALED = "signaled"


def classify_exit(returncode: int) -> ExitStatus:
    # asyncio reports death by signal N as returncode -N
    if returncode == 0:
        return ExitStatus.CLEAN
    if returncode < 0:
        return ExitStatus.SIGNALED
    return ExitStatus.FAILED


@dataclass(eq=False)
class ProcessHandle:
    """A running (or finished) child. Owned by the step that spawned it."""
    path: str
    argv: Tuple[str, ...]
    process: asyncio.subprocess.Process
    owner: Optional[str] = None
    status: Optional[ExitStatus] = None
    returncode: Optional[int] = None
    watcher: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None


ExitCallback = Callable[[ProcessHandle, ExitStatus, Optional[int]], None]


class ProcessSupervisor:
    """Per-interpreter registry of child processes."""

    def __init__(self, config: Optional[ProcessConfig] = None):
        self.config = config or ProcessConfig()
        self._handles: Dict[int, ProcessHandle] = {}

    # ------------------------------------------------------------------
    # Pre-spawn checks
    # ------------------------------------------------------------------
    @staticmethod
    def _resolve(path: str) -> Optional[str]:
        if os.sep in path:
            return path if os.path.isfile(path) else None
        for directory in os.environ.get("PATH", os.defpath).split(os.pathsep):
            candidate = os.path.join(directory, path)
            if os.path.isfile(candidate):
                return candidate
        return None

    @staticmethod
    def _is_privileged(path: str) -> bool:
        if os.geteuid() == 0:
            return True
        st = os.stat(path)
        return st.st_uid == 0 and bool(st.st_mode & stat.S_ISUID)

    def check_binary(self, path: str, privileged: bool = False, label: Optional[str] = None) -> str:
        """
        Verify `path` can be started. Returns the resolved path.

        Raises:
            SpawnFailedError: NOT_FOUND if no such file, INSUFFICIENT_PRIVILEGE
                if it is not executable or, for privileged helpers, neither
                running as root nor a root-owned setuid binary.
        """
        resolved = self._resolve(path)
        if resolved is None:
            logger.error(f"[Supervisor] {path} not found!")
            raise SpawnFailedError(path, SpawnFailure.NOT_FOUND, label=label)
        if not os.access(resolved, os.X_OK):
            logger.error(f"[Supervisor] {path} is not executable")
            raise SpawnFailedError(path, SpawnFailure.INSUFFICIENT_PRIVILEGE, label=label)
        if privileged and self.config.require_privilege and not self._is_privileged(resolved):
            logger.error(f"[Supervisor] No SUID for {path}!")
            raise SpawnFailedError(path, SpawnFailure.INSUFFICIENT_PRIVILEGE, label=label)
        return resolved

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def spawn(
        self,
        path: str,
        argv: Sequence[str] = (),
        *,
        privileged: bool = False,
        stdin: Optional[int] = None,
        stdout: Optional[int] = None,
        owner: Optional[str] = None,
    ) -> ProcessHandle:
        """
        Start `path` with the arguments in `argv` (program name excluded).
        stderr is inherited from the harness.
        """
        resolved = self.check_binary(path, privileged, label=owner)
        try:
            process = await asyncio.create_subprocess_exec(
                resolved,
                *argv,
                stdin=stdin,
                stdout=stdout,
                stderr=None,
            )
        except FileNotFoundError:
            raise SpawnFailedError(path, SpawnFailure.NOT_FOUND, label=owner) from None
        except PermissionError:
            raise SpawnFailedError(path, SpawnFailure.INSUFFICIENT_PRIVILEGE, label=owner) from None

        handle = ProcessHandle(path=path, argv=tuple(argv), process=process, owner=owner)
        self._handles[process.pid] = handle
        logger.info(f"[Supervisor] Started {path} {' '.join(argv)} (pid {process.pid})")
        return handle

    def await_exit(
        self,
        handle: ProcessHandle,
        callback: ExitCallback,
        on_error: Optional[Callable[[HarnessError], None]] = None,
    ) -> asyncio.Task:
        """
        Call `callback(handle, status, returncode)` once the child exits.
        Errors raised by the callback go to `on_error`, labelled with the
        owner of the handle.
        """
        if handle.watcher is not None and not handle.watcher.done():
            raise RuntimeError(f"pid {handle.pid} already has an exit watcher")

        async def _watch() -> None:
            returncode = await handle.process.wait()
            status = self._record_exit(handle, returncode)
            logger.debug(f"[Supervisor] pid {handle.pid} ({handle.path}) exited {status.value} ({returncode})")
            try:
                callback(handle, status, returncode)
            except HarnessError as exc:
                if exc.label is None:
                    exc.label = handle.owner
                if on_error is None:
                    raise
                on_error(exc)
            except Exception as exc:
                if on_error is None:
                    raise
                logger.error(f"[Supervisor] exit handler for pid {handle.pid} raised: {exc}", exc_info=exc)
                error = StepFailedError(f"{type(exc).__name__}: {exc}", label=handle.owner)
                error.__cause__ = exc
                on_error(error)

        handle.watcher = create_safe_task(_watch(), name=f"exit-watch:{handle.pid}")
        return handle.watcher

    async def terminate(self, handle: ProcessHandle) -> Optional[int]:
        """
        Kill the child and wait until it is reaped. The exit watcher is
        cancelled first, so the owning step sees no exit notification.
        Safe to call more than once.
        """
        await cancel_and_wait(handle.watcher)
        handle.watcher = None
        proc = handle.process

        if proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.config.kill_grace_seconds)
            except asyncio.TimeoutError:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self.config.reap_timeout_seconds)
                except asyncio.TimeoutError:
                    logger.error(f"[Supervisor] pid {handle.pid} ({handle.path}) could not be reaped")

        if proc.returncode is not None:
            self._record_exit(handle, proc.returncode)
            logger.debug(f"[Supervisor] Reaped pid {handle.pid} ({handle.path})")
        return proc.returncode

    async def terminate_all(self) -> int:
        """Reap every child still registered. Returns how many were running."""
        leftovers = list(self._handles.values())
        killed = 0
        for handle in leftovers:
            if handle.running:
                killed += 1
                logger.warning(f"[Supervisor] Terminating leftover pid {handle.pid} ({handle.path})")
            await self.terminate(handle)
        self._handles.clear()
        return killed

    def live_handles(self) -> List[ProcessHandle]:
        return [h for h in self._handles.values() if h.running]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _record_exit(self, handle: ProcessHandle, returncode: int) -> ExitStatus:
        handle.returncode = returncode
        handle.status = classify_exit(returncode)
        self._handles.pop(handle.pid, None)
        return handle.status
