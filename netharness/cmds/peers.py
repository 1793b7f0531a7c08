"""
netharness/cmds/peers.py
Start and stop a peer binary under test.

StartPeer returns as soon as the peer is spawned; the script moves on while
the peer keeps running. Its exit is watched for the whole run: a crash
fails the run (or is only recorded, with ExitPolicy.RECORD), and a Finish
step can wait for the peer to exit on its own. StopPeer terminates it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Sequence, Tuple

from netharness.base.traits import TraitTable
from netharness.engine.step import ExitPolicy, ProcessStep, Step
from netharness.engine.supervisor import ProcessHandle

if TYPE_CHECKING:
    from netharness.engine.interpreter import Interpreter

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class PeerState:
    binary: str
    args: Tuple[str, ...] = ()
    handle: Optional[ProcessHandle] = field(default=None, repr=False)

    @property
    def pid(self) -> Optional[int]:
        return self.handle.pid if self.handle is not None else None

    @property
    def running(self) -> bool:
        return self.handle is not None and self.handle.running


class StartPeer(ProcessStep):
    asynchronous_finish = True

    def __init__(
        self,
        label: str,
        binary: str,
        args: Sequence[str] = (),
        privileged: bool = False,
        exit_policy: ExitPolicy = ExitPolicy.ESCALATE,
    ):
        super().__init__(label, exit_policy)
        self.privileged = privileged
        self.state = PeerState(binary=binary, args=tuple(str(a) for a in args))

    async def run(self, interpreter: "Interpreter") -> None:
        handle = await interpreter.supervisor.spawn(
            self.state.binary,
            self.state.args,
            privileged=self.privileged,
            owner=self.label,
        )
        self.state.handle = handle
        interpreter.supervisor.await_exit(handle, self.on_process_exit, self.escalate)

    def trait_table(self) -> TraitTable:
        table = super().trait_table().add("start-peer-state", self.state)
        if self.state.handle is not None:
            table.add("process-handle", self.state.handle)
        return table

    async def cleanup(self) -> None:
        handle = self.state.handle
        if handle is not None and handle.running:
            await self.interpreter.supervisor.terminate(handle)


class StopPeer(Step):
    """Terminate the peer started by the StartPeer labelled `start_label`."""

    def __init__(self, label: str, start_label: str):
        super().__init__(label)
        self.start_label = start_label
        self.state: Optional[PeerState] = None
        self.stopped = False
        self.returncode: Optional[int] = None

    async def run(self, interpreter: "Interpreter") -> None:
        state = interpreter.lookup(self.start_label).traits("start-peer-state")
        self.state = state
        if state.handle is None:
            logger.warning(f"[{self.label}] `{self.start_label}' never spawned its peer")
            return
        self.returncode = await interpreter.supervisor.terminate(state.handle)
        self.stopped = True
        logger.info(f"[{self.label}] Stopped {state.binary} (pid {state.pid}, code {self.returncode})")
