"""
netharness/cmds/netjail.py
Set up and tear down the network namespaces of a test.

Both steps run a privileged script as `<script> <local_m> <global_n>` and
complete when it exits cleanly. A nonzero exit fails the run.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from netharness.base.traits import TraitTable
from netharness.engine.step import ExitPolicy, ProcessStep
from netharness.engine.supervisor import ProcessHandle

if TYPE_CHECKING:
    from netharness.engine.interpreter import Interpreter

logger = logging.getLogger(__name__)


class _NetjailScript(ProcessStep):
    script_attr = ""

    def __init__(
        self,
        label: str,
        local_m: str,
        global_n: str,
        script: Optional[str] = None,
        exit_policy: ExitPolicy = ExitPolicy.ESCALATE,
    ):
        super().__init__(label, exit_policy)
        self.local_m = str(local_m)
        self.global_n = str(global_n)
        self.script = script
        self.handle: Optional[ProcessHandle] = None

    async def run(self, interpreter: "Interpreter") -> None:
        script = self.script or getattr(interpreter.config.scripts, self.script_attr)
        logger.info(f"[{self.label}] {script} {self.local_m} {self.global_n}")
        self.handle = await interpreter.supervisor.spawn(
            script,
            (self.local_m, self.global_n),
            privileged=True,
            owner=self.label,
        )
        interpreter.supervisor.await_exit(self.handle, self.on_process_exit, self.escalate)

    async def cleanup(self) -> None:
        if self.handle is not None and self.handle.running:
            await self.interpreter.supervisor.terminate(self.handle)

    def trait_table(self) -> TraitTable:
        table = super().trait_table()
        if self.handle is not None:
            table.add("process-handle", self.handle)
        return table


class NetjailStart(_NetjailScript):
    """Create `global_n` subnets of `local_m` nodes each."""
    script_attr = "netjail_start"


class NetjailStop(_NetjailScript):
    script_attr = "netjail_stop"
