"""
netharness/cmds/testbed.py
Start one helper per topology node and drive the node-level barriers.

PURPOSE:
StartTestbed launches a helper inside every node's namespace through the
exec script, hands it the plugin to run (HELPER_INIT), and then counts what
the helpers report:

    HELPER_REPLY         helper is up and loaded the plugin
    PEER_STARTED         node's peer is running       -> ALL_PEERS_STARTED
    LOCAL_TEST_PREPARED  node is ready for the test   -> ALL_LOCAL_TESTS_PREPARED
    LOCAL_FINISHED       node's test is over (result) -> step completes

The ALL_* messages go to every helper once every node has reported. A
nonzero LOCAL_FINISHED result, a helper crash, or a helper going away
before it finished all fail the run.

StopTestbed terminates the helpers it borrows from StartTestbed through the
"helper-handles" trait; the handles stay owned by StartTestbed.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Set, Union

from netharness.base.exceptions import ProcessExitFailure, StepFailedError
from netharness.base.traits import TraitTable
from netharness.engine.channels import Channel, ChannelManager
from netharness.engine.step import AsyncStep, Step
from netharness.engine.supervisor import ExitStatus, ProcessHandle
from netharness.net import messages
from netharness.net.messages import Message, MessageQueue, MessageType
from netharness.net.topology import NetjailTopology

if TYPE_CHECKING:
    from netharness.engine.interpreter import Interpreter

logger = logging.getLogger(__name__)


def script_number(m: int, n: int, local_m: int, known: int) -> int:
    """Number baked into a helper's node id."""
    if n == 0:
        return m - 1
    return n - 1 + (n - 1) * local_m + m + known


def make_node_id(m: int, n: int, local_m: int, known: int, pid: Optional[int] = None) -> str:
    pid = os.getpid() if pid is None else pid
    return f"{pid:06x}-{script_number(m, n, local_m, known):08x}"


class StartTestbed(AsyncStep):
    """Spawn the per-node helpers of `topology` and wait until all finished."""

    def __init__(
        self,
        label: str,
        topology: Union[NetjailTopology, str, Path],
        plugin: Optional[str] = None,
        exec_script: Optional[str] = None,
        helper_binary: Optional[str] = None,
    ):
        super().__init__(label)
        self.topology_source = topology
        self.plugin = plugin
        self.exec_script = exec_script
        self.helper_binary = helper_binary

        self.topology: Optional[NetjailTopology] = None
        self.channels = ChannelManager(label, state=self)
        self.handles: Dict[int, ProcessHandle] = {}

        self.systems_started = 0
        self.peers_started = 0
        self.tests_prepared = 0
        self.finished_nodes: Set[int] = set()
        self.results: Dict[int, int] = {}

        self.channels.register_handler(MessageType.HELPER_REPLY, 0, self._on_helper_reply)
        self.channels.register_handler(MessageType.PEER_STARTED, 0, self._on_peer_started)
        self.channels.register_handler(MessageType.LOCAL_TEST_PREPARED, 0, self._on_test_prepared)
        self.channels.register_handler(MessageType.LOCAL_FINISHED, messages.RESULT, self._on_local_finished)

    @property
    def total(self) -> int:
        return self.topology.total if self.topology is not None else 0

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------
    async def run(self, interpreter: "Interpreter") -> None:
        topology = self.topology_source
        if not isinstance(topology, NetjailTopology):
            topology = NetjailTopology.from_file(topology)
        self.topology = topology

        scripts = interpreter.config.scripts
        exec_script = self.exec_script or scripts.netjail_exec
        helper_binary = self.helper_binary or scripts.helper_binary
        # Fail before starting anything if the exec script is unusable
        interpreter.supervisor.check_binary(exec_script, privileged=True, label=self.label)

        logger.info(
            f"[{self.label}] Starting {topology.total} helpers "
            f"({topology.nodes_x} known, {topology.namespaces_n}x{topology.nodes_m} in subnets)"
        )
        for n, m in topology.iter_positions():
            await self._start_helper(interpreter, exec_script, helper_binary, m, n)

        if topology.total == 0:
            self.ac.finish()

    async def _start_helper(
        self,
        interpreter: "Interpreter",
        exec_script: str,
        helper_binary: str,
        m: int,
        n: int,
    ) -> None:
        topology = self.topology
        num = topology.node_number(n, m)
        node_id = make_node_id(m, n, topology.nodes_m, topology.nodes_x)
        argv = (
            str(m),
            str(n),
            helper_binary,
            str(topology.namespaces_n),
            str(topology.nodes_m),
            node_id,
        )
        handle = await interpreter.supervisor.spawn(
            exec_script,
            argv,
            privileged=True,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            owner=self.label,
        )
        self.handles[num] = handle

        queue = MessageQueue(handle.process.stdin, name=f"{self.label}:node-{num}")
        channel = self.channels.on_connect(num, queue)
        self.channels.start_reader(channel, handle.process.stdout, self.escalate, self._on_helper_eof)
        interpreter.supervisor.await_exit(
            handle,
            lambda h, status, code, num=num: self._on_helper_exit(num, h, status, code),
            self.escalate,
        )

        plugin = self.plugin or topology.plugin_for(num)
        channel.send(messages.helper_init(plugin))
        logger.debug(f"[{self.label}] node {num} ({n}, {m}) started as {node_id} with plugin {plugin}")

    def _on_helper_reply(self, channel: Channel, message: Message, values: tuple) -> None:
        self.systems_started += 1
        logger.debug(f"[{self.label}] helper {channel.peer_id} ready ({self.systems_started}/{self.total})")

    def _on_peer_started(self, channel: Channel, message: Message, values: tuple) -> None:
        self.peers_started += 1
        logger.debug(f"[{self.label}] peer {channel.peer_id} started ({self.peers_started}/{self.total})")
        if self.peers_started == self.total:
            logger.info(f"[{self.label}] All peers started")
            self.channels.broadcast(messages.signal(MessageType.ALL_PEERS_STARTED))
            self.peers_started = 0

    def _on_test_prepared(self, channel: Channel, message: Message, values: tuple) -> None:
        self.tests_prepared += 1
        if self.tests_prepared == self.total:
            logger.info(f"[{self.label}] All local tests prepared")
            self.channels.broadcast(messages.signal(MessageType.ALL_LOCAL_TESTS_PREPARED))
            self.tests_prepared = 0

    def _on_local_finished(self, channel: Channel, message: Message, values: tuple) -> None:
        (result,) = values
        num = channel.peer_id
        self.results[num] = result
        if result != 0:
            self.escalate(StepFailedError(f"node {num} finished with result {result}", label=self.label))
            return
        self.finished_nodes.add(num)
        logger.debug(f"[{self.label}] node {num} finished ({len(self.finished_nodes)}/{self.total})")
        if len(self.finished_nodes) == self.total:
            logger.info(f"[{self.label}] All local tests finished")
            self.ac.finish()

    def _on_helper_eof(self, channel: Channel) -> None:
        if channel.peer_id not in self.finished_nodes and not self.ac.fired:
            self.escalate(
                StepFailedError(f"helper of node {channel.peer_id} went away before finishing", label=self.label)
            )

    def _on_helper_exit(self, num: int, handle: ProcessHandle, status: ExitStatus, returncode: Optional[int]) -> None:
        if status is not ExitStatus.CLEAN:
            self.escalate(ProcessExitFailure(handle.path, status, returncode, label=self.label))
        elif num not in self.finished_nodes:
            self.escalate(StepFailedError(f"helper of node {num} exited before finishing", label=self.label))

    # ------------------------------------------------------------------
    # Traits / cleanup
    # ------------------------------------------------------------------
    def trait_table(self) -> TraitTable:
        return (
            super()
            .trait_table()
            .add("helper-handles", tuple(self.handles.values()))
            .add("testbed-channels", tuple(self.channels.channels()))
        )

    async def cleanup(self) -> None:
        await self.channels.close_all()
        for handle in self.handles.values():
            await self.interpreter.supervisor.terminate(handle)


class StopTestbed(Step):
    """Terminate the helpers started by the StartTestbed labelled `start_label`."""

    def __init__(self, label: str, start_label: str):
        super().__init__(label)
        self.start_label = start_label
        self.stopped: List[ProcessHandle] = []

    async def run(self, interpreter: "Interpreter") -> None:
        start = interpreter.lookup(self.start_label)
        handles = start.traits("helper-handles")
        for handle in handles:
            await interpreter.supervisor.terminate(handle)
            self.stopped.append(handle)
        logger.info(f"[{self.label}] Stopped {len(self.stopped)} helpers of `{self.start_label}'")
