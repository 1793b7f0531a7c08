"""
netharness/helper.py
The per-node helper: runs a node's part of a distributed test.

PURPOSE:
StartTestbed launches one helper per node through the netjail exec script.
The helper speaks the framed protocol with the master harness over
stdin/stdout:

    master -> HELPER_INIT(plugin)       helper loads `module:function`
    helper -> HELPER_REPLY              and starts the plugin's script
    master -> ALL_PEERS_STARTED         triggers step `all-peers-started`
    master -> ALL_LOCAL_TESTS_PREPARED  triggers step `all-local-tests-prepared`

The plugin's script reports back through SendPeerReady / LocalTestPrepared /
LocalTestFinished (netharness.cmds.local). If the script fails before it
reported LOCAL_FINISHED, the helper reports a nonzero result itself.

Logging goes to stderr; stdout carries protocol messages only.

USAGE (normally via the exec script):
    netharness-helper <global_n> <local_m> <node_id> [<m> <n>]
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from netharness.base.config import HarnessConfig, get_config, setup_logging
from netharness.base.exceptions import MalformedMessageError
from netharness.cmds.local import ALL_LOCAL_TESTS_PREPARED_LABEL, ALL_PEERS_STARTED_LABEL
from netharness.engine.interpreter import Interpreter, RunResult
from netharness.net import messages
from netharness.net.messages import Message, MessageType, read_message
from netharness.utils.async_helpers import cancel_and_wait, create_safe_task

logger = logging.getLogger(__name__)


@dataclass
class PluginContext:
    """What a plugin's build function gets to assemble a node's script."""
    global_n: int
    local_m: int
    node_id: str
    m: int
    n: int
    write: Callable[[Message], None]

    @property
    def is_global(self) -> bool:
        return self.n == 0


def load_plugin(name: str) -> Callable[[PluginContext], List[Any]]:
    """Resolve `package.module:function`."""
    module_name, sep, attr = name.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"plugin `{name}' is not of the form module:function")
    module = importlib.import_module(module_name)
    build = getattr(module, attr)
    if not callable(build):
        raise TypeError(f"plugin `{name}' is not callable")
    return build


class HelperLoop:
    TRIGGERS = {
        MessageType.ALL_PEERS_STARTED: ALL_PEERS_STARTED_LABEL,
        MessageType.ALL_LOCAL_TESTS_PREPARED: ALL_LOCAL_TESTS_PREPARED_LABEL,
    }

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        context_args: Dict[str, Any],
        config: Optional[HarnessConfig] = None,
    ):
        self.reader = reader
        self.writer = writer
        self.config = config or get_config()
        self.context = PluginContext(write=self.write, **context_args)
        self.interpreter: Optional[Interpreter] = None
        self.result: Optional[RunResult] = None
        self.finished_sent = False
        self._steps: Dict[str, Any] = {}
        self._script_task: Optional[asyncio.Task] = None

    def write(self, message: Message) -> None:
        if message.tag == MessageType.LOCAL_FINISHED:
            self.finished_sent = True
        self.writer.write(message.encode())

    async def serve(self) -> int:
        """Process master messages until stdin closes. Returns the exit code."""
        try:
            while True:
                message = await read_message(self.reader)
                if message is None:
                    break
                self.handle(message)
                await self.writer.drain()
        finally:
            await cancel_and_wait(self._script_task)
        logger.info(f"[Helper:{self.context.node_id}] master closed the connection")
        if self.result is None:
            return 0 if self.interpreter is None else 1
        return self.result.exit_code

    def handle(self, message: Message) -> None:
        if message.tag == MessageType.HELPER_INIT:
            self._init(messages.parse_helper_init(message))
        elif message.tag in self.TRIGGERS:
            self._trigger(self.TRIGGERS[message.tag])
        else:
            raise MalformedMessageError(f"unexpected message type {message.tag}", tag=message.tag)

    def _init(self, plugin: str) -> None:
        if self.interpreter is not None:
            raise MalformedMessageError("HELPER_INIT received twice", tag=MessageType.HELPER_INIT)
        logger.info(f"[Helper:{self.context.node_id}] loading plugin {plugin}")
        build = load_plugin(plugin)
        self.interpreter = Interpreter(build(self.context), config=self.config)
        for top in self.interpreter.steps:
            for step in top.iter_steps():
                self._steps[step.label] = step
        self.write(messages.signal(MessageType.HELPER_REPLY))
        self._script_task = create_safe_task(self._run_script(), name=f"helper-script:{self.context.node_id}")

    def _trigger(self, label: str) -> None:
        step = self._steps.get(label)
        if step is None or not hasattr(step, "trigger"):
            logger.warning(f"[Helper:{self.context.node_id}] no trigger step `{label}' in the script")
            return
        step.trigger()

    async def _run_script(self) -> None:
        self.result = await self.interpreter.run_all()
        if not self.result.ok and not self.finished_sent:
            self.write(messages.local_finished(1))
        await self.writer.drain()


async def _open_stdio() -> tuple:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return reader, writer


async def _serve(args: argparse.Namespace) -> int:
    reader, writer = await _open_stdio()
    loop = HelperLoop(
        reader,
        writer,
        {
            "global_n": args.global_n,
            "local_m": args.local_m,
            "node_id": args.node_id.strip(),
            "m": args.m,
            "n": args.n,
        },
    )
    return await loop.serve()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="netharness per-node helper")
    parser.add_argument("global_n", type=int, help="Number of subnets")
    parser.add_argument("local_m", type=int, help="Nodes per subnet")
    parser.add_argument("node_id", help="Unique id of this node")
    parser.add_argument("m", type=int, nargs="?", default=0, help="Node number inside its subnet")
    parser.add_argument("n", type=int, nargs="?", default=0, help="Subnet number (0 for known nodes)")
    args = parser.parse_args(argv)

    setup_logging()
    try:
        return asyncio.run(_serve(args))
    except Exception as e:
        logger.error(f"[Helper] {type(e).__name__}: {e}", exc_info=e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
