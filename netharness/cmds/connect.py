"""
netharness/cmds/connect.py
TCP channels to peers, and TEST traffic over them.

ConnectPeer either listens or dials and completes once the expected number
of channels connected. Every new channel first carries a HARNESS_SYNC with
this side's node number, so the other end knows who connected. TEST
messages are counted per channel as soon as the channel exists, so traffic
that arrives before a RecvMessages step runs is not lost.

Cooperating steps reach the connection through the "connect-state" trait.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

from netharness.base.exceptions import StepFailedError
from netharness.base.traits import TraitTable
from netharness.engine.channels import Channel, ChannelManager
from netharness.engine.step import AsyncStep, Step
from netharness.net import messages
from netharness.net.messages import Message, MessageQueue, MessageType
from netharness.utils.observer import Signal

if TYPE_CHECKING:
    from netharness.engine.interpreter import Interpreter

logger = logging.getLogger(__name__)

Address = Tuple[str, int]


@dataclass(eq=False)
class ConnectState:
    label: str
    node: Optional[int]
    manager: ChannelManager
    server: Optional[asyncio.AbstractServer] = field(default=None, repr=False)
    port: Optional[int] = None
    connects: int = 0
    test_counts: Dict[int, int] = field(default_factory=lambda: defaultdict(int))
    test_received: Signal = field(default_factory=lambda: Signal("test-received"))

    def channels(self) -> List[Channel]:
        return self.manager.channels()


class ConnectPeer(AsyncStep):
    def __init__(
        self,
        label: str,
        listen: Optional[Address] = None,
        dial: Optional[Sequence[Address]] = None,
        node: Optional[int] = None,
        expected_channels: Optional[int] = None,
    ):
        super().__init__(label)
        if (listen is None) == (dial is None):
            raise ValueError("ConnectPeer needs exactly one of listen= or dial=")
        self.listen = listen
        self.dial = list(dial or [])
        if expected_channels is None:
            expected_channels = len(self.dial) if dial is not None else 1
        self.expected_channels = expected_channels
        self.state = ConnectState(label=label, node=node, manager=ChannelManager(label))
        self.state.manager.state = self.state
        self.state.manager.register_handler(MessageType.TEST, messages.TEST, self._on_test)
        self.state.manager.add_connect_callback(self._on_channel)

    async def run(self, interpreter: "Interpreter") -> None:
        if self.listen is not None:
            host, port = self.listen
            server = await asyncio.start_server(self._on_client, host, port)
            self.state.server = server
            self.state.port = server.sockets[0].getsockname()[1]
            logger.info(f"[{self.label}] Listening on {host}:{self.state.port}")
        else:
            for host, port in self.dial:
                try:
                    reader, writer = await asyncio.open_connection(host, port)
                except OSError as exc:
                    raise StepFailedError(f"cannot connect to {host}:{port}: {exc}", label=self.label) from exc
                self._add_channel(reader, writer)
        self._check_done()

    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self.cleaned_up:
            writer.close()
            return
        self._add_channel(reader, writer)
        self._check_done()

    def _add_channel(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> Channel:
        peer = writer.get_extra_info("peername")
        queue = MessageQueue(writer, name=f"{self.label}:{peer}")
        channel = self.state.manager.on_connect(None, queue)
        self.state.manager.start_reader(channel, reader, self.escalate)
        self.state.connects += 1
        return channel

    def _on_channel(self, channel: Channel) -> None:
        if self.state.node is not None:
            channel.send(messages.harness_sync(self.state.node))

    def _on_test(self, channel: Channel, message: Message, values: tuple) -> None:
        msg_id, batch = values
        self.state.test_counts[channel.id] += 1
        self.state.test_received.emit(channel, msg_id, batch)

    def _check_done(self) -> None:
        if self.state.connects >= self.expected_channels:
            self.ac.finish()

    def trait_table(self) -> TraitTable:
        return super().trait_table().add("connect-state", self.state)

    async def cleanup(self) -> None:
        server = self.state.server
        if server is not None:
            server.close()
        # wait_closed() also waits for accepted connections, so drop them first
        await self.state.manager.close_all()
        if server is not None:
            await server.wait_closed()
            self.state.server = None


class SendMessages(Step):
    """Send `num_messages` TEST messages on every channel of a connection,
    including channels that connect later."""

    def __init__(self, label: str, connect_label: str, num_messages: int, batch: int = 0):
        super().__init__(label)
        self.connect_label = connect_label
        self.num_messages = num_messages
        self.batch = batch
        self.sent = 0
        self._state: Optional[ConnectState] = None

    async def run(self, interpreter: "Interpreter") -> None:
        state = interpreter.lookup(self.connect_label).traits("connect-state")
        self._state = state
        state.manager.add_connect_callback(self._send_on)
        for channel in state.channels():
            self._send_on(channel)
        for channel in state.channels():
            await channel.queue.drain()
        logger.debug(f"[{self.label}] sent {self.sent} messages")

    def _send_on(self, channel: Channel) -> None:
        for msg_id in range(self.num_messages):
            if channel.send(messages.make_test_message(msg_id, self.batch)):
                self.sent += 1

    def cleanup(self) -> None:
        if self._state is not None:
            self._state.manager.connected.disconnect(self._send_on)


class RecvMessages(AsyncStep):
    """Complete once `num_channels` channels each delivered `num_messages`."""

    def __init__(self, label: str, connect_label: str, num_messages: int, num_channels: int = 1):
        super().__init__(label)
        self.connect_label = connect_label
        self.num_messages = num_messages
        self.num_channels = num_channels
        self._state: Optional[ConnectState] = None

    def run(self, interpreter: "Interpreter") -> None:
        state = interpreter.lookup(self.connect_label).traits("connect-state")
        self._state = state
        state.test_received.connect(self._on_test)
        self._check()

    def _on_test(self, channel: Channel, msg_id: int, batch: int) -> None:
        self._check()

    def _check(self) -> None:
        complete = sum(1 for n in self._state.test_counts.values() if n >= self.num_messages)
        if complete >= self.num_channels:
            logger.debug(f"[{self.label}] {complete} channels delivered {self.num_messages} messages")
            self.ac.finish()

    def cleanup(self) -> None:
        if self._state is not None:
            self._state.test_received.disconnect(self._on_test)
