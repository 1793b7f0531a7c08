"""
netharness/engine/channels.py
Peer connections opened by a running step.

PURPOSE:
A step that talks to helpers or peers owns one ChannelManager. Every
connection becomes a Channel with a monotonically increasing id; inbound
messages are dispatched by type tag to the handlers the step registered.
The HARNESS_SYNC tag is handled here: it tells the manager which node sits
at the other end of a channel.

OWNERSHIP:
Channels belong to exactly one manager. on_disconnect() unlinks the
channel before closing its queue, so nothing can reach a released channel
through the manager.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import struct
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from netharness.base.exceptions import HarnessError, MalformedMessageError, StepFailedError
from netharness.net.messages import SYNC, Message, MessageQueue, MessageType, read_message
from netharness.utils.async_helpers import cancel_and_wait, create_safe_task
from netharness.utils.observer import Signal

logger = logging.getLogger(__name__)

Handler = Callable[["Channel", Message, tuple], None]


@dataclass(eq=False)
class Channel:
    id: int
    queue: MessageQueue
    peer_id: Optional[int] = None
    # Connection state of the owning step (borrowed)
    state: Any = field(default=None, repr=False)
    owner: Optional[str] = None
    closed: bool = False
    received: int = 0
    reader_task: Optional[asyncio.Task] = field(default=None, repr=False)

    def send(self, message: Message) -> bool:
        return self.queue.send(message)


@dataclass(frozen=True)
class _Registration:
    shape: Optional[struct.Struct]
    callback: Handler


class ChannelManager:
    """Ordered set of live channels plus a tag -> handler table."""

    def __init__(self, owner_label: str, state: Any = None):
        self.owner_label = owner_label
        self.state = state
        self.connected = Signal(f"{owner_label}:connected")
        self._ids = itertools.count(1)
        self._channels: Dict[int, Channel] = {}
        self._handlers: Dict[int, _Registration] = {}

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def register_handler(
        self,
        tag: Union[MessageType, int],
        shape: Union[struct.Struct, int, None],
        callback: Handler,
    ) -> None:
        """
        Route messages of type `tag` to `callback(channel, message, values)`.

        `shape` fixes the payload: a struct.Struct (values are the unpacked
        fields), an int byte count, or None for any size.
        """
        if int(tag) == MessageType.HARNESS_SYNC:
            raise ValueError("HARNESS_SYNC is handled by the channel manager")
        if isinstance(shape, int):
            shape = struct.Struct(f"{shape}s") if shape else struct.Struct("")
        self._handlers[int(tag)] = _Registration(shape, callback)

    def add_connect_callback(self, callback: Callable[[Channel], None]) -> None:
        self.connected.connect(callback)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    def on_connect(self, peer_id: Optional[int], queue: MessageQueue) -> Channel:
        channel = Channel(
            id=next(self._ids),
            queue=queue,
            peer_id=peer_id,
            state=self.state,
            owner=self.owner_label,
        )
        self._channels[channel.id] = channel
        logger.debug(f"[Channels:{self.owner_label}] channel {channel.id} connected (peer {peer_id})")
        self.connected.emit(channel)
        return channel

    def on_disconnect(self, channel: Channel) -> None:
        # ids are only unique per manager
        if self._channels.get(channel.id) is not channel:
            return
        del self._channels[channel.id]
        channel.closed = True
        reader = channel.reader_task
        channel.reader_task = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        channel.queue.close()
        logger.debug(f"[Channels:{self.owner_label}] channel {channel.id} disconnected")

    def on_message(self, channel: Channel, message: Message) -> None:
        """
        Dispatch one inbound message.

        Raises:
            MalformedMessageError: no handler for the tag, or wrong payload size
        """
        if message.tag == MessageType.HARNESS_SYNC:
            (channel.peer_id,) = message.unpack(SYNC)
            logger.debug(f"[Channels:{self.owner_label}] channel {channel.id} is node {channel.peer_id}")
            return
        registration = self._handlers.get(message.tag)
        if registration is None:
            raise MalformedMessageError(
                f"unexpected message type {message.tag}", tag=message.tag, label=self.owner_label
            )
        values: tuple = ()
        if registration.shape is not None:
            try:
                values = message.unpack(registration.shape)
            except MalformedMessageError as exc:
                exc.label = self.owner_label
                raise
        channel.received += 1
        registration.callback(channel, message, values)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------
    def start_reader(
        self,
        channel: Channel,
        reader: asyncio.StreamReader,
        on_error: Callable[[HarnessError], None],
        on_eof: Optional[Callable[[Channel], None]] = None,
    ) -> asyncio.Task:
        """
        Pump framed messages from `reader` into on_message() until EOF.
        Dispatch errors go to `on_error`; the channel is disconnected either way.
        """

        async def _pump() -> None:
            try:
                while True:
                    message = await read_message(reader)
                    if message is None:
                        break
                    self.on_message(channel, message)
            except HarnessError as exc:
                if exc.label is None:
                    exc.label = self.owner_label
                on_error(exc)
            except ConnectionError as exc:
                logger.debug(f"[Channels:{self.owner_label}] channel {channel.id}: {exc}")
            except Exception as exc:
                logger.error(f"[Channels:{self.owner_label}] handler raised on channel {channel.id}: {exc}", exc_info=exc)
                error = StepFailedError(f"{type(exc).__name__}: {exc}", label=self.owner_label)
                error.__cause__ = exc
                on_error(error)
            if not channel.closed:
                self.on_disconnect(channel)
                if on_eof is not None:
                    on_eof(channel)

        channel.reader_task = create_safe_task(_pump(), name=f"{self.owner_label}:channel-{channel.id}")
        return channel.reader_task

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def channels(self) -> List[Channel]:
        return list(self._channels.values())

    def get(self, channel_id: int) -> Optional[Channel]:
        return self._channels.get(channel_id)

    def by_peer(self, peer_id: int) -> Optional[Channel]:
        for channel in self._channels.values():
            if channel.peer_id == peer_id:
                return channel
        return None

    def broadcast(self, message: Message) -> int:
        for channel in self._channels.values():
            channel.send(message)
        return len(self._channels)

    def __len__(self) -> int:
        return len(self._channels)

    def __iter__(self):
        return iter(self.channels())

    async def close_all(self) -> None:
        """Disconnect every remaining channel and wait for its reader to stop."""
        for channel in self.channels():
            reader = channel.reader_task
            self.on_disconnect(channel)
            await cancel_and_wait(reader)
