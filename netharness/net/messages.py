"""
netharness/net/messages.py
Framed messages exchanged between the harness, its helpers and peers.

Every message starts with a 4-byte network-order header: the total size
(header included) and a type tag. The payload layout depends on the tag.
"""

from __future__ import annotations

import asyncio
import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Union

from netharness.base.exceptions import MalformedMessageError

logger = logging.getLogger(__name__)

HEADER = struct.Struct("!HH")
MAX_MESSAGE_SIZE = 0xFFFF

# Payload layouts
RESULT = struct.Struct("!i")
SYNC = struct.Struct("!I")
TEST = struct.Struct("!QQ")


class MessageType(IntEnum):
    HELPER_INIT = 1700
    HELPER_REPLY = 1701
    PEER_STARTED = 1702
    ALL_PEERS_STARTED = 1703
    LOCAL_TEST_PREPARED = 1704
    ALL_LOCAL_TESTS_PREPARED = 1705
    LOCAL_FINISHED = 1706
    # Reserved for the harness itself; scripts may not register it
    HARNESS_SYNC = 1799
    TEST = 12345


@dataclass(frozen=True)
class Message:
    tag: int
    payload: bytes = b""

    @property
    def size(self) -> int:
        return HEADER.size + len(self.payload)

    def encode(self) -> bytes:
        if self.size > MAX_MESSAGE_SIZE:
            raise ValueError(f"message of {self.size} bytes does not fit the header")
        return HEADER.pack(self.size, self.tag) + self.payload

    def unpack(self, shape: struct.Struct) -> tuple:
        if len(self.payload) != shape.size:
            raise MalformedMessageError(
                f"type {self.tag}: payload is {len(self.payload)} bytes, expected {shape.size}",
                tag=self.tag,
            )
        return shape.unpack(self.payload)

    def __repr__(self) -> str:
        try:
            name = MessageType(self.tag).name
        except ValueError:
            name = str(self.tag)
        return f"<Message {name} {len(self.payload)}B>"


def decode(data: bytes) -> Message:
    """Decode exactly one framed message."""
    if len(data) < HEADER.size:
        raise MalformedMessageError(f"short message ({len(data)} bytes)")
    size, tag = HEADER.unpack_from(data)
    if size != len(data):
        raise MalformedMessageError(f"header says {size} bytes, got {len(data)}", tag=tag)
    return Message(tag, bytes(data[HEADER.size:]))


async def read_message(reader: asyncio.StreamReader) -> Optional[Message]:
    """
    Read the next framed message from a stream.

    Returns None on a clean end-of-stream between messages.

    Raises:
        MalformedMessageError: truncated frame or impossible size field
    """
    try:
        header = await reader.readexactly(HEADER.size)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise MalformedMessageError("stream ended inside a message header") from None
    size, tag = HEADER.unpack(header)
    if size < HEADER.size:
        raise MalformedMessageError(f"impossible message size {size}", tag=tag)
    try:
        payload = await reader.readexactly(size - HEADER.size)
    except asyncio.IncompleteReadError:
        raise MalformedMessageError("stream ended inside a message body", tag=tag) from None
    return Message(tag, payload)


# ============================================================================
# Constructors
# ============================================================================

def helper_init(plugin: str) -> Message:
    """HELPER_INIT carries the plugin name, NUL-terminated."""
    return Message(MessageType.HELPER_INIT, plugin.encode("utf-8") + b"\0")


def parse_helper_init(message: Message) -> str:
    payload = message.payload
    if not payload or payload[-1:] != b"\0":
        raise MalformedMessageError("HELPER_INIT plugin name is not NUL-terminated", tag=message.tag)
    return payload[:-1].decode("utf-8")


def signal(tag: Union[MessageType, int]) -> Message:
    """A header-only message (HELPER_REPLY, PEER_STARTED, ALL_* ...)."""
    return Message(int(tag))


def local_finished(result: int) -> Message:
    return Message(MessageType.LOCAL_FINISHED, RESULT.pack(result))


def harness_sync(node_number: int) -> Message:
    return Message(MessageType.HARNESS_SYNC, SYNC.pack(node_number))


def make_test_message(msg_id: int, batch: int) -> Message:
    return Message(MessageType.TEST, TEST.pack(msg_id, batch))


# ============================================================================
# Outbound queue
# ============================================================================

class MessageQueue:
    """Outbound side of a channel: frames messages onto a StreamWriter."""

    def __init__(self, writer: asyncio.StreamWriter, name: str = "queue"):
        self.writer = writer
        self.name = name
        self.closed = False
        self.sent = 0

    def send(self, message: Message) -> bool:
        """Frame `message` onto the writer. False if the queue is closed."""
        if self.closed:
            logger.debug(f"[MessageQueue:{self.name}] dropped {message!r} on closed queue")
            return False
        self.writer.write(message.encode())
        self.sent += 1
        return True

    async def drain(self) -> None:
        if not self.closed:
            await self.writer.drain()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.writer.close()
        except (ConnectionError, RuntimeError) as exc:
            logger.debug(f"[MessageQueue:{self.name}] close: {exc}")
