"""Unit tests for the channel manager."""
import asyncio
import struct
from unittest.mock import MagicMock

import pytest

from netharness.base.exceptions import ErrorKind, MalformedMessageError
from netharness.engine.channels import ChannelManager
from netharness.net import messages
from netharness.net.messages import Message, MessageType


def _queue():
    queue = MagicMock()
    queue.closed = False
    return queue


class TestConnections:
    def test_ids_increase_and_callbacks_run_in_order(self):
        manager = ChannelManager("connect")
        seen = []
        manager.add_connect_callback(lambda ch: seen.append(("first", ch.id)))
        manager.add_connect_callback(lambda ch: seen.append(("second", ch.id)))

        a = manager.on_connect(None, _queue())
        b = manager.on_connect(7, _queue())

        assert (a.id, b.id) == (1, 2)
        assert b.peer_id == 7
        assert a.owner == "connect"
        assert seen == [("first", 1), ("second", 1), ("first", 2), ("second", 2)]

    def test_channel_set_tracks_connects_minus_disconnects(self):
        manager = ChannelManager("connect")
        channels = [manager.on_connect(None, _queue()) for _ in range(4)]
        manager.on_disconnect(channels[1])
        manager.on_disconnect(channels[3])

        assert manager.channels() == [channels[0], channels[2]]
        assert len(manager) == 2

    def test_disconnect_is_idempotent(self):
        manager = ChannelManager("connect")
        queue = _queue()
        channel = manager.on_connect(None, queue)
        manager.on_disconnect(channel)
        manager.on_disconnect(channel)

        assert channel.closed
        queue.close.assert_called_once()
        assert len(manager) == 0

    def test_ids_are_not_reused(self):
        manager = ChannelManager("connect")
        first = manager.on_connect(None, _queue())
        manager.on_disconnect(first)
        assert manager.on_connect(None, _queue()).id == 2

    def test_disconnect_ignores_channel_of_other_manager(self):
        ours = ChannelManager("server")
        theirs = ChannelManager("client")
        own = ours.on_connect(None, _queue())
        foreign = theirs.on_connect(None, _queue())
        assert own.id == foreign.id

        ours.on_disconnect(foreign)

        assert ours.channels() == [own]
        assert not own.closed
        assert not foreign.closed
        own.queue.close.assert_not_called()


class TestDispatch:
    def test_handler_receives_unpacked_values(self):
        manager = ChannelManager("recv")
        got = []
        manager.register_handler(MessageType.TEST, messages.TEST, lambda ch, msg, values: got.append(values))
        channel = manager.on_connect(None, _queue())

        manager.on_message(channel, messages.make_test_message(5, 2))
        assert got == [(5, 2)]
        assert channel.received == 1

    def test_unregistered_tag_is_malformed(self):
        manager = ChannelManager("recv")
        channel = manager.on_connect(None, _queue())
        with pytest.raises(MalformedMessageError) as exc_info:
            manager.on_message(channel, Message(4242, b""))
        assert exc_info.value.kind is ErrorKind.MALFORMED_MESSAGE
        assert exc_info.value.label == "recv"

    def test_wrong_payload_size_is_malformed(self):
        manager = ChannelManager("recv")
        manager.register_handler(MessageType.TEST, messages.TEST, lambda *args: None)
        channel = manager.on_connect(None, _queue())
        with pytest.raises(MalformedMessageError):
            manager.on_message(channel, Message(MessageType.TEST, b"\x00" * 3))

    def test_byte_count_shape(self):
        manager = ChannelManager("testbed")
        got = []
        manager.register_handler(MessageType.PEER_STARTED, 0, lambda ch, msg, values: got.append(values))
        channel = manager.on_connect(1, _queue())
        manager.on_message(channel, messages.signal(MessageType.PEER_STARTED))
        assert got == [()]
        with pytest.raises(MalformedMessageError):
            manager.on_message(channel, Message(MessageType.PEER_STARTED, b"x"))

    def test_sync_sets_peer_identity(self):
        manager = ChannelManager("connect")
        channel = manager.on_connect(None, _queue())
        manager.on_message(channel, messages.harness_sync(12))
        assert channel.peer_id == 12
        assert manager.by_peer(12) is channel

    def test_sync_tag_is_reserved(self):
        manager = ChannelManager("connect")
        with pytest.raises(ValueError):
            manager.register_handler(MessageType.HARNESS_SYNC, struct.Struct("!I"), lambda *args: None)


class TestReader:
    @pytest.mark.asyncio
    async def test_pump_dispatches_until_eof(self):
        manager = ChannelManager("recv")
        got = []
        manager.register_handler(MessageType.TEST, messages.TEST, lambda ch, msg, values: got.append(values))
        channel = manager.on_connect(None, _queue())

        reader = asyncio.StreamReader()
        reader.feed_data(messages.harness_sync(3).encode() + messages.make_test_message(1, 0).encode())
        reader.feed_eof()
        errors, eofs = [], []
        task = manager.start_reader(channel, reader, errors.append, eofs.append)
        await asyncio.wait_for(task, 2)

        assert got == [(1, 0)]
        assert channel.peer_id == 3
        assert errors == []
        assert eofs == [channel]
        assert len(manager) == 0

    @pytest.mark.asyncio
    async def test_pump_reports_malformed_input(self):
        manager = ChannelManager("recv")
        channel = manager.on_connect(None, _queue())
        reader = asyncio.StreamReader()
        reader.feed_data(Message(999).encode())
        errors = []
        task = manager.start_reader(channel, reader, errors.append)
        await asyncio.wait_for(task, 2)

        assert len(errors) == 1
        assert errors[0].kind is ErrorKind.MALFORMED_MESSAGE
        assert channel.closed

    @pytest.mark.asyncio
    async def test_close_all_stops_readers(self):
        manager = ChannelManager("recv")
        channel = manager.on_connect(None, _queue())
        reader = asyncio.StreamReader()  # never fed
        task = manager.start_reader(channel, reader, lambda e: None)
        await asyncio.sleep(0)

        await manager.close_all()
        assert task.done()
        assert len(manager) == 0
