"""Tests for the TCP peer transport over localhost."""

import asyncio

import pytest

from peerdrop.channel import ChannelState, PeerChannelAdapter, Role, TcpTransport
from peerdrop.channel.tcp import pack_frame, read_frame
from peerdrop.errors import ChannelNotOpen
from peerdrop.transfer import ChannelMessage, MessageType


def local_transport(**kwargs) -> TcpTransport:
    return TcpTransport(host='127.0.0.1', advertise_host='127.0.0.1', **kwargs)


async def connected_pair():
    """Two adapters whose signals are relayed straight to each other."""
    sender = PeerChannelAdapter(
        local_transport(),
        signal=lambda kind, payload: receiver.handle_signal(kind, payload),
    )
    receiver = PeerChannelAdapter(
        local_transport(),
        signal=lambda kind, payload: sender.handle_signal(kind, payload),
    )
    receiver.open(Role.RECEIVER)
    sender.open(Role.SENDER)
    await sender.wait_settled(5)
    await receiver.wait_settled(5)
    return sender, receiver


class TestFraming:
    """Test the length-prefixed framing."""

    @pytest.mark.asyncio
    async def test_read_frame(self):
        reader = asyncio.StreamReader()
        reader.feed_data(pack_frame(b'hello') + pack_frame(b''))
        reader.feed_eof()

        assert await read_frame(reader) == b'hello'
        assert await read_frame(reader) == b''
        with pytest.raises(asyncio.IncompleteReadError):
            await read_frame(reader)


class TestTcpChannel:
    """Test negotiation, data and close over real sockets."""

    @pytest.mark.asyncio
    async def test_negotiates_and_delivers_in_order(self):
        sender, receiver = await connected_pair()
        received = []
        done = asyncio.Event()

        def on_message(message):
            received.append(message)
            if len(received) == 3:
                done.set()
        receiver.on_message(on_message)

        try:
            assert sender.state == ChannelState.OPEN
            assert receiver.state == ChannelState.OPEN

            await sender.send_control(MessageType.FILE_INFO, {'fileName': 'a', 'fileSize': 3, 'totalChunks': 2})
            await sender.send(ChannelMessage.chunk(0, 2, b'ab', False))
            await sender.send(ChannelMessage.chunk(1, 2, b'c', False))
            await asyncio.wait_for(done.wait(), 5)

            assert [m.type for m in received] == [MessageType.FILE_INFO, MessageType.CHUNK, MessageType.CHUNK]
            assert received[1].data == b'ab'
        finally:
            await sender.close()
            await receiver.close()

    @pytest.mark.asyncio
    async def test_receiver_can_send_back(self):
        sender, receiver = await connected_pair()
        got = asyncio.get_running_loop().create_future()
        sender.on_message(lambda message: got.done() or got.set_result(message))

        try:
            await receiver.send_control(MessageType.TRANSFER_RESPONSE, {'accepted': True})
            message = await asyncio.wait_for(got, 5)
            assert message.headers == {'accepted': True}
        finally:
            await sender.close()
            await receiver.close()

    @pytest.mark.asyncio
    async def test_remote_close_reports_closed(self):
        sender, receiver = await connected_pair()
        states = []
        receiver.on_state_change(lambda state, error: states.append(state))

        await sender.close()
        await asyncio.wait_for(_until(lambda: ChannelState.CLOSED in states), 5)

        assert receiver.state == ChannelState.CLOSED
        await receiver.close()

    @pytest.mark.asyncio
    async def test_send_on_closed_channel(self):
        sender, receiver = await connected_pair()
        await sender.close()
        await receiver.close()

        with pytest.raises(ChannelNotOpen):
            await sender.send(ChannelMessage.chunk(0, 1, b'x', False))

    @pytest.mark.asyncio
    async def test_receiver_without_offer_fails(self):
        receiver = PeerChannelAdapter(local_transport(connect_timeout=0.05))
        receiver.open(Role.RECEIVER)

        assert await receiver.wait_settled(2) == ChannelState.FAILED
        assert receiver.last_error.reason == 'ChannelFailed'
        await receiver.close()

    @pytest.mark.asyncio
    async def test_wrong_token_is_rejected(self):
        offers = []

        async def capture(kind, payload):
            offers.append(payload)

        sender = PeerChannelAdapter(local_transport(connect_timeout=2), signal=capture)
        sender.open(Role.SENDER)
        await asyncio.wait_for(_until(lambda: offers), 2)

        reader, writer = await asyncio.open_connection(offers[0]['host'], offers[0]['port'])
        try:
            writer.write(pack_frame(b'not-the-token'))
            await writer.drain()

            assert await asyncio.wait_for(reader.read(), 2) == b''
            assert sender.state == ChannelState.CONNECTING
        finally:
            writer.close()
            await sender.close()


async def _until(predicate, interval: float = 0.01):
    while not predicate():
        await asyncio.sleep(interval)
