"""Tests for the relay-side signaling service and the peer-side client."""

import asyncio
import json

import pytest

from peerdrop.errors import ChannelFailed, SessionNotFound
from peerdrop.session import SessionDirectory
from peerdrop.signaling import SignalingClient, SignalingService
from peerdrop.signaling import messages as m

from conftest import FakeConnection


@pytest.fixture
def service():
    return SignalingService(SessionDirectory())


async def paired(service):
    """Connect two participants and pair them; returns (a, conn_a, b, conn_b, code)."""
    conn_a, conn_b = FakeConnection(), FakeConnection()
    a, b = service.connect(conn_a), service.connect(conn_b)
    code = (await service.handle(a, {'event': m.CREATE_SESSION}))['code']
    await service.handle(b, {'event': m.JOIN_SESSION, 'code': code})
    return a, conn_a, b, conn_b, code


class TestSessionEvents:
    """Test create/join/leave through the service."""

    @pytest.mark.asyncio
    async def test_create_session(self, service):
        a = service.connect(FakeConnection())
        reply = await service.handle(a, {'event': m.CREATE_SESSION})

        assert reply['event'] == m.CREATE_SESSION
        assert reply['success'] is True
        assert len(reply['code']) == 6

    @pytest.mark.asyncio
    async def test_join_notifies_sender(self, service):
        a, conn_a, b, _, code = await paired(service)

        assert conn_a.sent == [{'event': m.PEER_JOINED, 'code': code, 'peerId': b}]

    @pytest.mark.asyncio
    async def test_join_strips_whitespace(self, service):
        a = service.connect(FakeConnection())
        code = (await service.handle(a, {'event': m.CREATE_SESSION}))['code']
        b = service.connect(FakeConnection())

        reply = await service.handle(b, {'event': m.JOIN_SESSION, 'code': f' {code} '})
        assert reply == {'event': m.JOIN_SESSION, 'success': True, 'code': code}

    @pytest.mark.asyncio
    async def test_reply_echoes_request_id(self, service):
        a = service.connect(FakeConnection())

        reply = await service.handle(a, {'event': m.CREATE_SESSION, 'requestId': 7})
        error = await service.handle(a, {'event': m.JOIN_SESSION, 'code': '999999', 'requestId': 8})

        assert reply['requestId'] == 7
        assert error['requestId'] == 8
        assert error['error'] == 'SessionNotFound'

    @pytest.mark.asyncio
    async def test_join_unknown_code(self, service):
        b = service.connect(FakeConnection())
        reply = await service.handle(b, {'event': m.JOIN_SESSION, 'code': '999999'})

        assert reply['success'] is False
        assert reply['error'] == 'SessionNotFound'

    @pytest.mark.asyncio
    async def test_join_full_session(self, service):
        _, _, _, _, code = await paired(service)
        c = service.connect(FakeConnection())

        reply = await service.handle(c, {'event': m.JOIN_SESSION, 'code': code})
        assert reply['error'] == 'SessionFull'

    @pytest.mark.asyncio
    async def test_join_without_code(self, service):
        b = service.connect(FakeConnection())
        reply = await service.handle(b, {'event': m.JOIN_SESSION})

        assert reply['error'] == 'MalformedMessage'

    @pytest.mark.asyncio
    async def test_leave_notifies_remaining(self, service):
        a, conn_a, b, _, code = await paired(service)

        reply = await service.handle(b, {'event': m.LEAVE_SESSION})

        assert reply == {'event': m.LEAVE_SESSION, 'success': True}
        assert conn_a.sent[-1] == {'event': m.PEER_LEFT, 'code': code}

    @pytest.mark.asyncio
    async def test_sender_leaving_closes_session(self, service):
        a, _, b, conn_b, code = await paired(service)

        await service.handle(a, {'event': m.LEAVE_SESSION})

        assert conn_b.sent[-1] == {'event': m.PEER_LEFT, 'code': code}
        assert service.directory.get(code) is None
        assert service.directory.session_for(b) is None

    @pytest.mark.asyncio
    async def test_disconnect_notifies_remaining(self, service):
        a, _, b, conn_b, code = await paired(service)

        await service.disconnect(a)

        assert conn_b.sent[-1] == {'event': m.PEER_LEFT, 'code': code}
        assert not service.hub.is_connected(a)

    @pytest.mark.asyncio
    async def test_creating_again_leaves_previous_session(self, service):
        a, _, b, conn_b, code = await paired(service)

        new_code = (await service.handle(a, {'event': m.CREATE_SESSION}))['code']

        assert service.directory.session_for(a).code == new_code
        assert service.directory.session_for(b) is None
        assert conn_b.sent[-1] == {'event': m.PEER_LEFT, 'code': code}


class TestForwarding:
    """Test relaying of opaque payloads between paired participants."""

    @pytest.mark.asyncio
    async def test_signal_forwarded_with_sender_identity(self, service):
        a, _, b, conn_b, _ = await paired(service)
        signal = {'event': m.SIGNAL, 'type': 'offer', 'payload': {'host': '10.0.0.2', 'port': 5000}}

        reply = await service.handle(a, signal)

        assert reply is None
        assert conn_b.sent[-1] == {**signal, 'from': a}

    @pytest.mark.asyncio
    async def test_transfer_offer_forwarded(self, service):
        a, _, b, conn_b, _ = await paired(service)
        offer = {'event': m.TRANSFER_OFFER, 'fileName': 'a.txt', 'fileSize': 5,
                 'mimeType': 'text/plain', 'totalChunks': 1}

        await service.handle(a, offer)

        assert conn_b.sent[-1] == {**offer, 'from': a}

    @pytest.mark.asyncio
    async def test_transfer_response_forwarded_back(self, service):
        a, conn_a, b, _, _ = await paired(service)

        await service.handle(b, {'event': m.TRANSFER_RESPONSE, 'accepted': False, 'reason': 'busy'})

        assert conn_a.sent[-1]['accepted'] is False
        assert conn_a.sent[-1]['from'] == b

    @pytest.mark.asyncio
    async def test_invalid_offer_rejected_not_forwarded(self, service):
        a, _, b, conn_b, _ = await paired(service)
        before = len(conn_b.sent)

        reply = await service.handle(a, {'event': m.TRANSFER_OFFER, 'fileName': '', 'fileSize': 0})

        assert reply['success'] is False
        assert reply['error'] == 'InvalidOffer'
        assert len(conn_b.sent) == before

    @pytest.mark.asyncio
    async def test_non_boolean_response_is_malformed(self, service):
        _, _, b, _, _ = await paired(service)
        reply = await service.handle(b, {'event': m.TRANSFER_RESPONSE, 'accepted': 'yes'})

        assert reply['error'] == 'MalformedMessage'

    @pytest.mark.asyncio
    async def test_unknown_signal_type_is_malformed(self, service):
        a, _, _, _, _ = await paired(service)
        reply = await service.handle(a, {'event': m.SIGNAL, 'type': 'renegotiate'})

        assert reply['error'] == 'MalformedMessage'

    @pytest.mark.asyncio
    async def test_signal_outside_session_is_dropped(self, service):
        lonely = service.connect(FakeConnection())
        reply = await service.handle(lonely, {'event': m.SIGNAL, 'type': 'offer', 'payload': {}})

        assert reply is None

    @pytest.mark.asyncio
    async def test_relay_counters(self, service):
        a, _, _, _, _ = await paired(service)
        await service.handle(a, {'event': m.SIGNAL, 'type': 'answer', 'payload': {}})

        stats = service.get_stats()
        assert stats['messages_relayed'] == 1
        assert stats['connected_clients'] == 2
        assert stats['paired_sessions'] == 1


class TestMalformedEvents:
    """Test events the service cannot dispatch."""

    @pytest.mark.asyncio
    async def test_not_an_object(self, service):
        a = service.connect(FakeConnection())
        reply = await service.handle(a, ['create-session'])

        assert reply['event'] == m.ERROR
        assert reply['error'] == 'MalformedMessage'

    @pytest.mark.asyncio
    async def test_unknown_event(self, service):
        a = service.connect(FakeConnection())
        reply = await service.handle(a, {'event': 'teleport'})

        assert reply == m.error_reply('teleport', 'MalformedMessage', 'Unknown event: teleport')


class TestSignalingClientDispatch:
    """Test how the client routes relay messages."""

    @pytest.mark.asyncio
    async def test_reply_resolves_pending_request(self):
        client = SignalingClient('ws://unused')
        future = asyncio.get_running_loop().create_future()
        client._pending[1] = future

        await client._dispatch({'event': m.CREATE_SESSION, 'success': True, 'code': '123456', 'requestId': 1})

        assert future.result()['code'] == '123456'

    @pytest.mark.asyncio
    async def test_pushed_event_goes_to_handler(self):
        client = SignalingClient('ws://unused')
        received = []

        @client.on(m.PEER_JOINED)
        async def on_joined(message):
            received.append(message)

        await client._dispatch({'event': m.PEER_JOINED, 'code': '123456', 'peerId': 'p'})

        assert received == [{'event': m.PEER_JOINED, 'code': '123456', 'peerId': 'p'}]

    @pytest.mark.asyncio
    async def test_failure_reply_is_not_a_pushed_event(self):
        client = SignalingClient('ws://unused')
        received = []
        client.set_handler(m.TRANSFER_OFFER, received.append)

        await client._dispatch(m.error_reply(m.TRANSFER_OFFER, 'InvalidOffer'))

        assert received == []

    @pytest.mark.asyncio
    async def test_handler_errors_are_contained(self):
        client = SignalingClient('ws://unused')

        def broken(message):
            raise RuntimeError("boom")
        client.set_handler(m.PEER_LEFT, broken)

        await client._dispatch({'event': m.PEER_LEFT, 'code': '123456'})

    @pytest.mark.asyncio
    async def test_send_requires_connection(self):
        client = SignalingClient('ws://unused')
        with pytest.raises(ChannelFailed):
            await client.send(m.CREATE_SESSION)

    @pytest.mark.asyncio
    async def test_concurrent_requests_for_same_event(self):
        client = SignalingClient('ws://unused', request_timeout=2)
        client._ws = RecordingSocket()

        first = asyncio.create_task(client.request(m.JOIN_SESSION, code='111111'))
        second = asyncio.create_task(client.request(m.JOIN_SESSION, code='222222'))
        while len(client._ws.sent) < 2:
            await asyncio.sleep(0)

        by_code = {message['code']: message['requestId'] for message in client._ws.sent}
        assert by_code['111111'] != by_code['222222']

        # answered out of order
        await client._dispatch({**m.error_reply(m.JOIN_SESSION, 'SessionNotFound'),
                                'requestId': by_code['222222']})
        await client._dispatch({'event': m.JOIN_SESSION, 'success': True, 'code': '111111',
                                'requestId': by_code['111111']})

        assert (await first)['code'] == '111111'
        with pytest.raises(SessionNotFound):
            await second
        assert client._pending == {}


class RecordingSocket:
    """Stands in for the relay WebSocket; records what the client sends."""

    def __init__(self):
        self.sent = []

    async def send(self, raw: str):
        self.sent.append(json.loads(raw))
