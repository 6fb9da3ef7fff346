"""Tests for the relay HTTP/WebSocket surface."""

import pytest
from fastapi.testclient import TestClient

from peerdrop.api import create_app, create_service
from peerdrop.config import Config


@pytest.fixture
def client():
    app = create_app(create_service(Config(session_sweep_interval=3600)))
    with TestClient(app) as test_client:
        yield test_client


class TestHttpEndpoints:
    """Test liveness and read-only session state."""

    def test_root(self, client):
        response = client.get('/')
        assert response.status_code == 200
        assert response.json()['name'] == 'peerdrop relay'

    def test_health_empty(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.json() == {'status': 'ok', 'connectedClients': 0, 'activeSessions': 0}

    def test_unknown_session_is_404(self, client):
        assert client.get('/sessions/000000').status_code == 404

    def test_session_visible_while_socket_open(self, client):
        with client.websocket_connect('/ws') as ws:
            ws.send_json({'event': 'create-session'})
            code = ws.receive_json()['code']

            response = client.get(f'/sessions/{code}')
            assert response.status_code == 200
            assert response.json()['code'] == code
            assert response.json()['hasReceiver'] is False

            health = client.get('/health').json()
            assert health['connectedClients'] == 1
            assert health['activeSessions'] == 1

        assert client.get(f'/sessions/{code}').status_code == 404


class TestSignalingSocket:
    """Test the pairing flow over real WebSockets."""

    def test_pair_and_forward(self, client):
        with client.websocket_connect('/ws') as sender, client.websocket_connect('/ws') as receiver:
            sender.send_json({'event': 'create-session'})
            code = sender.receive_json()['code']

            receiver.send_json({'event': 'join-session', 'code': code})
            assert receiver.receive_json() == {'event': 'join-session', 'success': True, 'code': code}
            joined = sender.receive_json()
            assert joined['event'] == 'peer-joined'
            assert joined['code'] == code

            receiver.send_json({'event': 'signal', 'type': 'answer', 'payload': {'ok': 1}})
            forwarded = sender.receive_json()
            assert forwarded['event'] == 'signal'
            assert forwarded['payload'] == {'ok': 1}
            assert forwarded['from'] == joined['peerId']

            stats = client.get('/stats').json()
            assert stats['paired_sessions'] == 1
            assert stats['messages_relayed'] == 1

    def test_peer_left_on_disconnect(self, client):
        with client.websocket_connect('/ws') as sender:
            sender.send_json({'event': 'create-session'})
            code = sender.receive_json()['code']

            with client.websocket_connect('/ws') as receiver:
                receiver.send_json({'event': 'join-session', 'code': code})
                receiver.receive_json()
                sender.receive_json()  # peer-joined

            assert sender.receive_json() == {'event': 'peer-left', 'code': code}

    def test_non_json_frame(self, client):
        with client.websocket_connect('/ws') as ws:
            ws.send_text('not json')
            reply = ws.receive_json()

            assert reply['success'] is False
            assert reply['error'] == 'MalformedMessage'

            # the socket stays usable
            ws.send_json({'event': 'create-session'})
            assert ws.receive_json()['success'] is True

    def test_join_unknown_code(self, client):
        with client.websocket_connect('/ws') as ws:
            ws.send_json({'event': 'join-session', 'code': '000000'})
            reply = ws.receive_json()

            assert reply['success'] is False
            assert reply['error'] == 'SessionNotFound'
