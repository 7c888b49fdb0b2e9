"""
Shared fixtures for the Trassenger test suite.
"""

import time
import uuid
from typing import Dict, List

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from trassenger.config import Config, Paths
from trassenger.identity import Identity, PeerIdentity
from trassenger.store import LocalStore
from trassenger.transport import MailboxClient, ServerMessage, TransportUnavailable


class FakeMailbox:
    """In-memory stand-in for the relay with call counting and fault injection."""

    def __init__(self):
        self.queues: Dict[str, List[ServerMessage]] = {}
        self.calls: List[tuple] = []
        self.fail_fetch = False
        self.fail_post = False
        self.fail_delete = False

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def pending(self, queue_id: str) -> List[ServerMessage]:
        return list(self.queues.get(queue_id, []))

    async def post(self, queue_id, data, meta=None) -> str:
        self.calls.append(("post", queue_id))
        if self.fail_post:
            raise TransportUnavailable("post", "injected failure")
        message = ServerMessage(
            id=str(uuid.uuid4()),
            timestamp=int(time.time() * 1000),
            data=data,
            meta=meta or {},
        )
        self.queues.setdefault(queue_id, []).append(message)
        return message.id

    async def fetch(self, queue_id) -> List[ServerMessage]:
        self.calls.append(("fetch", queue_id))
        if self.fail_fetch:
            raise TransportUnavailable("fetch", "injected failure")
        return self.pending(queue_id)

    async def delete(self, queue_id, message_id) -> None:
        self.calls.append(("delete", queue_id, message_id))
        if self.fail_delete:
            raise TransportUnavailable("delete", "injected failure")
        self.queues[queue_id] = [m for m in self.queues.get(queue_id, []) if m.id != message_id]


def make_relay_app() -> web.Application:
    """A minimal relay speaking the mailbox HTTP API, backed by a dict."""
    queues: Dict[str, List[dict]] = {}

    async def post_message(request):
        body = await request.json()
        if 'data' not in body:
            return web.json_response({'error': 'missing data'}, status=400)
        message = {
            'id': str(uuid.uuid4()),
            'timestamp': int(time.time() * 1000),
            'data': body['data'],
            'meta': body.get('meta') or {},
        }
        queues.setdefault(request.match_info['queue_id'], []).append(message)
        return web.json_response({'id': message['id'], 'timestamp': message['timestamp'], 'success': True})

    async def get_messages(request):
        return web.json_response({'messages': queues.get(request.match_info['queue_id'], [])})

    async def delete_message(request):
        queue_id = request.match_info['queue_id']
        message_id = request.match_info['message_id']
        before = queues.get(queue_id, [])
        queues[queue_id] = [m for m in before if m['id'] != message_id]
        return web.json_response({'success': True, 'deleted': message_id})

    app = web.Application()
    app.router.add_post('/mailbox/{queue_id}', post_message)
    app.router.add_get('/mailbox/{queue_id}', get_messages)
    app.router.add_delete('/mailbox/{queue_id}/{message_id}', delete_message)
    return app


@pytest.fixture
def alice():
    return Identity.generate()


@pytest.fixture
def bob():
    return Identity.generate()


def as_peer(identity: Identity, name: str) -> PeerIdentity:
    return PeerIdentity(
        name=name,
        exchange_key=identity.exchange_key_bytes,
        signing_key=identity.signing_key_bytes,
    )


@pytest.fixture
def paths(tmp_path):
    paths = Paths(root=tmp_path / "data")
    paths.ensure()
    return paths


@pytest.fixture
def store(paths):
    store = LocalStore(paths)
    yield store
    store.close()


@pytest.fixture
def config():
    return Config(server_url="http://relay.invalid", poll_floor_secs=5, poll_ceiling_secs=60)


@pytest.fixture
def mailbox():
    return FakeMailbox()


@pytest_asyncio.fixture
async def relay_server():
    server = TestServer(make_relay_app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def relay_client(relay_server):
    return MailboxClient(str(relay_server.make_url('')), timeout=5)


@pytest.fixture
def make_peer():
    """Public view of an identity, as a contact would see it."""
    return as_peer
