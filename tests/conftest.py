import asyncio
import json
import time
from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedError

from notifeed.infra import stomp
from notifeed.infra.history_client import HistoryClient
from notifeed.models.notification import NotificationRecord
from notifeed.models.stomp_frame import StompFrame
from notifeed.security.credentials import CredentialStore
from notifeed.services.feed_store import FeedStore

API_BASE = "http://api.test/api"
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def ts(minutes):
    return (BASE_TIME + timedelta(minutes=minutes)).isoformat()


def wire(id, type="LIKE", sender_id=None, sender="User", post_id=None, minute=0, read=False, created=True):
    return {
        "id": id,
        "senderId": sender_id if sender_id is not None else id,
        "senderName": sender,
        "senderAvatarUrl": f"https://cdn.test/{id}.png",
        "type": type,
        "postId": post_id,
        "message": f"{sender} did {type}",
        "isRead": read,
        "createdAt": ts(minute) if created else None,
    }


def record(*args, **kwargs):
    return NotificationRecord.model_validate(wire(*args, **kwargs))


def make_token(sub="7", expires_in=3600, **extra):
    claims = {"sub": sub, **extra}
    if expires_in is not None:
        claims["exp"] = int(time.time()) + expires_in
    return jwt.encode(claims, "test-secret-for-signing-tokens-hs256", algorithm="HS256")


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


class FakeHistoryApi:
    """
    In-memory history API behind httpx.MockTransport.
    """
    def __init__(self, pages=None, total_pages=None):
        self.pages = pages or {}
        self.total_pages = total_pages
        self.requests = []
        self.fail_get = False
        self.fail_put = False
        self.gate = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path.endswith("/notifications"):
            if self.gate is not None:
                await self.gate.wait()
            if self.fail_get:
                return httpx.Response(500, json={"error": "boom"})
            page = int(request.url.params["page"])
            total = self.total_pages if self.total_pages is not None else len(self.pages)
            return httpx.Response(200, json={
                "content": self.pages.get(page, []),
                "totalPages": total,
                "totalElements": sum(len(p) for p in self.pages.values()),
                "last": page >= total - 1,
                "first": page == 0,
                "empty": not self.pages.get(page),
            })
        if request.method == "PUT":
            if self.fail_put:
                return httpx.Response(503)
            return httpx.Response(200)
        return httpx.Response(404)

    def transport(self):
        return httpx.MockTransport(self.handler)

    def calls(self, method, suffix=""):
        return [r for r in self.requests if r.method == method and r.url.path.endswith(suffix)]


class FakeConnection:
    """
    Stands in for a websocket carrying STOMP frames. Answers CONNECT with
    CONNECTED automatically; tests push frames or failures into `inbox`.
    """
    def __init__(self, server_heartbeat="0,0", reply=None):
        self.sent = []
        self.inbox = asyncio.Queue()
        self.closed = False
        self.server_heartbeat = server_heartbeat
        self.reply = reply

    async def send(self, message):
        self.sent.append(message)
        if message.startswith("CONNECT\n"):
            reply = self.reply or StompFrame(
                command="CONNECTED",
                headers={"version": "1.2", "heart-beat": self.server_heartbeat},
            )
            self.inbox.put_nowait(stomp.encode(reply))

    async def recv(self):
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self):
        self.closed = True

    def push(self, payload, destination="/user/queue/notifications"):
        body = payload if isinstance(payload, str) else json.dumps(payload)
        self.inbox.put_nowait(stomp.encode(StompFrame(
            command="MESSAGE",
            headers={
                "destination": destination,
                "subscription": "sub-0",
                "message-id": "m-1",
                "content-type": "application/json",
            },
            body=body,
        )))

    def drop(self):
        self.inbox.put_nowait(ConnectionClosedError(None, None))

    def sent_frames(self):
        frames = []
        for message in self.sent:
            frames.extend(stomp.decode(message))
        return frames


class FakeConnector:
    def __init__(self, *outcomes):
        # each outcome is a FakeConnection or an exception to raise
        self.outcomes = list(outcomes)
        self.calls = []
        self.connections = []

    async def __call__(self, url, token):
        self.calls.append((url, token))
        outcome = self.outcomes.pop(0) if self.outcomes else FakeConnection()
        if isinstance(outcome, BaseException):
            raise outcome
        self.connections.append(outcome)
        return outcome


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def history():
    return FakeHistoryApi()


@pytest.fixture
def credentials():
    store = CredentialStore()
    store.set(make_token())
    return store


@pytest_asyncio.fixture()
async def client(history, credentials):
    c = HistoryClient(credentials.current, base_url=API_BASE, transport=history.transport())
    yield c
    await c.aclose()


@pytest_asyncio.fixture()
async def store(client):
    s = FeedStore(client, page_size=10)
    yield s
    await s.aclose()
