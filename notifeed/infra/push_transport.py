# notifeed/infra/push_transport.py
import os
from typing import Protocol, Union

import httpx
from websockets.asyncio.client import connect

PUSH_URL = os.getenv("NOTIFEED_PUSH_URL", "ws://localhost:8080/ws/websocket")
STOMP_SUBPROTOCOLS = ["v12.stomp", "v11.stomp", "v10.stomp"]
OPEN_TIMEOUT = 10


class PushConnection(Protocol):
    """
    What the listener needs from a socket. websockets' ClientConnection
    satisfies it; tests pass in-memory fakes.
    """

    async def send(self, message: str) -> None: ...

    async def recv(self) -> Union[str, bytes]: ...

    async def close(self) -> None: ...


def handshake_url(url: str, token: str) -> str:
    # some gateways only see the query string during the upgrade
    return str(httpx.URL(url).copy_merge_params({"token": token}))


def stomp_host(url: str) -> str:
    return httpx.URL(url).host or "localhost"


async def open_websocket(url: str, token: str) -> PushConnection:
    """
    Opens the raw WebSocket carrying STOMP frames.
    Keepalive is done with STOMP heart-beats, so websocket pings are off.
    """
    return await connect(
        handshake_url(url, token),
        subprotocols=STOMP_SUBPROTOCOLS,
        additional_headers={"Authorization": f"Bearer {token}"},
        ping_interval=None,
        open_timeout=OPEN_TIMEOUT,
    )
