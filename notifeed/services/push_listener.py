# notifeed/services/push_listener.py
"""
Keeps one STOMP subscription to the user's notification queue alive and
feeds every pushed record into the FeedStore.

    DISCONNECTED -> CONNECTING -> CONNECTED
          ^             |             |
          |             v             v
          +-------- RECONNECTING <----+

Reconnects use jittered exponential backoff and stop as soon as no usable
credential is left. Heart-beats run in both directions so a silently dead
socket is noticed within a bounded time.
"""
import asyncio
import os
import random
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from notifeed.errors import ProtocolError
from notifeed.infra import stomp
from notifeed.infra.push_transport import PUSH_URL, PushConnection, open_websocket, stomp_host
from notifeed.models.notification import NotificationRecord
from notifeed.models.stomp_frame import StompFrame
from notifeed.security.credentials import CredentialStore
from notifeed.services.feed_store import FeedStore

DESTINATION = os.getenv("NOTIFEED_PUSH_DESTINATION", "/user/queue/notifications")
HEARTBEAT_MS = int(os.getenv("NOTIFEED_HEARTBEAT_MS", "4000"))
RECONNECT_BASE = float(os.getenv("NOTIFEED_RECONNECT_BASE", "1"))
RECONNECT_MAX = float(os.getenv("NOTIFEED_RECONNECT_MAX", "30"))

# missed-beat tolerance on the incoming side
HEARTBEAT_GRACE = 2.0
HANDSHAKE_TIMEOUT = 10.0

CONNECT_ERROR_MESSAGE = "Failed to connect to notification service"

logger = structlog.get_logger(__name__)

Connector = Callable[[str, str], Awaitable[PushConnection]]


class ListenerState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"


def backoff_delay(
    attempt: int,
    base: float = RECONNECT_BASE,
    cap: float = RECONNECT_MAX,
    jitter: Callable[[], float] = random.random,
) -> float:
    """
    Exponential backoff with "equal jitter": the delay for attempt n lies
    in [d/2, d] where d = min(cap, base * 2**(n-1)).
    """
    ceiling = min(cap, base * (2 ** max(attempt - 1, 0)))
    return ceiling / 2 + (ceiling / 2) * jitter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PushListener:
    def __init__(
        self,
        store: FeedStore,
        credentials: CredentialStore,
        url: str = PUSH_URL,
        destination: str = DESTINATION,
        heartbeat_ms: int = HEARTBEAT_MS,
        reconnect_base: float = RECONNECT_BASE,
        reconnect_max: float = RECONNECT_MAX,
        connector: Connector = open_websocket,
        jitter: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._credentials = credentials
        self._url = url
        self._destination = destination
        self._heartbeat_ms = heartbeat_ms
        self._reconnect_base = reconnect_base
        self._reconnect_max = reconnect_max
        self._connector = connector
        self._jitter = jitter
        self._sleep = sleep

        self._state = ListenerState.DISCONNECTED
        self._task: Optional[asyncio.Task] = None
        # credential changes applied one after another
        self._lifecycle: Optional[asyncio.Task] = None
        self._conn: Optional[PushConnection] = None
        self._attempt = 0

        self._started_at: Optional[str] = None
        self._last_connected_at: Optional[str] = None
        self._last_message_at: Optional[str] = None
        self._last_error: Optional[str] = None
        self._received = 0

    @property
    def state(self) -> ListenerState:
        return self._state

    def status(self) -> dict:
        return {
            "state": self._state.value,
            "attempt": self._attempt,
            "startedAt": self._started_at,
            "lastConnectedAt": self._last_connected_at,
            "lastMessageAt": self._last_message_at,
            "lastError": self._last_error,
            "received": self._received,
            "destination": self._destination,
            "hasCredential": self._credentials.usable(),
        }

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        if not self._credentials.usable():
            logger.info("push_listener_waiting_for_credential")
            return
        self._started_at = _now()
        self._attempt = 0
        self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        """Tears the subscription down from any state."""
        task, self._task = self._task, None
        conn = self._conn
        if conn is not None and self._state == ListenerState.CONNECTED:
            try:
                await conn.send(stomp.encode(stomp.disconnect_frame()))
            except (OSError, WebSocketException) as e:
                logger.debug("push_disconnect_frame_failed", error=str(e))
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._set_state(ListenerState.DISCONNECTED)

    def on_credential_change(self, token: Optional[str]) -> None:
        """
        Credential observer: start on login, tear down on logout.
        Changes are chained so a logout followed by a login always ends
        with the listener running.
        """
        previous = self._lifecycle
        self._lifecycle = asyncio.ensure_future(self._apply_credential(token, previous))
        self._lifecycle.add_done_callback(self._lifecycle_done)

    async def _apply_credential(self, token: Optional[str], previous: Optional[asyncio.Task]) -> None:
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        if token:
            self.start()
        else:
            await self.stop()

    def _lifecycle_done(self, task: asyncio.Task) -> None:
        if self._lifecycle is task:
            self._lifecycle = None
        if not task.cancelled() and task.exception() is not None:
            logger.error("push_lifecycle_failed", error=str(task.exception()))

    # ------------------------------------------------------------------
    # connection loop
    # ------------------------------------------------------------------
    async def _run(self) -> None:
        while True:
            token = self._credentials.current()
            if not token:
                logger.info("push_listener_no_credential")
                self._set_state(ListenerState.DISCONNECTED)
                return

            self._set_state(ListenerState.CONNECTING)
            try:
                await self._session(token)
                logger.info("push_channel_closed")
            except asyncio.CancelledError:
                raise
            except ProtocolError as e:
                self._fail(e)
                self._store.report_error(CONNECT_ERROR_MESSAGE)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                self._fail(e)
            except Exception as e:
                logger.exception("push_listener_unexpected_error")
                self._fail(e)

            self._attempt += 1
            delay = backoff_delay(
                self._attempt, self._reconnect_base, self._reconnect_max, self._jitter
            )
            self._set_state(ListenerState.RECONNECTING)
            logger.info("push_reconnect_scheduled", attempt=self._attempt, delay=round(delay, 3))
            await self._sleep(delay)

    async def _session(self, token: str) -> None:
        conn = await self._connector(self._url, token)
        self._conn = conn
        heartbeat_task: Optional[asyncio.Task] = None
        try:
            await conn.send(stomp.encode(stomp.connect_frame(
                stomp_host(self._url), token, (self._heartbeat_ms, self._heartbeat_ms)
            )))
            connected = await asyncio.wait_for(self._await_connected(conn), HANDSHAKE_TIMEOUT)

            outgoing, incoming = stomp.negotiate_heartbeat(
                (self._heartbeat_ms, self._heartbeat_ms),
                stomp.parse_heartbeat(connected.header("heart-beat")),
            )
            await conn.send(stomp.encode(stomp.subscribe_frame(self._destination)))

            self._attempt = 0
            self._last_connected_at = _now()
            self._set_state(ListenerState.CONNECTED)
            self._store.clear_error(CONNECT_ERROR_MESSAGE)
            logger.info(
                "push_subscribed",
                destination=self._destination,
                heartbeat_out=outgoing,
                heartbeat_in=incoming,
            )

            if outgoing:
                heartbeat_task = asyncio.ensure_future(self._send_heartbeats(conn, outgoing))
            timeout = incoming * HEARTBEAT_GRACE / 1000 if incoming else None

            while True:
                try:
                    data = await asyncio.wait_for(conn.recv(), timeout)
                except asyncio.TimeoutError:
                    raise asyncio.TimeoutError(f"no data for {timeout}s, heart-beat lost")
                except ConnectionClosedOK:
                    return
                self._dispatch(data)
        finally:
            if heartbeat_task is not None:
                heartbeat_task.cancel()
                await asyncio.gather(heartbeat_task, return_exceptions=True)
            self._conn = None
            try:
                await conn.close()
            except (OSError, WebSocketException):
                pass

    async def _await_connected(self, conn: PushConnection) -> StompFrame:
        while True:
            for frame in self._decode(await conn.recv(), strict=True):
                if frame.command == "CONNECTED":
                    return frame
                if frame.command == "ERROR":
                    raise ProtocolError(self._error_text(frame))
                raise ProtocolError(f"expected CONNECTED, got {frame.command}")

    async def _send_heartbeats(self, conn: PushConnection, every_ms: int) -> None:
        try:
            while True:
                await asyncio.sleep(every_ms / 1000)
                await conn.send(stomp.HEARTBEAT)
        except (OSError, WebSocketException) as e:
            logger.warning("push_heartbeat_send_failed", error=str(e))
            # closing wakes the receive loop, which then reconnects
            try:
                await conn.close()
            except (OSError, WebSocketException) as close_error:
                logger.debug("push_close_failed", error=str(close_error))

    # ------------------------------------------------------------------
    # inbound frames
    # ------------------------------------------------------------------
    def _decode(self, data, strict: bool = False):
        try:
            return stomp.decode(data)
        except ProtocolError as e:
            if strict:
                raise
            logger.warning("push_frame_dropped", reason=str(e))
            return []

    def _dispatch(self, data) -> None:
        for frame in self._decode(data):
            if frame.command == "MESSAGE":
                self._handle_message(frame)
            elif frame.command == "ERROR":
                raise ProtocolError(self._error_text(frame))
            else:
                logger.debug("push_frame_ignored", command=frame.command)

    def _handle_message(self, frame: StompFrame) -> None:
        try:
            record = NotificationRecord.model_validate_json(frame.body)
        except ValidationError as e:
            logger.warning(
                "push_record_dropped",
                destination=frame.header("destination"),
                errors=e.error_count(),
            )
            return
        self._received += 1
        self._last_message_at = _now()
        self._store.ingest(record)

    @staticmethod
    def _error_text(frame: StompFrame) -> str:
        text = frame.header("message") or frame.body.strip() or "STOMP ERROR frame"
        logger.error("push_stomp_error", message=text, body=frame.body[:200])
        return text

    # ------------------------------------------------------------------
    def _fail(self, error: Exception) -> None:
        self._last_error = f"{type(error).__name__}: {error}"
        logger.warning("push_channel_failed", error=self._last_error, attempt=self._attempt)

    def _set_state(self, state: ListenerState) -> None:
        if state is self._state:
            return
        logger.info("push_listener_state", previous=self._state.value, state=state.value)
        self._state = state
