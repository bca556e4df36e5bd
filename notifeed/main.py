# notifeed/main.py
import os
from dotenv import load_dotenv

# 1) load environment variables from .env before the modules read them
load_dotenv()

from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from notifeed.api.notifications import router as notifications_router
from notifeed.api.session import router as session_router
from notifeed.api.websocket import router as ws_router
from notifeed.errors import CredentialError, NotifeedError
from notifeed.infra.history_client import HistoryClient
from notifeed.infra.push_transport import open_websocket
from notifeed.logging_config import configure_logging
from notifeed.security.credentials import CredentialStore
from notifeed.services.feed_store import FeedStore
from notifeed.services.push_listener import Connector, PushListener
from notifeed.services.websocket_manager import WebSocketManager

ACCESS_TOKEN = os.getenv("NOTIFEED_ACCESS_TOKEN")

logger = structlog.get_logger(__name__)


def create_app(
    history_transport: Optional[httpx.AsyncBaseTransport] = None,
    connector: Connector = open_websocket,
    access_token: Optional[str] = ACCESS_TOKEN,
) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()

        credentials = CredentialStore()
        client = HistoryClient(credentials.current, transport=history_transport)
        store = FeedStore(client)
        listener = PushListener(store, credentials, connector=connector)
        ws_manager = WebSocketManager()

        # 2) wiring: login/logout drives the listener, feed changes reach the UI
        credentials.observe(listener.on_credential_change)
        store.subscribe(ws_manager.broadcast)

        app.state.credentials = credentials
        app.state.store = store
        app.state.listener = listener
        app.state.ws_manager = ws_manager

        if access_token:
            try:
                credentials.set(access_token)
            except CredentialError as e:
                logger.warning("startup_credential_rejected", error=str(e))
            else:
                await store.refresh()

        logger.info("app_startup")
        yield
        await listener.stop()
        await store.aclose()
        await client.aclose()
        logger.info("app_shutdown")

    app = FastAPI(title="Notification Feed", lifespan=lifespan)

    # 3) CORS (restrict origins in production)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotifeedError)
    async def notifeed_error_handler(request: Request, exc: NotifeedError):
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    # 4) REST routes
    app.include_router(notifications_router)
    app.include_router(session_router)
    # 5) UI WebSocket
    app.include_router(ws_router)
    return app


app = create_app()
