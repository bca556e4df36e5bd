# notifeed/api/dependencies.py
from fastapi import Request

from notifeed.security.credentials import CredentialStore
from notifeed.services.feed_store import FeedStore
from notifeed.services.push_listener import PushListener
from notifeed.services.websocket_manager import WebSocketManager


def get_store(request: Request) -> FeedStore:
    return request.app.state.store


def get_listener(request: Request) -> PushListener:
    return request.app.state.listener


def get_credentials(request: Request) -> CredentialStore:
    return request.app.state.credentials


def get_ws_manager(request: Request) -> WebSocketManager:
    return request.app.state.ws_manager
