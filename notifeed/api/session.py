# notifeed/api/session.py
from fastapi import APIRouter, Depends, HTTPException, Request, status

from notifeed.api.dependencies import get_credentials, get_listener, get_store
from notifeed.errors import CredentialError
from notifeed.security.credentials import CredentialStore
from notifeed.security.jwt_utils import bearer_from_header
from notifeed.services.feed_store import FeedStore
from notifeed.services.push_listener import PushListener

router = APIRouter(prefix="/session", tags=["session"])


@router.post("")
async def open_session(
    request: Request,
    credentials: CredentialStore = Depends(get_credentials),
    store: FeedStore = Depends(get_store),
):
    """
    Installs the bearer token from the Authorization header.
    Loads the first page; the push listener starts through the
    credential observer.
    """
    auth_header = request.headers.get("Authorization", "")
    try:
        token = bearer_from_header(auth_header)
        claims = credentials.set(token)
    except CredentialError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

    await store.refresh()
    return {"ok": True, "sub": str(claims["sub"])}


@router.delete("")
async def close_session(
    credentials: CredentialStore = Depends(get_credentials),
    listener: PushListener = Depends(get_listener),
    store: FeedStore = Depends(get_store),
):
    """
    Logout: forget the token, tear down the push channel, drop the feed.
    """
    credentials.clear()
    await listener.stop()
    store.reset()
    return {"ok": True}
