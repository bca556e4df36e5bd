# notifeed/api/notifications.py
from fastapi import APIRouter, Depends

from notifeed.api.dependencies import get_listener, get_store
from notifeed.models.feed_state import FeedSnapshot
from notifeed.services.feed_store import FeedStore
from notifeed.services.push_listener import PushListener

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=FeedSnapshot)
async def get_feed(store: FeedStore = Depends(get_store)):
    """
    Current display list, unread counter and paging flags.
    """
    return store.snapshot()


@router.post("/more", response_model=FeedSnapshot)
async def load_more(store: FeedStore = Depends(get_store)):
    await store.load_more()
    return store.snapshot()


@router.post("/refresh", response_model=FeedSnapshot)
async def refresh(store: FeedStore = Depends(get_store)):
    """
    Reloads page 0. Also the retry action after a failed fetch.
    """
    await store.refresh()
    return store.snapshot()


@router.post("/read-all", response_model=FeedSnapshot)
async def mark_all_read(store: FeedStore = Depends(get_store)):
    await store.mark_all_as_read()
    return store.snapshot()


@router.post("/{notification_id}/read", response_model=FeedSnapshot)
async def mark_read(notification_id: int, store: FeedStore = Depends(get_store)):
    """
    Marks one record read. Optimistic: a failing backend call is logged
    and the local change is kept.
    """
    await store.mark_as_read(notification_id)
    return store.snapshot()


@router.get("/unread-count")
async def unread_count(store: FeedStore = Depends(get_store)):
    """
    Counts unread display entries; a group with unread members counts once.
    """
    return {"count": store.unread_count}


# =========================
# Push listener diagnostics
# =========================
@router.get("/debug/listener-status")
async def listener_status(listener: PushListener = Depends(get_listener)):
    """
    State of the push subscription:
    - state: DISCONNECTED / CONNECTING / CONNECTED / RECONNECTING
    - attempt: reconnect attempts since the last successful connect
    - lastConnectedAt / lastMessageAt / lastError
    - hasCredential: whether a usable token is installed
    """
    return listener.status()
