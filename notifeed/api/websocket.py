# notifeed/api/websocket.py
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

router = APIRouter(tags=["websocket"])


@router.websocket("/ws/feed")
async def websocket_feed(websocket: WebSocket):
    """
    Live feed for the UI. Sends the current snapshot on connect and a new
    one after every change:
      ws://localhost:8001/ws/feed
    """
    manager = websocket.app.state.ws_manager
    store = websocket.app.state.store

    await manager.connect(websocket, store.snapshot())
    try:
        # keep the socket open; the client has nothing to say
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
