from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from slotswap.auth import decode_subject
from slotswap.realtime import hub

router = APIRouter()


@router.websocket("/ws/{user_id}")
async def realtime_channel(websocket: WebSocket, user_id: str, token: Optional[str] = Query(None)):
    """Push channel for swap events addressed to ``user_id``; ``token`` must belong to that user."""
    if token is None or decode_subject(token) != user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await hub.connect(user_id, websocket)
    try:
        while True:
            # clients only listen; inbound frames are ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        hub.disconnect(user_id, websocket)
