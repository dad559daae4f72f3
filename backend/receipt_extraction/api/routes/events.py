"""WebSocket endpoint for live extraction updates.

Clients connect to ``/ws?token=<user_id>`` and send control messages::

    {"event": "subscribe", "userId": "<user_id>"}
    {"event": "unsubscribe", "userId": "<user_id>"}

Each is answered with ``{"event": ..., "success": bool}``. Subscribed
sockets then receive ``{"event": "extraction-update", "data": {...}}``
whenever one of the user's extractions changes state. A connection may
only subscribe to its own user id.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from receipt_extraction.services.notifier import Notifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

_CONTROL_EVENTS = {"subscribe", "unsubscribe"}


async def _handle_control(notifier: Notifier, connection_id: str, user_id: str, message: Any) -> dict[str, Any]:
    if not isinstance(message, dict) or message.get("event") not in _CONTROL_EVENTS:
        return {"event": "error", "success": False, "error": "Unknown message"}
    event = message["event"]
    target = str(message.get("userId") or user_id)
    if target != user_id:
        return {"event": event, "success": False, "error": "Forbidden"}
    if event == "subscribe":
        ok = await notifier.subscribe(connection_id, target)
    else:
        ok = await notifier.unsubscribe(connection_id, target)
    return {"event": event, "success": ok}


@router.websocket("/ws")
async def extraction_updates(websocket: WebSocket, token: Optional[str] = Query(None)):
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    notifier: Notifier = websocket.app.state.services.notifier
    await websocket.accept()
    connection_id = notifier.register(websocket)
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"event": "error", "success": False, "error": "Invalid JSON"})
                continue
            await websocket.send_json(await _handle_control(notifier, connection_id, token, message))
    except WebSocketDisconnect:
        pass
    finally:
        await notifier.disconnect(connection_id)
