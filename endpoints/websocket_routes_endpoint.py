from fastapi import APIRouter, WebSocket, WebSocketDisconnect

import json, logging
from typing import Optional

from service.connection_manager_service import ConnectionManager
from service.exceptions import MalformedInputError, SessionRejectedError

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger(__name__)


@router.websocket("/ws/rooms/{room_name}")
async def websocket_endpoint(websocket: WebSocket, room_name: str, code: str = "", display_name: Optional[str] = None):
    manager: ConnectionManager = websocket.app.state.manager
    try:
        membership = await manager.connect(websocket, room_name, code, display_name)
    except SessionRejectedError:
        return

    try:
        while not membership.is_ended:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_text(json.dumps({"type": "error", "message": "Invalid JSON format"}))
                continue

            try:
                await manager.handle_message(websocket, message)
            except MalformedInputError as e:
                await websocket.send_text(json.dumps({"type": "error", "message": str(e)}))

        await membership.settle()
        await websocket.close()
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(websocket)
