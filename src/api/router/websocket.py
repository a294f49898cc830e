"""WebSocket router for live claim notifications."""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from src.core.logger.logger import logger

router = APIRouter()


@router.websocket("/ws/claims")
async def claims_websocket(websocket: WebSocket):
    """
    Pushes every newly ingested claim history entry to connected clients.
    Incoming client messages are only logged.
    """
    manager = websocket.app.state.ws_manager
    await manager.connect(websocket)

    try:
        while True:
            data = await websocket.receive_text()
            logger.debug(f"Received via WebSocket: {data}")

    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        manager.disconnect(websocket)
