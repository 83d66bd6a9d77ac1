"""WebSocket endpoint carrying the one-to-one call signaling protocol."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from api.dependencies import get_coordinator
from signaling.coordinator import CallCoordinator

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/one2one")
async def one_to_one(
    websocket: WebSocket,
    coordinator: CallCoordinator = Depends(get_coordinator),
) -> None:
    await websocket.accept()
    session_id = coordinator.next_session_id()
    LOGGER.info("Connection received with sessionId %s", session_id)

    try:
        while True:
            message = await websocket.receive_text()
            await coordinator.handle_message(session_id, websocket, message)
    except WebSocketDisconnect:
        LOGGER.info("Connection %s closed", session_id)
    except Exception:
        LOGGER.exception("Connection %s error", session_id)
    finally:
        await coordinator.disconnect(session_id)
