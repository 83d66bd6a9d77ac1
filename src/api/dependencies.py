"""Shared FastAPI dependencies.

Separated to avoid circular imports between the route module and the app
factory.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import WebSocket

if TYPE_CHECKING:  # pragma: no cover
    from signaling.coordinator import CallCoordinator


def get_coordinator(websocket: WebSocket) -> CallCoordinator:
    # Created by the application lifespan; see main.lifespan.
    return websocket.app.state.coordinator
