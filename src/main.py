"""Entry point for the one-to-one call signaling service."""

from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from api.routes import router as signaling_router
from config.settings import get_settings
from signaling.coordinator import build_coordinator

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.coordinator = build_coordinator()
    LOGGER.info("Signaling server started; media server at %s", settings.media_server_uri)
    try:
        yield
    finally:
        await app.state.coordinator.close()
        LOGGER.info("Signaling server stopped")


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="One-to-one Call Signaling",
    description="Signaling and media orchestration for one-to-one WebRTC calls with recording.",
    lifespan=lifespan,
)
app.include_router(signaling_router)

if settings.static_dir is not None and settings.static_dir.is_dir():
    app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="static")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="One-to-one call signaling server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument(
        "--ws-uri",
        default=None,
        help="Media server JSON-RPC WebSocket URI (overrides MEDIA_SERVER_URI)",
    )
    return parser.parse_args()


def main() -> None:
    import uvicorn

    args = _parse_args()
    if args.ws_uri:
        settings.media_server_uri = args.ws_uri
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
