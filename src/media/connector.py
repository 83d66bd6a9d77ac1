from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from media.base import MediaEngine
from media.errors import EngineUnavailableError

LOGGER = logging.getLogger(__name__)

EngineFactory = Callable[[str], Awaitable[MediaEngine]]


class MediaEngineConnector:
    """Process-wide, lazily established connection to the media server.

    The first successful connection is kept for the lifetime of the process.
    Concurrent callers of :meth:`acquire` wait for the same attempt; a failed
    attempt is not cached, so the next call tries again.
    """

    def __init__(self, uri: str, factory: EngineFactory) -> None:
        self._uri = uri
        self._factory = factory
        self._lock = asyncio.Lock()
        self._engine: MediaEngine | None = None

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def engine(self) -> MediaEngine | None:
        return self._engine

    async def acquire(self) -> MediaEngine:
        if self._engine is not None:
            return self._engine

        async with self._lock:
            if self._engine is None:
                try:
                    self._engine = await self._factory(self._uri)
                except Exception as exc:
                    LOGGER.error("Media server connection to %s failed: %s", self._uri, exc)
                    raise EngineUnavailableError(
                        f"Could not find media server at address {self._uri}: {exc}"
                    ) from exc
                LOGGER.info("Connected to media server at %s", self._uri)
            return self._engine

    async def close(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            await engine.close()


def build_media_engine_connector() -> MediaEngineConnector:
    """Instantiate the connector configured in settings."""

    from config.settings import get_settings
    from media.kurento import KurentoMediaEngine

    settings = get_settings()
    timeout = settings.media_request_timeout_seconds

    async def _connect(uri: str) -> MediaEngine:
        return await asyncio.wait_for(
            KurentoMediaEngine.open(uri, request_timeout=timeout),
            timeout,
        )

    return MediaEngineConnector(settings.media_server_uri, _connect)
