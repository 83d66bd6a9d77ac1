"""Shared abstractions for media server connectors."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field


class IceCandidate(BaseModel):
    """Network-path candidate in the browser's RTCIceCandidateInit shape."""

    model_config = ConfigDict(populate_by_name=True)

    candidate: str
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_m_line_index: int | None = Field(default=None, alias="sdpMLineIndex")


CandidateHandler = Callable[[IceCandidate], Awaitable[None]]


class MediaEngine(ABC):
    """Abstract provisioning interface of the external media server.

    Media objects are referenced by the opaque string ids the server hands out.
    Every method raises ``MediaEngineError`` when the server rejects or fails
    the request.
    """

    @abstractmethod
    async def create_pipeline(self) -> str:
        """Create a pipeline that will own every element of one call."""

    @abstractmethod
    async def create_recorder(self, pipeline: str, uri: str) -> str:
        """Create a recorder writing to ``uri`` inside ``pipeline``."""

    @abstractmethod
    async def create_transport_endpoint(self, pipeline: str) -> str:
        """Create a WebRTC endpoint inside ``pipeline``."""

    @abstractmethod
    async def subscribe_candidates(self, endpoint: str, handler: CandidateHandler) -> None:
        """Invoke ``handler`` for every candidate the endpoint discovers."""

    @abstractmethod
    async def connect(self, source: str, sink: str) -> None:
        """Route media from ``source`` into ``sink``."""

    @abstractmethod
    async def start_recording(self, recorder: str) -> None:
        ...

    @abstractmethod
    async def process_offer(self, endpoint: str, sdp_offer: str) -> str:
        """Return the SDP answer for ``sdp_offer``."""

    @abstractmethod
    async def gather_candidates(self, endpoint: str) -> None:
        ...

    @abstractmethod
    async def add_candidate(self, endpoint: str, candidate: IceCandidate) -> None:
        ...

    @abstractmethod
    async def release(self, pipeline: str) -> None:
        """Release ``pipeline`` and every element created inside it."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection to the media server."""
