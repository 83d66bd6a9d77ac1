from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from signaling.errors import DeliveryError
from signaling.schemas import SignalingMessage, dump_message

LOGGER = logging.getLogger(__name__)


class SignalingChannel(Protocol):
    """Outbound half of a client connection (a FastAPI ``WebSocket`` fits)."""

    async def send_json(self, data: Any) -> None:  # pragma: no cover - protocol stub
        ...


async def send_to_channel(channel: SignalingChannel, message: SignalingMessage) -> None:
    try:
        await channel.send_json(dump_message(message))
    except Exception as exc:
        raise DeliveryError(f"Error {exc}") from exc


@dataclass(eq=False)
class UserSession:
    """A registered browser: caller or callee."""

    id: str
    name: str
    channel: SignalingChannel = field(repr=False)
    peer: str | None = None
    sdp_offer: str | None = None

    async def send_message(self, message: SignalingMessage) -> None:
        """Raises ``DeliveryError`` when the connection cannot take the message."""

        await send_to_channel(self.channel, message)


class SessionRegistry:
    """Registered sessions indexed by id and by name.

    Both indexes always hold the same set of sessions. Name uniqueness is
    checked by the caller before :meth:`register`.
    """

    def __init__(self) -> None:
        self._by_id: dict[str, UserSession] = {}
        self._by_name: dict[str, UserSession] = {}

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self) -> Iterator[UserSession]:
        return iter(list(self._by_id.values()))

    def register(self, session: UserSession) -> None:
        self._by_id[session.id] = session
        self._by_name[session.name] = session
        LOGGER.info("Registered %r as session %s", session.name, session.id)

    def unregister(self, session_id: str) -> None:
        session = self._by_id.pop(session_id, None)
        if session is None:
            return
        if self._by_name.get(session.name) is session:
            del self._by_name[session.name]
        LOGGER.info("Unregistered %r (session %s)", session.name, session_id)

    def get_by_id(self, session_id: str) -> UserSession | None:
        return self._by_id.get(session_id)

    def get_by_name(self, name: str | None) -> UserSession | None:
        if not name:
            return None
        return self._by_name.get(name)
