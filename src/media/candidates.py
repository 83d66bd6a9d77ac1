from __future__ import annotations

from collections.abc import Awaitable, Callable

from media.base import IceCandidate


class CandidateQueue:
    """ICE candidates that arrived before their session's endpoint existed.

    Keys exist only while a session has undelivered candidates.
    """

    def __init__(self) -> None:
        self._queues: dict[str, list[IceCandidate]] = {}

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._queues

    def pending(self, session_id: str) -> list[IceCandidate]:
        return list(self._queues.get(session_id, ()))

    def enqueue(self, session_id: str, candidate: IceCandidate) -> None:
        self._queues.setdefault(session_id, []).append(candidate)

    async def drain_into(
        self,
        session_id: str,
        sink: Callable[[IceCandidate], Awaitable[None]],
    ) -> int:
        """Deliver buffered candidates to ``sink`` in arrival order.

        Candidates enqueued while ``sink`` is suspended are delivered by the same
        call. The final emptiness check and the key removal happen with no await
        in between, so a caller that publishes its endpoint right after this
        returns cannot miss a candidate.
        """

        delivered = 0
        while self._queues.get(session_id):
            candidate = self._queues[session_id].pop(0)
            await sink(candidate)
            delivered += 1
        self._queues.pop(session_id, None)
        return delivered

    def clear(self, session_id: str) -> None:
        self._queues.pop(session_id, None)
