"""Creation, negotiation and release of the per-call media pipeline."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from media.base import IceCandidate, MediaEngine
from media.candidates import CandidateQueue
from media.connector import MediaEngineConnector
from media.errors import CallTerminatedError, MediaEngineError, ProvisioningError

LOGGER = logging.getLogger(__name__)

CandidateNotifier = Callable[[str, IceCandidate], Awaitable[None]]


@dataclass(eq=False)
class CallMediaPipeline:
    """Media resources of one accepted call, shared by both participants.

    ``endpoints`` and ``recorders`` are keyed by session id. An endpoint is
    published here only once the session's early candidates have been handed
    to it.
    """

    caller_id: str
    callee_id: str
    pipeline: str | None = None
    endpoints: dict[str, str] = field(default_factory=dict)
    recorders: dict[str, str] = field(default_factory=dict)
    terminated: bool = False
    engine: MediaEngine | None = field(default=None, repr=False)

    @property
    def participants(self) -> tuple[str, str]:
        return (self.caller_id, self.callee_id)

    @property
    def ready(self) -> bool:
        return (
            self.pipeline is not None
            and not self.terminated
            and all(sid in self.endpoints and sid in self.recorders for sid in self.participants)
        )


class MediaSessionOrchestrator:
    def __init__(
        self,
        connector: MediaEngineConnector,
        candidates: CandidateQueue,
        notify_candidate: CandidateNotifier,
        *,
        recording_uri_template: str = "file:///tmp/{session_id}.webm",
    ) -> None:
        self._connector = connector
        self._candidates = candidates
        self._notify_candidate = notify_candidate
        self._recording_uri_template = recording_uri_template
        self._cleanups: set[asyncio.Task] = set()

    async def provision_call(self, call: CallMediaPipeline) -> CallMediaPipeline:
        """Build and wire the pipeline for ``call``.

        Raises:
            ProvisioningError: any step failed; everything created so far has
                been released. ``CallTerminatedError`` when the call was torn
                down while this was in flight.
        """

        engine = await self._connector.acquire()
        call.engine = engine
        try:
            call.pipeline = await self._create_pipeline(engine)
            self._ensure_live(call)

            results = await asyncio.gather(
                self._add_participant(engine, call, call.pipeline, call.caller_id),
                self._add_participant(engine, call, call.pipeline, call.callee_id),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            self._ensure_live(call)

            caller_ep = call.endpoints[call.caller_id]
            callee_ep = call.endpoints[call.callee_id]
            await engine.connect(caller_ep, call.recorders[call.caller_id])
            await engine.connect(caller_ep, callee_ep)
            await engine.connect(callee_ep, call.recorders[call.callee_id])
            await engine.connect(callee_ep, caller_ep)
            self._ensure_live(call)

            await asyncio.gather(
                engine.start_recording(call.recorders[call.caller_id]),
                engine.start_recording(call.recorders[call.callee_id]),
            )
            self._ensure_live(call)
        except MediaEngineError as exc:
            LOGGER.warning("Pipeline for %s -> %s failed: %s", call.caller_id, call.callee_id, exc)
            await self.release(call)
            raise ProvisioningError(str(exc)) from exc
        except ProvisioningError:
            await self.release(call)
            raise

        LOGGER.info("Pipeline %s ready for %s -> %s", call.pipeline, call.caller_id, call.callee_id)
        return call

    async def negotiate(self, call: CallMediaPipeline, session_id: str, sdp_offer: str) -> str:
        """Process ``sdp_offer`` on the session's endpoint and start gathering candidates."""

        self._ensure_live(call)
        endpoint = call.endpoints.get(session_id)
        if call.engine is None or endpoint is None:
            raise ProvisioningError(f"No media endpoint for session {session_id}")

        try:
            answer, _ = await asyncio.gather(
                call.engine.process_offer(endpoint, sdp_offer),
                call.engine.gather_candidates(endpoint),
            )
        except MediaEngineError as exc:
            raise ProvisioningError(str(exc)) from exc
        return answer

    async def add_candidate(self, call: CallMediaPipeline, session_id: str, candidate: IceCandidate) -> None:
        endpoint = call.endpoints.get(session_id)
        if call.engine is None or endpoint is None or call.terminated:
            return
        try:
            await call.engine.add_candidate(endpoint, candidate)
        except MediaEngineError as exc:
            LOGGER.warning("addIceCandidate for session %s failed: %s", session_id, exc)

    async def release(self, call: CallMediaPipeline | None) -> None:
        """Release the pipeline and everything inside it. Safe to call repeatedly."""

        if call is None:
            return
        call.terminated = True
        pipeline, call.pipeline = call.pipeline, None
        if pipeline is None or call.engine is None:
            return
        try:
            await call.engine.release(pipeline)
        except MediaEngineError as exc:
            LOGGER.warning("Releasing pipeline %s failed: %s", pipeline, exc)
        else:
            LOGGER.info("Released pipeline %s", pipeline)

    async def wait_for_cleanup(self) -> None:
        """Wait for pipelines orphaned by cancelled provisioning to be released."""

        while self._cleanups:
            await asyncio.gather(*list(self._cleanups), return_exceptions=True)

    async def _create_pipeline(self, engine: MediaEngine) -> str:
        creating = asyncio.ensure_future(engine.create_pipeline())
        try:
            return await asyncio.shield(creating)
        except asyncio.CancelledError:
            # The server still creates the pipeline; nobody else will know its id.
            task = asyncio.create_task(self._release_orphan(engine, creating))
            self._cleanups.add(task)
            task.add_done_callback(self._cleanups.discard)
            raise

    async def _release_orphan(self, engine: MediaEngine, creating: asyncio.Future) -> None:
        try:
            pipeline = await creating
        except MediaEngineError:
            return
        try:
            await engine.release(pipeline)
        except MediaEngineError as exc:
            LOGGER.warning("Releasing orphaned pipeline %s failed: %s", pipeline, exc)
        else:
            LOGGER.info("Released orphaned pipeline %s", pipeline)

    async def _add_participant(
        self, engine: MediaEngine, call: CallMediaPipeline, pipeline: str, session_id: str
    ) -> None:
        uri = self._recording_uri_template.format(session_id=session_id)
        recorder = await engine.create_recorder(pipeline, uri)
        call.recorders[session_id] = recorder
        endpoint = await engine.create_transport_endpoint(pipeline)
        self._ensure_live(call)

        async def on_candidate_found(candidate: IceCandidate) -> None:
            await self._notify_candidate(session_id, candidate)

        await engine.subscribe_candidates(endpoint, on_candidate_found)

        async def sink(candidate: IceCandidate) -> None:
            await engine.add_candidate(endpoint, candidate)

        drained = await self._candidates.drain_into(session_id, sink)
        # No await between the drain's last check and this assignment.
        call.endpoints[session_id] = endpoint
        if drained:
            LOGGER.debug("Delivered %d queued candidates for session %s", drained, session_id)

    @staticmethod
    def _ensure_live(call: CallMediaPipeline) -> None:
        if call.terminated:
            raise CallTerminatedError()
