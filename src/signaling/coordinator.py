"""Call state machine for one-to-one calls.

A pair of sessions is never in an explicit state; it is read off the registry
(``peer`` / ``sdp_offer`` fields) and the active-calls table:

- idle: no peer, no pipeline
- calling: caller stored an offer, both peers set, no pipeline yet
- active: the same ``CallMediaPipeline`` is stored under both session ids
- terminating: the pipeline has been removed and is being released

All mutations of the registry, the candidate queue and the active-calls table
happen while holding ``self._lock``. Building the pipeline runs in its own
task and only takes the lock to publish its outcome.
"""

from __future__ import annotations

import asyncio
import itertools
import logging

from pydantic import ValidationError

from media.base import IceCandidate
from media.candidates import CandidateQueue
from media.connector import MediaEngineConnector
from media.errors import CallTerminatedError, ProvisioningError
from media.orchestrator import CallMediaPipeline, MediaSessionOrchestrator
from signaling.errors import CallValidationError, DeliveryError
from signaling.registry import SessionRegistry, SignalingChannel, UserSession, send_to_channel
from signaling.schemas import (
    CallRequest,
    CallResponse,
    ErrorMessage,
    IceCandidateNotice,
    IceCandidateRequest,
    IncomingCall,
    IncomingCallResponseRequest,
    RegisterRequest,
    RegisterResponse,
    SignalingMessage,
    StartCommunication,
    StopCommunication,
    StopRequest,
    parse_inbound_message,
)

LOGGER = logging.getLogger(__name__)

REMOTE_HANGUP_MESSAGE = "remote user hung up"
DECLINED_MESSAGE = "user declined"


class CallCoordinator:
    """Owns every session, queued candidate and active call of the process."""

    def __init__(
        self,
        connector: MediaEngineConnector,
        *,
        recording_uri_template: str = "file:///tmp/{session_id}.webm",
        provisioning_timeout: float = 30.0,
    ) -> None:
        self.registry = SessionRegistry()
        self.candidates = CandidateQueue()
        self._connector = connector
        self._media = MediaSessionOrchestrator(
            connector,
            self.candidates,
            self._send_candidate,
            recording_uri_template=recording_uri_template,
        )
        self._provisioning_timeout = provisioning_timeout
        self._calls: dict[str, CallMediaPipeline] = {}
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._ids = itertools.count(1)

    def next_session_id(self) -> str:
        return str(next(self._ids))

    def active_call(self, session_id: str) -> CallMediaPipeline | None:
        return self._calls.get(session_id)

    async def handle_message(self, session_id: str, channel: SignalingChannel, text: str) -> None:
        """Parse and dispatch one frame received on ``session_id``'s connection."""

        try:
            message = parse_inbound_message(text)
        except ValidationError:
            LOGGER.warning("Connection %s sent invalid message: %s", session_id, text)
            await self._reply(channel, ErrorMessage(message=f"Invalid message {text}"))
            return

        LOGGER.info("Connection %s received message %s", session_id, message.id)
        if isinstance(message, RegisterRequest):
            await self.register(session_id, channel, message.name)
        elif isinstance(message, CallRequest):
            await self.call(session_id, channel, message.to, message.sdp_offer)
        elif isinstance(message, IncomingCallResponseRequest):
            await self.incoming_call_response(
                session_id, channel, message.from_, message.call_response, message.sdp_offer
            )
        elif isinstance(message, StopRequest):
            await self.stop(session_id)
        elif isinstance(message, IceCandidateRequest):
            await self.on_ice_candidate(session_id, message.candidate)

    async def register(self, session_id: str, channel: SignalingChannel, name: str) -> None:
        async with self._lock:
            try:
                session = self._register(session_id, channel, name)
            except CallValidationError as exc:
                LOGGER.info("Registration of %r rejected: %s", name, exc.detail)
                await self._reply(channel, RegisterResponse(response="rejected", message=exc.detail))
                return
            await self._deliver(session, RegisterResponse(response="accepted"))

    async def call(self, session_id: str, channel: SignalingChannel, to: str, sdp_offer: str) -> None:
        async with self._lock:
            self.candidates.clear(session_id)
            try:
                caller, callee = self._resolve_callee(session_id, to)
            except CallValidationError as exc:
                await self._reply(channel, CallResponse(response="rejected", message=exc.detail))
                return

            caller.sdp_offer = sdp_offer
            caller.peer = callee.name
            callee.peer = caller.name
            try:
                await callee.send_message(IncomingCall(from_=caller.name))
            except DeliveryError as exc:
                LOGGER.warning("Could not notify %r of call from %r: %s", callee.name, caller.name, exc.detail)
                caller.peer = None
                caller.sdp_offer = None
                if callee.peer == caller.name:
                    callee.peer = None
                await self._deliver(caller, CallResponse(response="rejected", message=exc.detail))

    async def incoming_call_response(
        self,
        session_id: str,
        channel: SignalingChannel,
        from_: str | None,
        call_response: str,
        sdp_offer: str | None,
    ) -> None:
        async with self._lock:
            self.candidates.clear(session_id)
            callee = self.registry.get_by_id(session_id)
            caller = self.registry.get_by_name(from_)
            if callee is None or caller is None or caller.peer != callee.name:
                await self._reply(channel, StopCommunication(message=f"unknown from = {from_}"))
                return

            if call_response != "accept":
                LOGGER.info("%r declined call from %r", callee.name, caller.name)
                caller.peer = None
                caller.sdp_offer = None
                callee.peer = None
                await self._deliver(caller, CallResponse(response="rejected", message=DECLINED_MESSAGE))
                return

            if caller.id in self._calls or callee.id in self._calls:
                await self._reply(channel, StopCommunication(message="Call is already established"))
                return
            if not caller.sdp_offer or not sdp_offer:
                await self._notify_failure(caller, callee, "Missing SDP offer")
                return

            # A later caller may have rung the callee meanwhile.
            callee.peer = caller.name
            call = CallMediaPipeline(caller_id=caller.id, callee_id=callee.id)
            self._calls[caller.id] = call
            self._calls[callee.id] = call
            LOGGER.info("%r accepted call from %r; building pipeline", callee.name, caller.name)
            task = asyncio.create_task(self._establish(call, caller.sdp_offer, sdp_offer))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def stop(self, session_id: str) -> None:
        async with self._lock:
            await self._stop(session_id)

    async def on_ice_candidate(self, session_id: str, candidate: IceCandidate) -> None:
        async with self._lock:
            call = self._calls.get(session_id)
            if call is None or session_id not in call.endpoints:
                self.candidates.enqueue(session_id, candidate)
                return
        await self._media.add_candidate(call, session_id, candidate)

    async def disconnect(self, session_id: str) -> None:
        """Tear down whatever the closed connection left behind."""

        async with self._lock:
            await self._stop(session_id)
            self.registry.unregister(session_id)
            self.candidates.clear(session_id)

    async def wait_for_pending_calls(self) -> None:
        """Wait until every in-flight pipeline build has settled."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._media.wait_for_cleanup()

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

        async with self._lock:
            calls: list[CallMediaPipeline] = []
            for call in self._calls.values():
                if all(call is not other for other in calls):
                    calls.append(call)
            self._calls.clear()
            for call in calls:
                await self._media.release(call)
        await self._media.wait_for_cleanup()
        await self._connector.close()

    def _register(self, session_id: str, channel: SignalingChannel, name: str) -> UserSession:
        if not name:
            raise CallValidationError("empty user name")
        if self.registry.get_by_name(name) is not None:
            raise CallValidationError(f"User {name} is already registered")

        current = self.registry.get_by_id(session_id)
        if current is not None:
            if current.peer or session_id in self._calls:
                raise CallValidationError(f"Cannot rename {current.name} during a call")
            self.registry.unregister(session_id)

        session = UserSession(id=session_id, name=name, channel=channel)
        self.registry.register(session)
        return session

    def _resolve_callee(self, session_id: str, to: str) -> tuple[UserSession, UserSession]:
        caller = self.registry.get_by_id(session_id)
        if caller is None:
            raise CallValidationError("You must register before calling")
        if caller.id in self._calls:
            raise CallValidationError("You are already in a call")
        callee = self.registry.get_by_name(to)
        if callee is None:
            raise CallValidationError(f"User {to} is not registered")
        if callee is caller:
            raise CallValidationError("You cannot call yourself")
        if callee.id in self._calls:
            raise CallValidationError(f"User {to} is busy")
        return caller, callee

    async def _stop(self, session_id: str) -> None:
        call = self._calls.pop(session_id, None)
        if call is None:
            return

        await self._media.release(call)
        self._drop_call(call)

        other_id = call.callee_id if session_id == call.caller_id else call.caller_id
        stopper = self.registry.get_by_id(session_id)
        stopped = self.registry.get_by_id(other_id)
        if stopper is not None:
            stopper.peer = None
            stopper.sdp_offer = None
        if stopped is not None:
            stopped.peer = None
            stopped.sdp_offer = None
            await self._deliver(stopped, StopCommunication(message=REMOTE_HANGUP_MESSAGE))
        LOGGER.info("Call of session %s stopped", session_id)
        self.candidates.clear(session_id)

    async def _establish(self, call: CallMediaPipeline, caller_offer: str, callee_offer: str) -> None:
        try:
            caller_answer, callee_answer = await asyncio.wait_for(
                self._provision_and_negotiate(call, caller_offer, callee_offer),
                self._provisioning_timeout,
            )
        except CallTerminatedError:
            LOGGER.info("Call %s -> %s ended during setup", call.caller_id, call.callee_id)
            await self._media.release(call)
            return
        except asyncio.TimeoutError:
            reason = f"Media setup timed out after {self._provisioning_timeout:g}s"
        except ProvisioningError as exc:
            reason = exc.detail
        except Exception as exc:
            LOGGER.exception("Unexpected failure while building call %s -> %s", call.caller_id, call.callee_id)
            reason = str(exc) or exc.__class__.__name__
        else:
            async with self._lock:
                if call.terminated or not self._owns(call):
                    return
                caller = self.registry.get_by_id(call.caller_id)
                callee = self.registry.get_by_id(call.callee_id)
                if callee is not None:
                    await self._deliver(callee, StartCommunication(sdp_answer=callee_answer))
                if caller is not None:
                    caller.sdp_offer = None
                    await self._deliver(caller, CallResponse(response="accepted", sdp_answer=caller_answer))
            LOGGER.info("Call %s -> %s established", call.caller_id, call.callee_id)
            return

        LOGGER.warning("Call %s -> %s failed: %s", call.caller_id, call.callee_id, reason)
        async with self._lock:
            await self._media.release(call)
            if not self._owns(call):
                return
            self._drop_call(call)
            caller = self.registry.get_by_id(call.caller_id)
            callee = self.registry.get_by_id(call.callee_id)
            await self._notify_failure(caller, callee, reason)

    async def _provision_and_negotiate(
        self, call: CallMediaPipeline, caller_offer: str, callee_offer: str
    ) -> tuple[str, str]:
        await self._media.provision_call(call)
        caller_answer = await self._media.negotiate(call, call.caller_id, caller_offer)
        callee_answer = await self._media.negotiate(call, call.callee_id, callee_offer)
        return caller_answer, callee_answer

    async def _notify_failure(
        self, caller: UserSession | None, callee: UserSession | None, reason: str
    ) -> None:
        if caller is not None:
            caller.peer = None
            caller.sdp_offer = None
            await self._deliver(caller, CallResponse(response="rejected", message=reason))
        if callee is not None:
            callee.peer = None
            await self._deliver(callee, StopCommunication(message=reason))

    def _owns(self, call: CallMediaPipeline) -> bool:
        return any(self._calls.get(sid) is call for sid in call.participants)

    def _drop_call(self, call: CallMediaPipeline) -> None:
        for sid in call.participants:
            if self._calls.get(sid) is call:
                del self._calls[sid]

    async def _send_candidate(self, session_id: str, candidate: IceCandidate) -> None:
        session = self.registry.get_by_id(session_id)
        if session is not None:
            await self._deliver(session, IceCandidateNotice(candidate=candidate))

    async def _deliver(self, session: UserSession, message: SignalingMessage) -> None:
        try:
            await session.send_message(message)
        except DeliveryError as exc:
            LOGGER.warning("Could not deliver %s to %r: %s", message.id, session.name, exc.detail)

    async def _reply(self, channel: SignalingChannel, message: SignalingMessage) -> None:
        try:
            await send_to_channel(channel, message)
        except DeliveryError as exc:
            LOGGER.warning("Could not deliver %s: %s", message.id, exc.detail)


def build_coordinator() -> CallCoordinator:
    """Coordinator wired to the media server configured in settings."""

    from config.settings import get_settings
    from media.connector import build_media_engine_connector

    settings = get_settings()
    return CallCoordinator(
        build_media_engine_connector(),
        recording_uri_template=settings.recording_uri_template,
        provisioning_timeout=settings.provisioning_timeout_seconds,
    )
