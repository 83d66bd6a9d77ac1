from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any

import websockets

from media.base import CandidateHandler, IceCandidate, MediaEngine
from media.errors import MediaEngineError

LOGGER = logging.getLogger(__name__)

ICE_CANDIDATE_FOUND = "IceCandidateFound"


class KurentoMediaEngine(MediaEngine):
    """Kurento Media Server client speaking JSON-RPC 2.0 over one WebSocket.

    Requests are matched to responses by id. A background reader resolves the
    pending futures and dispatches ``onEvent`` notifications to the handlers
    registered through :meth:`subscribe_candidates`.
    """

    def __init__(self, ws: Any, *, request_timeout: float = 10.0) -> None:
        self._ws = ws
        self._request_timeout = request_timeout
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._session_id: str | None = None
        self._handlers: dict[str, CandidateHandler] = {}
        # endpoint id -> owning pipeline id, to drop handlers on release
        self._owners: dict[str, str] = {}
        self._pipelines: set[str] = set()
        self._closed = False
        self._reader = asyncio.create_task(self._read_loop())

    @classmethod
    async def open(cls, uri: str, *, request_timeout: float = 10.0) -> KurentoMediaEngine:
        LOGGER.info("Connecting to media server: %s", uri)
        ws = await websockets.connect(uri, ping_interval=20, ping_timeout=20)
        return cls(ws, request_timeout=request_timeout)

    @property
    def closed(self) -> bool:
        return self._closed

    async def create_pipeline(self) -> str:
        pipeline = await self._create("MediaPipeline", {})
        self._pipelines.add(pipeline)
        return pipeline

    async def create_recorder(self, pipeline: str, uri: str) -> str:
        recorder = await self._create("RecorderEndpoint", {"mediaPipeline": pipeline, "uri": uri})
        self._track(recorder, pipeline)
        return recorder

    async def create_transport_endpoint(self, pipeline: str) -> str:
        endpoint = await self._create("WebRtcEndpoint", {"mediaPipeline": pipeline})
        self._track(endpoint, pipeline)
        return endpoint

    async def subscribe_candidates(self, endpoint: str, handler: CandidateHandler) -> None:
        # Registered before the request so an event racing the response is not lost.
        self._handlers[endpoint] = handler
        try:
            await self._request("subscribe", {"type": ICE_CANDIDATE_FOUND, "object": endpoint})
        except MediaEngineError:
            self._handlers.pop(endpoint, None)
            raise

    async def connect(self, source: str, sink: str) -> None:
        await self._invoke(source, "connect", {"sink": sink})

    async def start_recording(self, recorder: str) -> None:
        await self._invoke(recorder, "record")

    async def process_offer(self, endpoint: str, sdp_offer: str) -> str:
        answer = await self._invoke(endpoint, "processOffer", {"offer": sdp_offer})
        return str(answer)

    async def gather_candidates(self, endpoint: str) -> None:
        await self._invoke(endpoint, "gatherCandidates")

    async def add_candidate(self, endpoint: str, candidate: IceCandidate) -> None:
        await self._invoke(endpoint, "addIceCandidate", {"candidate": to_kurento_candidate(candidate)})

    async def release(self, pipeline: str) -> None:
        self._pipelines.discard(pipeline)
        for element in [e for e, owner in self._owners.items() if owner == pipeline]:
            self._owners.pop(element, None)
            self._handlers.pop(element, None)
        await self._request("release", {"object": pipeline})

    async def close(self) -> None:
        self._closed = True
        await self._ws.close()
        self._reader.cancel()
        try:
            await self._reader
        except asyncio.CancelledError:
            pass

    def _track(self, element: str, pipeline: str) -> None:
        # Elements of a pipeline released while they were being created die with it.
        if pipeline in self._pipelines:
            self._owners[element] = pipeline

    async def _create(self, object_type: str, constructor_params: dict[str, Any]) -> str:
        value = await self._request(
            "create",
            {"type": object_type, "constructorParams": constructor_params, "properties": {}},
        )
        return str(value)

    async def _invoke(self, target: str, operation: str, params: dict[str, Any] | None = None) -> Any:
        payload: dict[str, Any] = {"object": target, "operation": operation}
        if params:
            payload["operationParams"] = params
        return await self._request("invoke", payload)

    async def _request(self, method: str, params: dict[str, Any]) -> Any:
        if self._closed:
            raise MediaEngineError("Media server connection is closed")

        request_id = next(self._ids)
        if self._session_id:
            params = {**params, "sessionId": self._session_id}
        message = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(json.dumps(message))
            result = await asyncio.wait_for(future, self._request_timeout)
        except asyncio.TimeoutError as exc:
            raise MediaEngineError(f"{method} timed out after {self._request_timeout}s") from exc
        except websockets.ConnectionClosed as exc:
            raise MediaEngineError(f"Media server connection closed: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)

        result = result or {}
        session_id = result.get("sessionId")
        if session_id:
            self._session_id = str(session_id)
        return result.get("value")

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    LOGGER.warning("Ignoring non-JSON frame from media server")
                    continue
                if message.get("method") == "onEvent":
                    await self._dispatch_event(message.get("params") or {})
                    continue
                self._resolve(message)
        except websockets.ConnectionClosed:
            LOGGER.warning("Media server connection closed")
        finally:
            self._closed = True
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(MediaEngineError("Media server connection closed"))

    def _resolve(self, message: dict[str, Any]) -> None:
        future = self._pending.get(message.get("id"))  # type: ignore[arg-type]
        if future is None or future.done():
            return
        error = message.get("error")
        if error:
            detail = error.get("message") if isinstance(error, dict) else str(error)
            future.set_exception(MediaEngineError(str(detail)))
        else:
            future.set_result(message.get("result"))

    async def _dispatch_event(self, params: dict[str, Any]) -> None:
        value = params.get("value") or {}
        if value.get("type") != ICE_CANDIDATE_FOUND:
            return
        data = value.get("data") or {}
        handler = self._handlers.get(str(value.get("object") or data.get("source") or ""))
        if handler is None:
            return
        try:
            candidate = IceCandidate.model_validate(data.get("candidate") or {})
        except ValueError:
            LOGGER.warning("Malformed IceCandidateFound event: %s", data)
            return
        try:
            await handler(candidate)
        except Exception:
            LOGGER.exception("Candidate handler failed")


def to_kurento_candidate(candidate: IceCandidate) -> dict[str, Any]:
    """Tag a browser candidate with the Kurento complex type markers."""

    return {
        "__module__": "kurento",
        "__type__": "IceCandidate",
        "candidate": candidate.candidate,
        "sdpMid": candidate.sdp_mid or "",
        "sdpMLineIndex": candidate.sdp_m_line_index or 0,
    }
