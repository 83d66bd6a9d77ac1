from __future__ import annotations

import asyncio
import itertools
import os
import sys
from collections import defaultdict
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from media.base import CandidateHandler, IceCandidate, MediaEngine  # noqa: E402
from media.connector import MediaEngineConnector  # noqa: E402
from media.errors import MediaEngineError  # noqa: E402
from signaling.coordinator import CallCoordinator  # noqa: E402


class FakeMediaEngine(MediaEngine):
    """In-memory media server.

    ``fail_on`` makes the named method raise; ``hold(name)`` parks every call
    of that method until the returned release event is set.
    """

    def __init__(self, *, fail_on: str | None = None, gathered: list[IceCandidate] | None = None) -> None:
        self.fail_on = fail_on
        self.gathered = gathered or []
        self.calls: list[tuple] = []
        self.handlers: dict[str, CandidateHandler] = {}
        self.added: dict[str, list[IceCandidate]] = defaultdict(list)
        self.released: list[str] = []
        self.closed = False
        self._ids = itertools.count(1)
        self._holds: dict[str, tuple[asyncio.Event, asyncio.Event]] = {}

    def hold(self, name: str) -> tuple[asyncio.Event, asyncio.Event]:
        reached, release = asyncio.Event(), asyncio.Event()
        self._holds[name] = (reached, release)
        return reached, release

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def _step(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        hold = self._holds.get(name)
        if hold is not None:
            reached, release = hold
            reached.set()
            await release.wait()
        if self.fail_on == name:
            raise MediaEngineError(f"{name} failed")

    async def create_pipeline(self) -> str:
        await self._step("create_pipeline")
        return f"pipeline-{next(self._ids)}"

    async def create_recorder(self, pipeline: str, uri: str) -> str:
        await self._step("create_recorder", pipeline, uri)
        return f"recorder-{next(self._ids)}"

    async def create_transport_endpoint(self, pipeline: str) -> str:
        await self._step("create_transport_endpoint", pipeline)
        return f"webrtc-{next(self._ids)}"

    async def subscribe_candidates(self, endpoint: str, handler: CandidateHandler) -> None:
        await self._step("subscribe_candidates", endpoint)
        self.handlers[endpoint] = handler

    async def connect(self, source: str, sink: str) -> None:
        await self._step("connect", source, sink)

    async def start_recording(self, recorder: str) -> None:
        await self._step("start_recording", recorder)

    async def process_offer(self, endpoint: str, sdp_offer: str) -> str:
        await self._step("process_offer", endpoint, sdp_offer)
        return f"answer-for-{sdp_offer}"

    async def gather_candidates(self, endpoint: str) -> None:
        await self._step("gather_candidates", endpoint)
        for candidate in self.gathered:
            await self.handlers[endpoint](candidate)

    async def add_candidate(self, endpoint: str, candidate: IceCandidate) -> None:
        await self._step("add_candidate", endpoint, candidate)
        self.added[endpoint].append(candidate)

    async def release(self, pipeline: str) -> None:
        await self._step("release", pipeline)
        self.released.append(pipeline)

    async def close(self) -> None:
        self.closed = True


class FakeChannel:
    """Records outbound frames; ``log`` may be shared to observe global order."""

    def __init__(self, name: str = "", *, log: list | None = None, fail: bool = False) -> None:
        self.name = name
        self.sent: list[dict] = []
        self.log = log if log is not None else []
        self.fail = fail

    async def send_json(self, data) -> None:
        if self.fail:
            raise RuntimeError("socket is closed")
        self.sent.append(data)
        self.log.append((self.name, data))

    def of_kind(self, kind: str) -> list[dict]:
        return [message for message in self.sent if message["id"] == kind]


def make_candidate(n: int) -> IceCandidate:
    return IceCandidate(candidate=f"candidate:{n} 1 UDP 2122260223 10.0.0.{n} 5000{n} typ host", sdpMid="0", sdpMLineIndex=0)


@pytest.fixture()
def engine() -> FakeMediaEngine:
    return FakeMediaEngine()


@pytest.fixture()
def make_coordinator():
    def _make(engine: MediaEngine, **kwargs) -> CallCoordinator:
        async def _connect(uri: str) -> MediaEngine:
            return engine

        connector = MediaEngineConnector("ws://kms.test:8888/kurento", _connect)
        return CallCoordinator(connector, **kwargs)

    return _make


@pytest.fixture()
def coordinator(engine, make_coordinator) -> CallCoordinator:
    return make_coordinator(engine)


@pytest.fixture(scope="session")
def app():
    os.environ["MEDIA_SERVER_URI"] = "ws://kms.test:8888/kurento"
    os.environ.pop("STATIC_DIR", None)

    import importlib

    # Ensure clean import with the test settings.
    for module_name in ["config.settings", "api.routes", "main"]:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app, engine, make_coordinator):
    # Override the coordinator so tests never reach a real media server.
    import api.dependencies as deps

    test_coordinator = make_coordinator(engine)
    app.dependency_overrides[deps.get_coordinator] = lambda: test_coordinator

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
