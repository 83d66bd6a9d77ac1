from __future__ import annotations

import asyncio

import pytest

from conftest import FakeMediaEngine, make_candidate
from media.candidates import CandidateQueue
from media.connector import MediaEngineConnector
from media.errors import CallTerminatedError, EngineUnavailableError, ProvisioningError
from media.orchestrator import CallMediaPipeline, MediaSessionOrchestrator


def _orchestrator(engine, candidates=None, notified=None):
    async def factory(uri: str):
        if engine is None:
            raise OSError("connection refused")
        return engine

    async def notify(session_id, candidate) -> None:
        if notified is not None:
            notified.append((session_id, candidate))

    return MediaSessionOrchestrator(
        MediaEngineConnector("ws://kms:8888/kurento", factory),
        candidates or CandidateQueue(),
        notify,
        recording_uri_template="file:///recordings/{session_id}.webm",
    )


def test_provision_builds_full_graph_with_four_connections() -> None:
    engine = FakeMediaEngine()
    call = CallMediaPipeline(caller_id="1", callee_id="2")

    asyncio.run(_orchestrator(engine).provision_call(call))

    assert call.ready
    assert call.pipeline == "pipeline-1"
    recorder_uris = sorted(c[2] for c in engine.calls if c[0] == "create_recorder")
    assert recorder_uris == ["file:///recordings/1.webm", "file:///recordings/2.webm"]

    caller_ep, callee_ep = call.endpoints["1"], call.endpoints["2"]
    connects = [c[1:] for c in engine.calls if c[0] == "connect"]
    assert connects == [
        (caller_ep, call.recorders["1"]),
        (caller_ep, callee_ep),
        (callee_ep, call.recorders["2"]),
        (callee_ep, caller_ep),
    ]
    recording = sorted(c[1] for c in engine.calls if c[0] == "start_recording")
    assert recording == sorted(call.recorders.values())
    assert engine.released == []


@pytest.mark.parametrize(
    "failing_step",
    ["create_pipeline", "create_recorder", "create_transport_endpoint", "subscribe_candidates", "connect", "start_recording"],
)
def test_failed_step_releases_pipeline_and_raises(failing_step: str) -> None:
    engine = FakeMediaEngine(fail_on=failing_step)
    call = CallMediaPipeline(caller_id="1", callee_id="2")

    with pytest.raises(ProvisioningError, match=failing_step):
        asyncio.run(_orchestrator(engine).provision_call(call))

    assert call.terminated
    assert call.pipeline is None
    if failing_step != "create_pipeline":
        assert engine.released == ["pipeline-1"]


def test_unreachable_engine_is_a_provisioning_error() -> None:
    call = CallMediaPipeline(caller_id="1", callee_id="2")

    with pytest.raises(EngineUnavailableError):
        asyncio.run(_orchestrator(None).provision_call(call))


def test_queued_candidates_are_drained_into_new_endpoint_in_order() -> None:
    engine = FakeMediaEngine()
    candidates = CandidateQueue()
    for n in (1, 2, 3):
        candidates.enqueue("1", make_candidate(n))
    call = CallMediaPipeline(caller_id="1", callee_id="2")

    asyncio.run(_orchestrator(engine, candidates).provision_call(call))

    assert engine.added[call.endpoints["1"]] == [make_candidate(1), make_candidate(2), make_candidate(3)]
    assert engine.added[call.endpoints["2"]] == []
    assert "1" not in candidates
    names = engine.names()
    assert names.index("subscribe_candidates") < names.index("add_candidate")


def test_discovered_candidates_are_forwarded_to_their_session() -> None:
    engine = FakeMediaEngine(gathered=[make_candidate(5)])
    notified = []
    orchestrator = _orchestrator(engine, notified=notified)
    call = CallMediaPipeline(caller_id="1", callee_id="2")

    async def scenario():
        await orchestrator.provision_call(call)
        return await orchestrator.negotiate(call, "2", "offer-b")

    answer = asyncio.run(scenario())

    assert answer == "answer-for-offer-b"
    assert notified == [("2", make_candidate(5))]
    assert ("gather_candidates", call.endpoints["2"]) in engine.calls


def test_release_during_provisioning_aborts_and_cleans_up() -> None:
    engine = FakeMediaEngine()
    orchestrator = _orchestrator(engine)
    call = CallMediaPipeline(caller_id="1", callee_id="2")

    async def scenario():
        reached, release = engine.hold("create_pipeline")
        task = asyncio.create_task(orchestrator.provision_call(call))
        await reached.wait()
        await orchestrator.release(call)
        release.set()
        with pytest.raises(CallTerminatedError):
            await task

    asyncio.run(scenario())

    assert engine.released == ["pipeline-1"]
    assert "create_transport_endpoint" not in engine.names()


def test_cancelled_pipeline_creation_releases_pipeline_once_created() -> None:
    engine = FakeMediaEngine()
    orchestrator = _orchestrator(engine)
    call = CallMediaPipeline(caller_id="1", callee_id="2")

    async def scenario():
        reached, release = engine.hold("create_pipeline")
        task = asyncio.create_task(orchestrator.provision_call(call))
        await reached.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        release.set()
        await orchestrator.wait_for_cleanup()

    asyncio.run(scenario())

    assert call.pipeline is None
    assert engine.released == ["pipeline-1"]
    assert engine.names() == ["create_pipeline", "release"]


def test_release_is_idempotent() -> None:
    engine = FakeMediaEngine()
    orchestrator = _orchestrator(engine)
    call = CallMediaPipeline(caller_id="1", callee_id="2")

    async def scenario():
        await orchestrator.provision_call(call)
        await orchestrator.release(call)
        await orchestrator.release(call)
        await orchestrator.release(None)

    asyncio.run(scenario())

    assert engine.released == ["pipeline-1"]
