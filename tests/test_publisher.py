"""Tests for publisher.py — SSE stream with live progress and polling fallback."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from engine_adapter import EngineAdapter
from jobs import JobStore
from models import JobStatus
from progress import ProgressRegistry
from publisher import percentage, stream_progress

SETUP_STATE = json.dumps({
    "type": "progress_state",
    "data": {
        "prompt_id": "J1",
        "nodes": {
            "a": {"value": 1, "max": 1, "state": "finished"},
            "b": {"value": 1, "max": 1, "state": "finished"},
            "c": {"value": 1, "max": 1, "state": "finished"},
        },
    },
})


def _step(value: int, max_value: int = 20, job_id: str = "J1") -> str:
    return json.dumps({"type": "progress", "data": {"prompt_id": job_id, "value": value, "max": max_value}})


def _parse(frame: str) -> dict:
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


async def _next(stream) -> dict:
    return _parse(await asyncio.wait_for(stream.__anext__(), timeout=2.0))


async def _drain(stream) -> list[dict]:
    return [_parse(frame) async for frame in stream]


class CountingJobs:
    """Wraps a JobStore and counts status lookups."""

    def __init__(self, store: JobStore):
        self.store = store
        self.calls = 0

    async def get_status(self, job_id):
        self.calls += 1
        return await self.store.get_status(job_id)


class ScriptedJobs:
    """Returns (or raises) each scripted result in turn, repeating the last."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def get_status(self, job_id):
        result = self.results[min(self.calls, len(self.results) - 1)]
        self.calls += 1
        if isinstance(result, Exception):
            raise result
        return result


PROCESSING = JobStatus(status="processing", total_steps=20)


@pytest.fixture
def adapter(monkeypatch):
    adapter = EngineAdapter("ws://engine/ws")
    monkeypatch.setattr(adapter, "ensure_connected", MagicMock())
    return adapter


@pytest.fixture
def registry(adapter):
    return ProgressRegistry(adapter)


@pytest.fixture
def store():
    store = JobStore()
    store.create("J1", total_steps=20)
    store.mark_processing("J1")
    return store


# --- Percentage ---

class TestPercentage:
    def test_rounds(self):
        assert percentage(1, 20) == 5
        assert percentage(1, 3) == 33
        assert percentage(2, 3) == 67

    def test_clamped(self):
        assert percentage(25, 20) == 100
        assert percentage(-1, 20) == 0

    def test_zero_max(self):
        assert percentage(0, 0) == 0


# --- Streaming ---

@pytest.mark.asyncio
async def test_end_to_end_scenario(adapter, registry, store):
    stream = stream_progress("J1", registry, store, stale_after=0.05, poll_interval=0.05)

    assert await _next(stream) == {"type": "connected"}
    initial = await _next(stream)
    assert initial["type"] == "progress"
    assert (initial["currentStep"], initial["totalSteps"], initial["percentage"]) == (0, 20, 0)

    adapter.on_message(SETUP_STATE)
    setup = await _next(stream)
    assert (setup["currentStep"], setup["totalSteps"]) == (3, 3)
    assert setup["percentage"] == 100

    adapter.on_message(_step(1))
    first = await _next(stream)
    assert first == {
        "type": "progress",
        "currentStep": 1,
        "totalSteps": 20,
        "percentage": 5,
        "status": "Step 1 of 20",
    }

    # setup progress after inference has started never reaches the client
    adapter.on_message(SETUP_STATE)
    adapter.on_message(_step(20))
    last = await _next(stream)
    assert (last["currentStep"], last["percentage"]) == (20, 100)

    store.mark_completed("J1", [])
    assert await _drain(stream) == [{"type": "complete", "percentage": 100}]
    assert registry.subscriber_count("J1") == 0
    assert adapter.last_granular("J1") is None


@pytest.mark.asyncio
async def test_total_steps_hint_seeds_initial_event(registry, store):
    stream = stream_progress("J1", registry, store, total_steps=9, stale_after=5, poll_interval=5)
    await _next(stream)
    initial = await _next(stream)
    await stream.aclose()

    assert initial["totalSteps"] == 9
    assert initial["status"] == "Step 0 of 9"


@pytest.mark.asyncio
async def test_polling_fallback_completes_without_push(registry, store):
    jobs = CountingJobs(store)
    stream = stream_progress("J1", registry, jobs, stale_after=0.05, poll_interval=0.05)
    await _next(stream)
    await _next(stream)

    store.mark_completed("J1", [])
    events = await _drain(stream)

    assert events == [{"type": "complete", "percentage": 100}]
    assert jobs.calls >= 2  # initial lookup plus at least one fallback poll
    assert registry.subscriber_count("J1") == 0


@pytest.mark.asyncio
async def test_polling_keeps_accepting_push_samples(adapter, registry, store):
    jobs = CountingJobs(store)
    stream = stream_progress("J1", registry, jobs, stale_after=0.01, poll_interval=0.05)
    await _next(stream)
    await _next(stream)

    asyncio.get_running_loop().call_later(0.12, adapter.on_message, _step(7))
    sample = await _next(stream)

    assert jobs.calls >= 2
    assert (sample["type"], sample["currentStep"]) == ("progress", 7)

    store.mark_completed("J1", [])
    assert await _drain(stream) == [{"type": "complete", "percentage": 100}]


@pytest.mark.asyncio
async def test_failed_job_reports_engine_error_verbatim(registry, store):
    stream = stream_progress("J1", registry, store, stale_after=0.01, poll_interval=0.01)
    await _next(stream)
    await _next(stream)

    store.mark_failed("J1", "Workflow execution failed: CUDA out of memory")
    events = await _drain(stream)

    assert events == [{"type": "error", "message": "Workflow execution failed: CUDA out of memory"}]


@pytest.mark.asyncio
async def test_unknown_job_reports_error_without_subscribing(adapter, registry):
    events = await _drain(stream_progress("missing", registry, JobStore()))

    assert events == [{"type": "connected"}, {"type": "error", "message": "Job not found"}]
    adapter.ensure_connected.assert_not_called()
    assert registry.subscriber_count("missing") == 0


@pytest.mark.asyncio
async def test_already_finished_job_closes_immediately(registry, store):
    store.mark_completed("J1", [])
    events = await _drain(stream_progress("J1", registry, store))

    assert events == [{"type": "connected"}, {"type": "complete", "percentage": 100}]


@pytest.mark.asyncio
async def test_subscribe_failure_reports_error(registry, store, monkeypatch):
    monkeypatch.setattr(registry, "subscribe", MagicMock(side_effect=RuntimeError("registry down")))
    events = await _drain(stream_progress("J1", registry, store))

    assert events == [{"type": "connected"}, {"type": "error", "message": "Could not track job progress"}]


@pytest.mark.asyncio
async def test_initial_status_failure_reports_error_without_subscribing(adapter, registry):
    jobs = ScriptedJobs(ConnectionError("status store down"))
    events = await _drain(stream_progress("J1", registry, jobs))

    assert events == [{"type": "connected"}, {"type": "error", "message": "Could not load job status"}]
    assert jobs.calls == 1
    adapter.ensure_connected.assert_not_called()
    assert registry.subscriber_count("J1") == 0


@pytest.mark.asyncio
async def test_transient_poll_failure_is_retried(registry):
    jobs = ScriptedJobs(
        PROCESSING,
        ConnectionError("db hiccup"),
        JobStatus(status="completed", total_steps=20),
    )
    events = await _drain(stream_progress("J1", registry, jobs, stale_after=0.01, poll_interval=0.01))

    assert events[-1] == {"type": "complete", "percentage": 100}
    assert [e["type"] for e in events].count("error") == 0
    assert jobs.calls == 3


@pytest.mark.asyncio
async def test_repeated_poll_failures_end_stream_with_error(registry):
    jobs = ScriptedJobs(PROCESSING, ConnectionError("engine gone"))
    events = await _drain(
        stream_progress("J1", registry, jobs, stale_after=0.01, poll_interval=0.01, max_poll_failures=3)
    )

    assert events[-1] == {"type": "error", "message": "Lost contact with job status"}
    assert [e["type"] for e in events] == ["connected", "progress", "error"]
    assert jobs.calls == 4
    assert registry.subscriber_count("J1") == 0


@pytest.mark.asyncio
async def test_job_vanishing_during_polling_reports_error(registry):
    jobs = ScriptedJobs(PROCESSING, None)
    events = await _drain(stream_progress("J1", registry, jobs, stale_after=0.01, poll_interval=0.01))

    assert events[-1] == {"type": "error", "message": "Job not found"}


@pytest.mark.asyncio
async def test_client_disconnect_unsubscribes(adapter, registry, store):
    stream = stream_progress("J1", registry, store, stale_after=5, poll_interval=5)
    await _next(stream)
    await _next(stream)
    adapter.on_message(_step(3))
    assert registry.subscriber_count("J1") == 1

    await stream.aclose()

    assert registry.subscriber_count("J1") == 0
    assert adapter.last_granular("J1") is None


@pytest.mark.asyncio
async def test_two_clients_share_one_job(adapter, registry, store):
    first = stream_progress("J1", registry, store, stale_after=5, poll_interval=5)
    second = stream_progress("J1", registry, store, stale_after=5, poll_interval=5)
    for stream in (first, second):
        await _next(stream)
        await _next(stream)

    adapter.on_message(_step(4))
    assert (await _next(first))["currentStep"] == 4
    assert (await _next(second))["currentStep"] == 4

    await first.aclose()
    assert registry.subscriber_count("J1") == 1
    assert adapter.last_granular("J1") is not None

    await second.aclose()
    assert adapter.last_granular("J1") is None
