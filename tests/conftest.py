"""Shared fixtures for the stepflow test-suite."""

import asyncio

import pytest

from stepflow.config import EngineConfig
from stepflow.observability import RecordingTracer, clear_trace_context
from stepflow.runtime.emitter import Emitter
from stepflow.runtime.engine import ExecutionEngine
from stepflow.storage.snapshot_store import InMemorySnapshotStore


@pytest.fixture(autouse=True)
def _clean_trace_context():
    yield
    clear_trace_context()


@pytest.fixture
def config() -> EngineConfig:
    # Explicit values so a developer's ~/.stepflow or STEPFLOW_* env never leaks in
    return EngineConfig(retry_attempts=0, retry_delay_ms=0, snapshot_dir=None)


@pytest.fixture
def store() -> InMemorySnapshotStore:
    return InMemorySnapshotStore()


@pytest.fixture
def tracer() -> RecordingTracer:
    return RecordingTracer()


@pytest.fixture
def engine(store, tracer, config) -> ExecutionEngine:
    return ExecutionEngine(persister=store, tracer=tracer, config=config)


@pytest.fixture
def emitter() -> Emitter:
    return Emitter(run_id="run-1")


def v2_types(emitter: Emitter) -> list[str]:
    """watch-v2 payload types in emission order."""
    return [e.type for e in reversed(emitter.get_history("watch-v2", limit=10_000))]


async def wait_for_listener(emitter: Emitter, event_name: str, timeout: float = 2.0) -> None:
    """Poll until something is subscribed to ``event_name``."""
    deadline = asyncio.get_running_loop().time() + timeout
    while emitter.listener_count(event_name) == 0:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"nobody subscribed to {event_name}")
        await asyncio.sleep(0.001)
