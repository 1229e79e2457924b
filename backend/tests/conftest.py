"""Shared test fixtures for backend tests.

Uses an in-memory SQLite database so tests never touch the on-disk store.
Provides pipeline fixtures (fake runtimes, fake workers) so tests run
without model weights, a GPU, or Redis.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from common.settings import PipelineSettings
from db.database import Base


# ---------- Database fixtures ----------

@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False, class_=Session)


@pytest.fixture()
def settings_store(session_factory):
    from db.store import SettingsStore

    return SettingsStore(session_factory)


# ---------- Pipeline fixtures ----------

@pytest.fixture()
def settings() -> PipelineSettings:
    return PipelineSettings(
        input_size=64,
        min_frame_size=8,
        max_frame_size=1024,
        class_names=("person", "vehicle"),
        policy_seed=7,
        degraded_failure_threshold=3,
    )


@pytest.fixture()
def fake_engines():
    """EngineRegistry whose engines wrap a FakeRuntime instead of real weights."""
    from cv.engine import EngineRegistry, InferenceEngine
    from tests.fakes import FakeRuntime

    runtimes: list[FakeRuntime] = []

    def _factory(_settings):
        runtime = FakeRuntime()
        runtimes.append(runtime)
        return InferenceEngine(runtime=runtime)

    registry = EngineRegistry(factory=_factory)
    registry.runtimes = runtimes
    return registry


@pytest.fixture()
def fake_worker_start(monkeypatch):
    """Patch worker.start to return FakeWorker instances without threads or models."""
    from tests.fakes import FakeWorker

    workers: list[FakeWorker] = []

    def _fake_start(stream_id: str, settings, handoff, lineage=None):
        fake = FakeWorker(stream_id, lineage=lineage)
        workers.append(fake)
        return fake

    monkeypatch.setattr("orchestrator.orchestrator.worker.start", _fake_start)
    return workers


@pytest.fixture()
def orchestrator_factory(fake_worker_start, settings):
    """Create a PipelineOrchestrator with workers mocked.

    Returns a factory function that accepts keyword overrides.
    Automatically shuts down all created orchestrators on teardown.
    """
    from queue import Queue

    from orchestrator import PipelineOrchestrator

    created: list[PipelineOrchestrator] = []

    def _factory(**kwargs) -> PipelineOrchestrator:
        defaults = dict(settings=settings, handoff=Queue(maxsize=16), max_pipelines=8, monitor_interval_seconds=0.02)
        defaults.update(kwargs)
        orch = PipelineOrchestrator(**defaults)
        created.append(orch)
        return orch

    yield _factory

    for orch in created:
        orch.shutdown()


# ---------- FastAPI test client ----------

@pytest.fixture()
def app_client(monkeypatch, fake_worker_start, settings_store):
    """TestClient for the full api.app with workers mocked and an in-memory store."""
    import api

    monkeypatch.setattr("api.init_db", lambda: None)
    monkeypatch.setattr("api.SettingsStore", lambda: settings_store)
    monkeypatch.setattr("api.DEFAULT_SOURCE_URL", "")

    with TestClient(api.app) as c:
        yield c
