"""Shared fixtures: a SQLite database per test and a fake connector."""

import pytest
from sqlmodel import Session, SQLModel

import app.models.log_models  # noqa: F401
import app.models.metric_models  # noqa: F401
import app.models.transformer_models  # noqa: F401
from app import database
from app.config import settings
from app.core.cache import dashboard_cache
from factories import COMMIT_ACTIVITY, FakeNangoClient


@pytest.fixture(autouse=True)
def engine(tmp_path, monkeypatch):
    """Point the app at a fresh SQLite file and disable LLM providers."""
    eng = database.build_engine(f"sqlite:///{tmp_path / 'metricpipe-test.db'}")
    SQLModel.metadata.create_all(eng)
    monkeypatch.setattr(database, "engine", eng)

    for key in ("anthropic_api_key", "openai_api_key", "sarvam_api_key"):
        monkeypatch.setattr(settings, key, None)
    monkeypatch.setattr(settings, "cache_invalidation_delay_seconds", 0.0)
    monkeypatch.setattr(settings, "pipeline_allow_concurrent_runs", False)
    monkeypatch.setattr(settings, "pipeline_stale_after_seconds", 900)
    dashboard_cache.clear()

    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def nango(monkeypatch):
    """Replace the connector; set ``nango.payload`` to a response or an exception."""
    fake = type("Nango", (FakeNangoClient,), {"payload": COMMIT_ACTIVITY, "calls": [], "gate": None})
    monkeypatch.setattr("app.transformation.ingestion.NangoClient", fake)
    return fake
