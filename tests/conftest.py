"""Shared pytest fixtures for signaling tests."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.main import app
from app.monitoring.registry import registry as metrics_registry
from stagecast.realtime import SessionCoordinationService, get_signaling_service


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_metrics() -> Iterator[None]:
    metrics_registry.reset()
    yield
    metrics_registry.reset()


@pytest.fixture()
def service() -> SessionCoordinationService:
    """A fresh coordination service, independent of the process-wide one."""

    return SessionCoordinationService()


@pytest.fixture()
def client(service: SessionCoordinationService) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient bound to the per-test coordination service."""

    app.dependency_overrides[get_signaling_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
