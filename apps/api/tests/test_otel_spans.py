from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from sales_os.core.config import get_settings
from sales_os.core.database import Base, get_db
from sales_os.main import app
from sales_os.middleware.rate_limit import reset_rate_limiter
from sales_os.otel import setup_inmemory_otel
from sales_os.pipeline.api import get_current_user
from sales_os.pipeline.service import ActorUser
from sales_os.security.policy import Role


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="rep-1",
            role=Role.FIELD_SALES,
            name="Riley Rep",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/leads",
        json={"company_name": "OTel Lead"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_row_store_calls_are_traced(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    created = client.post("/api/opportunities", json={"name": "Traced Deal"})
    assert created.status_code == 201

    moved = client.patch(f"/api/opportunities/{created.json()['id']}", json={"stage": "Proposal"})
    assert moved.status_code == 200

    spans = span_exporter.get_finished_spans()
    store_spans = [span for span in spans if span.name.startswith("row_store.")]
    names = {span.name for span in store_spans}
    assert {"row_store.create", "row_store.find", "row_store.update"} <= names
    assert any(
        span.name == "row_store.create" and span.attributes.get("row_store.table") == "Stage History"
        for span in store_spans
    )
