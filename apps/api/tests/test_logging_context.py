from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sales_os.core.config import get_settings
from sales_os.core.database import Base, get_db
from sales_os.logging import JsonLogFormatter
from sales_os.main import app
from sales_os.middleware.rate_limit import reset_rate_limiter
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


ACTORS = {
    "rep1": ActorUser(user_id="rep-1", role=Role.FIELD_SALES, name="Riley Rep"),
    "rep2": ActorUser(user_id="rep-2", role=Role.INSIDE_SALES, name="Sam Second"),
}


@pytest.fixture()
def actor_state() -> dict[str, str]:
    return {"current": "rep1"}


@pytest.fixture()
def client(db_session: Session, actor_state: dict[str, str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: ACTORS[actor_state["current"]]
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.patch("/api/leads/missing-lead", json={"notes": "x"}, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "sales_os.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "PATCH"
        and getattr(record, "path", None) == "/api/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_denied_mutation_is_logged_with_actor(
    client: TestClient,
    actor_state: dict[str, str],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    opportunity = client.post("/api/opportunities", json={"name": "Logged Deal"}).json()

    actor_state["current"] = "rep2"
    response = client.patch(
        f"/api/opportunities/{opportunity['id']}",
        json={"stage": "Proposal"},
        headers={"X-Correlation-Id": "corr-denied"},
    )
    assert response.status_code == 403

    denied = [record for record in caplog.records if record.name == "sales_os.pipeline" and record.getMessage() == "access.denied"]
    assert denied
    assert getattr(denied[-1], "actor_id", None) == "rep-2"
    assert getattr(denied[-1], "table", None) == "opportunity"
    assert getattr(denied[-1], "correlation_id", None) == "corr-denied"


def test_stage_change_is_logged(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    opportunity = client.post("/api/opportunities", json={"name": "Moving Deal"}).json()

    response = client.patch(f"/api/opportunities/{opportunity['id']}", json={"stage": "Negotiation"})
    assert response.status_code == 200

    changes = [record for record in caplog.records if record.getMessage() == "opportunity.stage_changed"]
    assert changes
    assert getattr(changes[-1], "from_stage", None) == "Prospecting"
    assert getattr(changes[-1], "to_stage", None) == "Negotiation"


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "sales_os.pipeline",
            "levelname": "WARNING",
            "msg": "access.denied",
            "actor_id": "rep-2",
            "table": "lead",
            "password": "should-not-appear",
            "correlation_id": "corr-json",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "access.denied"
    assert payload["correlation_id"] == "corr-json"
    assert payload["fields"] == {"actor_id": "rep-2", "table": "lead"}


def test_json_formatter_truncates_long_errors() -> None:
    record = logging.makeLogRecord({"name": "sales_os.storage", "msg": "row_store.failed", "error": "x" * 2000})

    payload = json.loads(JsonLogFormatter().format(record))

    assert len(payload["fields"]["error"]) == 500
