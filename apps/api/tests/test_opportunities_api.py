from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sales_os import events
from sales_os.core.config import get_settings
from sales_os.core.database import Base, get_db
from sales_os.main import app
from sales_os.middleware.rate_limit import reset_rate_limiter
from sales_os.pipeline.api import get_current_user
from sales_os.pipeline.service import ActorUser
from sales_os.security.policy import Role
from sales_os.storage.sql import RowRecord


def _register_reps(session: Session) -> None:
    for user_id, name, role in (("rep-1", "Riley Rep", "field_sales"), ("rep-2", "Sam Second", "inside_sales")):
        session.add(
            RowRecord(id=user_id, table_name="Users", fields={"Name": name, "Email": f"{user_id}@example.com", "Role": role})
        )
    session.commit()


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
    _register_reps(session)
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
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "founder": ActorUser(user_id="founder-1", role=Role.FOUNDER, name="Fran Founder", correlation_id="corr-opp"),
        "rep1": ActorUser(user_id="rep-1", role=Role.FIELD_SALES, name="Riley Rep", correlation_id="corr-opp"),
        "rep2": ActorUser(user_id="rep-2", role=Role.INSIDE_SALES, name="Sam Second", correlation_id="corr-opp"),
    }
    state = {"current": "rep1"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_opportunity(test_client: TestClient, **overrides: object) -> dict:
    payload: dict[str, object] = {"name": "Acme - License", "deal_value": 10000, "stage": "Proposal"}
    payload.update(overrides)
    response = test_client.post("/api/opportunities", json=payload)
    assert response.status_code == 201
    return response.json()


def test_founder_creates_opportunity_with_derived_fields(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("founder")

    body = _create_opportunity(test_client, expected_close_date="2026-06-30", assigned_to="rep-1")

    assert body["probability"] == 50
    assert body["weighted_value"] == 5000
    assert body["forecast_category"] == "Best Case"
    assert body["stage_color"] == "yellow"
    assert body["expected_close_date"] == "2026-06-30"
    assert body["assigned_to"] == "rep-1"


def test_negative_deal_value_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post("/api/opportunities", json={"name": "Bad", "deal_value": -1})
    assert response.status_code == 422
    assert response.json()["code"] == "validation_failed"


def test_unknown_stage_rejected_on_write(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post("/api/opportunities", json={"name": "Bad", "stage": "Won-ish"})
    assert response.status_code == 422


def test_stage_change_writes_history(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    opportunity = _create_opportunity(test_client, stage="Prospecting", deal_value=2000)

    moved = test_client.patch(f"/api/opportunities/{opportunity['id']}", json={"stage": "Qualification"})
    assert moved.status_code == 200
    assert moved.json()["stage"] == "Qualification"
    assert moved.json()["probability"] == 25
    assert moved.json()["weighted_value"] == 500

    repeated = test_client.patch(f"/api/opportunities/{opportunity['id']}", json={"stage": "Qualification"})
    assert repeated.status_code == 200

    notes_only = test_client.patch(f"/api/opportunities/{opportunity['id']}", json={"notes": "follow up"})
    assert notes_only.status_code == 200

    history = test_client.get("/api/stage-history", params={"opportunity_id": opportunity["id"]})
    assert history.status_code == 200
    rows = history.json()
    assert len(rows) == 1
    assert rows[0]["from_stage"] == "Prospecting"
    assert rows[0]["to_stage"] == "Qualification"
    assert rows[0]["changed_by"] == "rep-1"
    assert rows[0]["opportunity_name"] == "Acme - License"

    stage_events = [item for item in events.published_events if item.get("event_type") == "sales.opportunity.stage_changed"]
    assert len(stage_events) == 1


def test_non_owner_update_forbidden(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    opportunity = _create_opportunity(test_client)

    set_actor("rep2")
    response = test_client.patch(f"/api/opportunities/{opportunity['id']}", json={"stage": "Closed Won"})
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"

    set_actor("founder")
    history = test_client.get("/api/stage-history")
    assert history.json() == []


def test_missing_opportunity_returns_not_found(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.patch("/api/opportunities/missing", json={"notes": "x"})
    assert response.status_code == 404
    assert response.json()["message"] == "opportunity not found"


def test_opportunity_list_scoped_to_owner(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    _create_opportunity(test_client, name="Rep One Deal")
    set_actor("rep2")
    _create_opportunity(test_client, name="Rep Two Deal")

    assert [item["name"] for item in test_client.get("/api/opportunities").json()] == ["Rep Two Deal"]
    set_actor("founder")
    assert len(test_client.get("/api/opportunities").json()) == 2


def test_owner_cannot_be_cleared_or_set_to_unknown_user(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    opportunity = _create_opportunity(test_client)

    set_actor("founder")
    cleared = test_client.patch(f"/api/opportunities/{opportunity['id']}", json={"assigned_to": None})
    assert cleared.status_code == 422
    assert cleared.json()["code"] == "validation_failed"
    assert cleared.json()["details"] == {"fields": ["assigned_to"]}

    ghost = test_client.patch(f"/api/opportunities/{opportunity['id']}", json={"assigned_to": "ghost-user"})
    assert ghost.status_code == 422
    assert ghost.json()["details"] == {"assigned_to": "ghost-user"}

    set_actor("rep1")
    assert [item["assigned_to"] for item in test_client.get("/api/opportunities").json()] == ["rep-1"]
