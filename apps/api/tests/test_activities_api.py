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
        "founder": ActorUser(user_id="founder-1", role=Role.FOUNDER, name="Fran Founder", correlation_id="corr-activity"),
        "rep1": ActorUser(user_id="rep-1", role=Role.FIELD_SALES, name="Riley Rep", correlation_id="corr-activity"),
        "rep2": ActorUser(user_id="rep-2", role=Role.INSIDE_SALES, name="Sam Second", correlation_id="corr-activity"),
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


def _create_opportunity(test_client: TestClient, name: str = "Activity Deal") -> dict:
    response = test_client.post("/api/opportunities", json={"name": name, "deal_value": 1200})
    assert response.status_code == 201
    return response.json()


def test_activity_performer_forced_to_actor(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    opportunity = _create_opportunity(test_client)

    response = test_client.post(
        "/api/activities",
        json={
            "opportunity_id": opportunity["id"],
            "type": "Meeting",
            "description": "Kickoff",
            "outcome": "Positive",
            "date": "2026-03-01",
            "next_follow_up": "2026-03-08",
            "performed_by": "someone-else",
        },
    )

    assert response.status_code == 201
    body = response.json()
    assert body["performed_by"] == "rep-1"
    assert body["performed_by_name"] == "Riley Rep"
    assert body["opportunity_name"] == "Activity Deal"
    assert body["date"] == "2026-03-01"
    assert body["next_follow_up"] == "2026-03-08"


def test_activity_date_defaults_to_today(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    opportunity = _create_opportunity(test_client)

    response = test_client.post("/api/activities", json={"opportunity_id": opportunity["id"], "type": "Call"})

    assert response.status_code == 201
    assert response.json()["date"]
    assert response.json()["next_follow_up"] == ""


def test_activity_on_foreign_opportunity_forbidden(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    opportunity = _create_opportunity(test_client)

    set_actor("rep2")
    response = test_client.post("/api/activities", json={"opportunity_id": opportunity["id"], "type": "Call"})
    assert response.status_code == 403

    missing = test_client.post("/api/activities", json={"opportunity_id": "missing", "type": "Call"})
    assert missing.status_code == 404


def test_activity_list_filters(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    first = _create_opportunity(test_client, "First")
    second = _create_opportunity(test_client, "Second")
    test_client.post("/api/activities", json={"opportunity_id": first["id"], "type": "Call", "date": "2026-03-01"})
    test_client.post("/api/activities", json={"opportunity_id": first["id"], "type": "Demo", "date": "2026-03-03"})
    test_client.post("/api/activities", json={"opportunity_id": second["id"], "type": "Email", "date": "2026-03-02"})

    filtered = test_client.get("/api/activities", params={"opportunity_id": first["id"]})
    assert [item["type"] for item in filtered.json()] == ["Demo", "Call"]

    all_mine = test_client.get("/api/activities")
    assert [item["type"] for item in all_mine.json()] == ["Demo", "Email", "Call"]

    set_actor("rep2")
    assert test_client.get("/api/activities").json() == []
    set_actor("founder")
    assert len(test_client.get("/api/activities").json()) == 3
