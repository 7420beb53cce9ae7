from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealdesk import audit, events
from dealdesk.api.common import get_current_user
from dealdesk.collaborators.storage import get_blob_storage
from dealdesk.core.actor import ActorUser
from dealdesk.core.config import get_settings
from dealdesk.core.database import Base, get_db
from dealdesk.main import app
from dealdesk.middleware.rate_limit import reset_rate_limiter


ALL_PERMISSIONS = {"deals.read", "deals.write", "tasks.read", "tasks.write"}


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
def setup_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("DOCUMENT_STORAGE_PATH", str(tmp_path / "documents"))
    get_settings.cache_clear()
    get_blob_storage.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    get_blob_storage.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    actors = {
        "rm": ("rm-1", ALL_PERMISSIONS),
        "other_rm": ("rm-2", ALL_PERMISSIONS),
        "reader": ("rm-1", {"tasks.read"}),
    }
    state = {"current": "rm"}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        user_id, permissions = actors[state["current"]]
        return ActorUser(
            user_id=user_id,
            permissions=set(permissions),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_deal(test_client: TestClient) -> str:
    contact = test_client.post("/api/contacts", json={"full_name": "Ada Lovelace"})
    assert contact.status_code == 201
    deal = test_client.post("/api/deals", json={"deal_name": "Fund III", "contact_id": contact.json()["id"]})
    assert deal.status_code == 201
    return deal.json()["id"]


def test_create_list_and_complete_task(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal_id = _create_deal(test_client)

    created = test_client.post(
        "/api/tasks",
        json={"title": "Call Ada", "deal_id": deal_id, "due_date": "2026-11-01T09:00:00Z"},
    )
    assert created.status_code == 201
    task = created.json()
    assert task["status"] == "PENDING"
    assert task["assigned_to_user_id"] == "rm-1"

    completed = test_client.patch(f"/api/tasks/{task['id']}/status", json={"status": "completed"})
    assert completed.status_code == 200
    assert completed.json()["status"] == "COMPLETED"
    assert completed.json()["completed_at"] is not None

    completed_events = [event for event in events.published_events if event["event_type"] == "task.completed"]
    assert len(completed_events) == 1
    assert completed_events[0]["deal_id"] == deal_id

    assert [item["id"] for item in test_client.get("/api/tasks", params={"status": "COMPLETED"}).json()] == [
        task["id"]
    ]
    assert test_client.get("/api/tasks", params={"status": "PENDING"}).json() == []


def test_task_status_validation(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    task = test_client.post("/api/tasks", json={"title": "Loose end"}).json()

    response = test_client.patch(f"/api/tasks/{task['id']}/status", json={"status": "DONE"})

    assert response.status_code == 422
    assert response.json()["code"] == "task_status_update_failed"
    assert response.json()["details"] == {"error": "INVALID_ARGUMENT", "field": "status", "value": "DONE"}
    assert test_client.get("/api/tasks", params={"status": "done"}).status_code == 422


def test_tasks_are_scoped_to_assignee_and_deal_owner(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    deal_id = _create_deal(test_client)
    task = test_client.post("/api/tasks", json={"title": "Private", "deal_id": deal_id}).json()

    set_actor("other_rm")
    assert test_client.get("/api/tasks").json() == []
    assert test_client.get("/api/tasks", params={"deal_id": deal_id}).status_code == 404
    assert test_client.patch(f"/api/tasks/{task['id']}/status", json={"status": "CANCELLED"}).status_code == 404
    assert test_client.post("/api/tasks", json={"title": "Sneaky", "deal_id": deal_id}).status_code == 404


def test_task_write_requires_permission(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("reader")

    response = test_client.post("/api/tasks", json={"title": "Not allowed"})

    assert response.status_code == 403
    assert response.json()["code"] == "task_create_failed"
    assert test_client.get("/api/tasks").status_code == 200
