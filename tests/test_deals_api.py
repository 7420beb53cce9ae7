from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import datetime
from pathlib import Path

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealdesk import audit, events
from dealdesk.api.common import get_current_user
from dealdesk.collaborators.storage import get_blob_storage
from dealdesk.core.actor import ActorUser
from dealdesk.core.config import get_settings
from dealdesk.core.database import Base, get_db
from dealdesk.core.events import event_bus
from dealdesk.deals.models import NotificationIntent
from dealdesk.main import app
from dealdesk.middleware.rate_limit import reset_rate_limiter


ALL_PERMISSIONS = {
    "deals.read",
    "deals.write",
    "deals.stage_override",
    "documents.read",
    "documents.write",
    "documents.sign",
    "tasks.read",
    "tasks.write",
}


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
    monkeypatch.delenv("AI_COMPLETION_URL", raising=False)
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
        "viewer": ("viewer-1", {"deals.read", "deals.write"}),
        "supervisor": ("head-1", ALL_PERMISSIONS | {"deals.read_all"}),
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


def _create_deal(test_client: TestClient, email: str | None = "ada@example.com") -> dict:
    contact = test_client.post("/api/contacts", json={"full_name": "Ada Lovelace", "email": email})
    assert contact.status_code == 201
    deal = test_client.post("/api/deals", json={"deal_name": "Fund III", "contact_id": contact.json()["id"]})
    assert deal.status_code == 201
    return deal.json()


def _upload(test_client: TestClient, deal_id: str, file_type: str = "PASSPORT") -> dict:
    response = test_client.post(
        "/api/documents/upload",
        data={"deal_id": deal_id, "file_type": file_type},
        files={"file": (f"{file_type.lower()}.pdf", b"scanned document", "application/pdf")},
    )
    assert response.status_code == 201
    return response.json()


def _tasks(test_client: TestClient, deal_id: str) -> list[dict]:
    response = test_client.get("/api/tasks", params={"deal_id": deal_id})
    assert response.status_code == 200
    return response.json()


def _days_until_due(task: dict) -> int:
    due = datetime.fromisoformat(task["due_date"])
    created = datetime.fromisoformat(task["created_at"])
    return round((due - created).total_seconds() / 86400)


def test_lead_reaches_due_diligence_through_manual_evaluation(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AUTO_PROGRESS_ON_EVENTS", "false")
    get_settings.cache_clear()
    test_client, _ = client
    deal = _create_deal(test_client)
    assert deal["stage"] == "NEW_LEAD"

    progressed = test_client.post(f"/api/deals/{deal['id']}/auto-progress")
    assert progressed.status_code == 200
    body = progressed.json()
    assert body["advanced"] is True
    assert body["stage"] == "KYC_IN_PROGRESS"
    assert body["deal"]["kyc_status"] == "PENDING"
    assert body["tasks_created"] == 1
    tasks = _tasks(test_client, deal["id"])
    assert [task["title"] for task in tasks] == ["Send KYC Request - Fund III"]
    assert _days_until_due(tasks[0]) == 2

    kyc = test_client.post(f"/api/deals/{deal['id']}/send-kyc")
    assert kyc.status_code == 200
    assert kyc.json()["deal"]["kyc_status"] == "SUBMITTED"
    assert kyc.json()["recipient"] == "ada@example.com"
    assert kyc.json()["ai_generated"] is False
    assert db_session.scalars(select(NotificationIntent)).one().subject == "KYC/AML Compliance Requirements for Fund III"

    verified = test_client.patch(f"/api/deals/{deal['id']}/kyc-status", json={"kyc_status": "VERIFIED"})
    assert verified.status_code == 200
    assert verified.json()["stage"] == "KYC_IN_PROGRESS"
    _upload(test_client, deal["id"])

    due_diligence = test_client.post(f"/api/deals/{deal['id']}/auto-progress")
    assert due_diligence.json()["advanced"] is True
    assert due_diligence.json()["stage"] == "DUE_DILIGENCE"
    assert due_diligence.json()["tasks_created"] == 1
    review_tasks = [task for task in _tasks(test_client, deal["id"]) if task["title"].startswith("Due Diligence Review")]
    assert len(review_tasks) == 1
    assert _days_until_due(review_tasks[0]) == 14

    again = test_client.post(f"/api/deals/{deal['id']}/auto-progress")
    assert again.json()["advanced"] is False
    assert again.json()["reason"] == "does not meet criteria for next stage"


def test_domain_events_drive_deal_to_onboarded(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal = _create_deal(test_client)

    _upload(test_client, deal["id"], "ID")
    assert test_client.get(f"/api/deals/{deal['id']}").json()["stage"] == "KYC_IN_PROGRESS"

    verified = test_client.patch(f"/api/deals/{deal['id']}/kyc-status", json={"kyc_status": "VERIFIED"})
    assert verified.json()["stage"] == "DUE_DILIGENCE"

    review_task = next(
        task for task in _tasks(test_client, deal["id"]) if task["title"] == "Due Diligence Review - Fund III"
    )
    completed = test_client.patch(f"/api/tasks/{review_task['id']}/status", json={"status": "COMPLETED"})
    assert completed.status_code == 200
    assert test_client.get(f"/api/deals/{deal['id']}").json()["stage"] == "CONTRACT_SIGNING"

    contract = _upload(test_client, deal["id"], "CONTRACT")
    assert test_client.get(f"/api/deals/{deal['id']}").json()["stage"] == "CONTRACT_SIGNING"
    signed = test_client.post(
        f"/api/documents/{contract['id']}/sign",
        json={"signer_name": "Ada Lovelace", "signer_email": "ada@example.com", "signature_data": "Ada"},
    )
    assert signed.status_code == 201
    assert test_client.get(f"/api/deals/{deal['id']}").json()["stage"] == "ONBOARDED"

    transitions = [
        (event["from_stage"], event["to_stage"], event["trigger"])
        for event in events.published_events
        if event["event_type"] == "deal.stage_changed"
    ]
    assert transitions == [
        ("NEW_LEAD", "KYC_IN_PROGRESS", "document.uploaded"),
        ("KYC_IN_PROGRESS", "DUE_DILIGENCE", "deal.kyc_status_changed"),
        ("DUE_DILIGENCE", "CONTRACT_SIGNING", "task.completed"),
        ("CONTRACT_SIGNING", "ONBOARDED", "document.signed"),
    ]
    titles = [task["title"] for task in _tasks(test_client, deal["id"])]
    assert "Onboarding Complete - Fund III" in titles


def test_archive_documents_endpoint(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal = _create_deal(test_client, email=None)
    _upload(test_client, deal["id"])

    blocked = test_client.post(f"/api/deals/{deal['id']}/archive-documents")
    assert blocked.status_code == 409
    assert blocked.json()["code"] == "deal_archive_failed"
    assert blocked.json()["details"]["error"] == "PRECONDITION_FAILED"
    assert blocked.json()["message"] == "KYC must be verified before archiving documents"

    test_client.patch(f"/api/deals/{deal['id']}/kyc-status", json={"kyc_status": "VERIFIED"})
    archived = test_client.post(f"/api/deals/{deal['id']}/archive-documents")
    assert archived.status_code == 200
    assert archived.json()["deal"]["stage"] == "DUE_DILIGENCE"
    assert [item["success"] for item in archived.json()["archived"]] == [True]


def test_error_envelopes(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    deal = _create_deal(test_client)

    missing = test_client.get("/api/deals/00000000-0000-4000-8000-000000000000")
    assert missing.status_code == 404
    assert missing.json()["code"] == "deal_get_failed"
    assert missing.json()["details"]["error"] == "NOT_FOUND"
    assert missing.json()["correlation_id"]

    invalid = test_client.patch(f"/api/deals/{deal['id']}/stage", json={"stage": "CLOSED"})
    assert invalid.status_code == 422
    assert invalid.json()["code"] == "deal_set_stage_failed"
    assert invalid.json()["details"] == {"error": "INVALID_ARGUMENT", "field": "stage", "value": "CLOSED"}

    bad_filter = test_client.get("/api/deals", params={"stage": "CLOSED"})
    assert bad_filter.status_code == 422

    set_actor("viewer")
    forbidden = test_client.patch(f"/api/deals/{deal['id']}/stage", json={"stage": "REJECTED"})
    assert forbidden.status_code == 403
    assert forbidden.json()["message"] == "Missing permission: deals.stage_override"


def test_stage_override(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal = _create_deal(test_client)

    rejected = test_client.patch(f"/api/deals/{deal['id']}/stage", json={"stage": "rejected"})
    assert rejected.status_code == 200
    assert rejected.json()["stage"] == "REJECTED"

    progressed = test_client.post(f"/api/deals/{deal['id']}/auto-progress")
    assert progressed.json()["advanced"] is False
    assert progressed.json()["stage"] == "REJECTED"


def test_deals_are_scoped_to_owner(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    deal = _create_deal(test_client)

    set_actor("other_rm")
    assert test_client.get(f"/api/deals/{deal['id']}").status_code == 404
    assert test_client.get("/api/deals").json() == []
    assert test_client.post(f"/api/deals/{deal['id']}/auto-progress").status_code == 404

    set_actor("rm")
    listed = test_client.get("/api/deals", params={"stage": "NEW_LEAD"})
    assert [item["id"] for item in listed.json()] == [deal["id"]]


def test_delete_deal(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal = _create_deal(test_client)
    document = _upload(test_client, deal["id"])

    deleted = test_client.delete(f"/api/deals/{deal['id']}")
    assert deleted.status_code == 200
    assert deleted.json() == {"status": "deleted"}
    assert test_client.get(f"/api/deals/{deal['id']}").status_code == 404
    assert test_client.get(f"/api/documents/{document['id']}").status_code == 404


def test_contacts_and_companies(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    company = test_client.post(
        "/api/companies",
        json={"name": "Analytical Engines Ltd", "region": "EMEA", "aum": "2500000.00"},
    )
    assert company.status_code == 201

    contact = test_client.post(
        "/api/contacts",
        json={
            "full_name": "Ada Lovelace",
            "email": "Ada@Example.com",
            "investor_type": "CORPORATE",
            "company_id": company.json()["id"],
        },
    )
    assert contact.status_code == 201
    assert contact.json()["email"] == "ada@example.com"

    fetched = test_client.get(f"/api/contacts/{contact.json()['id']}")
    assert fetched.json()["company_id"] == company.json()["id"]

    duplicate = test_client.post("/api/contacts", json={"full_name": "A. Lovelace", "email": "ada@example.com"})
    assert duplicate.status_code == 409
    assert duplicate.json()["details"]["error"] == "INVALID_STATE"

    deal = test_client.post("/api/deals", json={"deal_name": "Engines", "contact_id": contact.json()["id"]})
    assert deal.json()["company_id"] == company.json()["id"]


def test_public_onboarding_with_documents(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client

    response = test_client.post(
        "/api/onboarding",
        data={
            "full_name": "Grace Hopper",
            "email": "grace@example.com",
            "phone_number": "+1 555 0100",
            "investor_type": "institutional",
            "deal_name": "Harbor Fund",
            "company_name": "Harbor Capital",
            "company_aum": "1000000",
        },
        files={
            "passport_document": ("passport.pdf", b"passport scan", "application/pdf"),
            "aml_document": ("aml.pdf", b"aml form", "application/pdf"),
        },
    )

    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Onboarding application submitted successfully"
    assert body["deal"]["owner_user_id"] == "intake-admin"
    assert body["company"]["name"] == "Harbor Capital"
    assert len(body["document_ids"]) == 2
    # The uploads reached a lead with a reachable contact, so it already moved on.
    assert body["deal"]["stage"] == "KYC_IN_PROGRESS"

    set_actor("supervisor")
    file_types = sorted(
        test_client.get(f"/api/documents/{document_id}").json()["file_type"] for document_id in body["document_ids"]
    )
    assert file_types == ["AML", "PASSPORT"]


def test_public_onboarding_without_documents_stays_new_lead(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client

    response = test_client.post(
        "/api/onboarding",
        data={
            "full_name": "Katherine Johnson",
            "email": "katherine@example.com",
            "phone_number": "+1 555 0101",
            "investor_type": "INDIVIDUAL",
            "deal_name": "Orbit Fund",
        },
    )

    assert response.status_code == 201
    assert response.json()["deal"]["stage"] == "NEW_LEAD"
    assert response.json()["company"] is None
    assert response.json()["document_ids"] == []


def test_public_onboarding_rejects_invalid_fields(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post(
        "/api/onboarding",
        data={
            "full_name": "Grace Hopper",
            "email": "not-an-email",
            "phone_number": "+1 555 0100",
            "investor_type": "HEDGE",
            "deal_name": "Harbor Fund",
        },
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "onboarding_submit_failed"
    assert body["details"]["error"] == "INVALID_ARGUMENT"
    assert set(body["details"]["fields"]) == {"email", "investor_type"}


def test_health(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["service"] == "DealDesk API"


def test_auto_progress_handlers_follow_app_lifespan() -> None:
    watched = ("document.uploaded", "document.signed", "task.completed", "deal.kyc_status_changed")

    with TestClient(app):
        assert all(event_bus.handlers_for(event_name) for event_name in watched)

    assert all(event_bus.handlers_for(event_name) == [] for event_name in watched)
