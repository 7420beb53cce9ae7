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
from dealdesk.documents.service import document_service
from dealdesk.errors import CollaboratorFailure
from dealdesk.main import app
from dealdesk.middleware.rate_limit import reset_rate_limiter


ALL_PERMISSIONS = {
    "deals.read",
    "deals.write",
    "documents.read",
    "documents.write",
    "documents.sign",
}


class BrokenCompletion:
    def complete(self, prompt: str, system_prompt: str) -> str:
        raise CollaboratorFailure("ai_completion", "AI completion request failed")


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
        "analyst": ("rm-1", {"documents.read", "documents.write"}),
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
    contact = test_client.post("/api/contacts", json={"full_name": "Ada Lovelace", "email": "ada@example.com"})
    assert contact.status_code == 201
    deal = test_client.post("/api/deals", json={"deal_name": "Fund III", "contact_id": contact.json()["id"]})
    assert deal.status_code == 201
    return deal.json()["id"]


def _upload(test_client: TestClient, deal_id: str, file_type: str, content: bytes = b"Full name: Ada Lovelace"):
    return test_client.post(
        "/api/documents/upload",
        data={"deal_id": deal_id, "file_type": file_type},
        files={"file": (f"{file_type.lower()} form.pdf", content, "application/pdf")},
    )


def _workflow(test_client: TestClient, document_id: str) -> list[tuple[str, str]]:
    response = test_client.get(f"/api/documents/{document_id}/workflow")
    assert response.status_code == 200
    return [(step["step_type"], step["status"]) for step in response.json()]


def test_aml_document_full_workflow(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal_id = _create_deal(test_client)

    uploaded = _upload(test_client, deal_id, "AML")
    assert uploaded.status_code == 201
    document_id = uploaded.json()["id"]
    assert uploaded.json()["file_name"] == "aml form.pdf"
    assert _workflow(test_client, document_id) == [("UPLOAD", "COMPLETED"), ("EXTRACTION", "PENDING")]

    extracted = test_client.post(f"/api/documents/{document_id}/extract")
    assert extracted.status_code == 200
    assert extracted.json()["success"] is True
    assert extracted.json()["workflow_status"] == "READY_FOR_REVIEW"

    reviewed = test_client.post(f"/api/documents/{document_id}/review", json={"approved": True})
    assert reviewed.status_code == 200
    assert reviewed.json()["validation_status"] == "VALID"

    acknowledged = test_client.post(
        f"/api/documents/{document_id}/acknowledge",
        json={
            "acknowledged_by": "Ada Lovelace",
            "acknowledgment_text": "I confirm the information provided is accurate",
        },
    )
    assert acknowledged.status_code == 200
    assert acknowledged.json()["workflow_status"] == "ACKNOWLEDGED"
    assert acknowledged.json()["acknowledged_by"] == "Ada Lovelace"

    signed = test_client.post(
        f"/api/documents/{document_id}/sign",
        json={
            "signer_name": "Ada Lovelace",
            "signer_email": "ada@example.com",
            "signature_data": "data:image/png;base64,AAAA",
        },
        headers={"User-Agent": "dealdesk-tests"},
    )
    assert signed.status_code == 201
    assert signed.json()["status"] == "SIGNED"
    token = signed.json()["verification_token"]

    assert _workflow(test_client, document_id) == [
        ("UPLOAD", "COMPLETED"),
        ("EXTRACTION", "COMPLETED"),
        ("REVIEW", "COMPLETED"),
        ("ACKNOWLEDGMENT", "COMPLETED"),
        ("SIGNATURE", "COMPLETED"),
        ("COMPLETION", "COMPLETED"),
    ]

    app.dependency_overrides.pop(get_current_user)
    verified = test_client.get("/api/signatures/verify", params={"token": token})
    assert verified.status_code == 200
    assert verified.json()["status"] == "VERIFIED"
    assert test_client.get("/api/signatures/verify", params={"token": token}).json()["status"] == "VERIFIED"

    unknown = test_client.get("/api/signatures/verify", params={"token": "forged"})
    assert unknown.status_code == 404
    assert unknown.json()["code"] == "signature_verify_failed"


def test_upload_validation(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal_id = _create_deal(test_client)

    wrong_type = _upload(test_client, deal_id, "SELFIE")
    assert wrong_type.status_code == 422
    assert wrong_type.json()["code"] == "document_upload_failed"
    assert wrong_type.json()["details"]["error"] == "INVALID_ARGUMENT"

    empty = _upload(test_client, deal_id, "ID", content=b"")
    assert empty.status_code == 422
    assert empty.json()["message"] == "File is empty"

    missing_deal = _upload(test_client, "00000000-0000-4000-8000-000000000000", "ID")
    assert missing_deal.status_code == 404

    assert test_client.get(f"/api/deals/{deal_id}/documents").json() == []


def test_id_upload_has_single_step_and_cannot_be_extracted(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal_id = _create_deal(test_client)
    document_id = _upload(test_client, deal_id, "ID").json()["id"]

    assert _workflow(test_client, document_id) == [("UPLOAD", "COMPLETED")]

    response = test_client.post(f"/api/documents/{document_id}/extract")
    assert response.status_code == 409
    assert response.json()["details"]["error"] == "PRECONDITION_FAILED"


def test_failed_extraction_is_retried(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    deal_id = _create_deal(test_client)
    document_id = _upload(test_client, deal_id, "KYC").json()["id"]
    monkeypatch.setattr(document_service, "completion_client", BrokenCompletion())

    failed = test_client.post(f"/api/documents/{document_id}/extract")
    assert failed.status_code == 200
    assert failed.json()["success"] is False
    assert failed.json()["error"] == "Failed to extract form fields using AI"
    step_id = failed.json()["step_id"]

    monkeypatch.setattr(document_service, "completion_client", None)
    retried = test_client.post(f"/api/documents/{document_id}/workflow/{step_id}/retry")
    assert retried.status_code == 200
    assert retried.json()["step"]["status"] == "COMPLETED"
    assert retried.json()["extraction"]["success"] is True
    assert retried.json()["extraction"]["extracted_fields"] == {}

    again = test_client.post(f"/api/documents/{document_id}/workflow/{step_id}/retry")
    assert again.status_code == 409
    assert again.json()["code"] == "document_workflow_retry_failed"
    assert again.json()["details"]["error"] == "INVALID_STATE"


def test_manual_workflow_steps(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal_id = _create_deal(test_client)
    document_id = _upload(test_client, deal_id, "PPM").json()["id"]

    created = test_client.post(f"/api/documents/{document_id}/workflow", json={"step_type": "REVIEW"})
    assert created.status_code == 201
    assert created.json()["sequence"] == 2

    duplicate = test_client.post(f"/api/documents/{document_id}/workflow", json={"step_type": "REVIEW"})
    assert duplicate.status_code == 409

    rejected = test_client.post(
        f"/api/documents/{document_id}/review",
        json={"approved": False, "notes": "Wrong fund vintage"},
    )
    assert rejected.json()["validation_status"] == "INVALID"
    assert _workflow(test_client, document_id)[-1] == ("REVIEW", "REJECTED")


def test_signing_requires_permission(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    deal_id = _create_deal(test_client)
    document_id = _upload(test_client, deal_id, "CONTRACT").json()["id"]

    set_actor("analyst")
    response = test_client.post(
        f"/api/documents/{document_id}/sign",
        json={"signer_name": "Ada", "signer_email": "ada@example.com", "signature_data": "Ada"},
    )

    assert response.status_code == 403
    assert response.json()["code"] == "document_sign_failed"
    assert response.json()["message"] == "Missing permission: documents.sign"


def test_download_and_delete(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    deal_id = _create_deal(test_client)
    document_id = _upload(test_client, deal_id, "PITCH_DECK", content=b"%PDF-1.7 deck").json()["id"]

    listed = test_client.get(f"/api/deals/{deal_id}/documents")
    assert [item["id"] for item in listed.json()] == [document_id]

    downloaded = test_client.get(f"/api/documents/{document_id}/download")
    assert downloaded.status_code == 200
    assert downloaded.content == b"%PDF-1.7 deck"
    assert downloaded.headers["content-type"] == "application/pdf"
    assert downloaded.headers["content-disposition"] == "attachment; filename*=UTF-8''pitch_deck%20form.pdf"

    deleted = test_client.delete(f"/api/documents/{document_id}")
    assert deleted.json() == {"status": "deleted"}
    assert test_client.get(f"/api/documents/{document_id}/download").status_code == 404
    assert [event["event_type"] for event in events.published_events][-1] == "document.deleted"
