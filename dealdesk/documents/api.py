from __future__ import annotations

import uuid
from typing import Any
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from dealdesk.api.common import domain_error_response, get_current_user, http_error_response, require_permission
from dealdesk.core.actor import ActorUser
from dealdesk.core.database import get_db
from dealdesk.documents.schemas import (
    AcknowledgeRequest,
    DocumentDetailRead,
    DocumentRead,
    ExtractionRead,
    ReviewRequest,
    SignatureRead,
    SignRequest,
    StepRetryRead,
    WorkflowStepCreate,
    WorkflowStepRead,
)
from dealdesk.documents.service import document_service
from dealdesk.errors import DealDeskError

router = APIRouter(prefix="/api", tags=["documents"])


@router.post("/documents/upload", response_model=DocumentRead, status_code=status.HTTP_201_CREATED)
def upload_document(
    request: Request,
    deal_id: uuid.UUID = Form(...),
    file_type: str = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DocumentRead | JSONResponse:
    try:
        require_permission(user, "documents.write")
        content = file.file.read()
        return document_service.upload(
            db,
            user,
            deal_id,
            file_type=file_type,
            file_name=file.filename or "document.bin",
            content=content,
            content_type=file.content_type,
        )
    except DealDeskError as exc:
        return domain_error_response(request, exc, "document_upload_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "document_upload_failed")


@router.get("/deals/{deal_id}/documents", response_model=list[DocumentRead])
def list_deal_documents(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DocumentRead] | JSONResponse:
    try:
        require_permission(user, "documents.read")
        return document_service.list_documents(db, user, deal_id)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "document_list_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "document_list_failed")


@router.get("/documents/{document_id}", response_model=DocumentDetailRead)
def get_document(
    request: Request,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DocumentDetailRead | JSONResponse:
    try:
        require_permission(user, "documents.read")
        return document_service.get_document(db, user, document_id)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "document_get_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "document_get_failed")


@router.get("/documents/{document_id}/download", response_model=None)
def download_document(
    request: Request,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "documents.read")
        document, content = document_service.download(db, user, document_id)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "document_download_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "document_download_failed")

    return Response(
        content=content,
        media_type=document.content_type or "application/octet-stream",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(document.file_name)}"},
    )


@router.delete("/documents/{document_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_document(
    request: Request,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "documents.write")
        document_service.delete_document(db, user, document_id)
        return {"status": "deleted"}
    except DealDeskError as exc:
        return domain_error_response(request, exc, "document_delete_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "document_delete_failed")


@router.post("/documents/{document_id}/extract", response_model=ExtractionRead)
def extract_document(
    request: Request,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ExtractionRead | JSONResponse:
    try:
        require_permission(user, "documents.write")
        return document_service.extract(db, user, document_id)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "document_extract_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "document_extract_failed")


@router.get("/documents/{document_id}/workflow", response_model=list[WorkflowStepRead])
def list_workflow_steps(
    request: Request,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WorkflowStepRead] | JSONResponse:
    try:
        require_permission(user, "documents.read")
        return document_service.list_steps(db, user, document_id)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "document_workflow_list_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "document_workflow_list_failed")


@router.post(
    "/documents/{document_id}/workflow",
    response_model=WorkflowStepRead,
    status_code=status.HTTP_201_CREATED,
)
def add_workflow_step(
    request: Request,
    document_id: uuid.UUID,
    dto: WorkflowStepCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowStepRead | JSONResponse:
    try:
        require_permission(user, "documents.write")
        return document_service.add_step(db, user, document_id, dto)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "document_workflow_add_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "document_workflow_add_failed")


@router.post("/documents/{document_id}/workflow/{step_id}/retry", response_model=StepRetryRead)
def retry_workflow_step(
    request: Request,
    document_id: uuid.UUID,
    step_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StepRetryRead | JSONResponse:
    try:
        require_permission(user, "documents.write")
        return document_service.retry_step(db, user, document_id, step_id)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "document_workflow_retry_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "document_workflow_retry_failed")


@router.post("/documents/{document_id}/review", response_model=DocumentDetailRead)
def review_document(
    request: Request,
    document_id: uuid.UUID,
    dto: ReviewRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DocumentDetailRead | JSONResponse:
    try:
        require_permission(user, "documents.write")
        return document_service.review(db, user, document_id, approved=dto.approved, notes=dto.notes)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "document_review_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "document_review_failed")


@router.post("/documents/{document_id}/acknowledge", response_model=DocumentDetailRead)
def acknowledge_document(
    request: Request,
    document_id: uuid.UUID,
    dto: AcknowledgeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DocumentDetailRead | JSONResponse:
    try:
        require_permission(user, "documents.sign")
        return document_service.acknowledge(db, user, document_id, dto.acknowledged_by, dto.acknowledgment_text)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "document_acknowledge_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "document_acknowledge_failed")


@router.post("/documents/{document_id}/sign", response_model=SignatureRead, status_code=status.HTTP_201_CREATED)
def sign_document(
    request: Request,
    document_id: uuid.UUID,
    dto: SignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SignatureRead | JSONResponse:
    try:
        require_permission(user, "documents.sign")
        return document_service.sign(
            db,
            user,
            document_id,
            dto,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except DealDeskError as exc:
        return domain_error_response(request, exc, "document_sign_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "document_sign_failed")


@router.get("/signatures/verify", response_model=SignatureRead)
def verify_signature(
    request: Request,
    token: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
) -> SignatureRead | JSONResponse:
    try:
        return document_service.verify_signature(db, token)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "signature_verify_failed")
