from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from dealdesk.api.common import (
    domain_error_response,
    error_response,
    get_current_user,
    http_error_response,
    require_permission,
)
from dealdesk.core.actor import ActorUser
from dealdesk.core.database import get_db
from dealdesk.deals.schemas import (
    ArchiveResultRead,
    AutoProgressRead,
    CompanyCreate,
    CompanyRead,
    ContactCreate,
    ContactRead,
    DealCreate,
    DealRead,
    DealStageUpdate,
    KycRequestRead,
    KycStatusUpdate,
    OnboardingCreate,
    OnboardingRead,
)
from dealdesk.deals.service import OnboardingFile, contact_service, deal_service, onboarding_service
from dealdesk.errors import DealDeskError

router = APIRouter(prefix="/api/deals", tags=["deals"])
contacts_router = APIRouter(prefix="/api", tags=["contacts"])
onboarding_router = APIRouter(prefix="/api", tags=["onboarding"])


@router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "deals.write")
        return deal_service.create_deal(db, user, dto)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "deal_create_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "deal_create_failed")


@router.get("", response_model=list[DealRead])
def list_deals(
    request: Request,
    stage: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(user, "deals.read")
        return deal_service.list_deals(db, user, stage=stage, limit=limit, offset=offset)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "deal_list_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "deal_list_failed")


@router.get("/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "deals.read")
        return deal_service.get_deal(db, user, deal_id)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "deal_get_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "deal_get_failed")


@router.delete("/{deal_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "deals.write")
        deal_service.delete_deal(db, user, deal_id)
        return {"status": "deleted"}
    except DealDeskError as exc:
        return domain_error_response(request, exc, "deal_delete_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "deal_delete_failed")


@router.post("/{deal_id}/auto-progress", response_model=AutoProgressRead)
def auto_progress_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutoProgressRead | JSONResponse:
    try:
        require_permission(user, "deals.write")
        return deal_service.evaluate_auto_progress(db, user, deal_id)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "deal_auto_progress_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "deal_auto_progress_failed")


@router.post("/{deal_id}/send-kyc", response_model=KycRequestRead)
def send_kyc_request(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> KycRequestRead | JSONResponse:
    try:
        require_permission(user, "deals.write")
        return deal_service.send_kyc_request(db, user, deal_id)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "deal_send_kyc_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "deal_send_kyc_failed")


@router.post("/{deal_id}/archive-documents", response_model=ArchiveResultRead)
def archive_deal_documents(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ArchiveResultRead | JSONResponse:
    try:
        require_permission(user, "deals.write")
        return deal_service.archive_documents(db, user, deal_id)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "deal_archive_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "deal_archive_failed")


@router.patch("/{deal_id}/stage", response_model=DealRead)
def set_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "deals.stage_override")
        return deal_service.set_stage(db, user, deal_id, dto.stage)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "deal_set_stage_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "deal_set_stage_failed")


@router.patch("/{deal_id}/kyc-status", response_model=DealRead)
def update_deal_kyc_status(
    request: Request,
    deal_id: uuid.UUID,
    dto: KycStatusUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "deals.write")
        return deal_service.update_kyc_status(db, user, deal_id, dto.kyc_status)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "deal_kyc_status_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "deal_kyc_status_failed")


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "deals.write")
        return contact_service.create_contact(db, user, dto)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "contact_create_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "contact_create_failed")


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "deals.read")
        return contact_service.get_contact(db, user, contact_id)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "contact_get_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "contact_get_failed")


@contacts_router.post("/companies", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    request: Request,
    dto: CompanyCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(user, "deals.write")
        return contact_service.create_company(db, user, dto)
    except DealDeskError as exc:
        return domain_error_response(request, exc, "company_create_failed")
    except HTTPException as exc:
        return http_error_response(request, exc, "company_create_failed")


_ONBOARDING_UPLOADS = (
    ("id_document", "ID"),
    ("passport_document", "PASSPORT"),
    ("company_cert_document", "COMPANY_CERT"),
    ("aml_document", "AML"),
    ("pitch_deck_document", "PITCH_DECK"),
)


@onboarding_router.post("/onboarding", response_model=OnboardingRead, status_code=status.HTTP_201_CREATED)
def submit_onboarding(
    request: Request,
    full_name: str = Form(...),
    email: str = Form(...),
    phone_number: str = Form(...),
    investor_type: str = Form(...),
    deal_name: str = Form(...),
    deal_description: str | None = Form(default=None),
    company_name: str | None = Form(default=None),
    company_type: str | None = Form(default=None),
    company_region: str | None = Form(default=None),
    company_vertical: str | None = Form(default=None),
    company_aum: Decimal | None = Form(default=None),
    ticket_size_range: str | None = Form(default=None),
    id_document: UploadFile | None = File(default=None),
    passport_document: UploadFile | None = File(default=None),
    company_cert_document: UploadFile | None = File(default=None),
    aml_document: UploadFile | None = File(default=None),
    pitch_deck_document: UploadFile | None = File(default=None),
    db: Session = Depends(get_db),
) -> OnboardingRead | JSONResponse:
    try:
        dto = OnboardingCreate(
            full_name=full_name,
            email=email,
            phone_number=phone_number,
            investor_type=investor_type.upper(),
            deal_name=deal_name,
            deal_description=deal_description,
            company_name=company_name,
            company_type=company_type,
            company_region=company_region,
            company_vertical=company_vertical,
            company_aum=company_aum,
            ticket_size_range=ticket_size_range,
        )
    except ValidationError as exc:
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="onboarding_submit_failed",
            message="Missing or invalid onboarding fields",
            details={"error": "INVALID_ARGUMENT", "fields": [".".join(map(str, err["loc"])) for err in exc.errors()]},
        )

    uploads = {
        "id_document": id_document,
        "passport_document": passport_document,
        "company_cert_document": company_cert_document,
        "aml_document": aml_document,
        "pitch_deck_document": pitch_deck_document,
    }
    files: list[OnboardingFile] = []
    for field_name, file_type in _ONBOARDING_UPLOADS:
        upload = uploads[field_name]
        if upload is None:
            continue
        content = upload.file.read()
        if not content:
            continue
        files.append(
            OnboardingFile(
                file_type=file_type,
                file_name=upload.filename or f"{field_name}.bin",
                content=content,
                content_type=upload.content_type,
            )
        )

    try:
        return onboarding_service.submit(
            db,
            dto,
            files,
            correlation_id=getattr(request.state, "correlation_id", None),
        )
    except DealDeskError as exc:
        return domain_error_response(request, exc, "onboarding_submit_failed")
