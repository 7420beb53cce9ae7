from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


FileTypeValue = Literal[
    "ID", "PASSPORT", "COMPANY_CERT", "AML", "KYC", "PITCH_DECK", "BUSINESS_PLAN", "PPM", "CONTRACT", "OTHER"
]
WorkflowStatusValue = Literal["PENDING", "READY_FOR_REVIEW", "READY_FOR_SIGNATURE", "ACKNOWLEDGED", "SIGNED"]
ValidationStatusValue = Literal["PENDING", "REQUIRES_REVIEW", "VALID", "INVALID"]
StepTypeValue = Literal["UPLOAD", "EXTRACTION", "REVIEW", "ACKNOWLEDGMENT", "SIGNATURE", "COMPLETION"]
StepStatusValue = Literal["PENDING", "PROCESSING", "COMPLETED", "REJECTED"]
SignatureTypeValue = Literal["DRAWN", "TYPED", "UPLOADED"]


class WorkflowStepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    document_id: UUID
    sequence: int
    step_type: StepTypeValue
    status: StepStatusValue
    notes: str | None
    error_message: str | None
    completed_at: datetime | None
    completed_by: str | None
    created_at: datetime


class WorkflowStepCreate(BaseModel):
    step_type: str = Field(min_length=1)
    notes: str | None = None


class DocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    file_name: str
    content_type: str | None
    size_bytes: int | None
    file_type: FileTypeValue
    workflow_status: WorkflowStatusValue
    validation_status: ValidationStatusValue
    e_signature_status: Literal["UNSIGNED", "SIGNED"]
    acknowledgment_required: bool
    acknowledged_at: datetime | None
    acknowledged_by: str | None
    extracted_fields: dict[str, Any] | None
    auto_extracted: bool
    signed_at: datetime | None
    uploaded_by_user_id: str
    created_at: datetime
    updated_at: datetime


class DocumentDetailRead(DocumentRead):
    steps: list[WorkflowStepRead]


class ExtractionRead(BaseModel):
    success: bool
    document_id: UUID
    step_id: UUID | None
    workflow_status: WorkflowStatusValue
    validation_status: ValidationStatusValue
    extracted_fields: dict[str, Any] | None = None
    error: str | None = None


class StepRetryRead(BaseModel):
    step: WorkflowStepRead
    extraction: ExtractionRead | None = None
    queued: bool = False


class ReviewRequest(BaseModel):
    approved: bool
    notes: str | None = None


class AcknowledgeRequest(BaseModel):
    acknowledged_by: str = Field(min_length=1, max_length=128)
    acknowledgment_text: str | None = None


class SignRequest(BaseModel):
    signer_name: str = Field(min_length=1)
    signer_email: EmailStr
    signature_data: str = Field(min_length=1)
    signature_type: SignatureTypeValue = "DRAWN"


class SignatureRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    document_id: UUID
    signer_name: str
    signer_email: str
    signature_type: SignatureTypeValue
    status: Literal["SIGNED", "VERIFIED"]
    verification_token: str
    signed_at: datetime
    verified_at: datetime | None
