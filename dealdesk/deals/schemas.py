from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


DealStageValue = Literal["NEW_LEAD", "KYC_IN_PROGRESS", "DUE_DILIGENCE", "CONTRACT_SIGNING", "ONBOARDED", "REJECTED"]
KycStatusValue = Literal["PENDING", "SUBMITTED", "VERIFIED", "REJECTED"]
PipelinePriorityValue = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]
InvestorTypeValue = Literal["INDIVIDUAL", "INSTITUTIONAL", "FAMILY_OFFICE", "CORPORATE"]


class ContactCreate(BaseModel):
    full_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone_number: str | None = None
    investor_type: InvestorTypeValue = "INDIVIDUAL"
    company_id: UUID | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    full_name: str
    email: str | None
    phone_number: str | None
    investor_type: InvestorTypeValue
    company_id: UUID | None
    created_at: datetime
    updated_at: datetime


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1)
    company_type: str | None = None
    region: str | None = None
    vertical: str | None = None
    aum: Decimal | None = None
    ticket_size_range: str | None = None
    primary_contact_id: UUID | None = None


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    company_type: str | None
    region: str | None
    vertical: str | None
    aum: Decimal | None
    ticket_size_range: str | None
    primary_contact_id: UUID | None
    created_at: datetime


class DealCreate(BaseModel):
    deal_name: str = Field(min_length=1)
    contact_id: UUID
    company_id: UUID | None = None
    deal_value: Decimal | None = None
    pipeline_priority: PipelinePriorityValue = "MEDIUM"
    due_diligence_notes: str | None = None
    owner_user_id: str | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_name: str
    stage: DealStageValue
    kyc_status: KycStatusValue
    deal_value: Decimal | None
    pipeline_priority: PipelinePriorityValue
    due_diligence_notes: str | None
    contact_id: UUID
    company_id: UUID | None
    owner_user_id: str
    created_at: datetime
    updated_at: datetime


class DealStageUpdate(BaseModel):
    # Validated by the service so unknown values map to INVALID_ARGUMENT.
    stage: str = Field(min_length=1)


class KycStatusUpdate(BaseModel):
    kyc_status: str = Field(min_length=1)


class AutoProgressRead(BaseModel):
    advanced: bool
    from_stage: DealStageValue
    stage: DealStageValue
    reason: str
    tasks_created: int = 0
    deal: DealRead


class ArchivedDocumentRead(BaseModel):
    document_id: UUID
    file_name: str
    success: bool
    archive_uri: str | None = None
    error: str | None = None


class ArchiveResultRead(BaseModel):
    deal: DealRead
    archived: list[ArchivedDocumentRead]


class OnboardingRead(BaseModel):
    deal: DealRead
    contact: ContactRead
    company: CompanyRead | None
    document_ids: list[UUID]
    message: str = "Onboarding application submitted successfully"


class KycRequestRead(BaseModel):
    deal: DealRead
    recipient: str | None
    subject: str | None
    body: str | None
    ai_generated: bool = False
    message: str = "KYC/AML request sent"


class OnboardingCreate(BaseModel):
    full_name: str = Field(min_length=1)
    email: EmailStr
    phone_number: str = Field(min_length=1)
    investor_type: InvestorTypeValue
    deal_name: str = Field(min_length=1)
    deal_description: str | None = None
    company_name: str | None = None
    company_type: str | None = None
    company_region: str | None = None
    company_vertical: str | None = None
    company_aum: Decimal | None = None
    ticket_size_range: str | None = None
