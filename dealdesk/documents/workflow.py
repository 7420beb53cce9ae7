"""Document workflow rules.

A document moves through ``UPLOAD -> [EXTRACTION] -> REVIEW -> [ACKNOWLEDGMENT]
-> SIGNATURE -> COMPLETION``. Extraction and acknowledgment only apply to AML and
KYC documents. Everything here is pure: the service reads rows, asks these
functions what is allowed, and writes the outcome.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dealdesk.errors import InvalidArgument, InvalidState


class FileType(str, Enum):
    ID = "ID"
    PASSPORT = "PASSPORT"
    COMPANY_CERT = "COMPANY_CERT"
    AML = "AML"
    KYC = "KYC"
    PITCH_DECK = "PITCH_DECK"
    BUSINESS_PLAN = "BUSINESS_PLAN"
    PPM = "PPM"
    CONTRACT = "CONTRACT"
    OTHER = "OTHER"


class WorkflowStatus(str, Enum):
    PENDING = "PENDING"
    READY_FOR_REVIEW = "READY_FOR_REVIEW"
    READY_FOR_SIGNATURE = "READY_FOR_SIGNATURE"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    SIGNED = "SIGNED"


class ValidationStatus(str, Enum):
    PENDING = "PENDING"
    REQUIRES_REVIEW = "REQUIRES_REVIEW"
    VALID = "VALID"
    INVALID = "INVALID"


class ESignatureStatus(str, Enum):
    UNSIGNED = "UNSIGNED"
    SIGNED = "SIGNED"


class StepType(str, Enum):
    UPLOAD = "UPLOAD"
    EXTRACTION = "EXTRACTION"
    REVIEW = "REVIEW"
    ACKNOWLEDGMENT = "ACKNOWLEDGMENT"
    SIGNATURE = "SIGNATURE"
    COMPLETION = "COMPLETION"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class SignatureType(str, Enum):
    DRAWN = "DRAWN"
    TYPED = "TYPED"
    UPLOADED = "UPLOADED"


class SignatureStatus(str, Enum):
    SIGNED = "SIGNED"
    VERIFIED = "VERIFIED"


EXTRACTION_FILE_TYPES = frozenset({FileType.AML, FileType.KYC})
ACKNOWLEDGMENT_FILE_TYPES = frozenset({FileType.AML, FileType.KYC})
ACTIVE_STEP_STATUSES = frozenset({StepStatus.PENDING, StepStatus.PROCESSING})

# PENDING may finish directly: review, acknowledgment and signature have no processing phase.
STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.PROCESSING, StepStatus.COMPLETED, StepStatus.REJECTED}),
    StepStatus.PROCESSING: frozenset({StepStatus.COMPLETED, StepStatus.REJECTED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.REJECTED: frozenset({StepStatus.PENDING}),
}


@dataclass(frozen=True, slots=True)
class InitialStep:
    step_type: StepType
    status: StepStatus
    notes: str


@dataclass(slots=True)
class ExtractionResult:
    success: bool
    document_id: Any
    step_id: Any
    workflow_status: WorkflowStatus
    validation_status: ValidationStatus
    extracted_fields: dict[str, Any] | None = None
    error: str | None = None


def parse_file_type(value: str) -> FileType:
    try:
        return FileType(str(value).upper())
    except ValueError:
        raise InvalidArgument(f"Invalid document type: {value}", {"field": "file_type", "value": value}) from None


def parse_step_type(value: str) -> StepType:
    try:
        return StepType(str(value).upper())
    except ValueError:
        raise InvalidArgument(f"Invalid step type: {value}", {"field": "step_type", "value": value}) from None


def requires_extraction(file_type: str) -> bool:
    return FileType(file_type) in EXTRACTION_FILE_TYPES


def requires_acknowledgment(file_type: str) -> bool:
    return FileType(file_type) in ACKNOWLEDGMENT_FILE_TYPES


def initial_steps(file_type: str, uploaded_by: str) -> list[InitialStep]:
    steps = [InitialStep(StepType.UPLOAD, StepStatus.COMPLETED, f"Document uploaded by {uploaded_by}")]
    if requires_extraction(file_type):
        steps.append(InitialStep(StepType.EXTRACTION, StepStatus.PENDING, "Awaiting form field extraction"))
    return steps


def ensure_step_transition(step_type: str, current: str, target: StepStatus) -> None:
    allowed = STEP_TRANSITIONS[StepStatus(current)]
    if target not in allowed:
        raise InvalidState(
            f"{step_type} step cannot move from {current} to {target.value}",
            {"step_type": step_type, "from": current, "to": target.value},
        )


def ensure_no_active_step(existing: Iterable[tuple[str, str]], step_type: StepType) -> None:
    """Reject a new step when one of the same type is still PENDING or PROCESSING."""
    for existing_type, existing_status in existing:
        if existing_type == step_type.value and StepStatus(existing_status) in ACTIVE_STEP_STATUSES:
            raise InvalidState(
                f"An active {step_type.value} step already exists for this document",
                {"step_type": step_type.value, "status": existing_status},
            )


def step_after_review(acknowledgment_required: bool, acknowledged: bool) -> StepType:
    if acknowledgment_required and not acknowledged:
        return StepType.ACKNOWLEDGMENT
    return StepType.SIGNATURE


def parse_extracted_fields(raw: str) -> dict[str, Any] | None:
    """Best-effort JSON parse of a completion reply, tolerating fenced code blocks."""
    text = raw.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None
