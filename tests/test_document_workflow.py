from __future__ import annotations

import pytest

from dealdesk.documents.workflow import (
    FileType,
    StepStatus,
    StepType,
    ensure_no_active_step,
    ensure_step_transition,
    initial_steps,
    parse_extracted_fields,
    parse_file_type,
    parse_step_type,
    requires_acknowledgment,
    step_after_review,
)
from dealdesk.errors import InvalidArgument, InvalidState


@pytest.mark.parametrize("file_type", ["AML", "KYC"])
def test_compliance_documents_get_upload_and_extraction_steps(file_type: str) -> None:
    steps = initial_steps(file_type, "user-1")

    assert [(step.step_type, step.status) for step in steps] == [
        (StepType.UPLOAD, StepStatus.COMPLETED),
        (StepType.EXTRACTION, StepStatus.PENDING),
    ]
    assert steps[0].notes == "Document uploaded by user-1"


@pytest.mark.parametrize("file_type", ["ID", "PASSPORT", "CONTRACT", "PITCH_DECK", "OTHER"])
def test_other_documents_get_upload_step_only(file_type: str) -> None:
    steps = initial_steps(file_type, "user-1")

    assert [(step.step_type, step.status) for step in steps] == [(StepType.UPLOAD, StepStatus.COMPLETED)]


def test_acknowledgment_required_only_for_aml_and_kyc() -> None:
    assert requires_acknowledgment("AML")
    assert requires_acknowledgment("KYC")
    assert not requires_acknowledgment("ID")
    assert not requires_acknowledgment("CONTRACT")


def test_parse_file_type_normalizes_case() -> None:
    assert parse_file_type("aml") is FileType.AML

    with pytest.raises(InvalidArgument) as exc_info:
        parse_file_type("SELFIE")
    assert exc_info.value.details == {"field": "file_type", "value": "SELFIE"}


def test_parse_step_type_rejects_unknown() -> None:
    assert parse_step_type("review") is StepType.REVIEW
    with pytest.raises(InvalidArgument):
        parse_step_type("NOTARIZE")


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("PENDING", StepStatus.PROCESSING),
        ("PENDING", StepStatus.COMPLETED),
        ("PROCESSING", StepStatus.COMPLETED),
        ("PROCESSING", StepStatus.REJECTED),
        ("REJECTED", StepStatus.PENDING),
    ],
)
def test_allowed_step_transitions(current: str, target: StepStatus) -> None:
    ensure_step_transition("EXTRACTION", current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("COMPLETED", StepStatus.PENDING),
        ("COMPLETED", StepStatus.REJECTED),
        ("REJECTED", StepStatus.COMPLETED),
        ("PROCESSING", StepStatus.PENDING),
    ],
)
def test_forbidden_step_transitions(current: str, target: StepStatus) -> None:
    with pytest.raises(InvalidState) as exc_info:
        ensure_step_transition("EXTRACTION", current, target)

    assert exc_info.value.details["from"] == current


def test_only_one_active_step_per_type() -> None:
    existing = [("UPLOAD", "COMPLETED"), ("EXTRACTION", "REJECTED")]
    ensure_no_active_step(existing, StepType.EXTRACTION)

    with pytest.raises(InvalidState):
        ensure_no_active_step(existing + [("EXTRACTION", "PROCESSING")], StepType.EXTRACTION)

    ensure_no_active_step(existing + [("REVIEW", "PENDING")], StepType.EXTRACTION)


def test_step_after_review() -> None:
    assert step_after_review(True, False) is StepType.ACKNOWLEDGMENT
    assert step_after_review(True, True) is StepType.SIGNATURE
    assert step_after_review(False, False) is StepType.SIGNATURE


def test_parse_extracted_fields_tolerates_fences_and_garbage() -> None:
    assert parse_extracted_fields('{"full_name": "Ada"}') == {"full_name": "Ada"}
    assert parse_extracted_fields('```json\n{"nationality": "UK"}\n```') == {"nationality": "UK"}
    assert parse_extracted_fields("I could not read this document") is None
    assert parse_extracted_fields("[1, 2]") is None
