"""Deal stage state machine.

Stages advance ``NEW_LEAD -> KYC_IN_PROGRESS -> DUE_DILIGENCE -> CONTRACT_SIGNING
-> ONBOARDED``; ``REJECTED`` is set externally. Functions here never touch the
database: they take a snapshot of the deal and return either a ``StageAdvance``
carrying the follow-up effects to run after commit, or a ``NoOp``.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from dealdesk.documents.workflow import ESignatureStatus, FileType
from dealdesk.errors import InvalidArgument, PreconditionFailed


class DealStage(str, Enum):
    NEW_LEAD = "NEW_LEAD"
    KYC_IN_PROGRESS = "KYC_IN_PROGRESS"
    DUE_DILIGENCE = "DUE_DILIGENCE"
    CONTRACT_SIGNING = "CONTRACT_SIGNING"
    ONBOARDED = "ONBOARDED"
    REJECTED = "REJECTED"


class KycStatus(str, Enum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class PipelinePriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


TERMINAL_STAGES = frozenset({DealStage.ONBOARDED, DealStage.REJECTED})

NO_OP_REASON = "does not meet criteria for next stage"
DUE_DILIGENCE_TASK_MARKER = "Due Diligence"


@dataclass(frozen=True, slots=True)
class TaskRequest:
    title: str
    description: str
    due_in_days: int | None = None

    def due_date(self, now: datetime) -> datetime | None:
        if self.due_in_days is None:
            return None
        return now + timedelta(days=self.due_in_days)


@dataclass(frozen=True, slots=True)
class NotificationRequest:
    intent_type: str
    recipient_email: str
    subject: str
    body: str


Effect = TaskRequest | NotificationRequest


@dataclass(frozen=True, slots=True)
class DealSnapshot:
    deal_name: str
    stage: str
    kyc_status: str
    contact_name: str
    contact_email: str | None


@dataclass(frozen=True, slots=True)
class DocumentFacts:
    file_type: str
    e_signature_status: str


@dataclass(frozen=True, slots=True)
class StageAdvance:
    from_stage: DealStage
    to_stage: DealStage
    reason: str
    kyc_status: KycStatus | None = None
    effects: tuple[Effect, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class NoOp:
    stage: DealStage
    reason: str = NO_OP_REASON


Guard = Callable[[DealSnapshot, Sequence[DocumentFacts], Sequence[str]], bool]


@dataclass(frozen=True, slots=True)
class GuardRule:
    from_stage: DealStage
    to_stage: DealStage
    guard: Guard
    reason: str
    kyc_status: KycStatus | None = None


def _contact_reachable(deal: DealSnapshot, documents: Sequence[DocumentFacts], completed: Sequence[str]) -> bool:
    return bool(deal.contact_email and deal.contact_email.strip())


def _kyc_verified_with_documents(
    deal: DealSnapshot, documents: Sequence[DocumentFacts], completed: Sequence[str]
) -> bool:
    return deal.kyc_status == KycStatus.VERIFIED.value and len(documents) > 0


def _due_diligence_done(deal: DealSnapshot, documents: Sequence[DocumentFacts], completed: Sequence[str]) -> bool:
    return any(DUE_DILIGENCE_TASK_MARKER in title for title in completed)


def _contract_signed(deal: DealSnapshot, documents: Sequence[DocumentFacts], completed: Sequence[str]) -> bool:
    return any(
        document.file_type == FileType.CONTRACT.value
        and document.e_signature_status == ESignatureStatus.SIGNED.value
        for document in documents
    )


# Evaluated in order; the first rule whose stage matches and whose guard holds wins.
AUTO_PROGRESS_RULES: tuple[GuardRule, ...] = (
    GuardRule(
        DealStage.NEW_LEAD,
        DealStage.KYC_IN_PROGRESS,
        _contact_reachable,
        "Initial contact established, moving to KYC phase",
        kyc_status=KycStatus.PENDING,
    ),
    GuardRule(
        DealStage.KYC_IN_PROGRESS,
        DealStage.DUE_DILIGENCE,
        _kyc_verified_with_documents,
        "KYC verified and documents archived, moving to due diligence",
    ),
    GuardRule(
        DealStage.DUE_DILIGENCE,
        DealStage.CONTRACT_SIGNING,
        _due_diligence_done,
        "Due diligence completed, moving to contract signing",
    ),
    GuardRule(
        DealStage.CONTRACT_SIGNING,
        DealStage.ONBOARDED,
        _contract_signed,
        "Contract signed, deal onboarded successfully",
    ),
)

FOLLOW_UP_TASKS: dict[DealStage, tuple[str, str, int]] = {
    DealStage.KYC_IN_PROGRESS: (
        "Send KYC Request - {deal_name}",
        "Send KYC/AML requirements to {contact_name}",
        2,
    ),
    DealStage.DUE_DILIGENCE: (
        "Due Diligence Review - {deal_name}",
        "Review KYC documents and perform due diligence for {contact_name}",
        14,
    ),
    DealStage.CONTRACT_SIGNING: (
        "Prepare Contract - {deal_name}",
        "Prepare and send contract for {deal_name} to {contact_name}",
        7,
    ),
    DealStage.ONBOARDED: (
        "Onboarding Complete - {deal_name}",
        "Complete onboarding process for {contact_name}",
        3,
    ),
}

INTAKE_TASKS: tuple[tuple[str, str], ...] = (
    ("Review KYC Documents", "Review submitted KYC documents for {contact_name}"),
    ("Initial Contact Follow-up", "Contact {contact_name} to discuss the {deal_name} opportunity"),
    ("Due Diligence Review", "Conduct due diligence on {deal_name}"),
)


def parse_stage(value: str) -> DealStage:
    try:
        return DealStage(str(value).upper())
    except ValueError:
        raise InvalidArgument(f"Invalid stage: {value}", {"field": "stage", "value": value}) from None


def parse_kyc_status(value: str) -> KycStatus:
    try:
        return KycStatus(str(value).upper())
    except ValueError:
        raise InvalidArgument(f"Invalid KYC status: {value}", {"field": "kyc_status", "value": value}) from None


def follow_up_task(stage: DealStage, deal: DealSnapshot) -> TaskRequest:
    title, description, due_in_days = FOLLOW_UP_TASKS[stage]
    values = {"deal_name": deal.deal_name, "contact_name": deal.contact_name}
    return TaskRequest(title.format(**values), description.format(**values), due_in_days)


def intake_tasks(deal_name: str, contact_name: str) -> list[TaskRequest]:
    values = {"deal_name": deal_name, "contact_name": contact_name}
    return [TaskRequest(title, description.format(**values)) for title, description in INTAKE_TASKS]


def evaluate_auto_progress(
    deal: DealSnapshot,
    documents: Sequence[DocumentFacts],
    completed_tasks: Sequence[str],
) -> StageAdvance | NoOp:
    """Decide whether ``deal`` may advance one stage.

    ``completed_tasks`` holds the titles of the deal's COMPLETED tasks. At most
    one advance happens per call; terminal stages yield ``NoOp``.
    """
    try:
        current = DealStage(deal.stage)
    except ValueError:
        raise InvalidArgument(f"Invalid stage: {deal.stage}", {"field": "stage", "value": deal.stage}) from None

    if current in TERMINAL_STAGES:
        return NoOp(stage=current)

    for rule in AUTO_PROGRESS_RULES:
        if rule.from_stage is not current:
            continue
        if rule.guard(deal, documents, completed_tasks):
            return StageAdvance(
                from_stage=current,
                to_stage=rule.to_stage,
                reason=rule.reason,
                kyc_status=rule.kyc_status,
                effects=(follow_up_task(rule.to_stage, deal),),
            )
    return NoOp(stage=current)


def force_kyc_request(deal: DealSnapshot, notification: NotificationRequest | None) -> StageAdvance:
    """Manual KYC kick-off; bypasses the guard table."""
    effects: list[Effect] = []
    if notification is not None:
        effects.append(notification)
    effects.append(
        TaskRequest(
            f"KYC Documents Submitted - {deal.deal_name}",
            f"Follow up on KYC documents requested from {deal.contact_name}",
            7,
        )
    )
    return StageAdvance(
        from_stage=DealStage(deal.stage),
        to_stage=DealStage.KYC_IN_PROGRESS,
        reason="KYC request sent to contact",
        kyc_status=KycStatus.SUBMITTED,
        effects=tuple(effects),
    )


def force_due_diligence(deal: DealSnapshot, document_count: int) -> StageAdvance:
    """Forced move to DUE_DILIGENCE after archiving; checks its own preconditions."""
    if deal.kyc_status != KycStatus.VERIFIED.value:
        raise PreconditionFailed(
            "KYC must be verified before archiving documents",
            {"kyc_status": deal.kyc_status},
        )
    if document_count <= 0:
        raise PreconditionFailed("No documents to archive", {"document_count": document_count})
    return StageAdvance(
        from_stage=DealStage(deal.stage),
        to_stage=DealStage.DUE_DILIGENCE,
        reason="KYC documents archived, moving to due diligence",
        effects=(
            TaskRequest(
                f"Due Diligence Review - {deal.deal_name}",
                f"KYC documents archived. Begin due diligence review for {deal.contact_name}.",
                14,
            ),
        ),
    )
