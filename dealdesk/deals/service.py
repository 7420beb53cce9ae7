from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from dealdesk import audit, events
from dealdesk.collaborators.ai import CompletionClient, get_completion_client
from dealdesk.collaborators.archive import BlobDocumentArchive, DocumentArchive
from dealdesk.collaborators.prompts import KYC_EMAIL_SYSTEM_PROMPT, kyc_email_fallback, kyc_email_prompt
from dealdesk.collaborators.storage import BlobStorage, get_blob_storage
from dealdesk.core.actor import ActorUser
from dealdesk.core.config import get_settings
from dealdesk.deals.lifecycle import (
    DealSnapshot,
    DocumentFacts,
    KycStatus,
    NoOp,
    NotificationRequest,
    StageAdvance,
    evaluate_auto_progress,
    force_due_diligence,
    force_kyc_request,
    intake_tasks,
    parse_kyc_status,
    parse_stage,
)
from dealdesk.deals.models import Company, Contact, Deal
from dealdesk.deals.repository import DealRepository
from dealdesk.deals.schemas import (
    ArchivedDocumentRead,
    ArchiveResultRead,
    AutoProgressRead,
    CompanyCreate,
    CompanyRead,
    ContactCreate,
    ContactRead,
    DealCreate,
    DealRead,
    KycRequestRead,
    OnboardingCreate,
    OnboardingRead,
)
from dealdesk.documents.models import Document
from dealdesk.documents.service import DocumentWorkflowService, document_service
from dealdesk.documents.workflow import parse_extracted_fields
from dealdesk.effects import EffectOutcome, EffectRunner
from dealdesk.errors import CollaboratorFailure, DealDeskError, InvalidState, NotFoundError
from dealdesk.metrics import observe_auto_progress_noop, observe_stage_transition
from dealdesk.tasks.models import Task


logger = logging.getLogger("dealdesk.deals")
lifecycle_logger = logging.getLogger("dealdesk.lifecycle")
tracer = trace.get_tracer("dealdesk.deals")

KYC_REQUEST_INTENT = "kyc_request"


@dataclass(slots=True)
class OnboardingFile:
    file_type: str
    file_name: str
    content: bytes
    content_type: str | None = None


@dataclass(slots=True)
class DealService:
    """Deal CRUD plus the stage transitions of the deal lifecycle.

    Every transition commits the deal first and only then hands the resulting
    task and notification requests to the effect runner.
    """

    deal_repository: DealRepository = field(default_factory=DealRepository)
    effect_runner: EffectRunner = field(default_factory=EffectRunner)
    completion_client: CompletionClient | None = None
    storage: BlobStorage | None = None
    document_archive: DocumentArchive | None = None
    entity_type: str = "deal"

    def _completion(self) -> CompletionClient:
        return self.completion_client if self.completion_client is not None else get_completion_client()

    def _storage(self) -> BlobStorage:
        return self.storage if self.storage is not None else get_blob_storage()

    def _archive(self) -> DocumentArchive:
        if self.document_archive is not None:
            return self.document_archive
        return BlobDocumentArchive(self._storage())

    def create_deal(self, session: Session, actor: ActorUser, dto: DealCreate) -> DealRead:
        contact = self.deal_repository.get_contact(session, dto.contact_id)
        if dto.company_id is not None and session.get(Company, dto.company_id) is None:
            raise NotFoundError("Company not found", {"company_id": str(dto.company_id)})

        deal = Deal(
            deal_name=dto.deal_name.strip(),
            contact_id=contact.id,
            company_id=dto.company_id or contact.company_id,
            deal_value=dto.deal_value,
            pipeline_priority=dto.pipeline_priority,
            due_diligence_notes=dto.due_diligence_notes,
            owner_user_id=dto.owner_user_id or actor.user_id,
        )
        session.add(deal)
        session.commit()
        session.refresh(deal)

        created = DealRead.model_validate(deal)
        self._audit(actor, deal.id, "create", None, created.model_dump(mode="json"))
        events.publish(
            events.build_envelope(
                "deal.created",
                actor.user_id,
                deal_id=str(deal.id),
                stage=deal.stage,
                correlation_id=actor.correlation_id,
            )
        )
        return created

    def list_deals(
        self,
        session: Session,
        actor: ActorUser,
        *,
        stage: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DealRead]:
        stage_value = parse_stage(stage).value if stage else None
        rows = self.deal_repository.list_visible(session, actor, stage=stage_value, limit=limit, offset=offset)
        return [DealRead.model_validate(row) for row in rows]

    def get_deal(self, session: Session, actor: ActorUser, deal_id: uuid.UUID) -> DealRead:
        return DealRead.model_validate(self.deal_repository.get_visible(session, actor, deal_id))

    def delete_deal(self, session: Session, actor: ActorUser, deal_id: uuid.UUID) -> None:
        deal = self.deal_repository.get_visible(session, actor, deal_id)
        before = DealRead.model_validate(deal).model_dump(mode="json")
        blob_paths = [document.storage_path for document in deal.documents]
        session.delete(deal)
        session.commit()

        storage = self._storage()
        for path in blob_paths:
            try:
                storage.delete(path)
            except CollaboratorFailure as exc:
                logger.error(
                    "deal.blob_cleanup_failed",
                    extra={"deal_id": str(deal_id), "collaborator": exc.collaborator, "error": exc.message},
                )
        self._audit(actor, deal_id, "delete", before, None)
        events.publish(
            events.build_envelope("deal.deleted", actor.user_id, deal_id=str(deal_id), correlation_id=actor.correlation_id)
        )

    def evaluate_auto_progress(
        self,
        session: Session,
        actor: ActorUser,
        deal_id: uuid.UUID,
        *,
        trigger: str = "manual",
    ) -> AutoProgressRead:
        deal = self.deal_repository.get_visible(session, actor, deal_id, with_contact=True)
        with tracer.start_as_current_span("deals.evaluate_auto_progress") as span:
            span.set_attribute("deal_id", str(deal.id))
            span.set_attribute("trigger", trigger)
            decision = evaluate_auto_progress(
                self._snapshot(deal),
                self._document_facts(session, deal.id),
                self._completed_task_titles(session, deal.id),
            )
            span.set_attribute("advanced", isinstance(decision, StageAdvance))

        if isinstance(decision, NoOp):
            observe_auto_progress_noop(decision.stage.value)
            lifecycle_logger.info(
                "deal.auto_progress_noop",
                extra={"deal_id": str(deal.id), "from_stage": decision.stage.value, "trigger": trigger},
            )
            return AutoProgressRead(
                advanced=False,
                from_stage=decision.stage.value,
                stage=decision.stage.value,
                reason=decision.reason,
                deal=DealRead.model_validate(deal),
            )

        outcomes = self._apply_advance(session, actor, deal, decision, trigger=trigger)
        session.refresh(deal)
        return AutoProgressRead(
            advanced=True,
            from_stage=decision.from_stage.value,
            stage=decision.to_stage.value,
            reason=decision.reason,
            tasks_created=sum(1 for outcome in outcomes if outcome.ok),
            deal=DealRead.model_validate(deal),
        )

    def send_kyc_request(self, session: Session, actor: ActorUser, deal_id: uuid.UUID) -> KycRequestRead:
        deal = self.deal_repository.get_visible(session, actor, deal_id, with_contact=True)
        snapshot = self._snapshot(deal)

        notification: NotificationRequest | None = None
        ai_generated = False
        if snapshot.contact_email:
            subject, body, ai_generated = self._kyc_email(deal, snapshot.contact_email)
            notification = NotificationRequest(
                intent_type=KYC_REQUEST_INTENT,
                recipient_email=snapshot.contact_email,
                subject=subject,
                body=body,
            )
        else:
            logger.warning("deal.kyc_request_without_email", extra={"deal_id": str(deal.id)})

        self._apply_advance(session, actor, deal, force_kyc_request(snapshot, notification), trigger="kyc_request")
        session.refresh(deal)
        return KycRequestRead(
            deal=DealRead.model_validate(deal),
            recipient=notification.recipient_email if notification else None,
            subject=notification.subject if notification else None,
            body=notification.body if notification else None,
            ai_generated=ai_generated,
        )

    def _kyc_email(self, deal: Deal, contact_email: str) -> tuple[str, str, bool]:
        contact_name = deal.contact.full_name
        fallback_subject, fallback_body = kyc_email_fallback(deal.deal_name, contact_name)
        prompt = kyc_email_prompt(
            deal.deal_name,
            contact_name,
            contact_email,
            deal.company.name if deal.company is not None else None,
            deal.stage,
        )
        try:
            reply = self._completion().complete(prompt, KYC_EMAIL_SYSTEM_PROMPT)
        except CollaboratorFailure as exc:
            logger.warning(
                "deal.kyc_email_fallback",
                extra={"deal_id": str(deal.id), "collaborator": exc.collaborator, "error": exc.message},
            )
            return fallback_subject, fallback_body, False

        parsed = parse_extracted_fields(reply or "") or {}
        subject = parsed.get("subject")
        body = parsed.get("body")
        if not isinstance(subject, str) or not subject.strip() or not isinstance(body, str) or not body.strip():
            logger.info("deal.kyc_email_fallback", extra={"deal_id": str(deal.id), "error": "unusable completion reply"})
            return fallback_subject, fallback_body, False
        return subject.strip(), body, True

    def archive_documents(self, session: Session, actor: ActorUser, deal_id: uuid.UUID) -> ArchiveResultRead:
        deal = self.deal_repository.get_visible(session, actor, deal_id, with_contact=True)
        documents = list(
            session.scalars(select(Document).where(Document.deal_id == deal.id).order_by(Document.created_at))
        )
        # Raises before anything is copied or written.
        advance = force_due_diligence(self._snapshot(deal), len(documents))

        storage = self._storage()
        archive = self._archive()
        archived: list[ArchivedDocumentRead] = []
        with tracer.start_as_current_span("deals.archive_documents") as span:
            span.set_attribute("deal_id", str(deal.id))
            span.set_attribute("document_count", len(documents))
            for document in documents:
                try:
                    uri = archive.archive(deal.id, document.file_name, storage.read(document.storage_path))
                except (CollaboratorFailure, NotFoundError) as exc:
                    logger.warning(
                        "deal.archive_document_failed",
                        extra={"deal_id": str(deal.id), "document_id": str(document.id), "error": exc.message},
                    )
                    archived.append(
                        ArchivedDocumentRead(
                            document_id=document.id, file_name=document.file_name, success=False, error=exc.message
                        )
                    )
                    continue
                archived.append(
                    ArchivedDocumentRead(
                        document_id=document.id, file_name=document.file_name, success=True, archive_uri=uri
                    )
                )

        self._apply_advance(session, actor, deal, advance, trigger="archive")
        session.refresh(deal)
        return ArchiveResultRead(deal=DealRead.model_validate(deal), archived=archived)

    def set_stage(self, session: Session, actor: ActorUser, deal_id: uuid.UUID, stage: str) -> DealRead:
        target = parse_stage(stage)
        deal = self.deal_repository.get_visible(session, actor, deal_id)
        before = DealRead.model_validate(deal).model_dump(mode="json")
        previous = deal.stage

        deal.stage = target.value
        session.commit()
        session.refresh(deal)
        updated = DealRead.model_validate(deal)
        self._audit(actor, deal.id, "set_stage", before, updated.model_dump(mode="json"))

        if previous != target.value:
            self._announce_transition(actor, deal.id, previous, target.value, trigger="manual_override")
        return updated

    def update_kyc_status(self, session: Session, actor: ActorUser, deal_id: uuid.UUID, kyc_status: str) -> DealRead:
        status = parse_kyc_status(kyc_status)
        deal = self.deal_repository.get_visible(session, actor, deal_id)
        before = DealRead.model_validate(deal).model_dump(mode="json")
        previous = deal.kyc_status

        deal.kyc_status = status.value
        session.commit()
        session.refresh(deal)
        self._audit(actor, deal.id, "update_kyc_status", before, DealRead.model_validate(deal).model_dump(mode="json"))
        logger.info("deal.kyc_status_changed", extra={"deal_id": str(deal.id), "status": status.value})

        if previous != status.value:
            events.publish(
                events.build_envelope(
                    "deal.kyc_status_changed",
                    actor.user_id,
                    deal_id=str(deal.id),
                    previous_kyc_status=previous,
                    kyc_status=status.value,
                    correlation_id=actor.correlation_id,
                )
            )
            # Subscribers may have advanced the stage.
            session.refresh(deal)
        return DealRead.model_validate(deal)

    def _apply_advance(
        self,
        session: Session,
        actor: ActorUser,
        deal: Deal,
        advance: StageAdvance,
        *,
        trigger: str,
    ) -> list[EffectOutcome]:
        before = DealRead.model_validate(deal).model_dump(mode="json")
        deal.stage = advance.to_stage.value
        if advance.kyc_status is not None:
            deal.kyc_status = advance.kyc_status.value
        session.commit()
        session.refresh(deal)

        deal_id = deal.id
        owner_user_id = deal.owner_user_id
        self._audit(actor, deal_id, "stage_transition", before, DealRead.model_validate(deal).model_dump(mode="json"))
        lifecycle_logger.info(
            "deal.stage_advanced",
            extra={"deal_id": str(deal_id), "from_stage": advance.from_stage.value, "to_stage": advance.to_stage.value},
        )
        outcomes = self.effect_runner.run(
            session,
            advance.effects,
            deal_id=deal_id,
            assignee_user_id=owner_user_id,
        )
        self._announce_transition(
            actor,
            deal_id,
            advance.from_stage.value,
            advance.to_stage.value,
            trigger=trigger,
            reason=advance.reason,
        )
        return outcomes

    def _announce_transition(
        self,
        actor: ActorUser,
        deal_id: uuid.UUID,
        from_stage: str,
        to_stage: str,
        *,
        trigger: str,
        reason: str | None = None,
    ) -> None:
        observe_stage_transition(from_stage, to_stage, trigger)
        lifecycle_logger.info(
            "deal.stage_changed",
            extra={"deal_id": str(deal_id), "from_stage": from_stage, "to_stage": to_stage, "trigger": trigger},
        )
        events.publish(
            events.build_envelope(
                "deal.stage_changed",
                actor.user_id,
                deal_id=str(deal_id),
                from_stage=from_stage,
                to_stage=to_stage,
                trigger=trigger,
                reason=reason,
                correlation_id=actor.correlation_id,
            )
        )

    def _snapshot(self, deal: Deal) -> DealSnapshot:
        return DealSnapshot(
            deal_name=deal.deal_name,
            stage=deal.stage,
            kyc_status=deal.kyc_status,
            contact_name=deal.contact.full_name,
            contact_email=deal.contact.email,
        )

    def _document_facts(self, session: Session, deal_id: uuid.UUID) -> list[DocumentFacts]:
        rows = session.execute(
            select(Document.file_type, Document.e_signature_status).where(Document.deal_id == deal_id)
        )
        return [DocumentFacts(file_type=file_type, e_signature_status=status) for file_type, status in rows]

    def _completed_task_titles(self, session: Session, deal_id: uuid.UUID) -> list[str]:
        return list(session.scalars(select(Task.title).where(Task.deal_id == deal_id, Task.status == "COMPLETED")))

    def _audit(
        self,
        actor: ActorUser,
        entity_id: uuid.UUID,
        action: str,
        before: dict | None,
        after: dict | None,
    ) -> None:
        audit.record(
            actor_user_id=actor.user_id,
            entity_type=self.entity_type,
            entity_id=str(entity_id),
            action=action,
            before=before,
            after=after,
            correlation_id=actor.correlation_id,
        )


@dataclass(slots=True)
class ContactService:
    deal_repository: DealRepository = field(default_factory=DealRepository)

    def create_contact(self, session: Session, actor: ActorUser, dto: ContactCreate) -> ContactRead:
        email = str(dto.email).strip().lower() if dto.email is not None else None
        if email and self.deal_repository.find_contact_by_email(session, email) is not None:
            raise InvalidState("A contact with this email already exists", {"email": email})
        if dto.company_id is not None and session.get(Company, dto.company_id) is None:
            raise NotFoundError("Company not found", {"company_id": str(dto.company_id)})

        contact = Contact(
            full_name=dto.full_name.strip(),
            email=email,
            phone_number=dto.phone_number,
            investor_type=dto.investor_type,
            company_id=dto.company_id,
        )
        session.add(contact)
        session.commit()
        session.refresh(contact)
        created = ContactRead.model_validate(contact)
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="contact",
            entity_id=str(contact.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor.correlation_id,
        )
        return created

    def get_contact(self, session: Session, actor: ActorUser, contact_id: uuid.UUID) -> ContactRead:
        return ContactRead.model_validate(self.deal_repository.get_contact(session, contact_id))

    def create_company(self, session: Session, actor: ActorUser, dto: CompanyCreate) -> CompanyRead:
        if dto.primary_contact_id is not None:
            self.deal_repository.get_contact(session, dto.primary_contact_id)
        company = Company(
            name=dto.name.strip(),
            company_type=dto.company_type,
            region=dto.region,
            vertical=dto.vertical,
            aum=dto.aum,
            ticket_size_range=dto.ticket_size_range,
            primary_contact_id=dto.primary_contact_id,
        )
        session.add(company)
        session.commit()
        session.refresh(company)
        created = CompanyRead.model_validate(company)
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="company",
            entity_id=str(company.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor.correlation_id,
        )
        return created


@dataclass(slots=True)
class OnboardingService:
    """Public lead intake: contact, optional company, deal, documents and the initial task set."""

    deal_repository: DealRepository = field(default_factory=DealRepository)
    documents: DocumentWorkflowService = field(default_factory=lambda: document_service)
    effect_runner: EffectRunner = field(default_factory=EffectRunner)

    def submit(
        self,
        session: Session,
        dto: OnboardingCreate,
        files: Sequence[OnboardingFile] = (),
        *,
        correlation_id: str | None = None,
    ) -> OnboardingRead:
        owner_user_id = get_settings().default_owner_user_id
        intake_actor = ActorUser(user_id=owner_user_id, correlation_id=correlation_id)

        contact = self.deal_repository.find_contact_by_email(session, str(dto.email))
        if contact is None:
            contact = Contact(
                full_name=dto.full_name.strip(),
                email=str(dto.email).strip().lower(),
                phone_number=dto.phone_number,
                investor_type=dto.investor_type,
            )
            session.add(contact)
            session.flush()

        company: Company | None = None
        if dto.company_name and dto.investor_type != "INDIVIDUAL":
            company = Company(
                name=dto.company_name.strip(),
                company_type=dto.company_type,
                region=dto.company_region,
                vertical=dto.company_vertical,
                aum=dto.company_aum,
                ticket_size_range=dto.ticket_size_range,
                primary_contact_id=contact.id,
            )
            session.add(company)
            session.flush()
            contact.company_id = company.id

        deal = Deal(
            deal_name=dto.deal_name.strip(),
            stage="NEW_LEAD",
            kyc_status=KycStatus.PENDING.value,
            contact_id=contact.id,
            company_id=company.id if company is not None else None,
            due_diligence_notes=dto.deal_description,
            owner_user_id=owner_user_id,
        )
        session.add(deal)
        session.commit()
        deal_id = deal.id
        contact_name = contact.full_name
        logger.info("deal.onboarding_submitted", extra={"deal_id": str(deal_id)})

        document_ids: list[uuid.UUID] = []
        for upload in files:
            try:
                created = self.documents.upload(
                    session,
                    intake_actor,
                    deal_id,
                    file_type=upload.file_type,
                    file_name=upload.file_name,
                    content=upload.content,
                    content_type=upload.content_type,
                )
            except DealDeskError as exc:
                logger.warning(
                    "deal.onboarding_document_failed",
                    extra={"deal_id": str(deal_id), "error": exc.message},
                )
                continue
            document_ids.append(created.id)

        self.effect_runner.run(
            session,
            intake_tasks(dto.deal_name.strip(), contact_name),
            deal_id=deal_id,
            assignee_user_id=owner_user_id,
        )
        events.publish(
            events.build_envelope(
                "deal.created",
                owner_user_id,
                deal_id=str(deal_id),
                stage="NEW_LEAD",
                source="onboarding",
                correlation_id=correlation_id,
            )
        )

        deal = self.deal_repository.get_visible(session, intake_actor, deal_id)
        return OnboardingRead(
            deal=DealRead.model_validate(deal),
            contact=ContactRead.model_validate(deal.contact),
            company=CompanyRead.model_validate(deal.company) if deal.company is not None else None,
            document_ids=document_ids,
        )


deal_service = DealService()
contact_service = ContactService()
onboarding_service = OnboardingService()
