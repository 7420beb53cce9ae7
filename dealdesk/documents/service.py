from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import PurePath

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dealdesk import audit, events
from dealdesk.collaborators.ai import CompletionClient, get_completion_client
from dealdesk.collaborators.prompts import EXTRACTION_SYSTEM_PROMPT, extraction_prompt
from dealdesk.collaborators.storage import BlobStorage, get_blob_storage
from dealdesk.core.actor import ActorUser
from dealdesk.core.celery_app import EXTRACT_DOCUMENT_TASK, celery_app
from dealdesk.core.config import get_settings
from dealdesk.deals.models import Deal, utcnow
from dealdesk.deals.repository import DealRepository
from dealdesk.documents.models import Document, Signature, WorkflowStep
from dealdesk.documents.schemas import (
    DocumentDetailRead,
    DocumentRead,
    ExtractionRead,
    SignatureRead,
    SignRequest,
    StepRetryRead,
    WorkflowStepCreate,
    WorkflowStepRead,
)
from dealdesk.documents.workflow import (
    ESignatureStatus,
    ExtractionResult,
    SignatureStatus,
    StepStatus,
    StepType,
    ValidationStatus,
    WorkflowStatus,
    ensure_no_active_step,
    ensure_step_transition,
    initial_steps,
    parse_extracted_fields,
    parse_file_type,
    parse_step_type,
    requires_acknowledgment,
    step_after_review,
)
from dealdesk.errors import CollaboratorFailure, InvalidArgument, InvalidState, MismatchError, NotFoundError, PreconditionFailed
from dealdesk.metrics import observe_workflow_step


logger = logging.getLogger("dealdesk.documents")
tracer = trace.get_tracer("dealdesk.documents")

EXTRACTION_FAILED_MESSAGE = "Failed to extract form fields using AI"


@dataclass(slots=True)
class DocumentWorkflowService:
    """Applies the document workflow rules to persisted documents and their steps.

    Collaborators default to the configured implementations; tests pass fakes.
    """

    deal_repository: DealRepository = field(default_factory=DealRepository)
    storage: BlobStorage | None = None
    completion_client: CompletionClient | None = None
    entity_type: str = "document"

    def _storage(self) -> BlobStorage:
        return self.storage if self.storage is not None else get_blob_storage()

    def _completion(self) -> CompletionClient:
        return self.completion_client if self.completion_client is not None else get_completion_client()

    def _get_visible_document(self, session: Session, actor: ActorUser, document_id: uuid.UUID) -> Document:
        document = session.scalar(select(Document).where(Document.id == document_id))
        if document is None:
            raise NotFoundError("Document not found", {"document_id": str(document_id)})
        if not actor.can_read_all:
            owner = session.scalar(select(Deal.owner_user_id).where(Deal.id == document.deal_id))
            if owner != actor.user_id:
                raise NotFoundError("Document not found", {"document_id": str(document_id)})
        return document

    def _steps(self, session: Session, document_id: uuid.UUID) -> list[WorkflowStep]:
        return list(
            session.scalars(
                select(WorkflowStep)
                .where(WorkflowStep.document_id == document_id)
                .order_by(WorkflowStep.sequence, WorkflowStep.created_at)
            )
        )

    def _find_step(
        self,
        session: Session,
        document_id: uuid.UUID,
        step_type: StepType,
        statuses: Sequence[StepStatus] = (StepStatus.PENDING,),
    ) -> WorkflowStep | None:
        return session.scalar(
            select(WorkflowStep)
            .where(
                WorkflowStep.document_id == document_id,
                WorkflowStep.step_type == step_type.value,
                WorkflowStep.status.in_([status.value for status in statuses]),
            )
            .order_by(WorkflowStep.sequence.desc())
        )

    def _open_step(
        self,
        session: Session,
        document: Document,
        step_type: StepType,
        *,
        status: StepStatus = StepStatus.PENDING,
        notes: str | None = None,
        actor_user_id: str | None = None,
    ) -> WorkflowStep:
        existing = self._steps(session, document.id)
        ensure_no_active_step(((step.step_type, step.status) for step in existing), step_type)
        step = WorkflowStep(
            document_id=document.id,
            sequence=len(existing) + 1,
            step_type=step_type.value,
            status=status.value,
            notes=notes,
        )
        if status is StepStatus.COMPLETED:
            step.completed_at = utcnow()
            step.completed_by = actor_user_id
        session.add(step)
        session.flush()
        observe_workflow_step(step_type.value, status.value)
        return step

    def _move_step(
        self,
        step: WorkflowStep,
        target: StepStatus,
        *,
        actor_user_id: str | None = None,
        notes: str | None = None,
        error_message: str | None = None,
    ) -> None:
        ensure_step_transition(step.step_type, step.status, target)
        step.status = target.value
        if target is StepStatus.COMPLETED:
            step.completed_at = utcnow()
            step.completed_by = actor_user_id
        elif target is StepStatus.REJECTED:
            step.error_message = error_message
        elif target is StepStatus.PENDING:
            step.error_message = None
        if notes is not None:
            step.notes = notes
        observe_workflow_step(step.step_type, target.value)

    def _publish(self, event_type: str, actor: ActorUser, document: Document, **payload: object) -> None:
        events.publish(
            events.build_envelope(
                event_type,
                actor.user_id,
                document_id=str(document.id),
                deal_id=str(document.deal_id),
                file_type=document.file_type,
                correlation_id=actor.correlation_id,
                **payload,
            )
        )

    def _audit(
        self,
        actor: ActorUser,
        document_id: uuid.UUID,
        action: str,
        before: dict | None,
        after: dict | None,
    ) -> None:
        audit.record(
            actor_user_id=actor.user_id,
            entity_type=self.entity_type,
            entity_id=str(document_id),
            action=action,
            before=before,
            after=after,
            correlation_id=actor.correlation_id,
        )

    def upload(
        self,
        session: Session,
        actor: ActorUser,
        deal_id: uuid.UUID,
        *,
        file_type: str,
        file_name: str,
        content: bytes,
        content_type: str | None = None,
    ) -> DocumentRead:
        parsed_type = parse_file_type(file_type)
        if not content:
            raise InvalidArgument("File is empty", {"field": "file"})
        deal = self.deal_repository.get_visible(session, actor, deal_id)
        safe_name = PurePath(file_name or "").name or "document.bin"

        storage = self._storage()
        storage_path = storage.store(content, f"documents/{deal.id}/{safe_name}")
        try:
            document = Document(
                deal_id=deal.id,
                file_name=safe_name,
                storage_path=storage_path,
                content_type=content_type,
                size_bytes=len(content),
                file_type=parsed_type.value,
                workflow_status=WorkflowStatus.PENDING.value,
                validation_status=ValidationStatus.PENDING.value,
                e_signature_status=ESignatureStatus.UNSIGNED.value,
                acknowledgment_required=requires_acknowledgment(parsed_type.value),
                uploaded_by_user_id=actor.user_id,
            )
            session.add(document)
            session.flush()
            for initial in initial_steps(parsed_type.value, actor.user_id):
                self._open_step(
                    session,
                    document,
                    initial.step_type,
                    status=initial.status,
                    notes=initial.notes,
                    actor_user_id=actor.user_id,
                )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            self._discard_blob(storage, storage_path)
            raise

        session.refresh(document)
        created = DocumentRead.model_validate(document)
        self._audit(actor, document.id, "upload", None, created.model_dump(mode="json"))
        logger.info(
            "document.uploaded",
            extra={"document_id": str(document.id), "deal_id": str(deal.id)},
        )
        self._publish("document.uploaded", actor, document)
        return created

    def _discard_blob(self, storage: BlobStorage, storage_path: str) -> None:
        try:
            storage.delete(storage_path)
        except CollaboratorFailure as exc:
            logger.error("document.blob_cleanup_failed", extra={"collaborator": exc.collaborator, "error": exc.message})

    def list_documents(self, session: Session, actor: ActorUser, deal_id: uuid.UUID) -> list[DocumentRead]:
        deal = self.deal_repository.get_visible(session, actor, deal_id)
        rows = session.scalars(
            select(Document).where(Document.deal_id == deal.id).order_by(Document.created_at, Document.id)
        )
        return [DocumentRead.model_validate(row) for row in rows]

    def get_document(self, session: Session, actor: ActorUser, document_id: uuid.UUID) -> DocumentDetailRead:
        document = self._get_visible_document(session, actor, document_id)
        return DocumentDetailRead.model_validate(document)

    def download(self, session: Session, actor: ActorUser, document_id: uuid.UUID) -> tuple[DocumentRead, bytes]:
        document = self._get_visible_document(session, actor, document_id)
        content = self._storage().read(document.storage_path)
        return DocumentRead.model_validate(document), content

    def delete_document(self, session: Session, actor: ActorUser, document_id: uuid.UUID) -> None:
        document = self._get_visible_document(session, actor, document_id)
        before = DocumentRead.model_validate(document).model_dump(mode="json")
        storage_path = document.storage_path
        session.delete(document)
        session.commit()
        # Row removal wins over blob cleanup: a leftover blob is only logged.
        self._discard_blob(self._storage(), storage_path)
        self._audit(actor, document_id, "delete", before, None)
        events.publish(
            events.build_envelope(
                "document.deleted",
                actor.user_id,
                document_id=str(document_id),
                deal_id=before["deal_id"],
                correlation_id=actor.correlation_id,
            )
        )

    def extract(self, session: Session, actor: ActorUser, document_id: uuid.UUID) -> ExtractionRead:
        document = self._get_visible_document(session, actor, document_id)
        step = self._find_step(session, document.id, StepType.EXTRACTION)
        if step is None:
            raise PreconditionFailed(
                "No pending extraction step for this document",
                {"document_id": str(document.id)},
            )
        self._move_step(step, StepStatus.PROCESSING, notes="Starting form field extraction...")
        session.flush()
        return self._to_extraction_read(self._run_extraction(session, actor, document, step))

    def _run_extraction(
        self,
        session: Session,
        actor: ActorUser,
        document: Document,
        step: WorkflowStep,
    ) -> ExtractionResult:
        with tracer.start_as_current_span("documents.extract") as span:
            span.set_attribute("document_id", str(document.id))
            span.set_attribute("file_type", document.file_type)
            try:
                content = self._storage().read(document.storage_path)
                reply = self._completion().complete(
                    extraction_prompt(document.file_type, document.file_name, content),
                    EXTRACTION_SYSTEM_PROMPT,
                )
                if not reply or not reply.strip():
                    raise CollaboratorFailure("ai_completion", "No data extracted from document")
            except (CollaboratorFailure, NotFoundError) as exc:
                self._move_step(
                    step,
                    StepStatus.REJECTED,
                    notes="Extraction failed - manual review required",
                    error_message=EXTRACTION_FAILED_MESSAGE,
                )
                session.commit()
                span.set_attribute("extraction.success", False)
                logger.warning(
                    "document.extraction_failed",
                    extra={"document_id": str(document.id), "step_id": str(step.id), "error": exc.message},
                )
                self._publish("document.extraction_failed", actor, document, step_id=str(step.id))
                return ExtractionResult(
                    success=False,
                    document_id=document.id,
                    step_id=step.id,
                    workflow_status=WorkflowStatus(document.workflow_status),
                    validation_status=ValidationStatus(document.validation_status),
                    error=EXTRACTION_FAILED_MESSAGE,
                )

            fields = parse_extracted_fields(reply)
            document.extracted_data = reply
            document.extracted_fields = fields
            document.auto_extracted = True
            document.workflow_status = WorkflowStatus.READY_FOR_REVIEW.value
            document.validation_status = ValidationStatus.REQUIRES_REVIEW.value
            self._move_step(
                step,
                StepStatus.COMPLETED,
                actor_user_id=actor.user_id,
                notes="Form fields extracted successfully using AI",
            )
            self._open_step(session, document, StepType.REVIEW, notes="Document ready for human review")
            session.commit()
            span.set_attribute("extraction.success", True)

        logger.info("document.extracted", extra={"document_id": str(document.id), "step_id": str(step.id)})
        self._publish("document.extracted", actor, document, step_id=str(step.id))
        return ExtractionResult(
            success=True,
            document_id=document.id,
            step_id=step.id,
            workflow_status=WorkflowStatus.READY_FOR_REVIEW,
            validation_status=ValidationStatus.REQUIRES_REVIEW,
            extracted_fields=fields,
        )

    def _to_extraction_read(self, result: ExtractionResult) -> ExtractionRead:
        return ExtractionRead(
            success=result.success,
            document_id=result.document_id,
            step_id=result.step_id,
            workflow_status=result.workflow_status.value,
            validation_status=result.validation_status.value,
            extracted_fields=result.extracted_fields,
            error=result.error,
        )

    def retry_step(
        self,
        session: Session,
        actor: ActorUser,
        document_id: uuid.UUID,
        step_id: uuid.UUID,
    ) -> StepRetryRead:
        document = self._get_visible_document(session, actor, document_id)
        step = session.scalar(select(WorkflowStep).where(WorkflowStep.id == step_id))
        if step is None:
            raise NotFoundError("Workflow step not found", {"step_id": str(step_id)})
        if step.document_id != document.id:
            raise MismatchError(
                "Workflow step does not belong to this document",
                {"step_id": str(step.id), "document_id": str(document.id)},
            )
        if step.status != StepStatus.REJECTED.value:
            raise InvalidState("Only rejected steps can be retried", {"step_id": str(step.id), "status": step.status})
        siblings = [row for row in self._steps(session, document.id) if row.id != step.id]
        ensure_no_active_step(((row.step_type, row.status) for row in siblings), StepType(step.step_type))

        self._move_step(step, StepStatus.PENDING, notes=f"Retry requested by {actor.user_id}")
        logger.info(
            "document.step_retried",
            extra={"document_id": str(document.id), "step_id": str(step.id), "step_type": step.step_type},
        )

        if step.step_type != StepType.EXTRACTION.value:
            session.commit()
            return StepRetryRead(step=WorkflowStepRead.model_validate(step))

        if get_settings().extraction_async:
            session.commit()
            celery_app.send_task(EXTRACT_DOCUMENT_TASK, args=[str(document.id), actor.user_id])
            return StepRetryRead(step=WorkflowStepRead.model_validate(step), queued=True)

        self._move_step(step, StepStatus.PROCESSING, notes="Starting form field extraction...")
        session.flush()
        result = self._run_extraction(session, actor, document, step)
        session.refresh(step)
        return StepRetryRead(
            step=WorkflowStepRead.model_validate(step),
            extraction=self._to_extraction_read(result),
        )

    def review(
        self,
        session: Session,
        actor: ActorUser,
        document_id: uuid.UUID,
        *,
        approved: bool,
        notes: str | None = None,
    ) -> DocumentDetailRead:
        document = self._get_visible_document(session, actor, document_id)
        step = self._find_step(session, document.id, StepType.REVIEW)
        if step is None:
            raise PreconditionFailed("No pending review step for this document", {"document_id": str(document.id)})
        before = DocumentRead.model_validate(document).model_dump(mode="json")

        if approved:
            self._move_step(step, StepStatus.COMPLETED, actor_user_id=actor.user_id, notes=notes or "Approved")
            document.validation_status = ValidationStatus.VALID.value
            document.workflow_status = WorkflowStatus.READY_FOR_SIGNATURE.value
            next_step = step_after_review(document.acknowledgment_required, document.acknowledged_at is not None)
            self._open_step(
                session,
                document,
                next_step,
                notes="Awaiting acknowledgment" if next_step is StepType.ACKNOWLEDGMENT else "Ready for signature",
            )
        else:
            self._move_step(step, StepStatus.REJECTED, error_message=notes or "Rejected during review")
            document.validation_status = ValidationStatus.INVALID.value
        session.commit()
        session.refresh(document)

        after = DocumentDetailRead.model_validate(document)
        self._audit(actor, document.id, "review", before, after.model_dump(mode="json", exclude={"steps"}))
        self._publish("document.reviewed", actor, document, approved=approved)
        return after

    def acknowledge(
        self,
        session: Session,
        actor: ActorUser,
        document_id: uuid.UUID,
        acknowledged_by: str,
        acknowledgment_text: str | None = None,
    ) -> DocumentDetailRead:
        """Record that ``acknowledged_by`` (the signer, not necessarily the caller) read the document."""
        document = self._get_visible_document(session, actor, document_id)
        if document.e_signature_status == ESignatureStatus.SIGNED.value:
            raise InvalidState("Document is already signed", {"document_id": str(document.id)})
        before = DocumentRead.model_validate(document).model_dump(mode="json")
        prior_status = document.workflow_status

        document.acknowledged_at = utcnow()
        document.acknowledged_by = acknowledged_by
        document.acknowledgment_text = acknowledgment_text
        if document.acknowledgment_required:
            document.workflow_status = WorkflowStatus.ACKNOWLEDGED.value

        pending = self._find_step(session, document.id, StepType.ACKNOWLEDGMENT)
        if pending is not None:
            self._move_step(
                pending,
                StepStatus.COMPLETED,
                actor_user_id=actor.user_id,
                notes=f"Document acknowledged by {acknowledged_by}",
            )

        # A document already cleared for signature moves on to its signature step.
        if prior_status == WorkflowStatus.READY_FOR_SIGNATURE.value:
            active_signature = self._find_step(
                session, document.id, StepType.SIGNATURE, (StepStatus.PENDING, StepStatus.PROCESSING)
            )
            if active_signature is None:
                self._open_step(session, document, StepType.SIGNATURE, notes="Ready for signature")
        session.commit()
        session.refresh(document)

        after = DocumentDetailRead.model_validate(document)
        self._audit(actor, document.id, "acknowledge", before, after.model_dump(mode="json", exclude={"steps"}))
        self._publish("document.acknowledged", actor, document)
        return after

    def sign(
        self,
        session: Session,
        actor: ActorUser,
        document_id: uuid.UUID,
        dto: SignRequest,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> SignatureRead:
        document = self._get_visible_document(session, actor, document_id)
        if document.e_signature_status == ESignatureStatus.SIGNED.value:
            raise InvalidState("Document is already signed", {"document_id": str(document.id)})
        if document.acknowledgment_required and document.acknowledged_at is None:
            raise PreconditionFailed(
                "Document must be acknowledged before signing",
                {"document_id": str(document.id)},
            )

        signed_at = utcnow()
        signature = Signature(
            document_id=document.id,
            signer_name=dto.signer_name,
            signer_email=str(dto.signer_email),
            signature_data=dto.signature_data,
            signature_type=dto.signature_type,
            ip_address=ip_address,
            user_agent=user_agent,
            status=SignatureStatus.SIGNED.value,
            verification_token=secrets.token_urlsafe(32),
            signed_at=signed_at,
        )
        session.add(signature)
        document.e_signature_status = ESignatureStatus.SIGNED.value
        document.workflow_status = WorkflowStatus.SIGNED.value
        document.signed_at = signed_at

        step = self._find_step(session, document.id, StepType.SIGNATURE, (StepStatus.PENDING, StepStatus.PROCESSING))
        if step is None:
            step = self._open_step(session, document, StepType.SIGNATURE, notes="Opened at signing")
        self._move_step(step, StepStatus.COMPLETED, actor_user_id=actor.user_id, notes=f"Signed by {dto.signer_name}")
        self._open_step(
            session,
            document,
            StepType.COMPLETION,
            status=StepStatus.COMPLETED,
            notes="Document workflow completed",
            actor_user_id=actor.user_id,
        )
        session.commit()
        session.refresh(signature)

        created = SignatureRead.model_validate(signature)
        self._audit(
            actor,
            document.id,
            "sign",
            None,
            created.model_dump(mode="json", exclude={"verification_token"}),
        )
        logger.info("document.signed", extra={"document_id": str(document.id), "deal_id": str(document.deal_id)})
        self._publish("document.signed", actor, document, signature_id=str(signature.id))
        return created

    def verify_signature(self, session: Session, token: str) -> SignatureRead:
        signature = session.scalar(select(Signature).where(Signature.verification_token == token))
        if signature is None:
            raise NotFoundError("Invalid verification token")
        signature.status = SignatureStatus.VERIFIED.value
        signature.verified_at = utcnow()
        session.commit()
        session.refresh(signature)
        return SignatureRead.model_validate(signature)

    def list_steps(self, session: Session, actor: ActorUser, document_id: uuid.UUID) -> list[WorkflowStepRead]:
        document = self._get_visible_document(session, actor, document_id)
        return [WorkflowStepRead.model_validate(step) for step in self._steps(session, document.id)]

    def add_step(
        self,
        session: Session,
        actor: ActorUser,
        document_id: uuid.UUID,
        dto: WorkflowStepCreate,
    ) -> WorkflowStepRead:
        step_type = parse_step_type(dto.step_type)
        document = self._get_visible_document(session, actor, document_id)
        step = self._open_step(session, document, step_type, notes=dto.notes)
        session.commit()
        session.refresh(step)
        return WorkflowStepRead.model_validate(step)


document_service = DocumentWorkflowService()
