from __future__ import annotations

import uuid

from sqlalchemy import Select, select
from sqlalchemy.orm import Session, selectinload

from dealdesk.core.actor import ActorUser
from dealdesk.deals.models import Contact, Deal
from dealdesk.errors import NotFoundError


class DealRepository:
    """Visibility-aware deal lookups: actors see deals they own unless they hold ``deals.read_all``."""

    def visible(self, actor: ActorUser) -> Select[tuple[Deal]]:
        stmt = select(Deal)
        if not actor.can_read_all:
            stmt = stmt.where(Deal.owner_user_id == actor.user_id)
        return stmt

    def get_visible(self, session: Session, actor: ActorUser, deal_id: uuid.UUID, *, with_contact: bool = False) -> Deal:
        stmt = self.visible(actor).where(Deal.id == deal_id)
        if with_contact:
            stmt = stmt.options(selectinload(Deal.contact), selectinload(Deal.company))
        deal = session.scalar(stmt)
        if deal is None:
            raise NotFoundError("Deal not found", {"deal_id": str(deal_id)})
        return deal

    def list_visible(
        self,
        session: Session,
        actor: ActorUser,
        *,
        stage: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Deal]:
        stmt = self.visible(actor)
        if stage is not None:
            stmt = stmt.where(Deal.stage == stage)
        stmt = stmt.order_by(Deal.created_at.desc(), Deal.id).limit(limit).offset(offset)
        return list(session.scalars(stmt))

    def get_contact(self, session: Session, contact_id: uuid.UUID) -> Contact:
        contact = session.scalar(select(Contact).where(Contact.id == contact_id))
        if contact is None:
            raise NotFoundError("Contact not found", {"contact_id": str(contact_id)})
        return contact

    def find_contact_by_email(self, session: Session, email: str) -> Contact | None:
        return session.scalar(select(Contact).where(Contact.email == email.strip().lower()))
