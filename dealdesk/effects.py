from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from dealdesk.collaborators.notifications import DbNotificationSink, NotificationSink
from dealdesk.deals.lifecycle import Effect, NotificationRequest, TaskRequest
from dealdesk.metrics import observe_collaborator_failure
from dealdesk.tasks.service import DbTaskSink, TaskSink


logger = logging.getLogger("dealdesk.effects")


@dataclass(slots=True)
class EffectOutcome:
    effect: Effect
    record_id: uuid.UUID | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class EffectRunner:
    """Executes follow-up task and notification requests after a transition has committed.

    Each effect runs in its own transaction. A failing sink is logged and
    rolled back; it never undoes the transition that produced the effect.
    """

    task_sink: TaskSink = field(default_factory=DbTaskSink)
    notification_sink: NotificationSink = field(default_factory=DbNotificationSink)

    def run(
        self,
        session: Session,
        effects: Iterable[Effect],
        *,
        deal_id: uuid.UUID | None,
        assignee_user_id: str,
    ) -> list[EffectOutcome]:
        outcomes: list[EffectOutcome] = []
        for effect in effects:
            kind = "task" if isinstance(effect, TaskRequest) else "notification"
            try:
                if isinstance(effect, TaskRequest):
                    record_id = self.task_sink.create_task(
                        session, effect, deal_id=deal_id, assignee_user_id=assignee_user_id
                    )
                elif isinstance(effect, NotificationRequest):
                    record_id = self.notification_sink.send(session, effect, deal_id=deal_id)
                else:
                    raise TypeError(f"unsupported effect: {effect!r}")
                session.commit()
            except Exception as exc:
                session.rollback()
                observe_collaborator_failure(f"{kind}_sink")
                logger.exception(
                    "effect.failed",
                    extra={"effect": kind, "deal_id": str(deal_id) if deal_id else None, "error": str(exc)},
                )
                outcomes.append(EffectOutcome(effect=effect, error=str(exc)))
                continue

            logger.info("effect.applied", extra={"effect": kind, "deal_id": str(deal_id) if deal_id else None})
            outcomes.append(EffectOutcome(effect=effect, record_id=record_id))
        return outcomes
