from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Protocol

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from dealdesk import audit, events
from dealdesk.core.actor import ActorUser
from dealdesk.deals.lifecycle import TaskRequest
from dealdesk.deals.models import Deal, utcnow
from dealdesk.deals.repository import DealRepository
from dealdesk.errors import InvalidArgument, NotFoundError
from dealdesk.tasks.models import Task
from dealdesk.tasks.schemas import TaskCreate, TaskRead


logger = logging.getLogger("dealdesk.tasks")
tracer = trace.get_tracer("dealdesk.tasks")

TASK_STATUSES = ("PENDING", "IN_PROGRESS", "COMPLETED", "CANCELLED")


class TaskSink(Protocol):
    def create_task(
        self,
        session: Session,
        request: TaskRequest,
        *,
        deal_id: uuid.UUID | None,
        assignee_user_id: str,
    ) -> uuid.UUID: ...


class DbTaskSink:
    def create_task(
        self,
        session: Session,
        request: TaskRequest,
        *,
        deal_id: uuid.UUID | None,
        assignee_user_id: str,
    ) -> uuid.UUID:
        with tracer.start_as_current_span("tasks.create_task") as span:
            span.set_attribute("task.title", request.title)
            task = Task(
                title=request.title,
                description=request.description,
                due_date=request.due_date(utcnow()),
                status="PENDING",
                assigned_to_user_id=assignee_user_id,
                deal_id=deal_id,
            )
            session.add(task)
            session.flush()
            return task.id


@dataclass(slots=True)
class TaskService:
    deal_repository: DealRepository = field(default_factory=DealRepository)

    def _get_visible_task(self, session: Session, actor: ActorUser, task_id: uuid.UUID) -> Task:
        task = session.scalar(select(Task).where(Task.id == task_id))
        if task is None:
            raise NotFoundError("Task not found", {"task_id": str(task_id)})
        if actor.can_read_all or task.assigned_to_user_id == actor.user_id:
            return task
        if task.deal_id is not None:
            owner = session.scalar(select(Deal.owner_user_id).where(Deal.id == task.deal_id))
            if owner == actor.user_id:
                return task
        raise NotFoundError("Task not found", {"task_id": str(task_id)})

    def list_tasks(
        self,
        session: Session,
        actor: ActorUser,
        *,
        deal_id: uuid.UUID | None = None,
        status: str | None = None,
    ) -> list[TaskRead]:
        stmt = select(Task)
        if deal_id is not None:
            self.deal_repository.get_visible(session, actor, deal_id)
            stmt = stmt.where(Task.deal_id == deal_id)
        elif not actor.can_read_all:
            stmt = stmt.where(Task.assigned_to_user_id == actor.user_id)
        if status is not None:
            stmt = stmt.where(Task.status == self._parse_status(status))
        stmt = stmt.order_by(Task.due_date.is_(None), Task.due_date, Task.created_at)
        return [TaskRead.model_validate(task) for task in session.scalars(stmt)]

    def create_task(self, session: Session, actor: ActorUser, dto: TaskCreate) -> TaskRead:
        if dto.deal_id is not None:
            self.deal_repository.get_visible(session, actor, dto.deal_id)
        task = Task(
            title=dto.title,
            description=dto.description,
            due_date=dto.due_date,
            status="PENDING",
            assigned_to_user_id=dto.assigned_to_user_id or actor.user_id,
            deal_id=dto.deal_id,
        )
        session.add(task)
        session.commit()
        session.refresh(task)
        created = TaskRead.model_validate(task)
        audit.record(
            actor_user_id=actor.user_id,
            entity_type="task",
            entity_id=str(task.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor.correlation_id,
        )
        return created

    def update_status(self, session: Session, actor: ActorUser, task_id: uuid.UUID, status: str) -> TaskRead:
        new_status = self._parse_status(status)
        task = self._get_visible_task(session, actor, task_id)
        before = TaskRead.model_validate(task).model_dump(mode="json")
        previous_status = task.status

        task.status = new_status
        task.completed_at = utcnow() if new_status == "COMPLETED" else None
        session.commit()
        session.refresh(task)
        updated = TaskRead.model_validate(task)

        audit.record(
            actor_user_id=actor.user_id,
            entity_type="task",
            entity_id=str(task.id),
            action="update_status",
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor.correlation_id,
        )
        logger.info(
            "task.status_changed",
            extra={"task_id": str(task.id), "deal_id": str(task.deal_id) if task.deal_id else None, "status": new_status},
        )
        if new_status == "COMPLETED" and previous_status != "COMPLETED":
            events.publish(
                events.build_envelope(
                    "task.completed",
                    actor.user_id,
                    task_id=str(task.id),
                    deal_id=str(task.deal_id) if task.deal_id else None,
                    title=task.title,
                    correlation_id=actor.correlation_id,
                )
            )
        return updated

    def _parse_status(self, value: str) -> str:
        normalized = str(value).upper()
        if normalized not in TASK_STATUSES:
            raise InvalidArgument(f"Invalid task status: {value}", {"field": "status", "value": value})
        return normalized


task_service = TaskService()
