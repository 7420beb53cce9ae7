from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


TaskStatusValue = Literal["PENDING", "IN_PROGRESS", "COMPLETED", "CANCELLED"]


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    due_date: datetime | None = None
    deal_id: UUID | None = None
    assigned_to_user_id: str | None = None


class TaskStatusUpdate(BaseModel):
    status: str = Field(min_length=1)


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    due_date: datetime | None
    status: TaskStatusValue
    assigned_to_user_id: str
    deal_id: UUID | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
