from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field
from uuid import UUID
from datetime import datetime
from phifit.models.task import CompletionSource

class TaskCreate(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str = ""
    points: int = Field(default=1, ge=0)

class TaskUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    description: str | None = None
    points: int | None = Field(default=None, ge=0)
    active: bool | None = None
    order: int | None = None

class TaskPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str
    points: int
    active: bool
    order: int

class CompletionToggle(BaseModel):
    task_template_id: UUID
    completed: bool = True

class AdminCompletionToggle(CompletionToggle):
    user_id: UUID
    note: str | None = Field(default=None, max_length=500)

class CompletionPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    week_id: UUID
    task_template_id: UUID
    user_id: UUID
    completed_at: datetime
    source: CompletionSource
    edited_by_user_id: UUID | None = None
    edited_at: datetime | None = None
    note: str | None = None

class CompletionResult(BaseModel):
    completed: bool
    completion: CompletionPublic | None = None
