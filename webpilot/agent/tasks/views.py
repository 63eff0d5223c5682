"""
Task board models.

Inputs are forgiving (status synonyms, blank titles) because they come straight
from model-generated action arguments.
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

TaskStatus = Literal['pending', 'in_progress', 'completed', 'cancelled']

_STATUS_SYNONYMS = {
    'todo': 'pending',
    'to-do': 'pending',
    'pending': 'pending',
    'open': 'pending',
    'in-progress': 'in_progress',
    'inprogress': 'in_progress',
    'in_progress': 'in_progress',
    'working': 'in_progress',
    'active': 'in_progress',
    'done': 'completed',
    'complete': 'completed',
    'completed': 'completed',
    'canceled': 'cancelled',
    'cancelled': 'cancelled',
}


def normalize_status(v):
    if v is None:
        return v
    raw = str(v).strip().lower().replace(' ', '-')
    return _STATUS_SYNONYMS.get(raw, raw)


class Task(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus = 'pending'

    @field_validator('status', mode='before')
    @classmethod
    def _normalize_status(cls, v):
        return normalize_status(v)


class TaskUpdate(BaseModel):
    """One entry of an ``upsert_tasks`` call. Omitted fields keep their current value."""

    id: str = Field(..., min_length=1, description='Stable task identifier; existing ids are updated in place.')
    title: Optional[str] = Field(None, description='Short task title.')
    description: Optional[str] = Field(None, description='Optional longer description.')
    status: Optional[TaskStatus] = Field(
        None, description="One of 'pending', 'in_progress', 'completed', 'cancelled'. At most one task may be in progress."
    )

    @field_validator('status', mode='before')
    @classmethod
    def _normalize_status(cls, v):
        return normalize_status(v)

    @model_validator(mode='after')
    def _strip_id(self) -> 'TaskUpdate':
        self.id = self.id.strip()
        if not self.id:
            raise ValueError('task id must not be blank')
        return self


class UpsertTasksAction(BaseModel):
    tasks: List[TaskUpdate] = Field(..., description='Tasks to create or update, merged by id.')
    request_approval: bool = Field(False, description='Ask the user to approve the plan before continuing.')


class UpsertTasksResult(BaseModel):
    created: int
    count: int
    requires_approval: bool
    tasks: List[Task] = Field(default_factory=list)
