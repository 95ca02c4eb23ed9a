"""
Canonical Time-Limit Schema

Per-stage deadline policy, configured by administrators.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class WorkflowTimeLimit(BaseModel):
    """
    Deadline policy for one workflow stage.

    reminder_days are offsets BEFORE the limit, escalation_days are
    offsets AFTER it. Both are kept in the order they were configured.
    """
    stage: str = Field(
        ...,
        min_length=1,
        description="Unique stage key, e.g. reviewer-response",
        examples=["reviewer-response", "reviewer-review", "associate-editor-assignment"]
    )
    time_limit_days: int = Field(
        ...,
        gt=0,
        description="Days allowed for the stage"
    )
    reminder_days: list[int] = Field(
        default_factory=list,
        description="Days before the limit at which reminders go out, e.g. [7, 3, 1]"
    )
    escalation_days: list[int] = Field(
        default_factory=list,
        description="Days after the limit at which escalation happens, e.g. [7, 14, 21]"
    )
    is_active: bool = True
    updated_at: Optional[datetime] = None

    @field_validator("reminder_days", "escalation_days")
    @classmethod
    def offsets_non_negative(cls, v: list[int]) -> list[int]:
        if any(day < 0 for day in v):
            raise ValueError("day offsets must be non-negative")
        return v
