"""
Canonical Invitation Schemas

Editor assignments and reviewer invitations are append-only records.
They are created once, answered once (or expired/withdrawn by the
deadline sweep), and never deleted.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .manuscript import ResponseAction


class AssignmentStatus(str, Enum):
    PENDING = "pending"       # Awaiting the editor's answer
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"       # Deadline passed with no answer


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"   # Automatically withdrawn after the reminder went unanswered


class EditorAssignment(BaseModel):
    """
    One editor's invitation to take ownership of a manuscript.

    A declared conflict of interest and acceptance are mutually exclusive.
    """
    id: UUID
    manuscript_id: UUID
    editor_id: UUID

    editor_name: str = Field(
        default="",
        description="Display name used in notifications"
    )
    editor_email: Optional[str] = Field(
        default=None,
        description="Where the assignment request is sent"
    )

    assigned_by: Optional[UUID] = Field(
        default=None,
        description="Editorial assistant or managing editor. None when system generated."
    )
    assigned_at: datetime
    deadline: datetime = Field(
        ...,
        description="Instant after which the assignment expires if unanswered"
    )

    status: AssignmentStatus = AssignmentStatus.PENDING
    response_at: Optional[datetime] = None

    conflict_declared: bool = False
    conflict_details: Optional[str] = None
    decline_reason: Optional[str] = None
    editor_comments: Optional[str] = None

    assignment_reason: Optional[str] = Field(
        default=None,
        description="Why this editor was selected"
    )
    system_generated: bool = Field(
        default=False,
        description="True if selected by an algorithm rather than a person"
    )

    updated_at: Optional[datetime] = None


class ReviewerInvitation(BaseModel):
    """
    One reviewer's invitation to review one manuscript.

    Reminder markers are the idempotency keys of the deadline sweep:
    a row is reminded at most once and withdrawn only after it was reminded.
    """
    id: UUID
    manuscript_id: UUID

    reviewer_id: Optional[UUID] = Field(
        default=None,
        description="Registered user, if the reviewer has an account"
    )
    reviewer_email: str
    reviewer_name: str

    invited_by: Optional[UUID] = None
    invited_at: datetime

    response_deadline: datetime = Field(
        ...,
        description="invited_at + response window (7 days by default)"
    )
    review_deadline: Optional[datetime] = Field(
        default=None,
        description="Acceptance time + review window. Set only once accepted."
    )

    status: InvitationStatus = InvitationStatus.PENDING
    response_at: Optional[datetime] = None

    first_reminder_sent: Optional[datetime] = None
    final_reminder_sent: Optional[datetime] = None
    withdrawn_at: Optional[datetime] = None
    review_submitted_at: Optional[datetime] = None

    invitation_token: str = Field(
        ...,
        description="Signed credential for the unauthenticated accept/decline links"
    )

    decline_reason: Optional[str] = None
    conflict_declared: bool = False
    conflict_details: Optional[str] = None
    editor_notes: Optional[str] = None

    updated_at: Optional[datetime] = None


# ============================================================
# Response submissions
# ============================================================

class AssignmentResponse(BaseModel):
    """An editor's answer to an assignment request."""
    action: ResponseAction
    conflict_declared: bool
    conflict_details: Optional[str] = None
    decline_reason: Optional[str] = None
    comments: Optional[str] = None


class InvitationResponse(BaseModel):
    """A reviewer's answer to an invitation."""
    action: ResponseAction
    decline_reason: Optional[str] = None
    conflict_declared: bool = False
    conflict_details: Optional[str] = None
