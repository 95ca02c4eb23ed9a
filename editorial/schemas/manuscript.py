"""
Canonical Manuscript Schema

A manuscript is the unit of editorial work.
Its status moves only through the workflow state machine.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ManuscriptStatus(str, Enum):
    """
    Editorial stages a manuscript passes through.
    Terminal states: published, rejected, withdrawn.
    """
    DRAFT = "draft"
    SUBMITTED = "submitted"
    EDITORIAL_ASSISTANT_REVIEW = "editorial_assistant_review"      # Initial screening
    ASSOCIATE_EDITOR_ASSIGNMENT = "associate_editor_assignment"    # Waiting for an editor to take it
    ASSOCIATE_EDITOR_REVIEW = "associate_editor_review"            # Editor owns it
    REVIEWER_ASSIGNMENT = "reviewer_assignment"                    # Inviting reviewers
    UNDER_REVIEW = "under_review"
    REVISION_REQUESTED = "revision_requested"
    REVISION_SUBMITTED = "revision_submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PUBLISHED = "published"
    WITHDRAWN = "withdrawn"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ManuscriptStatus.PUBLISHED,
    ManuscriptStatus.REJECTED,
    ManuscriptStatus.WITHDRAWN,
})


class WorkflowEventType(str, Enum):
    """
    Everything that can happen to a manuscript.
    You can add more later, never remove.
    """
    SUBMIT = "submit"
    START_SCREENING = "start_screening"
    ASSIGN_EDITOR = "assign_editor"
    EDITOR_RESPONDS = "editor_responds"
    ASSIGNMENT_EXPIRED = "assignment_expired"   # Emitted by the deadline sweep
    ASSIGN_REVIEWER = "assign_reviewer"
    REVIEWER_RESPONDS = "reviewer_responds"
    DECIDE = "decide"
    SUBMIT_REVISION = "submit_revision"
    PUBLISH = "publish"
    WITHDRAW = "withdraw"


class ResponseAction(str, Enum):
    """Answer to an editor assignment or reviewer invitation."""
    ACCEPT = "accept"
    DECLINE = "decline"


class Decision(str, Enum):
    """Editorial decision on a manuscript."""
    ACCEPT = "accept"
    REJECT = "reject"
    REVISE = "revise"


class WorkflowEvent(BaseModel):
    """
    An event submitted against a manuscript.

    `action` qualifies EDITOR_RESPONDS / REVIEWER_RESPONDS,
    `decision` qualifies DECIDE. Other events carry neither.
    """
    event_type: WorkflowEventType
    action: Optional[ResponseAction] = None
    decision: Optional[Decision] = None
    actor_id: Optional[UUID] = Field(
        default=None,
        description="Who triggered the event. None for system events."
    )
    notes: Optional[str] = None

    @property
    def qualifier(self) -> Optional[str]:
        """The action or decision that selects a row of the transition table."""
        if self.action is not None:
            return self.action.value
        if self.decision is not None:
            return self.decision.value
        return None


class Manuscript(BaseModel):
    """
    A submitted work moving through editorial states.
    """
    id: UUID = Field(
        ...,
        description="Opaque identifier"
    )

    title: str = Field(
        ...,
        min_length=1,
        description="Manuscript title, quoted in notifications"
    )

    status: ManuscriptStatus = Field(
        default=ManuscriptStatus.SUBMITTED,
        description="Current editorial stage"
    )

    manuscript_number: Optional[str] = Field(
        default=None,
        description="Human-facing reference, e.g. EWF-2025-1A2B3C4D"
    )

    submitted_at: datetime = Field(
        ...,
        description="When the manuscript entered the workflow"
    )

    editor_id: Optional[UUID] = Field(
        default=None,
        description="Owning associate editor. Required before under_review."
    )

    reviewer_ids: set[UUID] = Field(
        default_factory=set,
        description="Reviewers who accepted an invitation"
    )

    corresponding_author_email: Optional[str] = Field(
        default=None,
        description="Where author-facing notifications go"
    )

    updated_at: Optional[datetime] = None

    def reference(self, prefix: str) -> str:
        """Return the manuscript number, deriving one from the id if unset."""
        if self.manuscript_number:
            return self.manuscript_number
        return f"{prefix}-{self.submitted_at.year}-{self.id.hex[-8:].upper()}"
