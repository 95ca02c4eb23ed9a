# Canonical Schemas for the Editorial Workflow
# These define the records the state machine and the deadline sweep operate on.

from .manuscript import (
    Manuscript,
    ManuscriptStatus,
    TERMINAL_STATUSES,
    WorkflowEvent,
    WorkflowEventType,
    ResponseAction,
    Decision,
)
from .invitation import (
    AssignmentStatus,
    InvitationStatus,
    EditorAssignment,
    ReviewerInvitation,
    AssignmentResponse,
    InvitationResponse,
)
from .time_limit import WorkflowTimeLimit

__all__ = [
    # Manuscript
    "Manuscript",
    "ManuscriptStatus",
    "TERMINAL_STATUSES",
    "WorkflowEvent",
    "WorkflowEventType",
    "ResponseAction",
    "Decision",
    # Invitations
    "AssignmentStatus",
    "InvitationStatus",
    "EditorAssignment",
    "ReviewerInvitation",
    "AssignmentResponse",
    "InvitationResponse",
    # Policy
    "WorkflowTimeLimit",
]
