"""
Workflow State Machine - Pure Transition Logic

Maps (current status, event) to a new status, or rejects the pair.
Validates editor-assignment and reviewer-invitation responses against
the conflict-of-interest rules.

Nothing in this module touches storage or sends messages. Callers
persist the returned status and mutation themselves, inside the same
compare-and-set as any dependent row writes.

Rules (enforced in code):
- The transition table is the single source of truth for status changes
- Any (status, event) pair not in the table is an InvalidTransition
- A manuscript cannot reach under_review without an owning editor
- A declared conflict of interest can never become an acceptance
- Responses are checked in a fixed order, first failure wins
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union

from ..schemas import (
    AssignmentResponse,
    AssignmentStatus,
    EditorAssignment,
    InvitationResponse,
    InvitationStatus,
    Manuscript,
    ManuscriptStatus as S,
    ResponseAction,
    ReviewerInvitation,
    WorkflowEvent,
    WorkflowEventType as E,
)


# ============================================================
# TRANSITION TABLE
# ============================================================

# (from_status, event_type, qualifier) -> to_status
# qualifier is the response action or decision, None when the event has none.
TRANSITIONS: dict[tuple[S, E, Optional[str]], S] = {
    (S.DRAFT, E.SUBMIT, None): S.SUBMITTED,
    (S.SUBMITTED, E.START_SCREENING, None): S.EDITORIAL_ASSISTANT_REVIEW,

    (S.EDITORIAL_ASSISTANT_REVIEW, E.ASSIGN_EDITOR, None): S.ASSOCIATE_EDITOR_ASSIGNMENT,
    (S.EDITORIAL_ASSISTANT_REVIEW, E.DECIDE, "revise"): S.REVISION_REQUESTED,

    # Re-assignment after a decline or expiry stays in the assignment stage
    (S.ASSOCIATE_EDITOR_ASSIGNMENT, E.ASSIGN_EDITOR, None): S.ASSOCIATE_EDITOR_ASSIGNMENT,
    (S.ASSOCIATE_EDITOR_ASSIGNMENT, E.EDITOR_RESPONDS, "accept"): S.ASSOCIATE_EDITOR_REVIEW,
    (S.ASSOCIATE_EDITOR_ASSIGNMENT, E.EDITOR_RESPONDS, "decline"): S.ASSOCIATE_EDITOR_ASSIGNMENT,
    (S.ASSOCIATE_EDITOR_ASSIGNMENT, E.ASSIGNMENT_EXPIRED, None): S.ASSOCIATE_EDITOR_ASSIGNMENT,

    (S.ASSOCIATE_EDITOR_REVIEW, E.ASSIGN_REVIEWER, None): S.REVIEWER_ASSIGNMENT,
    (S.ASSOCIATE_EDITOR_REVIEW, E.DECIDE, "reject"): S.REJECTED,
    (S.ASSOCIATE_EDITOR_REVIEW, E.DECIDE, "revise"): S.REVISION_REQUESTED,

    (S.REVIEWER_ASSIGNMENT, E.ASSIGN_REVIEWER, None): S.REVIEWER_ASSIGNMENT,
    (S.REVIEWER_ASSIGNMENT, E.REVIEWER_RESPONDS, "accept"): S.UNDER_REVIEW,
    (S.REVIEWER_ASSIGNMENT, E.REVIEWER_RESPONDS, "decline"): S.REVIEWER_ASSIGNMENT,

    (S.UNDER_REVIEW, E.ASSIGN_REVIEWER, None): S.UNDER_REVIEW,
    (S.UNDER_REVIEW, E.REVIEWER_RESPONDS, "accept"): S.UNDER_REVIEW,
    (S.UNDER_REVIEW, E.REVIEWER_RESPONDS, "decline"): S.UNDER_REVIEW,
    (S.UNDER_REVIEW, E.DECIDE, "accept"): S.ACCEPTED,
    (S.UNDER_REVIEW, E.DECIDE, "reject"): S.REJECTED,
    (S.UNDER_REVIEW, E.DECIDE, "revise"): S.REVISION_REQUESTED,

    (S.REVISION_REQUESTED, E.SUBMIT_REVISION, None): S.REVISION_SUBMITTED,

    (S.REVISION_SUBMITTED, E.ASSIGN_REVIEWER, None): S.REVIEWER_ASSIGNMENT,
    (S.REVISION_SUBMITTED, E.DECIDE, "accept"): S.ACCEPTED,
    (S.REVISION_SUBMITTED, E.DECIDE, "reject"): S.REJECTED,
    (S.REVISION_SUBMITTED, E.DECIDE, "revise"): S.REVISION_REQUESTED,

    (S.ACCEPTED, E.PUBLISH, None): S.PUBLISHED,
}

# Withdrawal is open from every state that precedes a decision
PRE_DECISION_STATUSES = frozenset({
    S.DRAFT,
    S.SUBMITTED,
    S.EDITORIAL_ASSISTANT_REVIEW,
    S.ASSOCIATE_EDITOR_ASSIGNMENT,
    S.ASSOCIATE_EDITOR_REVIEW,
    S.REVIEWER_ASSIGNMENT,
    S.UNDER_REVIEW,
    S.REVISION_REQUESTED,
    S.REVISION_SUBMITTED,
})

for _status in PRE_DECISION_STATUSES:
    TRANSITIONS[(_status, E.WITHDRAW, None)] = S.WITHDRAWN


# ============================================================
# TYPED RESULTS
# ============================================================

@dataclass(frozen=True)
class Transition:
    """A legal status change."""
    from_status: S
    to_status: S
    event: WorkflowEvent

    @property
    def ok(self) -> bool:
        return True

    @property
    def changed(self) -> bool:
        return self.from_status != self.to_status


@dataclass(frozen=True)
class InvalidTransition:
    """The (status, event) pair is not in the table, or a guard refused it."""
    from_status: S
    event: WorkflowEvent
    reason: str

    @property
    def ok(self) -> bool:
        return False


TransitionOutcome = Union[Transition, InvalidTransition]


class ResponseError(str, Enum):
    """Why a response to an assignment or invitation was refused."""
    NOT_FOUND = "not_found"
    ALREADY_RESPONDED = "already_responded"
    EXPIRED = "expired"
    CONFLICT_PREVENTS_ACCEPTANCE = "conflict_prevents_acceptance"
    MISSING_CONFLICT_DETAILS = "missing_conflict_details"
    MISSING_DECLINE_REASON = "missing_decline_reason"
    CONCURRENT_UPDATE = "concurrent_update"

    @property
    def category(self) -> str:
        """validation (fix the input), conflict (re-fetch state) or not_found."""
        if self in (
            ResponseError.CONFLICT_PREVENTS_ACCEPTANCE,
            ResponseError.MISSING_CONFLICT_DETAILS,
            ResponseError.MISSING_DECLINE_REASON,
        ):
            return "validation"
        if self is ResponseError.NOT_FOUND:
            return "not_found"
        return "conflict"


@dataclass(frozen=True)
class ResponseOutcome:
    """
    Result of validating a response.

    On success `mutation` holds the fields to persist; on failure `error`
    says why and nothing should be written.
    """
    error: Optional[ResponseError] = None
    mutation: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


# ============================================================
# MANUSCRIPT TRANSITIONS
# ============================================================

def apply(manuscript: Manuscript, event: WorkflowEvent) -> TransitionOutcome:
    """
    Compute the status a manuscript moves to when `event` happens.

    Never raises for an unknown pair; returns InvalidTransition instead.
    """
    current = manuscript.status
    target = TRANSITIONS.get((current, event.event_type, event.qualifier))

    if target is None:
        allowed = allowed_events(current)
        return InvalidTransition(
            from_status=current,
            event=event,
            reason=(
                f"Cannot apply {_describe(event)} to a manuscript in {current.value}. "
                f"Allowed: {', '.join(allowed) if allowed else 'nothing (terminal)'}"
            ),
        )

    # The owning editor must exist before review can start
    if target == S.UNDER_REVIEW and manuscript.editor_id is None:
        return InvalidTransition(
            from_status=current,
            event=event,
            reason="Manuscript has no owning editor; it cannot go under review",
        )

    return Transition(from_status=current, to_status=target, event=event)


def accepts_event(status: S, event_type: E) -> bool:
    """True if some qualifier of the event is legal in the status."""
    return any(key[0] == status and key[1] == event_type for key in TRANSITIONS)


def allowed_events(status: S) -> list[str]:
    """List the events (with qualifier) accepted in a status, for messages and UIs."""
    return sorted(
        f"{event.value}({qualifier})" if qualifier else event.value
        for (from_status, event, qualifier) in TRANSITIONS
        if from_status == status
    )


def _describe(event: WorkflowEvent) -> str:
    if event.qualifier:
        return f"{event.event_type.value}({event.qualifier})"
    return event.event_type.value


# ============================================================
# RESPONSE VALIDATION
# ============================================================

def _check_declared_fields(
    action: ResponseAction,
    conflict_declared: bool,
    conflict_details: Optional[str],
    decline_reason: Optional[str],
) -> Optional[ResponseError]:
    """Rules 3-5, shared by editors and reviewers."""
    if conflict_declared and action == ResponseAction.ACCEPT:
        return ResponseError.CONFLICT_PREVENTS_ACCEPTANCE
    if conflict_declared and not (conflict_details or "").strip():
        return ResponseError.MISSING_CONFLICT_DETAILS
    if (
        action == ResponseAction.DECLINE
        and not conflict_declared
        and not (decline_reason or "").strip()
    ):
        return ResponseError.MISSING_DECLINE_REASON
    return None


def respond_to_assignment(
    assignment: EditorAssignment,
    response: AssignmentResponse,
    now: datetime,
) -> ResponseOutcome:
    """
    Validate an editor's answer to an assignment request.

    Checked in order:
    1. assignment must still be pending
    2. deadline must not have passed (the sweep normally expires it first)
    3. a declared conflict cannot accept
    4. a declared conflict needs details
    5. declining without a conflict needs a reason
    """
    if assignment.status != AssignmentStatus.PENDING:
        return ResponseOutcome(error=ResponseError.ALREADY_RESPONDED)

    if now > assignment.deadline:
        return ResponseOutcome(error=ResponseError.EXPIRED)

    error = _check_declared_fields(
        response.action,
        response.conflict_declared,
        response.conflict_details,
        response.decline_reason,
    )
    if error is not None:
        return ResponseOutcome(error=error)

    status = (
        AssignmentStatus.ACCEPTED
        if response.action == ResponseAction.ACCEPT
        else AssignmentStatus.DECLINED
    )
    return ResponseOutcome(mutation={
        "status": status,
        "response_at": now,
        "conflict_declared": response.conflict_declared,
        "conflict_details": response.conflict_details,
        "decline_reason": response.decline_reason,
        "editor_comments": response.comments,
    })


def invitation_response_cutoff(
    invitation: ReviewerInvitation,
    grace_window: timedelta,
) -> datetime:
    """
    Last instant a reviewer may still answer.

    Once a reminder has gone out it quotes a fresh deadline, so the
    cutoff moves to reminder time + grace window.
    """
    if invitation.first_reminder_sent is not None:
        return max(
            invitation.response_deadline,
            invitation.first_reminder_sent + grace_window,
        )
    return invitation.response_deadline


def respond_to_invitation(
    invitation: ReviewerInvitation,
    response: InvitationResponse,
    now: datetime,
    review_window: timedelta,
    grace_window: timedelta,
) -> ResponseOutcome:
    """
    Validate a reviewer's answer to an invitation.

    Same rule order as respond_to_assignment. Accepting also fixes the
    review deadline at now + review_window.
    """
    if invitation.status != InvitationStatus.PENDING:
        return ResponseOutcome(error=ResponseError.ALREADY_RESPONDED)

    if now > invitation_response_cutoff(invitation, grace_window):
        return ResponseOutcome(error=ResponseError.EXPIRED)

    error = _check_declared_fields(
        response.action,
        response.conflict_declared,
        response.conflict_details,
        response.decline_reason,
    )
    if error is not None:
        return ResponseOutcome(error=error)

    mutation: dict[str, Any] = {
        "response_at": now,
        "conflict_declared": response.conflict_declared,
        "conflict_details": response.conflict_details,
        "decline_reason": response.decline_reason,
    }
    if response.action == ResponseAction.ACCEPT:
        mutation["status"] = InvitationStatus.ACCEPTED
        mutation["review_deadline"] = now + review_window
    else:
        mutation["status"] = InvitationStatus.DECLINED

    return ResponseOutcome(mutation=mutation)
