"""
Workflow Service

Runs editorial commands against storage:
- submits manuscripts and applies workflow events
- creates editor assignments and reviewer invitations
- records editor and reviewer responses

Business rules live in state_machine.py; this service loads records,
asks the state machine what should happen, and persists the answer with
compare-and-set. Dependent rows (an invitation and the manuscript status
it implies) are written in ONE repository transaction.

Notifications are sent after the commit. A failed send is logged and
reported on the result; it never undoes a committed response.

Response commands return typed results (ResponseResult) instead of
raising, so callers can map outcomes to user-facing messages. Admin
commands (assign_editor, invite_reviewer) raise NotFoundError or
ConflictError.
"""

import os
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

from ..db.repository import InvitationRepository, RecordKind
from ..errors import ConflictError, NotFoundError, TransientDispatchError, ValidationError
from ..observability import get_logger, get_metrics, is_production
from ..schemas import (
    AssignmentResponse,
    AssignmentStatus,
    Decision,
    EditorAssignment,
    InvitationResponse,
    InvitationStatus,
    Manuscript,
    ManuscriptStatus,
    ResponseAction,
    ReviewerInvitation,
    WorkflowEvent,
    WorkflowEventType,
)
from . import state_machine
from .notifier import NotificationDispatcher, NotificationTemplate, format_deadline
from .policy import (
    ASSOCIATE_EDITOR_ASSIGNMENT,
    REVIEWER_RESPONSE,
    REVIEWER_REVIEW,
    PolicyStore,
)
from .state_machine import InvalidTransition, ResponseError, Transition
from .tokens import InvitationTokenIssuer

logger = get_logger("editorial.workflow")

Clock = Callable[[], datetime]

_DEV_SECRET = "dev-insecure-editorial-secret-change-me"

# Events that only move the manuscript. The others also write an
# assignment or invitation row and go through their own commands.
DIRECT_EVENTS = frozenset({
    WorkflowEventType.SUBMIT,
    WorkflowEventType.START_SCREENING,
    WorkflowEventType.DECIDE,
    WorkflowEventType.SUBMIT_REVISION,
    WorkflowEventType.PUBLISH,
    WorkflowEventType.WITHDRAW,
})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WorkflowConfig:
    """Settings shared by the workflow service and the deadline sweep."""
    editorial_office_email: str = "editorial-office@localhost"
    base_url: str = "http://localhost:8000"
    invitation_path: str = "/api/invitations"  # Email links land here
    secret_key: str = _DEV_SECRET
    manuscript_prefix: str = "EWF"

    @classmethod
    def from_env(cls) -> "WorkflowConfig":
        """
        Load from environment variables:
        - EDITORIAL_OFFICE_EMAIL
        - EDITORIAL_BASE_URL
        - EDITORIAL_INVITATION_PATH
        - EDITORIAL_SECRET_KEY (required in production)
        - EDITORIAL_MANUSCRIPT_PREFIX
        """
        secret = os.getenv("EDITORIAL_SECRET_KEY", "")
        if len(secret) < 16:
            if is_production():
                raise RuntimeError(
                    "EDITORIAL_SECRET_KEY must be set in production. "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
                )
            warnings.warn(
                "EDITORIAL_SECRET_KEY not set. Using insecure default.",
                stacklevel=2
            )
            secret = _DEV_SECRET

        return cls(
            editorial_office_email=os.getenv("EDITORIAL_OFFICE_EMAIL", cls.editorial_office_email),
            base_url=os.getenv("EDITORIAL_BASE_URL", cls.base_url).rstrip("/"),
            invitation_path="/" + os.getenv("EDITORIAL_INVITATION_PATH", cls.invitation_path).strip("/"),
            secret_key=secret,
            manuscript_prefix=os.getenv("EDITORIAL_MANUSCRIPT_PREFIX", cls.manuscript_prefix),
        )


# ============================================================
# RESULTS
# ============================================================

@dataclass
class EventResult:
    """Outcome of applying a workflow event to a manuscript."""
    manuscript: Optional[Manuscript]
    outcome: Optional[state_machine.TransitionOutcome] = None
    conflict: bool = False  # Lost the compare-and-set to another writer

    @property
    def ok(self) -> bool:
        return self.outcome is not None and self.outcome.ok and not self.conflict

    @property
    def not_found(self) -> bool:
        return self.manuscript is None


@dataclass
class ResponseResult:
    """
    Outcome of an editor or reviewer response.

    `error` is None on success. `message` explains a refusal in words.
    """
    error: Optional[ResponseError] = None
    message: Optional[str] = None
    record: Any = None  # EditorAssignment or ReviewerInvitation after the write
    manuscript_status: Optional[ManuscriptStatus] = None
    notification_errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def refused(cls, error: ResponseError, message: Optional[str] = None) -> "ResponseResult":
        return cls(error=error, message=message or error.value.replace("_", " "))


# ============================================================
# SERVICE
# ============================================================

class WorkflowService:
    """
    Editorial commands.

    All time comes from the injected clock, so tests can pin exact instants.
    """

    def __init__(
        self,
        repository: InvitationRepository,
        dispatcher: NotificationDispatcher,
        policy_store: Optional[PolicyStore] = None,
        config: Optional[WorkflowConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self._repository = repository
        self._dispatcher = dispatcher
        self._policies = policy_store or PolicyStore(repository)
        self._config = config or WorkflowConfig()
        self._clock = clock or utc_now
        self._tokens = InvitationTokenIssuer(self._config.secret_key)

    @property
    def repository(self) -> InvitationRepository:
        return self._repository

    @property
    def config(self) -> WorkflowConfig:
        return self._config

    def now(self) -> datetime:
        return self._clock()

    # ----------------------------------------------------------------
    # Notifications
    # ----------------------------------------------------------------

    def notify(
        self,
        template: NotificationTemplate,
        recipient: Optional[str],
        variables: dict[str, Any],
    ) -> Optional[str]:
        """
        Send one message, swallowing transport failures.

        Returns an error string when the send failed, None otherwise.
        Use only where a lost message must not undo the caller's write.
        """
        if not recipient:
            logger.warning("Notification skipped, no recipient", template=template.value)
            return f"{template.value}: no recipient"
        try:
            self._dispatcher.dispatch(template, recipient, variables)
            return None
        except TransientDispatchError as e:
            get_metrics().incr("dispatch_failures")
            logger.warning(
                "Notification failed",
                template=template.value,
                recipient=recipient,
                error=str(e),
            )
            return f"{template.value}: {e}"

    def invitation_links(self, invitation: ReviewerInvitation) -> dict[str, str]:
        base = f"{self._config.base_url}{self._config.invitation_path}/{invitation.invitation_token}"
        return {
            "invitation_url": base,
            "accept_url": f"{base}?action=accept",
            "decline_url": f"{base}?action=decline",
        }

    def manuscript_variables(self, manuscript: Optional[Manuscript]) -> dict[str, Any]:
        if manuscript is None:
            return {"manuscript_title": "", "manuscript_number": "N/A"}
        return {
            "manuscript_title": manuscript.title,
            "manuscript_number": manuscript.reference(self._config.manuscript_prefix),
        }

    # ----------------------------------------------------------------
    # Manuscripts
    # ----------------------------------------------------------------

    def submit_manuscript(
        self,
        title: str,
        corresponding_author_email: Optional[str] = None,
        as_draft: bool = False,
        manuscript_id: Optional[UUID] = None,
    ) -> Manuscript:
        """Create a manuscript, in draft or already submitted."""
        now = self.now()
        manuscript = Manuscript(
            id=manuscript_id or uuid4(),
            title=title,
            status=ManuscriptStatus.DRAFT if as_draft else ManuscriptStatus.SUBMITTED,
            submitted_at=now,
            corresponding_author_email=corresponding_author_email,
            updated_at=now,
        )
        manuscript.manuscript_number = manuscript.reference(self._config.manuscript_prefix)
        self._repository.add_manuscript(manuscript)

        logger.info(
            "Manuscript created",
            manuscript_id=str(manuscript.id),
            manuscript_number=manuscript.manuscript_number,
            status=manuscript.status.value,
        )
        return manuscript

    def get_manuscript(self, manuscript_id: UUID) -> Manuscript:
        manuscript = self._repository.get_manuscript(manuscript_id)
        if manuscript is None:
            raise NotFoundError(f"Manuscript {manuscript_id} not found")
        return manuscript

    def _transition_in(self, ctx, manuscript: Manuscript, outcome: Transition, extra: Optional[dict] = None) -> bool:
        mutation = {"status": outcome.to_status}
        mutation.update(extra or {})
        return ctx.compare_and_set(
            RecordKind.MANUSCRIPT, manuscript.id, manuscript.status, mutation
        )

    def apply_event(
        self,
        manuscript_id: UUID,
        event: WorkflowEvent,
        extra: Optional[dict[str, Any]] = None,
    ) -> EventResult:
        """
        Apply an event to a manuscript and persist the new status.

        The write is a compare-and-set on the status the transition was
        computed from; losing it yields conflict=True and writes nothing.
        """
        manuscript = self._repository.get_manuscript(manuscript_id)
        if manuscript is None:
            return EventResult(manuscript=None)

        outcome = state_machine.apply(manuscript, event)
        if isinstance(outcome, InvalidTransition):
            logger.info(
                "Workflow event refused",
                manuscript_id=str(manuscript_id),
                event=event.event_type.value,
                status=manuscript.status.value,
                reason=outcome.reason,
            )
            return EventResult(manuscript=manuscript, outcome=outcome)

        with self._repository.begin() as ctx:
            if not self._transition_in(ctx, manuscript, outcome, extra):
                get_metrics().incr("cas_conflicts")
                return EventResult(manuscript=manuscript, outcome=outcome, conflict=True)
            ctx.commit()

        logger.info(
            "Workflow event applied",
            manuscript_id=str(manuscript_id),
            event=event.event_type.value,
            from_status=outcome.from_status.value,
            to_status=outcome.to_status.value,
        )
        return EventResult(manuscript=self._repository.get_manuscript(manuscript_id), outcome=outcome)

    def apply_direct_event(self, manuscript_id: UUID, event: WorkflowEvent) -> EventResult:
        """
        Apply an event sent straight to a manuscript.

        Only DIRECT_EVENTS are accepted. Editor and reviewer events need
        their assignment or invitation row written in the same
        transaction, so they must come through assign_editor,
        invite_reviewer or the response commands.

        Raises:
            ValidationError: The event has dependent rows.
        """
        if event.event_type not in DIRECT_EVENTS:
            raise ValidationError(
                f"{event.event_type.value} cannot be applied directly; "
                f"use the assignment or invitation endpoints"
            )
        return self.apply_event(manuscript_id, event)

    def decide(
        self,
        manuscript_id: UUID,
        decision: Decision,
        actor_id: Optional[UUID] = None,
        notes: Optional[str] = None,
    ) -> EventResult:
        return self.apply_event(
            manuscript_id,
            WorkflowEvent(
                event_type=WorkflowEventType.DECIDE,
                decision=decision,
                actor_id=actor_id,
                notes=notes,
            ),
        )

    # ----------------------------------------------------------------
    # Editor assignments
    # ----------------------------------------------------------------

    def assign_editor(
        self,
        manuscript_id: UUID,
        editor_id: UUID,
        editor_name: str = "",
        editor_email: Optional[str] = None,
        assigned_by: Optional[UUID] = None,
        assignment_reason: Optional[str] = None,
        system_generated: bool = False,
    ) -> EditorAssignment:
        """
        Ask an associate editor to take a manuscript.

        Raises:
            NotFoundError: No such manuscript
            ConflictError: Wrong stage, an assignment is already pending,
                or the manuscript changed underneath us
        """
        manuscript = self.get_manuscript(manuscript_id)

        outcome = state_machine.apply(
            manuscript,
            WorkflowEvent(event_type=WorkflowEventType.ASSIGN_EDITOR, actor_id=assigned_by),
        )
        if isinstance(outcome, InvalidTransition):
            raise ConflictError(outcome.reason)

        pending = [
            a for a in self._repository.list_assignments_for_manuscript(manuscript_id)
            if a.status == AssignmentStatus.PENDING
        ]
        if pending:
            raise ConflictError(
                f"Manuscript {manuscript_id} already has a pending editor assignment ({pending[0].id})"
            )

        now = self.now()
        policy = self._policies.get(ASSOCIATE_EDITOR_ASSIGNMENT)
        assignment = EditorAssignment(
            id=uuid4(),
            manuscript_id=manuscript_id,
            editor_id=editor_id,
            editor_name=editor_name,
            editor_email=editor_email,
            assigned_by=assigned_by,
            assigned_at=now,
            deadline=now + policy.time_limit,
            assignment_reason=assignment_reason,
            system_generated=system_generated,
            updated_at=now,
        )

        with self._repository.begin() as ctx:
            if not self._transition_in(ctx, manuscript, outcome):
                get_metrics().incr("cas_conflicts")
                raise ConflictError(f"Manuscript {manuscript_id} changed while assigning an editor")
            ctx.insert(RecordKind.ASSIGNMENT, assignment)
            ctx.commit()

        logger.info(
            "Editor assigned",
            manuscript_id=str(manuscript_id),
            assignment_id=str(assignment.id),
            editor_id=str(editor_id),
            deadline=assignment.deadline.isoformat(),
        )

        self.notify(
            NotificationTemplate.EDITOR_ASSIGNMENT,
            editor_email,
            {
                **self.manuscript_variables(manuscript),
                "editor_name": editor_name,
                "deadline": format_deadline(assignment.deadline),
                "assignment_id": str(assignment.id),
            },
        )
        return assignment

    def submit_assignment_response(
        self,
        assignment_id: UUID,
        response: AssignmentResponse,
    ) -> ResponseResult:
        """
        Record an editor's accept/decline.

        Accepting makes the editor the manuscript's owner and moves it to
        associate_editor_review in the same transaction.
        """
        assignment = self._repository.get_assignment(assignment_id)
        if assignment is None:
            return ResponseResult.refused(ResponseError.NOT_FOUND, "Assignment not found")

        now = self.now()
        checked = state_machine.respond_to_assignment(assignment, response, now)
        if not checked.ok:
            return ResponseResult.refused(checked.error)

        manuscript = self._repository.get_manuscript(assignment.manuscript_id)
        if manuscript is None:
            return ResponseResult.refused(ResponseError.NOT_FOUND, "Manuscript not found")

        outcome = state_machine.apply(
            manuscript,
            WorkflowEvent(
                event_type=WorkflowEventType.EDITOR_RESPONDS,
                action=response.action,
                actor_id=assignment.editor_id,
            ),
        )
        if isinstance(outcome, InvalidTransition):
            return ResponseResult.refused(ResponseError.CONCURRENT_UPDATE, outcome.reason)

        extra = {}
        if response.action == ResponseAction.ACCEPT:
            extra["editor_id"] = assignment.editor_id

        with self._repository.begin() as ctx:
            if not ctx.compare_and_set(
                RecordKind.ASSIGNMENT, assignment.id, AssignmentStatus.PENDING, checked.mutation
            ) or not self._transition_in(ctx, manuscript, outcome, extra):
                ctx.rollback()
                get_metrics().incr("cas_conflicts")
                return ResponseResult.refused(ResponseError.CONCURRENT_UPDATE)
            ctx.commit()

        logger.info(
            "Editor responded",
            assignment_id=str(assignment.id),
            manuscript_id=str(manuscript.id),
            action=response.action.value,
            conflict_declared=response.conflict_declared,
        )

        result = ResponseResult(
            record=self._repository.get_assignment(assignment.id),
            manuscript_status=outcome.to_status,
        )
        error = self.notify(
            NotificationTemplate.EDITOR_ASSIGNMENT_RESPONSE,
            self._config.editorial_office_email,
            {
                **self.manuscript_variables(manuscript),
                "editor_name": assignment.editor_name,
                "action": response.action.value,
                "decline_reason": response.decline_reason or "",
                "conflict_declared": response.conflict_declared,
            },
        )
        if error:
            result.notification_errors.append(error)
        return result

    # ----------------------------------------------------------------
    # Reviewer invitations
    # ----------------------------------------------------------------

    def invite_reviewer(
        self,
        manuscript_id: UUID,
        reviewer_email: str,
        reviewer_name: str,
        reviewer_id: Optional[UUID] = None,
        invited_by: Optional[UUID] = None,
        editor_notes: Optional[str] = None,
    ) -> ReviewerInvitation:
        """
        Invite a reviewer and send them the accept/decline links.

        Raises:
            NotFoundError: No such manuscript
            ConflictError: Wrong stage, reviewer already invited, or the
                manuscript changed underneath us
        """
        manuscript = self.get_manuscript(manuscript_id)

        outcome = state_machine.apply(
            manuscript,
            WorkflowEvent(event_type=WorkflowEventType.ASSIGN_REVIEWER, actor_id=invited_by),
        )
        if isinstance(outcome, InvalidTransition):
            raise ConflictError(outcome.reason)

        email = reviewer_email.strip().lower()
        for existing in self._repository.list_invitations_for_manuscript(manuscript_id):
            if existing.reviewer_email.lower() == email and existing.status in (
                InvitationStatus.PENDING, InvitationStatus.ACCEPTED
            ):
                raise ConflictError(f"{reviewer_email} already has an open invitation for this manuscript")

        now = self.now()
        policy = self._policies.get(REVIEWER_RESPONSE)
        invitation_id = uuid4()
        invitation = ReviewerInvitation(
            id=invitation_id,
            manuscript_id=manuscript_id,
            reviewer_id=reviewer_id,
            reviewer_email=email,
            reviewer_name=reviewer_name,
            invited_by=invited_by,
            invited_at=now,
            response_deadline=now + policy.time_limit,
            invitation_token=self._tokens.issue(invitation_id),
            editor_notes=editor_notes,
            updated_at=now,
        )

        with self._repository.begin() as ctx:
            if not self._transition_in(ctx, manuscript, outcome):
                get_metrics().incr("cas_conflicts")
                raise ConflictError(f"Manuscript {manuscript_id} changed while inviting a reviewer")
            ctx.insert(RecordKind.INVITATION, invitation)
            ctx.commit()

        logger.info(
            "Reviewer invited",
            manuscript_id=str(manuscript_id),
            invitation_id=str(invitation.id),
            response_deadline=invitation.response_deadline.isoformat(),
        )

        self.notify(
            NotificationTemplate.REVIEW_INVITATION,
            invitation.reviewer_email,
            {
                **self.manuscript_variables(manuscript),
                **self.invitation_links(invitation),
                "reviewer_name": reviewer_name,
                "response_deadline": format_deadline(invitation.response_deadline),
            },
        )
        return invitation

    def find_invitation(self, token: str) -> Optional[ReviewerInvitation]:
        """Resolve an invitation from its link token. Forged tokens resolve to None."""
        invitation_id = self._tokens.read(token)
        if invitation_id is None:
            return None
        invitation = self._repository.get_invitation_by_token(token)
        if invitation is None or invitation.id != invitation_id:
            return None
        return invitation

    def submit_invitation_response(
        self,
        token: str,
        response: InvitationResponse,
    ) -> ResponseResult:
        """
        Record a reviewer's accept/decline, identified by the link token.

        Accepting fixes the review deadline, adds the reviewer to the
        manuscript and, for the first acceptance, starts the review.
        """
        invitation = self.find_invitation(token)
        if invitation is None:
            return ResponseResult.refused(ResponseError.NOT_FOUND, "Invitation not found")

        now = self.now()
        response_policy = self._policies.get(REVIEWER_RESPONSE)
        review_policy = self._policies.get(REVIEWER_REVIEW)
        checked = state_machine.respond_to_invitation(
            invitation,
            response,
            now,
            review_window=review_policy.time_limit,
            grace_window=response_policy.grace_window,
        )
        if not checked.ok:
            return ResponseResult.refused(checked.error)

        manuscript = self._repository.get_manuscript(invitation.manuscript_id)
        if manuscript is None:
            return ResponseResult.refused(ResponseError.NOT_FOUND, "Manuscript not found")

        outcome = state_machine.apply(
            manuscript,
            WorkflowEvent(
                event_type=WorkflowEventType.REVIEWER_RESPONDS,
                action=response.action,
                actor_id=invitation.reviewer_id,
            ),
        )
        if isinstance(outcome, InvalidTransition):
            return ResponseResult.refused(ResponseError.CONCURRENT_UPDATE, outcome.reason)

        extra = {}
        if response.action == ResponseAction.ACCEPT and invitation.reviewer_id is not None:
            extra["reviewer_ids"] = set(manuscript.reviewer_ids) | {invitation.reviewer_id}

        with self._repository.begin() as ctx:
            if not ctx.compare_and_set(
                RecordKind.INVITATION, invitation.id, InvitationStatus.PENDING, checked.mutation
            ) or not self._transition_in(ctx, manuscript, outcome, extra):
                ctx.rollback()
                get_metrics().incr("cas_conflicts")
                return ResponseResult.refused(ResponseError.CONCURRENT_UPDATE)
            ctx.commit()

        logger.info(
            "Reviewer responded",
            invitation_id=str(invitation.id),
            manuscript_id=str(manuscript.id),
            action=response.action.value,
        )

        updated = self._repository.get_invitation(invitation.id)
        result = ResponseResult(record=updated, manuscript_status=outcome.to_status)
        variables = {
            **self.manuscript_variables(manuscript),
            "reviewer_name": invitation.reviewer_name,
        }
        if response.action == ResponseAction.ACCEPT:
            error = self.notify(
                NotificationTemplate.REVIEW_ACCEPTANCE_CONFIRMATION,
                invitation.reviewer_email,
                {**variables, "review_deadline": format_deadline(updated.review_deadline)},
            )
        else:
            error = self.notify(
                NotificationTemplate.REVIEW_DECLINED,
                self._config.editorial_office_email,
                {**variables, "decline_reason": response.decline_reason or response.conflict_details or ""},
            )
        if error:
            result.notification_errors.append(error)
        return result

    def record_review_submitted(self, invitation_id: UUID) -> bool:
        """Mark an accepted invitation's review as delivered. False if not accepted or already marked."""
        submitted = self._repository.compare_and_set(
            RecordKind.INVITATION,
            invitation_id,
            InvitationStatus.ACCEPTED,
            {"review_submitted_at": self.now()},
            expected={"review_submitted_at": None},
        )
        if submitted:
            logger.info("Review submitted", invitation_id=str(invitation_id))
        return submitted
