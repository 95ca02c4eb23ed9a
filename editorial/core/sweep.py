"""
Deadline Sweep Engine

One sweep runs four passes against a single `now` snapshot:

1. Reminder      pending invitations older than the reminder threshold,
                 never reminded -> send one reminder quoting a final deadline
2. Withdrawal    pending invitations older than the withdrawal threshold,
                 already reminded -> withdraw and tell the reviewer
3. Expiry        pending editor assignments past their deadline
                 -> expire, emit assignment_expired, tell the editorial office
4. Review due    accepted invitations whose review is close to due
                 -> send one final "review due" reminder

IDEMPOTENCY:
Every row is claimed with compare-and-set before anything is sent. Two
instances sweeping the same rows race on the CAS and exactly one wins;
the loser counts the row as skipped. Running the same sweep twice does
nothing the second time.

Reminder claims set the marker BEFORE dispatch. If the send fails the
marker is put back (CAS to NULL) so the next tick retries the row.
Withdrawal and expiry notices are best effort: the status change stands
even if the message is lost.

Per-row failures never abort a pass; they are collected in
SweepResult.errors. Storage failures while scanning propagate.
"""

import contextvars
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

from ..db.repository import InvitationRepository, RecordKind
from ..errors import TransientDispatchError
from ..observability import get_logger, get_metrics, sweep_id_var
from ..schemas import (
    AssignmentStatus,
    EditorAssignment,
    InvitationStatus,
    ReviewerInvitation,
    WorkflowEvent,
    WorkflowEventType,
)
from .notifier import NotificationDispatcher, NotificationTemplate, format_deadline
from .policy import REVIEWER_RESPONSE, REVIEWER_REVIEW, PolicyStore, TimeLimitPolicy
from .state_machine import accepts_event
from .workflow import WorkflowService

logger = get_logger("editorial.sweep")


@dataclass
class SweepResult:
    """Counts and per-row errors from one sweep."""
    sweep_id: str = ""
    reminders_processed: int = 0
    withdrawals_processed: int = 0
    expirations_processed: int = 0
    review_reminders_processed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def total_processed(self) -> int:
        return (
            self.reminders_processed
            + self.withdrawals_processed
            + self.expirations_processed
            + self.review_reminders_processed
        )

    def to_dict(self) -> dict:
        return {
            "sweep_id": self.sweep_id,
            "reminders_processed": self.reminders_processed,
            "withdrawals_processed": self.withdrawals_processed,
            "expirations_processed": self.expirations_processed,
            "review_reminders_processed": self.review_reminders_processed,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class RowResult:
    """What happened to one row. processed=False and no error means another writer won it."""
    processed: bool
    error: Optional[str] = None


SKIPPED = RowResult(processed=False)


class DeadlineSweepEngine:
    """
    Runs deadline sweeps.

    Rows of a pass are handled on a bounded thread pool (`fan_out`).
    Each dispatch call runs on its own daemon thread and is abandoned
    after `dispatch_timeout_seconds`; a timeout counts as a failed send.
    A send that never returns keeps only its own thread, so later rows
    and later sweeps still get a worker.
    """

    def __init__(
        self,
        repository: InvitationRepository,
        dispatcher: NotificationDispatcher,
        workflow: WorkflowService,
        policy_store: Optional[PolicyStore] = None,
        fan_out: int = 4,
        dispatch_timeout_seconds: float = 10.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if fan_out < 1:
            raise ValueError("fan_out must be at least 1")
        self._repository = repository
        self._dispatcher = dispatcher
        self._workflow = workflow
        self._policies = policy_store or PolicyStore(repository)
        self._fan_out = fan_out
        self._dispatch_timeout = dispatch_timeout_seconds
        self._clock = clock or workflow.now

    # ----------------------------------------------------------------
    # Entry point
    # ----------------------------------------------------------------

    def run_sweep(self) -> SweepResult:
        """Run all four passes once. Safe to call repeatedly and from several instances."""
        sweep_id = uuid4().hex[:8]
        token = sweep_id_var.set(sweep_id)
        now = self._clock()
        result = SweepResult(sweep_id=sweep_id, started_at=now)
        start = time.perf_counter()
        success = False

        logger.info("Deadline sweep started", now=now.isoformat())

        try:
            self._reminder_pass(now, result)
            self._withdrawal_pass(now, result)
            self._expiry_pass(now, result)
            self._review_due_pass(now, result)
            success = True
        finally:
            result.finished_at = self._clock()
            duration_ms = (time.perf_counter() - start) * 1000
            get_metrics().record_sweep(duration_ms, success=success)
            if success:
                logger.info(
                    "Deadline sweep finished",
                    reminders=result.reminders_processed,
                    withdrawals=result.withdrawals_processed,
                    expirations=result.expirations_processed,
                    review_reminders=result.review_reminders_processed,
                    skipped=result.skipped,
                    errors=len(result.errors),
                    duration_ms=round(duration_ms, 2),
                )
            sweep_id_var.reset(token)

        return result

    def deadline_statistics(self) -> dict[str, Any]:
        """What the next sweep would act on, plus the thresholds in force."""
        now = self._clock()
        response = self._policies.get(REVIEWER_RESPONSE)
        stats = self._repository.deadline_statistics(
            now,
            reminder_before=now - response.reminder_threshold,
            withdrawal_before=now - response.withdrawal_threshold,
        )
        stats["reminder_threshold_days"] = response.reminder_threshold.days
        stats["withdrawal_threshold_days"] = response.withdrawal_threshold.days
        stats["as_of"] = now.isoformat()
        return stats

    # ----------------------------------------------------------------
    # Row plumbing
    # ----------------------------------------------------------------

    def _run_rows(
        self,
        label: str,
        rows: Sequence[Any],
        handler: Callable[[Any], RowResult],
        counter: str,
        result: SweepResult,
    ) -> None:
        if not rows:
            return

        with ThreadPoolExecutor(max_workers=self._fan_out, thread_name_prefix=f"sweep-{label}") as pool:
            # copy_context so worker log lines carry the sweep id
            futures = [
                (row, pool.submit(contextvars.copy_context().run, handler, row))
                for row in rows
            ]
            for row, future in futures:
                try:
                    row_result = future.result()
                except TransientDispatchError as e:
                    result.errors.append(f"{label} {row.id}: {e}")
                    continue
                except Exception as e:
                    logger.exception(f"Sweep {label} failed for row", row_id=str(row.id))
                    result.errors.append(f"{label} {row.id}: {type(e).__name__}: {e}")
                    continue

                if row_result.processed:
                    setattr(result, counter, getattr(result, counter) + 1)
                else:
                    result.skipped += 1
                if row_result.error:
                    result.errors.append(f"{label} {row.id}: {row_result.error}")

    def _dispatch(self, template: NotificationTemplate, recipient: str, variables: dict[str, Any]) -> str:
        future: Future = Future()
        context = contextvars.copy_context()

        def send() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(context.run(self._dispatcher.dispatch, template, recipient, variables))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(target=send, name="sweep-dispatch", daemon=True).start()
        try:
            return future.result(timeout=self._dispatch_timeout)
        except FutureTimeout:
            get_metrics().incr("dispatch_timeouts")
            logger.warning(
                "Dispatch abandoned after timeout",
                template=template.value,
                recipient=recipient,
                timeout_seconds=self._dispatch_timeout,
            )
            raise TransientDispatchError(
                f"{template.value} to {recipient} timed out after {self._dispatch_timeout}s"
            ) from None

    def _try_dispatch(self, template: NotificationTemplate, recipient: Optional[str], variables: dict[str, Any]) -> Optional[str]:
        """Best-effort send. Returns an error string instead of raising."""
        if not recipient:
            return f"{template.value}: no recipient"
        try:
            self._dispatch(template, recipient, variables)
            return None
        except TransientDispatchError as e:
            get_metrics().incr("dispatch_failures")
            logger.warning("Notification failed", template=template.value, recipient=recipient, error=str(e))
            return str(e)

    def _claim(self, invitation: ReviewerInvitation, status: InvitationStatus, marker: str, now: datetime) -> bool:
        claimed = self._repository.compare_and_set(
            RecordKind.INVITATION, invitation.id, status, {marker: now}, expected={marker: None}
        )
        if not claimed:
            get_metrics().incr("cas_conflicts")
            logger.debug("Row already claimed", invitation_id=str(invitation.id), marker=marker)
        return claimed

    def _release(self, invitation: ReviewerInvitation, status: InvitationStatus, marker: str, now: datetime) -> None:
        released = self._repository.compare_and_set(
            RecordKind.INVITATION, invitation.id, status, {marker: None}, expected={marker: now}
        )
        if not released:
            # The row moved on (answered or withdrawn) since we claimed it
            logger.warning("Could not release claim", invitation_id=str(invitation.id), marker=marker)

    def _send_claimed(
        self,
        invitation: ReviewerInvitation,
        status: InvitationStatus,
        marker: str,
        now: datetime,
        template: NotificationTemplate,
        variables: dict[str, Any],
    ) -> RowResult:
        """Claim the marker, send, and give the claim back if the send fails."""
        if not self._claim(invitation, status, marker, now):
            return SKIPPED
        try:
            self._dispatch(template, invitation.reviewer_email, variables)
        except Exception:
            get_metrics().incr("dispatch_failures")
            self._release(invitation, status, marker, now)
            logger.warning(
                "Reminder not sent, will retry next sweep",
                invitation_id=str(invitation.id),
                template=template.value,
            )
            raise
        return RowResult(processed=True)

    # ----------------------------------------------------------------
    # Pass 1: reminders
    # ----------------------------------------------------------------

    def _reminder_pass(self, now: datetime, result: SweepResult) -> None:
        policy = self._policies.get(REVIEWER_RESPONSE)
        rows = self._repository.find_invitations_needing_reminder(now - policy.reminder_threshold)
        logger.debug("Reminder pass", candidates=len(rows))
        self._run_rows(
            "reminder", rows,
            lambda invitation: self._remind(invitation, now, policy),
            "reminders_processed", result,
        )

    def _remind(self, invitation: ReviewerInvitation, now: datetime, policy: TimeLimitPolicy) -> RowResult:
        manuscript = self._repository.get_manuscript(invitation.manuscript_id)
        if manuscript is None or not accepts_event(manuscript.status, WorkflowEventType.REVIEWER_RESPONDS):
            # Reviewer answers are refused in this status
            logger.debug(
                "Reminder skipped, manuscript no longer takes reviewer responses",
                invitation_id=str(invitation.id),
                manuscript_status=manuscript.status.value if manuscript else None,
            )
            return SKIPPED
        final_deadline = now + policy.grace_window
        outcome = self._send_claimed(
            invitation,
            InvitationStatus.PENDING,
            "first_reminder_sent",
            now,
            NotificationTemplate.REVIEW_INVITATION_REMINDER,
            {
                **self._workflow.manuscript_variables(manuscript),
                **self._workflow.invitation_links(invitation),
                "reviewer_name": invitation.reviewer_name,
                "final_deadline": format_deadline(final_deadline),
            },
        )
        if outcome.processed:
            get_metrics().incr("reminders_sent")
            logger.info(
                "Reminder sent",
                invitation_id=str(invitation.id),
                final_deadline=final_deadline.isoformat(),
            )
        return outcome

    # ----------------------------------------------------------------
    # Pass 2: withdrawals
    # ----------------------------------------------------------------

    def _withdrawal_pass(self, now: datetime, result: SweepResult) -> None:
        policy = self._policies.get(REVIEWER_RESPONSE)
        rows = self._repository.find_invitations_needing_withdrawal(now - policy.withdrawal_threshold)
        logger.debug("Withdrawal pass", candidates=len(rows))
        self._run_rows(
            "withdrawal", rows,
            lambda invitation: self._withdraw(invitation, now),
            "withdrawals_processed", result,
        )

    def _withdraw(self, invitation: ReviewerInvitation, now: datetime) -> RowResult:
        withdrawn = self._repository.compare_and_set(
            RecordKind.INVITATION,
            invitation.id,
            InvitationStatus.PENDING,
            {"status": InvitationStatus.WITHDRAWN, "withdrawn_at": now},
            expected={"first_reminder_sent": invitation.first_reminder_sent},
        )
        if not withdrawn:
            get_metrics().incr("cas_conflicts")
            return SKIPPED

        get_metrics().incr("withdrawals")
        logger.info("Invitation withdrawn", invitation_id=str(invitation.id))

        manuscript = self._repository.get_manuscript(invitation.manuscript_id)
        error = self._try_dispatch(
            NotificationTemplate.REVIEW_INVITATION_WITHDRAWAL,
            invitation.reviewer_email,
            {
                **self._workflow.manuscript_variables(manuscript),
                "reviewer_name": invitation.reviewer_name,
            },
        )
        return RowResult(processed=True, error=error)

    # ----------------------------------------------------------------
    # Pass 3: editor assignment expiry
    # ----------------------------------------------------------------

    def _expiry_pass(self, now: datetime, result: SweepResult) -> None:
        rows = self._repository.find_assignments_pending(now)
        logger.debug("Expiry pass", candidates=len(rows))
        self._run_rows(
            "expiry", rows,
            lambda assignment: self._expire(assignment, now),
            "expirations_processed", result,
        )

    def _expire(self, assignment: EditorAssignment, now: datetime) -> RowResult:
        expired = self._repository.compare_and_set(
            RecordKind.ASSIGNMENT,
            assignment.id,
            AssignmentStatus.PENDING,
            {"status": AssignmentStatus.EXPIRED},
        )
        if not expired:
            get_metrics().incr("cas_conflicts")
            return SKIPPED

        get_metrics().incr("expirations")
        logger.info(
            "Editor assignment expired",
            assignment_id=str(assignment.id),
            manuscript_id=str(assignment.manuscript_id),
        )

        errors = []
        applied = self._workflow.apply_event(
            assignment.manuscript_id,
            WorkflowEvent(
                event_type=WorkflowEventType.ASSIGNMENT_EXPIRED,
                notes=f"Assignment {assignment.id} expired at {now.isoformat()}",
            ),
        )
        if applied.conflict:
            errors.append("manuscript changed while recording expiry")
        elif not applied.ok:
            # Manuscript left the assignment stage (e.g. withdrawn); nothing to record
            logger.info(
                "Expiry event not applicable",
                manuscript_id=str(assignment.manuscript_id),
                reason=getattr(applied.outcome, "reason", "manuscript not found"),
            )

        error = self._try_dispatch(
            NotificationTemplate.EDITOR_ASSIGNMENT_EXPIRED,
            self._workflow.config.editorial_office_email,
            {
                **self._workflow.manuscript_variables(applied.manuscript),
                "editor_name": assignment.editor_name,
                "deadline": format_deadline(assignment.deadline),
            },
        )
        if error:
            errors.append(error)
        return RowResult(processed=True, error="; ".join(errors) or None)

    # ----------------------------------------------------------------
    # Pass 4: review due
    # ----------------------------------------------------------------

    def _review_due_pass(self, now: datetime, result: SweepResult) -> None:
        policy = self._policies.get(REVIEWER_REVIEW)
        rows = self._repository.find_reviews_due(now + policy.final_reminder_lead)
        logger.debug("Review-due pass", candidates=len(rows))
        self._run_rows(
            "review-due", rows,
            lambda invitation: self._remind_review_due(invitation, now),
            "review_reminders_processed", result,
        )

    def _remind_review_due(self, invitation: ReviewerInvitation, now: datetime) -> RowResult:
        manuscript = self._repository.get_manuscript(invitation.manuscript_id)
        outcome = self._send_claimed(
            invitation,
            InvitationStatus.ACCEPTED,
            "final_reminder_sent",
            now,
            NotificationTemplate.REVIEW_DUE_REMINDER,
            {
                **self._workflow.manuscript_variables(manuscript),
                "reviewer_name": invitation.reviewer_name,
                "review_deadline": format_deadline(invitation.review_deadline),
            },
        )
        if outcome.processed:
            get_metrics().incr("review_reminders_sent")
            logger.info("Review due reminder sent", invitation_id=str(invitation.id))
        return outcome
