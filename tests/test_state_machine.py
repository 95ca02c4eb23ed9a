"""
Tests for the workflow state machine.

The transition table is total: every (status, event) pair either maps to
a Transition or comes back as InvalidTransition. Nothing raises.
"""

from datetime import datetime, timezone
from itertools import product
from uuid import uuid4

import pytest

from editorial.core.state_machine import (
    PRE_DECISION_STATUSES,
    TRANSITIONS,
    InvalidTransition,
    Transition,
    allowed_events,
    apply,
)
from editorial.schemas import (
    Decision,
    InvitationResponse,
    Manuscript,
    ManuscriptStatus,
    ResponseAction,
    TERMINAL_STATUSES,
    WorkflowEvent,
    WorkflowEventType,
)


def make_manuscript(status: ManuscriptStatus, with_editor: bool = True) -> Manuscript:
    return Manuscript(
        id=uuid4(),
        title="Coral reef recovery after bleaching events",
        status=status,
        submitted_at=datetime(2025, 1, 6, tzinfo=timezone.utc),
        editor_id=uuid4() if with_editor else None,
    )


def every_event():
    """Each event type with each qualifier it could carry, including nonsense ones."""
    for event_type in WorkflowEventType:
        yield WorkflowEvent(event_type=event_type)
        for action in ResponseAction:
            yield WorkflowEvent(event_type=event_type, action=action)
        for decision in Decision:
            yield WorkflowEvent(event_type=event_type, decision=decision)


class TestTransitionTable:
    """Totality and table-driven behaviour."""

    def test_every_pair_yields_a_typed_result(self):
        for status, event in product(ManuscriptStatus, list(every_event())):
            manuscript = make_manuscript(status)
            outcome = apply(manuscript, event)

            key = (status, event.event_type, event.qualifier)
            if key in TRANSITIONS:
                assert isinstance(outcome, Transition), key
                assert outcome.to_status == TRANSITIONS[key]
            else:
                assert isinstance(outcome, InvalidTransition), key
                assert outcome.ok is False
                assert outcome.reason

    def test_terminal_states_accept_nothing(self):
        for status in TERMINAL_STATUSES:
            assert allowed_events(status) == []
            for event in every_event():
                assert isinstance(apply(make_manuscript(status), event), InvalidTransition)

    @pytest.mark.parametrize("status", sorted(PRE_DECISION_STATUSES, key=lambda s: s.value))
    def test_withdraw_from_any_pre_decision_state(self, status):
        outcome = apply(make_manuscript(status), WorkflowEvent(event_type=WorkflowEventType.WITHDRAW))
        assert isinstance(outcome, Transition)
        assert outcome.to_status == ManuscriptStatus.WITHDRAWN

    def test_cannot_withdraw_after_acceptance(self):
        outcome = apply(
            make_manuscript(ManuscriptStatus.ACCEPTED),
            WorkflowEvent(event_type=WorkflowEventType.WITHDRAW),
        )
        assert isinstance(outcome, InvalidTransition)

    def test_invalid_transition_lists_allowed_events(self):
        outcome = apply(
            make_manuscript(ManuscriptStatus.SUBMITTED),
            WorkflowEvent(event_type=WorkflowEventType.PUBLISH),
        )
        assert isinstance(outcome, InvalidTransition)
        assert "start_screening" in outcome.reason

    def test_apply_does_not_mutate_manuscript(self):
        manuscript = make_manuscript(ManuscriptStatus.UNDER_REVIEW)
        apply(manuscript, WorkflowEvent(event_type=WorkflowEventType.DECIDE, decision=Decision.ACCEPT))
        assert manuscript.status == ManuscriptStatus.UNDER_REVIEW


class TestGuards:

    def test_under_review_requires_owning_editor(self):
        manuscript = make_manuscript(ManuscriptStatus.REVIEWER_ASSIGNMENT, with_editor=False)
        outcome = apply(
            manuscript,
            WorkflowEvent(event_type=WorkflowEventType.REVIEWER_RESPONDS, action=ResponseAction.ACCEPT),
        )
        assert isinstance(outcome, InvalidTransition)
        assert "editor" in outcome.reason

    def test_reviewer_decline_keeps_reviewer_assignment(self):
        outcome = apply(
            make_manuscript(ManuscriptStatus.REVIEWER_ASSIGNMENT),
            WorkflowEvent(event_type=WorkflowEventType.REVIEWER_RESPONDS, action=ResponseAction.DECLINE),
        )
        assert isinstance(outcome, Transition)
        assert outcome.changed is False

    def test_assignment_expiry_stays_in_assignment_stage(self):
        outcome = apply(
            make_manuscript(ManuscriptStatus.ASSOCIATE_EDITOR_ASSIGNMENT, with_editor=False),
            WorkflowEvent(event_type=WorkflowEventType.ASSIGNMENT_EXPIRED),
        )
        assert isinstance(outcome, Transition)
        assert outcome.to_status == ManuscriptStatus.ASSOCIATE_EDITOR_ASSIGNMENT


class TestDecisionScenario:
    """An accepted manuscript cannot then be rejected."""

    def test_accept_then_reject_is_invalid(self, harness):
        manuscript = harness.manuscript_with_editor()
        invitation = harness.invite(manuscript, reviewer_id=uuid4())

        responded = harness.workflow.submit_invitation_response(
            invitation.invitation_token,
            InvitationResponse(action=ResponseAction.ACCEPT),
        )
        assert responded.ok
        assert responded.manuscript_status == ManuscriptStatus.UNDER_REVIEW

        accepted = harness.workflow.decide(manuscript.id, Decision.ACCEPT)
        assert accepted.ok
        assert accepted.manuscript.status == ManuscriptStatus.ACCEPTED

        rejected = harness.workflow.decide(manuscript.id, Decision.REJECT)
        assert not rejected.ok
        assert isinstance(rejected.outcome, InvalidTransition)
        assert harness.workflow.get_manuscript(manuscript.id).status == ManuscriptStatus.ACCEPTED

    def test_revision_cycle(self, harness):
        manuscript = harness.manuscript_with_editor()

        revise = harness.workflow.decide(manuscript.id, Decision.REVISE)
        assert revise.manuscript.status == ManuscriptStatus.REVISION_REQUESTED

        resubmit = harness.workflow.apply_event(
            manuscript.id, WorkflowEvent(event_type=WorkflowEventType.SUBMIT_REVISION)
        )
        assert resubmit.manuscript.status == ManuscriptStatus.REVISION_SUBMITTED

        accept = harness.workflow.decide(manuscript.id, Decision.ACCEPT)
        assert accept.manuscript.status == ManuscriptStatus.ACCEPTED

        publish = harness.workflow.apply_event(
            manuscript.id, WorkflowEvent(event_type=WorkflowEventType.PUBLISH)
        )
        assert publish.manuscript.status == ManuscriptStatus.PUBLISHED

    def test_draft_must_be_submitted_first(self, harness):
        draft = harness.workflow.submit_manuscript("Working title", as_draft=True)
        assert draft.status == ManuscriptStatus.DRAFT

        refused = harness.workflow.apply_event(
            draft.id, WorkflowEvent(event_type=WorkflowEventType.START_SCREENING)
        )
        assert not refused.ok

        submitted = harness.workflow.apply_event(draft.id, WorkflowEvent(event_type=WorkflowEventType.SUBMIT))
        assert submitted.manuscript.status == ManuscriptStatus.SUBMITTED
