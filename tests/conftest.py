"""
Shared fixtures: a controllable clock and a fully wired in-memory workflow.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID, uuid4

import pytest

from editorial.core.notifier import InMemoryDispatcher
from editorial.core.sweep import DeadlineSweepEngine
from editorial.core.workflow import WorkflowConfig, WorkflowService
from editorial.db.repository import InMemoryInvitationRepository
from editorial.observability import get_metrics
from editorial.schemas import (
    AssignmentResponse,
    Manuscript,
    ResponseAction,
    ReviewerInvitation,
    WorkflowEvent,
    WorkflowEventType,
)

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)

OFFICE_EMAIL = "office@journal.test"


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@dataclass
class Harness:
    clock: FrozenClock
    repository: InMemoryInvitationRepository
    dispatcher: InMemoryDispatcher
    workflow: WorkflowService
    engine: DeadlineSweepEngine

    def submitted_manuscript(self, title: str = "Soil microbiome resilience under drought") -> Manuscript:
        return self.workflow.submit_manuscript(title, corresponding_author_email="author@uni.test")

    def screened_manuscript(self) -> Manuscript:
        manuscript = self.submitted_manuscript()
        result = self.workflow.apply_event(
            manuscript.id, WorkflowEvent(event_type=WorkflowEventType.START_SCREENING)
        )
        assert result.ok
        return result.manuscript

    def manuscript_with_editor(self, editor_id: Optional[UUID] = None) -> Manuscript:
        """A manuscript in associate_editor_review, owned by an editor."""
        manuscript = self.screened_manuscript()
        assignment = self.workflow.assign_editor(
            manuscript.id,
            editor_id=editor_id or uuid4(),
            editor_name="Dr. Ada Byron",
            editor_email="ada@journal.test",
        )
        result = self.workflow.submit_assignment_response(
            assignment.id,
            AssignmentResponse(action=ResponseAction.ACCEPT, conflict_declared=False),
        )
        assert result.ok
        return self.workflow.get_manuscript(manuscript.id)

    def invite(self, manuscript: Manuscript, email: str = "rev@uni.test", reviewer_id: Optional[UUID] = None) -> ReviewerInvitation:
        return self.workflow.invite_reviewer(
            manuscript.id,
            reviewer_email=email,
            reviewer_name="Grace Hopper",
            reviewer_id=reviewer_id,
        )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def harness(clock):
    repository = InMemoryInvitationRepository()
    dispatcher = InMemoryDispatcher()
    workflow = WorkflowService(
        repository,
        dispatcher,
        config=WorkflowConfig(
            editorial_office_email=OFFICE_EMAIL,
            base_url="https://journal.test",
            secret_key="test-secret-key-0123456789",
            manuscript_prefix="TST",
        ),
        clock=clock,
    )
    engine = DeadlineSweepEngine(
        repository, dispatcher, workflow, fan_out=2, dispatch_timeout_seconds=2.0
    )
    get_metrics().reset()
    return Harness(clock, repository, dispatcher, workflow, engine)
