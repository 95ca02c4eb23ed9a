"""
Tests for the time-limit policy store.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from editorial.core.policy import (
    ASSOCIATE_EDITOR_ASSIGNMENT,
    DEFAULT_POLICIES,
    REVIEWER_RESPONSE,
    REVIEWER_REVIEW,
    PolicyStore,
    TimeLimitPolicy,
)
from editorial.db import InMemoryInvitationRepository
from editorial.schemas import WorkflowTimeLimit


@pytest.fixture
def repository():
    return InMemoryInvitationRepository()


@pytest.fixture
def store(repository):
    return PolicyStore(repository)


class TestDefaults:

    def test_reviewer_response_thresholds(self, store):
        policy = store.get(REVIEWER_RESPONSE)
        assert policy.is_default
        assert policy.reminder_threshold == timedelta(days=7)
        assert policy.grace_window == timedelta(days=7)
        assert policy.withdrawal_threshold == timedelta(days=14)

    def test_review_window(self, store):
        policy = store.get(REVIEWER_REVIEW)
        assert policy.time_limit == timedelta(days=21)
        assert policy.final_reminder_lead == timedelta(days=1)

    def test_assignment_window(self, store):
        policy = store.get(ASSOCIATE_EDITOR_ASSIGNMENT)
        assert policy.time_limit == timedelta(days=3)
        assert policy.reminder_days == (3, 1)
        assert policy.escalation_days == (3, 7, 14)

    def test_unknown_stage_uses_response_window(self, store):
        policy = store.get("copy-editing")
        assert policy.stage == "copy-editing"
        assert policy.time_limit_days == DEFAULT_POLICIES[REVIEWER_RESPONSE].time_limit_days
        assert policy.is_default

    def test_no_escalation_means_no_grace(self):
        policy = TimeLimitPolicy(stage="x", time_limit_days=5)
        assert policy.grace_window == timedelta(0)
        assert policy.withdrawal_threshold == timedelta(days=5)
        assert policy.final_reminder_lead == timedelta(0)


class TestStoredPolicies:

    def test_stored_policy_overrides_default(self, repository, store):
        repository.upsert_time_limit(WorkflowTimeLimit(
            stage=REVIEWER_RESPONSE, time_limit_days=10, escalation_days=[4, 8],
        ))
        policy = store.get(REVIEWER_RESPONSE)

        assert not policy.is_default
        assert policy.reminder_threshold == timedelta(days=10)
        assert policy.withdrawal_threshold == timedelta(days=14)

    def test_inactive_policy_falls_back(self, repository, store):
        repository.upsert_time_limit(WorkflowTimeLimit(
            stage=REVIEWER_RESPONSE, time_limit_days=30, is_active=False,
        ))
        assert store.get(REVIEWER_RESPONSE) == DEFAULT_POLICIES[REVIEWER_RESPONSE]

    def test_offsets_keep_configured_order(self, repository, store):
        repository.upsert_time_limit(WorkflowTimeLimit(
            stage=REVIEWER_REVIEW, time_limit_days=21, reminder_days=[1, 7, 3],
        ))
        policy = store.get(REVIEWER_REVIEW)
        assert policy.reminder_days == (1, 7, 3)
        assert policy.final_reminder_lead == timedelta(days=1)

    def test_list_all_includes_defaults_and_extra_stages(self, repository, store):
        repository.upsert_time_limit(WorkflowTimeLimit(stage="copy-editing", time_limit_days=5))
        stages = [p.stage for p in store.list_all()]

        assert stages == sorted(stages)
        assert set(DEFAULT_POLICIES) <= set(stages)
        assert "copy-editing" in stages

    def test_round_trip_through_record(self):
        policy = DEFAULT_POLICIES[REVIEWER_REVIEW]
        restored = TimeLimitPolicy.from_record(policy.to_record())
        assert restored.reminder_days == policy.reminder_days
        assert restored.escalation_days == policy.escalation_days


class TestValidation:

    def test_negative_offsets_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowTimeLimit(stage=REVIEWER_RESPONSE, time_limit_days=7, reminder_days=[3, -1])

    def test_zero_day_limit_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowTimeLimit(stage=REVIEWER_RESPONSE, time_limit_days=0)

    def test_policy_change_moves_sweep_threshold(self, harness, clock):
        """The sweep reads the stored policy on every pass."""
        manuscript = harness.manuscript_with_editor()
        harness.invite(manuscript)
        harness.repository.upsert_time_limit(WorkflowTimeLimit(
            stage=REVIEWER_RESPONSE, time_limit_days=3, escalation_days=[2],
        ))

        clock.advance(days=3)
        assert harness.engine.run_sweep().reminders_processed == 1
