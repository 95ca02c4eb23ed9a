"""
Time-Limit Policy Store

Per-stage deadline policy consulted by the deadline sweep and by the
workflow service when it stamps deadlines on new records.

A stage with no stored row, or with an inactive one, falls back to the
compiled-in defaults. The sweep reads a policy once per pass so every
row in a tick is judged against the same snapshot.

Derived thresholds for a policy:
- reminder threshold   = time_limit_days
- grace window         = first escalation offset
- withdrawal threshold = time_limit_days + first escalation offset
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from ..schemas import WorkflowTimeLimit

if TYPE_CHECKING:
    from ..db.repository import InvitationRepository


# Stage keys
REVIEWER_RESPONSE = "reviewer-response"
REVIEWER_REVIEW = "reviewer-review"
ASSOCIATE_EDITOR_ASSIGNMENT = "associate-editor-assignment"


@dataclass(frozen=True)
class TimeLimitPolicy:
    """Immutable policy snapshot for one stage."""
    stage: str
    time_limit_days: int
    reminder_days: tuple[int, ...] = ()
    escalation_days: tuple[int, ...] = ()
    is_default: bool = False

    @property
    def time_limit(self) -> timedelta:
        return timedelta(days=self.time_limit_days)

    @property
    def reminder_threshold(self) -> timedelta:
        """Age at which an unanswered request gets its reminder."""
        return timedelta(days=self.time_limit_days)

    @property
    def grace_window(self) -> timedelta:
        """Extra time a reminder grants before escalation."""
        if self.escalation_days:
            return timedelta(days=self.escalation_days[0])
        return timedelta(0)

    @property
    def withdrawal_threshold(self) -> timedelta:
        """Age at which an unanswered, reminded request is withdrawn."""
        return self.reminder_threshold + self.grace_window

    @property
    def final_reminder_lead(self) -> timedelta:
        """How long before the limit the last reminder goes out."""
        if self.reminder_days:
            return timedelta(days=min(self.reminder_days))
        return timedelta(0)

    @classmethod
    def from_record(cls, record: WorkflowTimeLimit) -> "TimeLimitPolicy":
        return cls(
            stage=record.stage,
            time_limit_days=record.time_limit_days,
            reminder_days=tuple(record.reminder_days),
            escalation_days=tuple(record.escalation_days),
        )

    def to_record(self) -> WorkflowTimeLimit:
        return WorkflowTimeLimit(
            stage=self.stage,
            time_limit_days=self.time_limit_days,
            reminder_days=list(self.reminder_days),
            escalation_days=list(self.escalation_days),
            is_active=True,
        )


DEFAULT_POLICIES: dict[str, TimeLimitPolicy] = {
    # 7 days to answer, reminder at 7, withdrawal at 14
    REVIEWER_RESPONSE: TimeLimitPolicy(
        stage=REVIEWER_RESPONSE,
        time_limit_days=7,
        escalation_days=(7,),
        is_default=True,
    ),
    # 21 days to deliver the review once accepted
    REVIEWER_REVIEW: TimeLimitPolicy(
        stage=REVIEWER_REVIEW,
        time_limit_days=21,
        reminder_days=(7, 3, 1),
        escalation_days=(7, 14, 21),
        is_default=True,
    ),
    # Only the 3-day limit drives expiry; offsets are informational
    ASSOCIATE_EDITOR_ASSIGNMENT: TimeLimitPolicy(
        stage=ASSOCIATE_EDITOR_ASSIGNMENT,
        time_limit_days=3,
        reminder_days=(3, 1),
        escalation_days=(3, 7, 14),
        is_default=True,
    ),
}


def default_policy(stage: str) -> TimeLimitPolicy:
    """Compiled-in policy for a stage. Unknown stages get the response-window default."""
    policy = DEFAULT_POLICIES.get(stage)
    if policy is not None:
        return policy
    fallback = DEFAULT_POLICIES[REVIEWER_RESPONSE]
    return TimeLimitPolicy(
        stage=stage,
        time_limit_days=fallback.time_limit_days,
        reminder_days=fallback.reminder_days,
        escalation_days=fallback.escalation_days,
        is_default=True,
    )


class PolicyStore:
    """
    Read access to stage policies.

    No caching beyond what the repository does; callers take one
    snapshot per pass.
    """

    def __init__(self, repository: "InvitationRepository"):
        self._repository = repository

    def get(self, stage: str) -> TimeLimitPolicy:
        """Return the active stored policy for `stage`, or the default."""
        record = self._repository.get_time_limit(stage)
        if record is None or not record.is_active:
            return default_policy(stage)
        return TimeLimitPolicy.from_record(record)

    def list_all(self) -> list[TimeLimitPolicy]:
        """Effective policy for every known stage, sorted by stage key."""
        stages = set(DEFAULT_POLICIES)
        stages.update(r.stage for r in self._repository.list_time_limits())
        return [self.get(stage) for stage in sorted(stages)]
