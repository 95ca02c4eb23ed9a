# Core workflow services
from .state_machine import (
    Transition,
    InvalidTransition,
    ResponseError,
    ResponseOutcome,
    apply,
    accepts_event,
    allowed_events,
    respond_to_assignment,
    respond_to_invitation,
)
from .policy import (
    PolicyStore,
    TimeLimitPolicy,
    DEFAULT_POLICIES,
    REVIEWER_RESPONSE,
    REVIEWER_REVIEW,
    ASSOCIATE_EDITOR_ASSIGNMENT,
)
from .notifier import (
    NotificationDispatcher,
    NotificationTemplate,
    InMemoryDispatcher,
    LoggingDispatcher,
)
from .tokens import InvitationTokenIssuer
from .workflow import (
    WorkflowService,
    WorkflowConfig,
    EventResult,
    ResponseResult,
)
from .sweep import DeadlineSweepEngine, SweepResult
from .scheduler import (
    SweepScheduler,
    SweepConfig,
)

__all__ = [
    "Transition",
    "InvalidTransition",
    "ResponseError",
    "ResponseOutcome",
    "apply",
    "accepts_event",
    "allowed_events",
    "respond_to_assignment",
    "respond_to_invitation",
    "PolicyStore",
    "TimeLimitPolicy",
    "DEFAULT_POLICIES",
    "REVIEWER_RESPONSE",
    "REVIEWER_REVIEW",
    "ASSOCIATE_EDITOR_ASSIGNMENT",
    "NotificationDispatcher",
    "NotificationTemplate",
    "InMemoryDispatcher",
    "LoggingDispatcher",
    "InvitationTokenIssuer",
    "WorkflowService",
    "WorkflowConfig",
    "EventResult",
    "ResponseResult",
    "DeadlineSweepEngine",
    "SweepResult",
    "SweepScheduler",
    "SweepConfig",
]
