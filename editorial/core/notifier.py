"""
Notification Dispatch

Outbound messages (reviewer reminders, withdrawals, editor assignment
notices) go through an injected NotificationDispatcher. The workflow and
the deadline sweep only know template ids and variables; rendering and
transport belong to the dispatcher implementation.

Implementations:
- InMemoryDispatcher: records every message, used in development and tests
- LoggingDispatcher: writes each message to the structured log only

A dispatcher MUST raise TransientDispatchError when a send fails, so the
caller can decide whether to retry (reminders) or accept the loss
(withdrawal and expiry notices).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Optional
from uuid import uuid4

from ..errors import TransientDispatchError
from ..observability import get_logger

logger = get_logger("editorial.notifier")


class NotificationTemplate(str, Enum):
    """Every message the workflow can send."""
    REVIEW_INVITATION = "review-invitation"
    REVIEW_INVITATION_REMINDER = "review-invitation-reminder"
    REVIEW_INVITATION_WITHDRAWAL = "review-invitation-withdrawal"
    REVIEW_ACCEPTANCE_CONFIRMATION = "review-acceptance-confirmation"
    REVIEW_DECLINED = "review-declined"                     # To the inviting editor
    REVIEW_DUE_REMINDER = "review-due-reminder"             # Accepted, review not yet in
    EDITOR_ASSIGNMENT = "editor-assignment"
    EDITOR_ASSIGNMENT_RESPONSE = "editor-assignment-response"  # To the editorial office
    EDITOR_ASSIGNMENT_EXPIRED = "editor-assignment-expired"    # To the editorial office


def format_deadline(value: datetime) -> str:
    """Human-readable date quoted in messages, e.g. 'Monday, March 10, 2025'."""
    return value.strftime("%A, %B %d, %Y")


class NotificationDispatcher(ABC):
    """Sends one templated message and returns the transport's message id."""

    @abstractmethod
    def dispatch(self, template_id: NotificationTemplate, recipient: str, variables: dict[str, Any]) -> str:
        """
        Send a message.

        Raises:
            TransientDispatchError: The send failed or timed out.
        """
        pass


@dataclass
class SentNotification:
    """A message captured by InMemoryDispatcher."""
    message_id: str
    template_id: NotificationTemplate
    recipient: str
    variables: dict[str, Any] = field(default_factory=dict)


class InMemoryDispatcher(NotificationDispatcher):
    """
    Keeps every sent message in memory.

    `fail_when` lets tests simulate transport outages: if it returns True
    for a (template, recipient) pair the send raises TransientDispatchError.
    """

    def __init__(self, fail_when: Optional[Callable[[NotificationTemplate, str], bool]] = None):
        self.sent: list[SentNotification] = []
        self.fail_when = fail_when
        self._lock = Lock()

    def dispatch(self, template_id: NotificationTemplate, recipient: str, variables: dict[str, Any]) -> str:
        if self.fail_when is not None and self.fail_when(template_id, recipient):
            raise TransientDispatchError(f"Simulated failure sending {template_id.value} to {recipient}")

        message_id = str(uuid4())
        with self._lock:
            self.sent.append(SentNotification(message_id, template_id, recipient, dict(variables)))

        logger.debug(
            "Notification recorded",
            template=template_id.value,
            recipient=recipient,
            message_id=message_id,
        )
        return message_id

    def sent_to(self, recipient: str, template_id: Optional[NotificationTemplate] = None) -> list[SentNotification]:
        """Messages delivered to `recipient`, optionally of one template."""
        with self._lock:
            return [
                n for n in self.sent
                if n.recipient == recipient and (template_id is None or n.template_id == template_id)
            ]

    def clear(self) -> None:
        with self._lock:
            self.sent.clear()


class LoggingDispatcher(NotificationDispatcher):
    """Writes messages to the log instead of sending them. Default outside tests."""

    def dispatch(self, template_id: NotificationTemplate, recipient: str, variables: dict[str, Any]) -> str:
        message_id = str(uuid4())
        logger.info(
            "Notification dispatched",
            template=template_id.value,
            recipient=recipient,
            message_id=message_id,
            variables={k: str(v) for k, v in variables.items()},
        )
        return message_id
