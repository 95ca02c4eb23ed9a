"""
Workflow error taxonomy.

Business-rule outcomes (declined, expired, conflict of interest) are NOT
exceptions; they come back from the state machine as typed results.
The classes here are for conditions a caller cannot recover from by
changing its input.
"""


class WorkflowError(Exception):
    """Base exception for workflow errors."""
    pass


class ValidationError(WorkflowError):
    """Raised when input to a workflow command is malformed."""
    pass


class ConflictError(WorkflowError):
    """Raised when the stored state no longer matches what the caller saw."""
    pass


class NotFoundError(WorkflowError):
    """Raised when a manuscript, assignment or invitation does not exist."""
    pass


class TransientDispatchError(WorkflowError):
    """Raised by a notification dispatcher when a send fails or times out."""
    pass


class InvariantViolation(WorkflowError):
    """
    Raised when a write would break a record invariant.

    The state machine should make this impossible; seeing it means a bug.
    """
    pass
