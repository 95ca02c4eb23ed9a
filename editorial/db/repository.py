"""
Invitation Repository Abstraction

This module defines the InvitationRepository interface and provides two
implementations:
- InMemoryInvitationRepository: For development and testing
- PostgresInvitationRepository: For production with durability and
  multi-instance safety

The repository is responsible for:
- Durable storage of manuscripts, editor assignments, reviewer invitations
  and stage time limits
- Range scans used by the deadline sweep
- Atomic compare-and-set on the status field (optimistic concurrency)
- Re-checking record invariants at the write boundary

TRANSACTION CONTRACT:
Multi-row writes MUST use the begin() context manager:

    with repository.begin() as ctx:
        if not ctx.compare_and_set(RecordKind.MANUSCRIPT, m_id, old, {"status": new}):
            ctx.rollback()
            return conflict
        ctx.insert(RecordKind.INVITATION, invitation)
        ctx.commit()

Anything not committed when the block exits is rolled back.

CAS CONTRACT:
compare_and_set() returns False, without raising, when the row's status
(or any extra expected field) no longer matches. The caller skips that
row. This is what lets several sweep instances run side by side: exactly
one of them wins each row.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import RLock
from typing import Any, Callable, Generator, Optional
from uuid import UUID

from pydantic import BaseModel

from ..errors import InvariantViolation
from ..schemas import (
    AssignmentStatus,
    EditorAssignment,
    InvitationStatus,
    Manuscript,
    ReviewerInvitation,
    WorkflowTimeLimit,
)
from ..observability import get_logger

logger = get_logger(__name__)


# ============================================================
# EXCEPTIONS
# ============================================================

class RepositoryError(Exception):
    """Base exception for repository errors (storage unavailable, bad SQL)."""
    pass


class DuplicateRecordError(RepositoryError):
    """Raised when inserting a record whose id or token already exists."""
    pass


# ============================================================
# RECORD KINDS
# ============================================================

class RecordKind(str, Enum):
    """Which logical table a record lives in."""
    MANUSCRIPT = "manuscripts"
    ASSIGNMENT = "editor_assignments"
    INVITATION = "reviewer_invitations"


MODELS: dict[RecordKind, type[BaseModel]] = {
    RecordKind.MANUSCRIPT: Manuscript,
    RecordKind.ASSIGNMENT: EditorAssignment,
    RecordKind.INVITATION: ReviewerInvitation,
}


def check_invariants(kind: RecordKind, record: BaseModel) -> None:
    """
    Refuse records that break a row invariant.

    Raises InvariantViolation. The state machine should never produce
    such a record; this is the last line before storage.
    """
    if kind == RecordKind.ASSIGNMENT:
        if record.conflict_declared and record.status == AssignmentStatus.ACCEPTED:
            raise InvariantViolation(
                f"Assignment {record.id} would be accepted with a declared conflict of interest"
            )

    elif kind == RecordKind.INVITATION:
        if record.withdrawn_at is not None and record.status != InvitationStatus.WITHDRAWN:
            raise InvariantViolation(
                f"Invitation {record.id} has withdrawn_at but status {record.status.value}"
            )
        if record.status == InvitationStatus.WITHDRAWN:
            if record.first_reminder_sent is None:
                raise InvariantViolation(
                    f"Invitation {record.id} would be withdrawn without a prior reminder"
                )
            if record.withdrawn_at is not None and record.first_reminder_sent > record.withdrawn_at:
                raise InvariantViolation(
                    f"Invitation {record.id} was reminded after it was withdrawn"
                )
        has_review_deadline = record.review_deadline is not None
        if has_review_deadline != (record.status == InvitationStatus.ACCEPTED):
            raise InvariantViolation(
                f"Invitation {record.id} has review_deadline={record.review_deadline} "
                f"with status {record.status.value}"
            )


def merge(record: BaseModel, mutation: dict[str, Any]) -> BaseModel:
    """Apply a field mutation to a record, re-validating the result."""
    model = type(record)
    unknown = set(mutation) - set(model.model_fields) | ({"id"} & set(mutation))
    if unknown:
        raise ValueError(f"Cannot mutate {model.__name__} fields: {sorted(unknown)}")
    data = record.model_dump()
    data.update(mutation)
    return model.model_validate(data)


def _matches(record: BaseModel, expected_status: Any, expected: Optional[dict[str, Any]]) -> bool:
    if record.status != expected_status:
        return False
    for name, value in (expected or {}).items():
        if getattr(record, name) != value:
            return False
    return True


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# WRITE CONTEXT
# ============================================================

@dataclass
class WriteContext:
    """
    Transaction context for multi-row writes.

    Holds the connection (or in-memory staging area) for one transaction.
    All transaction state lives HERE, not on the repository, so the same
    repository instance can be shared across threads.

    Usage:
        with repository.begin() as ctx:
            ctx.insert(RecordKind.ASSIGNMENT, assignment)
            ctx.commit()
    """
    _store: "InvitationRepository"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _staged: dict = field(default_factory=dict)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def _require_open(self) -> None:
        if self._committed:
            raise RepositoryError("Transaction already committed")
        if self._rolled_back:
            raise RepositoryError("Transaction already rolled back")

    def insert(self, kind: RecordKind, record: BaseModel) -> None:
        """Insert a new record. Raises DuplicateRecordError if it exists."""
        self._require_open()
        check_invariants(kind, record)
        self._store._do_insert(self, kind, record)

    def compare_and_set(
        self,
        kind: RecordKind,
        record_id: UUID,
        expected_status: Any,
        mutation: dict[str, Any],
        expected: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Update a row only if its status (and `expected` fields) still match.

        Returns False if the row is missing or another writer got there first.
        Raises InvariantViolation if the merged row breaks an invariant.
        """
        self._require_open()
        mutation = dict(mutation)
        mutation.setdefault("updated_at", _utcnow())
        return self._store._do_compare_and_set(
            self, kind, record_id, expected_status, mutation, expected
        )

    def commit(self) -> None:
        self._require_open()
        self._store._do_commit(self)
        self._committed = True

    def rollback(self) -> None:
        """Explicitly rollback this transaction."""
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class InvitationRepository(ABC):
    """
    Abstract base class for workflow storage.

    Implementations must ensure:
    1. compare_and_set is atomic per row
    2. begin() scopes every write of one transaction to one connection
    3. invariants are checked on every insert and update
    4. reads return copies; mutating a returned record changes nothing
    """

    # ----------------------------------------------------------------
    # Transactions
    # ----------------------------------------------------------------

    @contextmanager
    @abstractmethod
    def begin(self) -> Generator[WriteContext, None, None]:
        """Begin a write transaction. Uncommitted work is rolled back on exit."""
        pass

    @abstractmethod
    def _do_insert(self, ctx: WriteContext, kind: RecordKind, record: BaseModel) -> None:
        """Internal: insert within ctx. Use ctx.insert() instead."""
        pass

    @abstractmethod
    def _do_compare_and_set(
        self,
        ctx: WriteContext,
        kind: RecordKind,
        record_id: UUID,
        expected_status: Any,
        mutation: dict[str, Any],
        expected: Optional[dict[str, Any]],
    ) -> bool:
        """Internal: conditional update within ctx. Use ctx.compare_and_set() instead."""
        pass

    @abstractmethod
    def _do_commit(self, ctx: WriteContext) -> None:
        pass

    @abstractmethod
    def _do_rollback(self, ctx: WriteContext) -> None:
        pass

    def compare_and_set(
        self,
        kind: RecordKind,
        record_id: UUID,
        expected_status: Any,
        mutation: dict[str, Any],
        expected: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Single-row compare-and-set in its own transaction."""
        with self.begin() as ctx:
            if not ctx.compare_and_set(kind, record_id, expected_status, mutation, expected):
                return False
            ctx.commit()
            return True

    def _insert_one(self, kind: RecordKind, record: BaseModel) -> None:
        with self.begin() as ctx:
            ctx.insert(kind, record)
            ctx.commit()

    def add_manuscript(self, manuscript: Manuscript) -> None:
        self._insert_one(RecordKind.MANUSCRIPT, manuscript)

    def add_assignment(self, assignment: EditorAssignment) -> None:
        self._insert_one(RecordKind.ASSIGNMENT, assignment)

    def add_invitation(self, invitation: ReviewerInvitation) -> None:
        self._insert_one(RecordKind.INVITATION, invitation)

    # ----------------------------------------------------------------
    # Point reads
    # ----------------------------------------------------------------

    @abstractmethod
    def get_manuscript(self, manuscript_id: UUID) -> Optional[Manuscript]:
        pass

    @abstractmethod
    def get_assignment(self, assignment_id: UUID) -> Optional[EditorAssignment]:
        pass

    @abstractmethod
    def get_invitation(self, invitation_id: UUID) -> Optional[ReviewerInvitation]:
        pass

    @abstractmethod
    def get_invitation_by_token(self, token: str) -> Optional[ReviewerInvitation]:
        pass

    @abstractmethod
    def list_assignments_for_manuscript(self, manuscript_id: UUID) -> list[EditorAssignment]:
        pass

    @abstractmethod
    def list_invitations_for_manuscript(self, manuscript_id: UUID) -> list[ReviewerInvitation]:
        pass

    # ----------------------------------------------------------------
    # Sweep scans
    # ----------------------------------------------------------------

    @abstractmethod
    def find_assignments_pending(self, before: datetime) -> list[EditorAssignment]:
        """Pending assignments whose deadline is earlier than `before`."""
        pass

    @abstractmethod
    def find_invitations_needing_reminder(self, before: datetime) -> list[ReviewerInvitation]:
        """Pending invitations sent at or before `before` and never reminded."""
        pass

    @abstractmethod
    def find_invitations_needing_withdrawal(self, before: datetime) -> list[ReviewerInvitation]:
        """Pending invitations sent at or before `before` that were already reminded."""
        pass

    @abstractmethod
    def find_reviews_due(self, before: datetime) -> list[ReviewerInvitation]:
        """Accepted invitations, review not in, deadline at or before `before`, no final reminder."""
        pass

    def deadline_statistics(
        self,
        now: datetime,
        reminder_before: datetime,
        withdrawal_before: datetime,
    ) -> dict[str, int]:
        """Counts of rows the next sweep would act on."""
        return {
            "pending_reminders": len(self.find_invitations_needing_reminder(reminder_before)),
            "pending_withdrawals": len(self.find_invitations_needing_withdrawal(withdrawal_before)),
            "overdue_assignments": len(self.find_assignments_pending(now)),
            "total_pending_invitations": self.count_invitations(InvitationStatus.PENDING),
        }

    @abstractmethod
    def count_invitations(self, status: InvitationStatus) -> int:
        pass

    # ----------------------------------------------------------------
    # Time limits
    # ----------------------------------------------------------------

    @abstractmethod
    def get_time_limit(self, stage: str) -> Optional[WorkflowTimeLimit]:
        pass

    @abstractmethod
    def list_time_limits(self) -> list[WorkflowTimeLimit]:
        pass

    @abstractmethod
    def upsert_time_limit(self, time_limit: WorkflowTimeLimit) -> None:
        pass

    def close(self) -> None:
        """Release resources. No-op by default."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryInvitationRepository(InvitationRepository):
    """
    In-memory implementation of InvitationRepository.

    Suitable for:
    - Development
    - Testing
    - Single-instance deployments without persistence requirements

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)
    """

    def __init__(self):
        self._tables: dict[RecordKind, dict[UUID, BaseModel]] = {
            kind: {} for kind in RecordKind
        }
        self._tokens: dict[str, UUID] = {}
        self._time_limits: dict[str, WorkflowTimeLimit] = {}
        self._lock = RLock()

    @contextmanager
    def begin(self) -> Generator[WriteContext, None, None]:
        """Begin a transaction holding the repository lock."""
        with self._lock:
            ctx = WriteContext(_store=self, _conn="in_memory_lock")
            try:
                yield ctx
            finally:
                if not ctx._committed and not ctx._rolled_back:
                    ctx.rollback()

    def _current(self, ctx: WriteContext, kind: RecordKind, record_id: UUID) -> Optional[BaseModel]:
        staged = ctx._staged.get((kind, record_id))
        if staged is not None:
            return staged
        return self._tables[kind].get(record_id)

    def _do_insert(self, ctx: WriteContext, kind: RecordKind, record: BaseModel) -> None:
        if self._current(ctx, kind, record.id) is not None:
            raise DuplicateRecordError(f"{kind.value} {record.id} already exists")
        if kind == RecordKind.INVITATION:
            staged_tokens = {
                r.invitation_token for (k, _), r in ctx._staged.items()
                if k == RecordKind.INVITATION
            }
            if record.invitation_token in self._tokens or record.invitation_token in staged_tokens:
                raise DuplicateRecordError("invitation_token already in use")
        ctx._staged[(kind, record.id)] = deepcopy(record)

    def _do_compare_and_set(
        self,
        ctx: WriteContext,
        kind: RecordKind,
        record_id: UUID,
        expected_status: Any,
        mutation: dict[str, Any],
        expected: Optional[dict[str, Any]],
    ) -> bool:
        current = self._current(ctx, kind, record_id)
        if current is None or not _matches(current, expected_status, expected):
            return False
        updated = merge(current, mutation)
        check_invariants(kind, updated)
        ctx._staged[(kind, record_id)] = updated
        return True

    def _do_commit(self, ctx: WriteContext) -> None:
        for (kind, record_id), record in ctx._staged.items():
            self._tables[kind][record_id] = record
            if kind == RecordKind.INVITATION:
                self._tokens[record.invitation_token] = record_id
        ctx._staged.clear()
        ctx._conn = None

    def _do_rollback(self, ctx: WriteContext) -> None:
        ctx._staged.clear()
        ctx._conn = None

    def _get(self, kind: RecordKind, record_id: UUID) -> Optional[BaseModel]:
        with self._lock:
            record = self._tables[kind].get(record_id)
            return deepcopy(record) if record is not None else None

    def _select(self, kind: RecordKind, predicate: Callable[[Any], bool], order_by: str) -> list:
        with self._lock:
            rows = [deepcopy(r) for r in self._tables[kind].values() if predicate(r)]
        return sorted(rows, key=lambda r: getattr(r, order_by))

    def get_manuscript(self, manuscript_id: UUID) -> Optional[Manuscript]:
        return self._get(RecordKind.MANUSCRIPT, manuscript_id)

    def get_assignment(self, assignment_id: UUID) -> Optional[EditorAssignment]:
        return self._get(RecordKind.ASSIGNMENT, assignment_id)

    def get_invitation(self, invitation_id: UUID) -> Optional[ReviewerInvitation]:
        return self._get(RecordKind.INVITATION, invitation_id)

    def get_invitation_by_token(self, token: str) -> Optional[ReviewerInvitation]:
        with self._lock:
            invitation_id = self._tokens.get(token)
        if invitation_id is None:
            return None
        return self.get_invitation(invitation_id)

    def list_assignments_for_manuscript(self, manuscript_id: UUID) -> list[EditorAssignment]:
        return self._select(
            RecordKind.ASSIGNMENT,
            lambda a: a.manuscript_id == manuscript_id,
            "assigned_at",
        )

    def list_invitations_for_manuscript(self, manuscript_id: UUID) -> list[ReviewerInvitation]:
        return self._select(
            RecordKind.INVITATION,
            lambda i: i.manuscript_id == manuscript_id,
            "invited_at",
        )

    def find_assignments_pending(self, before: datetime) -> list[EditorAssignment]:
        return self._select(
            RecordKind.ASSIGNMENT,
            lambda a: a.status == AssignmentStatus.PENDING and a.deadline < before,
            "assigned_at",
        )

    def find_invitations_needing_reminder(self, before: datetime) -> list[ReviewerInvitation]:
        return self._select(
            RecordKind.INVITATION,
            lambda i: (
                i.status == InvitationStatus.PENDING
                and i.invited_at <= before
                and i.first_reminder_sent is None
            ),
            "invited_at",
        )

    def find_invitations_needing_withdrawal(self, before: datetime) -> list[ReviewerInvitation]:
        return self._select(
            RecordKind.INVITATION,
            lambda i: (
                i.status == InvitationStatus.PENDING
                and i.invited_at <= before
                and i.first_reminder_sent is not None
            ),
            "invited_at",
        )

    def find_reviews_due(self, before: datetime) -> list[ReviewerInvitation]:
        return self._select(
            RecordKind.INVITATION,
            lambda i: (
                i.status == InvitationStatus.ACCEPTED
                and i.review_submitted_at is None
                and i.final_reminder_sent is None
                and i.review_deadline is not None
                and i.review_deadline <= before
            ),
            "invited_at",
        )

    def count_invitations(self, status: InvitationStatus) -> int:
        with self._lock:
            return sum(
                1 for i in self._tables[RecordKind.INVITATION].values()
                if i.status == status
            )

    def get_time_limit(self, stage: str) -> Optional[WorkflowTimeLimit]:
        with self._lock:
            record = self._time_limits.get(stage)
            return record.model_copy(deep=True) if record is not None else None

    def list_time_limits(self) -> list[WorkflowTimeLimit]:
        with self._lock:
            return [
                self._time_limits[stage].model_copy(deep=True)
                for stage in sorted(self._time_limits)
            ]

    def upsert_time_limit(self, time_limit: WorkflowTimeLimit) -> None:
        with self._lock:
            self._time_limits[time_limit.stage] = time_limit.model_copy(
                update={"updated_at": _utcnow()}, deep=True
            )

    def clear(self) -> None:
        """Clear all records (for testing only)."""
        with self._lock:
            for table in self._tables.values():
                table.clear()
            self._tokens.clear()
            self._time_limits.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

class PostgresInvitationRepository(InvitationRepository):
    """
    PostgreSQL implementation of InvitationRepository.

    Provides:
    - Full ACID guarantees
    - Row-level CAS via SELECT ... FOR UPDATE NOWAIT then UPDATE
    - Durability (records survive restarts)
    - Multi-instance support (shared database)
    - Lock/statement timeouts to prevent hanging

    THREAD SAFETY:
    All transaction state (conn, cursor) is stored in WriteContext, NOT on
    the repository, so one instance can be shared across sweep threads.

    Requirements:
    - PostgreSQL 12+
    - Tables created from schema.sql (python -m tools.manage init-db)
    - psycopg2 for connection
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    # psycopg2 error codes
    PGCODE_LOCK_NOT_AVAILABLE = '55P03'  # NOWAIT refusal and lock_timeout both raise this
    PGCODE_UNIQUE_VIOLATION = '23505'

    JSONB_COLUMNS = frozenset({"reminder_days", "escalation_days"})

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL repository.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for a row lock (ms). Default 2000.
            statement_timeout_ms: Max statement execution time (ms). Default 10000.
        """
        from psycopg2.extras import register_uuid

        register_uuid()
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    # ----------------------------------------------------------------
    # Value conversion
    # ----------------------------------------------------------------

    def _to_db(self, column: str, value: Any) -> Any:
        from psycopg2.extras import Json

        if column in self.JSONB_COLUMNS:
            return Json(list(value or []))
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (set, frozenset)):
            return sorted(value)
        return value

    @staticmethod
    def _columns(model: type[BaseModel]) -> list[str]:
        return list(model.model_fields)

    def _row_to_model(self, model: type[BaseModel], columns: list[str], row: tuple) -> BaseModel:
        data = dict(zip(columns, row))
        if model is Manuscript:
            data["reviewer_ids"] = set(data.get("reviewer_ids") or [])
        return model.model_validate(data)

    # ----------------------------------------------------------------
    # Transactions
    # ----------------------------------------------------------------

    @contextmanager
    def begin(self) -> Generator[WriteContext, None, None]:
        """
        Begin a transaction with scoped lock/statement timeouts.

        THREAD SAFETY: Connection/cursor stored in ctx, not on self.
        """
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        ctx = None

        try:
            # SET LOCAL keeps the timeouts transaction-scoped
            cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
            cursor.execute("SET LOCAL idle_in_transaction_session_timeout = '30s'")

            ctx = WriteContext(_store=self, _conn=conn, _cursor=cursor)
            yield ctx

        finally:
            if ctx is not None and not ctx._committed:
                try:
                    conn.rollback()
                except Exception as e:
                    logger.warning("Rollback failed on close", error=str(e))
            try:
                cursor.close()
            finally:
                conn.close()

    def _is_lock_refusal(self, e: Exception) -> bool:
        return getattr(e, 'pgcode', None) == self.PGCODE_LOCK_NOT_AVAILABLE

    def _do_insert(self, ctx: WriteContext, kind: RecordKind, record: BaseModel) -> None:
        if ctx._cursor is None:
            raise RepositoryError("_do_insert called outside begin() context")

        model = MODELS[kind]
        columns = self._columns(model)
        values = [self._to_db(c, getattr(record, c)) for c in columns]
        placeholders = ", ".join(["%s"] * len(columns))

        try:
            ctx._cursor.execute(
                f"INSERT INTO {kind.value} ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
        except Exception as e:
            if getattr(e, 'pgcode', None) == self.PGCODE_UNIQUE_VIOLATION:
                raise DuplicateRecordError(f"{kind.value} {record.id} already exists") from e
            raise

    def _do_compare_and_set(
        self,
        ctx: WriteContext,
        kind: RecordKind,
        record_id: UUID,
        expected_status: Any,
        mutation: dict[str, Any],
        expected: Optional[dict[str, Any]],
    ) -> bool:
        if ctx._cursor is None:
            raise RepositoryError("_do_compare_and_set called outside begin() context")

        cursor = ctx._cursor
        model = MODELS[kind]
        columns = self._columns(model)

        # Savepoint so a NOWAIT refusal does not poison the whole transaction
        cursor.execute("SAVEPOINT cas")
        try:
            cursor.execute(
                f"SELECT {', '.join(columns)} FROM {kind.value} WHERE id = %s FOR UPDATE NOWAIT",
                (record_id,),
            )
        except Exception as e:
            if self._is_lock_refusal(e):
                # Another writer holds the row; it wins this round
                cursor.execute("ROLLBACK TO SAVEPOINT cas")
                return False
            raise
        row = cursor.fetchone()
        cursor.execute("RELEASE SAVEPOINT cas")

        if row is None:
            return False

        current = self._row_to_model(model, columns, row)
        if not _matches(current, expected_status, expected):
            return False

        updated = merge(current, mutation)
        check_invariants(kind, updated)

        assignments = ", ".join(f"{c} = %s" for c in mutation)
        values = [self._to_db(c, getattr(updated, c)) for c in mutation]
        cursor.execute(
            f"UPDATE {kind.value} SET {assignments} WHERE id = %s AND status = %s",
            values + [record_id, self._to_db("status", expected_status)],
        )
        return cursor.rowcount == 1

    def _do_commit(self, ctx: WriteContext) -> None:
        if ctx._conn is None:
            raise RepositoryError("_do_commit called outside begin() context")
        ctx._conn.commit()

    def _do_rollback(self, ctx: WriteContext) -> None:
        if ctx._conn is not None:
            try:
                ctx._conn.rollback()
            except Exception as e:
                # Connection is likely broken; the original error is what matters
                logger.warning("Rollback failed", error=str(e))

    # ----------------------------------------------------------------
    # Reads
    # ----------------------------------------------------------------

    def _query(self, model: type[BaseModel], table: str, where: str, params: tuple, order_by: str) -> list:
        columns = self._columns(model)
        conn = self._connection_factory()
        cursor = conn.cursor()

        try:
            cursor.execute(
                f"SELECT {', '.join(columns)} FROM {table} WHERE {where} ORDER BY {order_by}",
                params,
            )
            return [self._row_to_model(model, columns, row) for row in cursor.fetchall()]
        finally:
            cursor.close()
            conn.close()

    def _get_one(self, kind: RecordKind, where: str, params: tuple) -> Optional[BaseModel]:
        rows = self._query(MODELS[kind], kind.value, where, params, "id")
        return rows[0] if rows else None

    def get_manuscript(self, manuscript_id: UUID) -> Optional[Manuscript]:
        return self._get_one(RecordKind.MANUSCRIPT, "id = %s", (manuscript_id,))

    def get_assignment(self, assignment_id: UUID) -> Optional[EditorAssignment]:
        return self._get_one(RecordKind.ASSIGNMENT, "id = %s", (assignment_id,))

    def get_invitation(self, invitation_id: UUID) -> Optional[ReviewerInvitation]:
        return self._get_one(RecordKind.INVITATION, "id = %s", (invitation_id,))

    def get_invitation_by_token(self, token: str) -> Optional[ReviewerInvitation]:
        return self._get_one(RecordKind.INVITATION, "invitation_token = %s", (token,))

    def list_assignments_for_manuscript(self, manuscript_id: UUID) -> list[EditorAssignment]:
        return self._query(
            EditorAssignment, RecordKind.ASSIGNMENT.value,
            "manuscript_id = %s", (manuscript_id,), "assigned_at",
        )

    def list_invitations_for_manuscript(self, manuscript_id: UUID) -> list[ReviewerInvitation]:
        return self._query(
            ReviewerInvitation, RecordKind.INVITATION.value,
            "manuscript_id = %s", (manuscript_id,), "invited_at",
        )

    def find_assignments_pending(self, before: datetime) -> list[EditorAssignment]:
        return self._query(
            EditorAssignment, RecordKind.ASSIGNMENT.value,
            "status = %s AND deadline < %s",
            (AssignmentStatus.PENDING.value, before),
            "assigned_at",
        )

    def find_invitations_needing_reminder(self, before: datetime) -> list[ReviewerInvitation]:
        return self._query(
            ReviewerInvitation, RecordKind.INVITATION.value,
            "status = %s AND invited_at <= %s AND first_reminder_sent IS NULL",
            (InvitationStatus.PENDING.value, before),
            "invited_at",
        )

    def find_invitations_needing_withdrawal(self, before: datetime) -> list[ReviewerInvitation]:
        return self._query(
            ReviewerInvitation, RecordKind.INVITATION.value,
            "status = %s AND invited_at <= %s AND first_reminder_sent IS NOT NULL",
            (InvitationStatus.PENDING.value, before),
            "invited_at",
        )

    def find_reviews_due(self, before: datetime) -> list[ReviewerInvitation]:
        return self._query(
            ReviewerInvitation, RecordKind.INVITATION.value,
            "status = %s AND review_submitted_at IS NULL "
            "AND final_reminder_sent IS NULL AND review_deadline <= %s",
            (InvitationStatus.ACCEPTED.value, before),
            "invited_at",
        )

    def count_invitations(self, status: InvitationStatus) -> int:
        conn = self._connection_factory()
        cursor = conn.cursor()

        try:
            cursor.execute(
                "SELECT COUNT(*) FROM reviewer_invitations WHERE status = %s",
                (status.value,),
            )
            return cursor.fetchone()[0]
        finally:
            cursor.close()
            conn.close()

    # ----------------------------------------------------------------
    # Time limits
    # ----------------------------------------------------------------

    def get_time_limit(self, stage: str) -> Optional[WorkflowTimeLimit]:
        rows = self._query(WorkflowTimeLimit, "workflow_time_limits", "stage = %s", (stage,), "stage")
        return rows[0] if rows else None

    def list_time_limits(self) -> list[WorkflowTimeLimit]:
        return self._query(WorkflowTimeLimit, "workflow_time_limits", "TRUE", (), "stage")

    def upsert_time_limit(self, time_limit: WorkflowTimeLimit) -> None:
        columns = [c for c in self._columns(WorkflowTimeLimit) if c != "updated_at"]
        values = [self._to_db(c, getattr(time_limit, c)) for c in columns]
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c != "stage")

        with self.begin() as ctx:
            ctx._cursor.execute(
                f"INSERT INTO workflow_time_limits ({', '.join(columns)}, updated_at) "
                f"VALUES ({', '.join(['%s'] * len(columns))}, NOW()) "
                f"ON CONFLICT (stage) DO UPDATE SET {updates}, updated_at = NOW()",
                values,
            )
            ctx.commit()
