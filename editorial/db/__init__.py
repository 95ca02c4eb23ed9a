"""
Database Layer for the Editorial Workflow

Provides:
- PostgreSQL schema (schema.sql)
- InvitationRepository abstraction (InMemory for dev/tests, Postgres for prod)
- Environment-based configuration
"""

from .repository import (
    InvitationRepository,
    InMemoryInvitationRepository,
    PostgresInvitationRepository,
    RecordKind,
    RepositoryError,
    DuplicateRecordError,
    WriteContext,
)
from .config import DatabaseConfig, RepositoryDriver, get_database_url, get_repository_driver

__all__ = [
    "InvitationRepository",
    "InMemoryInvitationRepository",
    "PostgresInvitationRepository",
    "RecordKind",
    "RepositoryError",
    "DuplicateRecordError",
    "WriteContext",
    "DatabaseConfig",
    "RepositoryDriver",
    "get_database_url",
    "get_repository_driver",
]
