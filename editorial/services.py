"""
Shared Service Instances

Builds the repository, dispatcher, workflow service, sweep engine and
scheduler once per process and hands them out to the API and the CLI.

Storage is selected from the environment:
- EDITORIAL_REPOSITORY_DRIVER: Explicit driver (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: in-memory (development only, nothing survives a restart)

Tests replace the instances with configure() instead of touching the
environment.
"""

from threading import Lock
from typing import Optional

from .core.notifier import LoggingDispatcher, NotificationDispatcher
from .core.policy import PolicyStore
from .core.scheduler import SweepConfig, SweepScheduler
from .core.sweep import DeadlineSweepEngine
from .core.workflow import WorkflowConfig, WorkflowService
from .db.config import DatabaseConfig, RepositoryDriver, get_repository_driver
from .db.repository import InMemoryInvitationRepository, InvitationRepository, RepositoryError
from .observability import get_logger

logger = get_logger("editorial.services")

_lock = Lock()
_repository: Optional[InvitationRepository] = None
_dispatcher: Optional[NotificationDispatcher] = None
_workflow: Optional[WorkflowService] = None
_engine: Optional[DeadlineSweepEngine] = None
_scheduler: Optional[SweepScheduler] = None


def _create_repository() -> InvitationRepository:
    """
    Create the repository the environment asks for.

    Raises RepositoryError if PostgreSQL was requested but is unreachable;
    silently falling back to memory would lose every write.
    """
    driver = get_repository_driver()

    if driver == RepositoryDriver.MEMORY:
        logger.info("Using in-memory repository (no persistence)")
        return InMemoryInvitationRepository()

    return create_postgres_repository(DatabaseConfig.resolve())


def create_postgres_repository(config: DatabaseConfig) -> InvitationRepository:
    """Create a PostgresInvitationRepository and check it can connect."""
    import psycopg2

    from .db.repository import PostgresInvitationRepository

    def connection_factory():
        return psycopg2.connect(**config.connect_kwargs())

    try:
        connection_factory().close()
    except psycopg2.Error as e:
        logger.error(
            "Could not connect to PostgreSQL",
            database=config.describe(),
            error=str(e),
        )
        raise RepositoryError(f"Could not connect to PostgreSQL: {e}") from e

    logger.info(
        "PostgreSQL repository ready",
        host=config.host,
        port=config.port,
        database=config.database,
    )
    return PostgresInvitationRepository(connection_factory)


def configure(
    repository: Optional[InvitationRepository] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    workflow: Optional[WorkflowService] = None,
    engine: Optional[DeadlineSweepEngine] = None,
    scheduler: Optional[SweepScheduler] = None,
) -> None:
    """Install explicit instances (tests, embedding). None resets that slot."""
    global _repository, _dispatcher, _workflow, _engine, _scheduler
    with _lock:
        _repository = repository
        _dispatcher = dispatcher
        _workflow = workflow
        _engine = engine
        _scheduler = scheduler


def get_repository() -> InvitationRepository:
    global _repository
    with _lock:
        if _repository is None:
            _repository = _create_repository()
        return _repository


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    with _lock:
        if _dispatcher is None:
            _dispatcher = LoggingDispatcher()
        return _dispatcher


def get_workflow_service() -> WorkflowService:
    global _workflow
    repository = get_repository()
    dispatcher = get_dispatcher()
    with _lock:
        if _workflow is None:
            _workflow = WorkflowService(
                repository=repository,
                dispatcher=dispatcher,
                policy_store=PolicyStore(repository),
                config=WorkflowConfig.from_env(),
            )
        return _workflow


def get_sweep_engine(config: Optional[SweepConfig] = None) -> DeadlineSweepEngine:
    global _engine
    workflow = get_workflow_service()
    dispatcher = get_dispatcher()
    with _lock:
        if _engine is None:
            config = config or SweepConfig.from_env()
            _engine = DeadlineSweepEngine(
                repository=workflow.repository,
                dispatcher=dispatcher,
                workflow=workflow,
                fan_out=config.fan_out,
                dispatch_timeout_seconds=config.dispatch_timeout_seconds,
            )
        return _engine


def get_sweep_scheduler() -> SweepScheduler:
    global _scheduler
    config = SweepConfig.from_env()
    engine = get_sweep_engine(config)
    with _lock:
        if _scheduler is None:
            _scheduler = SweepScheduler(engine, config)
        return _scheduler


def shutdown() -> None:
    """Stop the scheduler, release connections, and forget the instances."""
    with _lock:
        scheduler, repository = _scheduler, _repository
    if scheduler is not None:
        scheduler.stop()
    if repository is not None:
        repository.close()
    configure()
