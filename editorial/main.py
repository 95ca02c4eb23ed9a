"""
Editorial Workflow Service

Main application entry point.

Manuscripts move through editorial stages by events; editors and
reviewers answer invitations by deadline, and a background sweep sends
reminders, withdraws stale invitations and expires unanswered
assignments.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import services
from .errors import ConflictError, InvariantViolation, NotFoundError, ValidationError
from .observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build shared services and start the sweep scheduler."""
    app.state.repository = services.get_repository()
    app.state.workflow = services.get_workflow_service()
    scheduler = services.get_sweep_scheduler()
    app.state.scheduler = scheduler
    scheduler.start()  # Starts background thread if enabled

    logger.info(
        "Application startup complete",
        repository=type(app.state.repository).__name__,
        sweep_enabled=scheduler.config.enabled,
        sweep_interval_seconds=scheduler.config.interval_seconds,
    )

    yield

    services.shutdown()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Editorial Workflow",
    description="""
## Editorial Workflow & Deadline Sweep

### Manuscript lifecycle

```
draft → submitted → editorial_assistant_review → associate_editor_assignment
      → associate_editor_review → reviewer_assignment → under_review
      → {revision_requested ⇄ revision_submitted} → {accepted | rejected} → published
```

`withdrawn` is reachable from any state before a decision.

### Deadlines

- Reviewers have 7 days to answer an invitation, then get one reminder
- Unanswered invitations are withdrawn 14 days after they were sent
- Editor assignments expire at their deadline
- Accepted reviewers get a final reminder before the review is due

### Storage Backends

- **InMemoryInvitationRepository**: Development/testing (default)
- **PostgresInvitationRepository**: Production, safe for several sweeping instances

Set `DATABASE_URL` or `DATABASE_HOST` to use PostgreSQL.
    """,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

from .api.routes import router  # noqa: E402
app.include_router(router)


# ============================================================
# Error mapping
# ============================================================

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(InvariantViolation)
async def invariant_handler(request: Request, exc: InvariantViolation):
    logger.error("Invariant violation", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


# ============================================================
# System endpoints
# ============================================================

@app.get("/health", tags=["System"])
async def health():
    """Liveness only. For dependencies, use /health/detailed."""
    return {"status": "healthy", "service": "editorial-workflow"}


@app.get("/health/detailed", tags=["System"])
def health_detailed(request: Request):
    """
    Detailed health check.

    Checks:
    - Service liveness
    - Repository connectivity
    - Sweep scheduler state

    Returns 200 if healthy, 503 if unhealthy.
    """
    health_status = check_health(
        repository=request.app.state.repository,
        scheduler=request.app.state.scheduler,
    )
    return JSONResponse(
        status_code=200 if health_status.healthy else 503,
        content={
            "status": "healthy" if health_status.healthy else "unhealthy",
            "checks": health_status.checks,
            "duration_ms": health_status.duration_ms,
        },
    )


@app.get("/metrics", tags=["System"])
async def metrics():
    """Counters and latency percentiles."""
    return get_metrics().get_summary()
