"""
Logging, metrics and health reporting for the editorial service.

Every log line carries the current request id (HTTP) or sweep id
(deadline sweep) so one sweep or one request can be followed through
the worker threads. Structured fields are passed as keyword arguments:

    logger = get_logger(__name__)
    logger.info("Reminder sent", invitation_id=str(invitation.id))

Environment:
    EDITORIAL_LOG_LEVEL   DEBUG | INFO | WARNING | ERROR (default INFO)
    EDITORIAL_LOG_FORMAT  json | text (default json when EDITORIAL_PRODUCTION is set)
    EDITORIAL_PRODUCTION  1/true/yes enables production behaviour
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import Counter, deque
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
sweep_id_var: ContextVar[str] = ContextVar("sweep_id", default="")

# Attributes every LogRecord has; anything else came in through `extra`
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_PASSTHROUGH_KWARGS = ("exc_info", "stack_info", "stacklevel", "extra")


def is_production() -> bool:
    return os.environ.get("EDITORIAL_PRODUCTION", "").lower() in ("1", "true", "yes")


def _log_level() -> int:
    level = logging.getLevelName(os.environ.get("EDITORIAL_LOG_LEVEL", "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _json_output() -> bool:
    choice = os.environ.get("EDITORIAL_LOG_FORMAT", "").lower()
    if choice in ("json", "text"):
        return choice == "json"
    return is_production()


def _correlation() -> Dict[str, str]:
    ids = {}
    if request_id_var.get():
        ids["request_id"] = request_id_var.get()
    if sweep_id_var.get():
        ids["sweep_id"] = sweep_id_var.get()
    return ids


class LogFormatter(logging.Formatter):
    """
    Renders records either as one JSON object per line or as a
    single readable line with trailing key=value fields.
    """

    def __init__(self, json_output: bool = False):
        super().__init__()
        self.json_output = json_output

    @staticmethod
    def _fields(record: logging.LogRecord) -> Dict[str, Any]:
        return {
            key: value for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created, tz=timezone.utc)
        ids = _correlation()
        fields = self._fields(record)

        if self.json_output:
            payload = {
                "ts": when.isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "event": record.getMessage(),
                **ids,
                **fields,
            }
            if record.exc_info:
                payload["exception"] = self.formatException(record.exc_info)
            return json.dumps(payload, default=str)

        tag = " ".join(f"{k[:-3]}={v[:8]}" for k, v in ids.items())
        line = f"{when:%H:%M:%S} {record.levelname:<7} {record.name}"
        if tag:
            line += f" [{tag}]"
        line += f" {record.getMessage()}"
        if fields:
            line += " | " + ", ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """Moves arbitrary keyword arguments into the record's `extra`."""

    def process(self, msg, kwargs):
        extra = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in _PASSTHROUGH_KWARGS]:
            extra[key] = kwargs.pop(key)
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Install a single stdout handler on the root logger.

    Safe to call more than once; earlier handlers are replaced.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(LogFormatter(json_output=_json_output()))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(_log_level())

    for noisy in ("uvicorn.access", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a request id for the duration of a request and logs its outcome."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        bound = request_id_var.set(request_id)
        log = get_logger("editorial.http")
        started = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception:
            log.exception("Unhandled error", method=request.method, path=request.url.path)
            raise
        finally:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
            get_metrics().record_request(elapsed_ms, success=status_code < 500)
            log.log(
                logging.WARNING if status_code >= 400 else logging.INFO,
                "Request handled",
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                elapsed_ms=elapsed_ms,
            )
            request_id_var.reset(bound)


class MetricsCollector:
    """
    Process-local counters and latency samples.

    Sweep rows are handled on worker threads, so all access goes through
    one lock.
    """

    COUNTERS = (
        "reminders_sent",
        "withdrawals",
        "expirations",
        "review_reminders_sent",
        "dispatch_failures",
        "dispatch_timeouts",
        "cas_conflicts",
        "sweeps_run",
        "sweeps_failed",
        "requests_total",
        "requests_failed",
    )
    MAX_SAMPLES = 1000

    def __init__(self):
        self._lock = Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._counts: Counter = Counter({name: 0 for name in self.COUNTERS})
            self._samples = {
                "sweep": deque(maxlen=self.MAX_SAMPLES),
                "request": deque(maxlen=self.MAX_SAMPLES),
            }

    def incr(self, counter: str, amount: int = 1) -> None:
        if counter not in self.COUNTERS:
            raise KeyError(f"Unknown counter: {counter}")
        with self._lock:
            self._counts[counter] += amount

    def count(self, counter: str) -> int:
        with self._lock:
            return self._counts[counter]

    def _observe(self, kind: str, total: str, failed: str, latency_ms: float, success: bool) -> None:
        with self._lock:
            self._counts[total] += 1
            if not success:
                self._counts[failed] += 1
            self._samples[kind].append(latency_ms)

    def record_sweep(self, latency_ms: float, success: bool) -> None:
        self._observe("sweep", "sweeps_run", "sweeps_failed", latency_ms, success)

    def record_request(self, latency_ms: float, success: bool) -> None:
        self._observe("request", "requests_total", "requests_failed", latency_ms, success)

    @staticmethod
    def _quantile(samples, q: float) -> Optional[float]:
        if not samples:
            return None
        ordered = sorted(samples)
        return ordered[min(int(len(ordered) * q), len(ordered) - 1)]

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            summary: Dict[str, Any] = dict(self._counts)
            for kind, samples in self._samples.items():
                summary[f"{kind}_latency_p50_ms"] = self._quantile(samples, 0.5)
                summary[f"{kind}_latency_p95_ms"] = self._quantile(samples, 0.95)
        return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    return _metrics


@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(repository=None, scheduler=None) -> HealthStatus:
    """
    Probe the repository and report the scheduler's last tick.

    A repository that cannot answer a count makes the service unhealthy.
    A scheduler whose last tick failed is reported as degraded but does
    not fail the check.
    """
    from .schemas import InvitationStatus

    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    healthy = True

    if repository is not None:
        try:
            pending = repository.count_invitations(InvitationStatus.PENDING)
            checks["repository"] = {"status": "healthy", "pending_invitations": pending}
        except Exception as e:
            checks["repository"] = {"status": "unhealthy", "error": str(e)}
            healthy = False

    if scheduler is not None:
        status = scheduler.get_status()
        checks["sweep_scheduler"] = {
            "status": "degraded" if status.get("last_error") else "healthy",
            **status,
        }

    return HealthStatus(
        healthy=healthy,
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
