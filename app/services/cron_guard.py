"""Guarded execution of scheduled jobs.

Every job, whether fired by the HTTP cron endpoint, an operator or Celery
beat, goes through CronGuard.run:

    unauthorized              -> AuthorizationError (no side effects)
    lock unavailable          -> skipped (one audit row, nothing else)
    locked -> running -> success | partial | error

The lock is released on every terminal transition, and handler exceptions
become an error report instead of propagating.
"""

import hmac
import time
import uuid
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)


class AuthorizationError(Exception):
    """Missing or wrong bearer token."""


class JobStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    ERROR = "error"


class LockProvider(Protocol):
    def hold(self, key: int) -> AbstractAsyncContextManager[bool]: ...


class RunLog(Protocol):
    async def start_run(self, job: str, request_id: str, status: str = "running") -> int: ...

    async def finish_run(
        self,
        run_id: int,
        status: str,
        summary: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None: ...


def bearer_token(authorization: str | None) -> str:
    """Extract the token from an `Authorization: Bearer <token>` header."""
    if not authorization:
        return ""
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def check_bearer(authorization: str | None, *secrets: str) -> bool:
    """Constant-time comparison against any configured (non-empty) secret."""
    token = bearer_token(authorization)
    if not token:
        return False
    return any(
        hmac.compare_digest(token.encode(), secret.encode()) for secret in secrets if secret
    )


@dataclass
class CronContext:
    """Passed to job handlers: identity plus a wall-clock budget."""

    job: str
    request_id: str
    budget_seconds: float
    clock: Callable[[], float] = time.monotonic
    started: float = field(default=0.0)

    def __post_init__(self):
        if not self.started:
            self.started = self.clock()

    def elapsed(self) -> float:
        """Seconds since the job started."""
        return self.clock() - self.started

    def elapsed_ms(self) -> int:
        return int(self.elapsed() * 1000)

    def over_budget(self) -> bool:
        return self.elapsed() > self.budget_seconds


@dataclass
class CronResult:
    """What a handler returns."""

    summary: dict[str, Any]
    status: JobStatus = JobStatus.SUCCESS


@dataclass
class CronReport:
    """What the caller gets back."""

    ok: bool
    request_id: str
    status: JobStatus
    duration_ms: int = 0
    summary: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    reason: str | None = None

    @property
    def skipped(self) -> bool:
        return self.status == JobStatus.SKIPPED

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "ok": self.ok,
            "requestId": self.request_id,
            "durationMs": self.duration_ms,
            "status": self.status.value,
        }
        if self.skipped:
            body.update(skipped=True, reason=self.reason)
        elif self.error is not None:
            body["error"] = self.error
        else:
            body["summary"] = self.summary
        return body


Handler = Callable[[CronContext], Awaitable[CronResult]]


class CronGuard:
    """Run a handler under an advisory lock with audit logging."""

    def __init__(
        self,
        locks: LockProvider,
        run_log: RunLog,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.locks = locks
        self.run_log = run_log
        self.clock = clock

    @staticmethod
    def authorize(authorization: str | None, *secrets: str) -> None:
        if not check_bearer(authorization, *secrets):
            raise AuthorizationError("Unauthorized")

    async def run(
        self,
        job: str,
        lock_key: int,
        handler: Handler,
        budget_seconds: float,
        request_id: str | None = None,
    ) -> CronReport:
        request_id = request_id or str(uuid.uuid4())
        ctx = CronContext(job, request_id, budget_seconds, clock=self.clock)
        log = logger.bind(job=job, request_id=request_id)

        try:
            async with self.locks.hold(lock_key) as locked:
                if not locked:
                    return await self._skip(job, request_id, ctx)
                return await self._run_locked(job, request_id, ctx, handler, log)
        except Exception as e:
            # Lock acquisition itself failed (database unreachable, say).
            log.error("job_lock_error", error=str(e))
            return CronReport(
                ok=False,
                request_id=request_id,
                status=JobStatus.ERROR,
                duration_ms=ctx.elapsed_ms(),
                error=str(e),
            )

    async def _skip(self, job: str, request_id: str, ctx: CronContext) -> CronReport:
        logger.info("job_skipped", job=job, request_id=request_id, reason="lock")
        try:
            run_id = await self.run_log.start_run(job, request_id, JobStatus.SKIPPED.value)
            await self.run_log.finish_run(run_id, JobStatus.SKIPPED.value, {"reason": "lock"})
        except Exception as e:
            logger.warning("skip_audit_failed", job=job, error=str(e))
        return CronReport(
            ok=True,
            request_id=request_id,
            status=JobStatus.SKIPPED,
            duration_ms=ctx.elapsed_ms(),
            reason="lock",
        )

    async def _run_locked(
        self,
        job: str,
        request_id: str,
        ctx: CronContext,
        handler: Handler,
        log,
    ) -> CronReport:
        run_id: int | None = None
        try:
            run_id = await self.run_log.start_run(job, request_id)
            log.info("job_started", run_id=run_id)

            result = await handler(ctx)
            duration_ms = ctx.elapsed_ms()

            await self.run_log.finish_run(
                run_id, result.status.value, {**result.summary, "durationMs": duration_ms}
            )
            log.info(
                "job_completed",
                status=result.status.value,
                duration_ms=duration_ms,
                summary=result.summary,
            )
            return CronReport(
                ok=True,
                request_id=request_id,
                status=result.status,
                duration_ms=duration_ms,
                summary=result.summary,
            )
        except Exception as e:
            message = str(e) or e.__class__.__name__
            log.error("job_failed", error=message, exc_info=True)
            if run_id is not None:
                try:
                    await self.run_log.finish_run(run_id, JobStatus.ERROR.value, error=message)
                except Exception as audit_error:
                    log.warning("error_audit_failed", error=str(audit_error))
            return CronReport(
                ok=False,
                request_id=request_id,
                status=JobStatus.ERROR,
                duration_ms=ctx.elapsed_ms(),
                error=message,
            )
