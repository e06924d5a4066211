"""Automation scheduler - polls due enrollments and executes their current step.

Each job is a process-scoped service object with an explicit lifecycle:
start() is idempotent, stop() cancels the pending timer and waits for it, and
ticks are single-flight (a tick requested while one is running is skipped).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from dojoflow.core.config import settings
from dojoflow.core.structured_logging import build_log_context
from dojoflow.db.enums import EnrollmentStatus
from dojoflow.db.session import SessionLocal
from dojoflow.db.types import utcnow
from dojoflow.services import credit_service, crm_service, enrollment_service
from dojoflow.services.action_dispatcher import (
    ActionDispatcher,
    CreditsBlockedError,
    FatalDispatchError,
    RetryableDispatchError,
)
from dojoflow.services.enrollment_service import ClaimedEnrollment
from dojoflow.services.http_service import backoff_delay

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


@dataclass
class TickResult:
    skipped: bool = False
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    blocked: int = 0
    failed: int = 0
    released: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SchedulerStatus:
    name: str
    running: bool
    interval_seconds: int
    tick_in_progress: bool
    last_tick_started_at: datetime | None
    last_tick_finished_at: datetime | None
    last_result: TickResult | None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_result"] = self.last_result.to_dict() if self.last_result else None
        return data


class PeriodicJob(ABC):
    """Runs ``tick(now)`` every ``interval_seconds`` on the event loop."""

    name = "periodic"

    def __init__(self, interval_seconds: int) -> None:
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None
        self._tick_in_progress = False
        self._last_tick_started_at: datetime | None = None
        self._last_tick_finished_at: datetime | None = None
        self._last_result: TickResult | None = None

    @abstractmethod
    async def tick(self, now: datetime) -> TickResult:
        """Do one unit of work."""

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the timer loop. Returns False if it was already running."""
        if self.running:
            return False
        self._task = asyncio.create_task(self._loop(), name=f"{self.name}-loop")
        logger.info("%s started (interval %ss)", self.name, self.interval_seconds)
        return True

    async def stop(self) -> None:
        """Cancel the timer loop and wait for it. An in-flight tick is cancelled too."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("%s stopped", self.name)

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            name=self.name,
            running=self.running,
            interval_seconds=self.interval_seconds,
            tick_in_progress=self._tick_in_progress,
            last_tick_started_at=self._last_tick_started_at,
            last_tick_finished_at=self._last_tick_finished_at,
            last_result=self._last_result,
        )

    async def run_once(self, now: datetime | None = None) -> TickResult:
        """Run one tick now, unless one is already running."""
        if self._tick_in_progress:
            logger.info("%s tick skipped: previous tick still running", self.name)
            return TickResult(skipped=True)

        self._tick_in_progress = True
        self._last_tick_started_at = utcnow()
        try:
            result = await self.tick(now or utcnow())
            self._last_result = result
            return result
        finally:
            self._tick_in_progress = False
            self._last_tick_finished_at = utcnow()

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("%s tick failed", self.name)
            await asyncio.sleep(self.interval_seconds)


class AutomationScheduler(PeriodicJob):
    """Claims due enrollments, dispatches their current step and records the outcome."""

    name = "automation-scheduler"

    def __init__(
        self,
        dispatcher: ActionDispatcher | None = None,
        session_factory: SessionFactory = SessionLocal,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        lease_seconds: int | None = None,
        max_attempts: int | None = None,
    ) -> None:
        super().__init__(interval_seconds or settings.AUTOMATION_POLL_INTERVAL_SECONDS)
        self.dispatcher = dispatcher or ActionDispatcher()
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.AUTOMATION_BATCH_SIZE
        self.lease_seconds = lease_seconds or settings.AUTOMATION_CLAIM_LEASE_SECONDS
        self.max_attempts = max_attempts or settings.AUTOMATION_MAX_STEP_ATTEMPTS

    def retry_delay(self, attempt: int) -> timedelta:
        """Backoff before retry number ``attempt`` (1-based)."""
        seconds = backoff_delay(
            attempt - 1,
            settings.AUTOMATION_RETRY_BASE_DELAY_SECONDS,
            settings.AUTOMATION_RETRY_MAX_DELAY_SECONDS,
            jitter=False,
        )
        return timedelta(seconds=seconds)

    async def tick(self, now: datetime) -> TickResult:
        result = TickResult()
        with self.session_factory() as db:
            claims = enrollment_service.claim_due_enrollments(
                db, now, limit=self.batch_size, lease_seconds=self.lease_seconds
            )
            if claims:
                logger.info("Claimed %s due enrollment(s)", len(claims))

            for claim in claims:
                try:
                    outcome = await self._process(db, claim, now)
                except Exception:
                    db.rollback()
                    result.errors += 1
                    logger.exception(
                        "Unexpected error executing enrollment",
                        extra=build_log_context(enrollment_id=claim.enrollment_id),
                    )
                    continue
                result.processed += 1
                if outcome:
                    setattr(result, outcome, getattr(result, outcome) + 1)
        return result

    async def _process(self, db: Session, claim: ClaimedEnrollment, now: datetime) -> str | None:
        """Execute one claimed enrollment. Returns the TickResult counter to bump."""
        enrollment = enrollment_service.get_enrollment(db, claim.enrollment_id)
        if not enrollment or enrollment.status != EnrollmentStatus.ACTIVE.value:
            return None

        enrollment_id = enrollment.id
        attempt = enrollment.attempt_count + 1
        log_context = build_log_context(
            org_id=enrollment.organization_id,
            enrollment_id=enrollment_id,
            step_id=enrollment.current_step_id,
        )

        step = enrollment.current_step
        if step is None:
            enrollment_service.mark_failed(db, enrollment_id, "Current step no longer exists")
            return "failed"
        entity = crm_service.get_entity(db, enrollment.entity_type, enrollment.entity_id)

        try:
            await self.dispatcher.dispatch(db, step, entity, enrollment)
        except CreditsBlockedError as exc:
            enrollment_service.schedule_retry(
                db,
                enrollment_id,
                now + timedelta(seconds=settings.AUTOMATION_CREDIT_BLOCK_DELAY_SECONDS),
                str(exc),
                count_attempt=False,
            )
            logger.info("Enrollment blocked on credits", extra=log_context)
            return "blocked"
        except RetryableDispatchError as exc:
            if attempt >= self.max_attempts:
                enrollment_service.mark_failed(
                    db, enrollment_id, f"Gave up after {attempt} attempts: {exc}"
                )
                return "failed"
            enrollment_service.schedule_retry(
                db, enrollment_id, now + self.retry_delay(attempt), str(exc)
            )
            logger.warning(
                "Step attempt %s failed, will retry: %s", attempt, exc, extra=log_context
            )
            return "retried"
        except FatalDispatchError as exc:
            enrollment_service.mark_failed(db, enrollment_id, str(exc))
            return "failed"
        except credit_service.LedgerUnavailableError as exc:
            db.rollback()
            enrollment_service.release_claim(db, enrollment_id, claim.due_at)
            logger.error("Credit ledger unavailable, released claim: %s", exc, extra=log_context)
            return "released"

        # No-op if the enrollment was cancelled while the step was in flight
        enrollment_service.advance(db, enrollment_id, now=now)
        return "succeeded"


class CreditResetJob(PeriodicJob):
    """Starts a new credit period for every organization whose period has ended."""

    name = "credit-reset"

    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        interval_seconds: int | None = None,
    ) -> None:
        super().__init__(interval_seconds or settings.CREDIT_RESET_CHECK_INTERVAL_SECONDS)
        self.session_factory = session_factory

    async def tick(self, now: datetime) -> TickResult:
        with self.session_factory() as db:
            count = credit_service.reset_due_periods(db, now=now)
        return TickResult(processed=count, succeeded=count)
