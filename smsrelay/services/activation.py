from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from smsrelay.core.config import settings
from smsrelay.models.activation_job import JOB_DONE, JOB_FAILED, JOB_SCHEDULED, JOB_SKIPPED, ActivationJob
from smsrelay.models.common import utcnow
from smsrelay.models.relay_request import RelayRequest
from smsrelay.services.errors import NotFoundError, TransientError

if TYPE_CHECKING:
    from smsrelay.services.request_lifecycle import RequestLifecycleManager

_LOG = logging.getLogger("smsrelay.activation")

ACTIVATION_ACTOR = "activation-scheduler"


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class ActivationScheduler:
    """Persists the delayed ``pending -> activated`` step as a job row.

    Jobs survive API restarts and client disconnects; a Celery beat task
    picks them up once due. There is no cancel: a job that fires after the
    request has moved on is recorded as skipped.
    """

    def __init__(self, db: Session, *, delay_seconds: int | None = None):
        self.db = db
        self.delay = timedelta(seconds=int(settings.ACTIVATION_DELAY_SECONDS if delay_seconds is None else delay_seconds))

    def due_at_for(self, request: RelayRequest) -> datetime:
        return _as_utc(request.created_at or utcnow()) + self.delay

    def schedule(self, request: RelayRequest) -> ActivationJob:
        """Adds the job to the caller's transaction; the caller commits."""
        job = ActivationJob(request_id=request.id, due_at=self.due_at_for(request), state=JOB_SCHEDULED, attempts=0)
        self.db.add(job)
        return job

    def jobs_for(self, request_id) -> list[ActivationJob]:
        return (
            self.db.query(ActivationJob)
            .filter(ActivationJob.request_id == request_id)
            .order_by(ActivationJob.created_at.asc())
            .all()
        )

    def due_jobs(self, now: datetime, limit: int) -> list[ActivationJob]:
        return (
            self.db.query(ActivationJob)
            .filter(ActivationJob.state == JOB_SCHEDULED, ActivationJob.due_at <= now)
            .order_by(ActivationJob.due_at.asc())
            .limit(max(int(limit), 1))
            .all()
        )

    def _claim(self, job: ActivationJob, now: datetime) -> bool:
        # Conditional on the attempt counter so two workers never run the same attempt.
        result = self.db.execute(
            update(ActivationJob)
            .where(
                ActivationJob.id == job.id,
                ActivationJob.state == JOB_SCHEDULED,
                ActivationJob.attempts == job.attempts,
            )
            .values(attempts=ActivationJob.attempts + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def _finish(self, job_id, state: str, now: datetime, error: str | None = None) -> None:
        self.db.execute(
            update(ActivationJob)
            .where(ActivationJob.id == job_id)
            .values(state=state, processed_at=now, updated_at=now, last_error=error)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def _record_failure(self, job_id, attempts: int, now: datetime, error: str) -> None:
        max_attempts = max(int(settings.ACTIVATION_MAX_ATTEMPTS), 1)
        if attempts >= max_attempts:
            _LOG.error("activation job %s gave up after %s attempts: %s", job_id, attempts, error)
            self._finish(job_id, JOB_FAILED, now, error)
            return
        self.db.execute(
            update(ActivationJob)
            .where(ActivationJob.id == job_id)
            .values(last_error=error, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def process_due(self, manager: "RequestLifecycleManager", *, now: datetime | None = None) -> dict[str, int]:
        now = _as_utc(now or utcnow())
        stats = {"checked": 0, "activated": 0, "skipped": 0, "retrying": 0, "failed": 0}
        try:
            jobs = self.due_jobs(now, settings.ACTIVATION_BATCH_SIZE)
        except SQLAlchemyError:
            self.db.rollback()
            _LOG.warning("activation poll could not read due jobs", exc_info=True)
            return stats

        for job in jobs:
            job_id = job.id
            request_id = job.request_id
            seen_attempts = int(job.attempts or 0)
            stats["checked"] += 1
            try:
                if not self._claim(job, now):
                    continue
                try:
                    activated = manager.activate_if_pending(request_id, actor=ACTIVATION_ACTOR)
                except NotFoundError:
                    self._finish(job_id, JOB_FAILED, now, "request not found")
                    stats["failed"] += 1
                    continue
                except TransientError as exc:
                    _LOG.warning("activation of request %s deferred: %s", request_id, exc.message)
                    self._record_failure(job_id, seen_attempts + 1, now, exc.message)
                    if seen_attempts + 1 >= max(int(settings.ACTIVATION_MAX_ATTEMPTS), 1):
                        stats["failed"] += 1
                    else:
                        stats["retrying"] += 1
                    continue
                if activated:
                    self._finish(job_id, JOB_DONE, now)
                    stats["activated"] += 1
                    _LOG.info("request %s activated by schedule", request_id)
                else:
                    self._finish(job_id, JOB_SKIPPED, now)
                    stats["skipped"] += 1
            except SQLAlchemyError:
                # The request keeps its current status; an operator can still activate manually.
                self.db.rollback()
                _LOG.warning("activation job %s left for the next poll", job_id, exc_info=True)
                stats["retrying"] += 1
        return stats
