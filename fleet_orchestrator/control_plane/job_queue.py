"""
Job Queue

Durable store of background jobs. The orchestrator creates, cancels and
retries jobs here; external execution workers claim queued jobs and report
progress and terminal status back through the same class.
"""
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

import pydantic
from sqlalchemy import update
from sqlmodel import select

from ..errors import InvalidStateError, NotFoundError, RetryExhaustedError, ValidationError
from .idempotency_engine import IdempotencyEngine
from .models import BackgroundJob, JobStatus, JobType, as_utc, utc_now
from .queue_manager import QueueManager
from .schemas import JobPayload, dump_job_payload, job_payload_adapter

logger = logging.getLogger(__name__)


def build_payload(job_type: JobType, payload: Union[JobPayload, Dict[str, Any], None]) -> JobPayload:
    """Validate a job payload against the variant registered for `job_type`."""
    if payload is None:
        payload = {}
    if isinstance(payload, dict):
        data = {"kind": job_type.value, **payload}
        try:
            payload = job_payload_adapter.validate_python(data)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid payload for {job_type.value} job: {e}") from e
    if payload.kind != job_type.value:
        raise ValidationError(f"Payload kind {payload.kind!r} does not match job type {job_type.value!r}")
    return payload


class JobQueue:
    def __init__(
        self,
        db,
        queue_manager: Optional[QueueManager] = None,
        idempotency_engine: Optional[IdempotencyEngine] = None,
        default_max_retries: int = 3,
        list_limit: int = 100,
    ):
        self.db = db
        self.queue_manager = queue_manager
        self.idempotency_engine = idempotency_engine
        self.default_max_retries = default_max_retries
        self.list_limit = list_limit

    async def create(
        self,
        job_type: Union[JobType, str],
        target_id: str,
        host_run_id: Optional[str] = None,
        priority: int = 10,
        delay_seconds: int = 0,
        payload: Union[JobPayload, Dict[str, Any], None] = None,
        max_retries: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> BackgroundJob:
        """Insert a queued job scheduled `delay_seconds` from now."""
        try:
            job_type = JobType(job_type)
        except ValueError as e:
            raise ValidationError(f"Unknown job type: {job_type}") from e
        if not target_id:
            raise ValidationError("target_id is required")
        if delay_seconds < 0:
            raise ValidationError("delay_seconds must not be negative")
        max_retries = self.default_max_retries if max_retries is None else max_retries
        if max_retries < 0:
            raise ValidationError("max_retries must not be negative")
        typed_payload = build_payload(job_type, payload)

        if idempotency_key:
            existing = await self._find_idempotent(idempotency_key)
            if existing is not None:
                logger.info(f"Idempotent job found: {existing.id}")
                return existing

        now = utc_now()
        job = BackgroundJob(
            id=str(uuid.uuid4()),
            job_type=job_type,
            host_run_id=host_run_id,
            target_id=target_id,
            status=JobStatus.QUEUED,
            priority=priority,
            max_retries=max_retries,
            payload=dump_job_payload(typed_payload),
            idempotency_key=idempotency_key,
            created_at=now,
            scheduled_at=now + timedelta(seconds=delay_seconds),
        )
        async with self.db.session() as session:
            session.add(job)
            await session.commit()

        await self._publish(job)
        if idempotency_key and self.idempotency_engine:
            await self.idempotency_engine.store(idempotency_key, job.id)

        logger.info(f"Created {job_type.value} job {job.id} for {target_id} (priority {priority})")
        return job

    async def _find_idempotent(self, idempotency_key: str) -> Optional[BackgroundJob]:
        if self.idempotency_engine:
            job_id = await self.idempotency_engine.check(idempotency_key)
            if job_id:
                async with self.db.session() as session:
                    job = await session.get(BackgroundJob, job_id)
                    if job:
                        return job
        async with self.db.session() as session:
            result = await session.execute(
                select(BackgroundJob).where(BackgroundJob.idempotency_key == idempotency_key)
            )
            return result.scalars().first()

    async def _publish(self, job: BackgroundJob) -> None:
        if not self.queue_manager:
            return
        if job.scheduled_at > utc_now():
            await self.queue_manager.schedule_delayed(job.id, job.scheduled_at)
        else:
            await self.queue_manager.enqueue(
                job_id=job.id,
                priority=job.priority,
                job_type=job.job_type.value,
                target_id=job.target_id,
                job_data=json.loads(job.payload),
            )

    async def status(self, job_id: str) -> BackgroundJob:
        async with self.db.session() as session:
            job = await session.get(BackgroundJob, job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    async def cancel(self, job_id: str, reason: str = "Job cancelled by user") -> BackgroundJob:
        """Cancel a job. Only queued jobs can be cancelled."""
        async with self.db.session() as session:
            job = await session.get(BackgroundJob, job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            if job.status != JobStatus.QUEUED:
                raise InvalidStateError(f"Job {job_id} is {job.status.value}; only queued jobs can be cancelled")

            job.status = JobStatus.CANCELLED
            job.completed_at = utc_now()
            job.error_message = reason
            session.add(job)
            await session.commit()

        if self.queue_manager:
            await self.queue_manager.remove(job_id)

        logger.info(f"Cancelled job {job_id}")
        return job

    async def retry(self, job_id: str) -> BackgroundJob:
        """
        Re-queue a failed or cancelled job while retries remain.

        Every refusal raises RetryExhaustedError.
        """
        async with self.db.session() as session:
            job = await session.get(BackgroundJob, job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            if job.retry_count >= job.max_retries:
                raise RetryExhaustedError(job_id, job.retry_count, job.max_retries)
            if job.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
                raise RetryExhaustedError(
                    job_id,
                    job.retry_count,
                    job.max_retries,
                    f"Job {job_id} is {job.status.value}; only failed or cancelled jobs can be retried",
                )

            now = utc_now()
            job.status = JobStatus.QUEUED
            job.retry_count += 1
            job.error_message = None
            job.completed_at = None
            job.started_at = None
            job.claimed_by = None
            job.progress = 0
            job.scheduled_at = now
            session.add(job)
            await session.commit()

        await self._publish(job)
        logger.info(f"Job {job_id} queued for retry ({job.retry_count}/{job.max_retries})")
        return job

    async def list(
        self,
        statuses: Optional[Iterable[Union[JobStatus, str]]] = None,
        job_type: Optional[Union[JobType, str]] = None,
        target_id: Optional[str] = None,
        host_run_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[BackgroundJob]:
        """List jobs newest first, capped at the configured limit."""
        limit = min(limit or self.list_limit, self.list_limit)
        statement = select(BackgroundJob)
        try:
            if statuses:
                statement = statement.where(BackgroundJob.status.in_([JobStatus(s) for s in statuses]))
            if job_type:
                statement = statement.where(BackgroundJob.job_type == JobType(job_type))
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if target_id:
            statement = statement.where(BackgroundJob.target_id == target_id)
        if host_run_id:
            statement = statement.where(BackgroundJob.host_run_id == host_run_id)
        statement = statement.order_by(BackgroundJob.created_at.desc()).limit(limit)

        async with self.db.session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def jobs_for_run(self, host_run_id: str) -> List[BackgroundJob]:
        """All jobs of a host run in creation order."""
        async with self.db.session() as session:
            result = await session.execute(
                select(BackgroundJob)
                .where(BackgroundJob.host_run_id == host_run_id)
                .order_by(BackgroundJob.created_at.asc())
            )
            return list(result.scalars().all())

    async def cancel_for_run(self, host_run_id: str, reason: str) -> List[str]:
        """Cancel every still-queued job of a host run. Running jobs are left alone."""
        cancelled = []
        for job in await self.jobs_for_run(host_run_id):
            if job.status != JobStatus.QUEUED:
                continue
            try:
                await self.cancel(job.id, reason=reason)
            except InvalidStateError:
                # Claimed by a worker in the meantime
                continue
            cancelled.append(job.id)
        return cancelled

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def claim(self, worker_id: str, max_jobs: int = 5, now: Optional[datetime] = None) -> List[BackgroundJob]:
        """
        Claim due queued jobs for a worker, highest priority first.

        Each job is moved to running with a conditional update, so a job
        claimed concurrently by another worker is skipped.
        """
        now = as_utc(now) if now else utc_now()
        async with self.db.session() as session:
            result = await session.execute(
                select(BackgroundJob.id)
                .where(BackgroundJob.status == JobStatus.QUEUED)
                .where(BackgroundJob.scheduled_at <= now)
                .order_by(BackgroundJob.priority.asc(), BackgroundJob.created_at.asc())
                .limit(max_jobs)
            )
            candidate_ids = list(result.scalars().all())

            claimed_ids = []
            for job_id in candidate_ids:
                updated = await session.execute(
                    update(BackgroundJob)
                    .where(BackgroundJob.id == job_id)
                    .where(BackgroundJob.status == JobStatus.QUEUED)
                    .values(status=JobStatus.RUNNING, started_at=now, claimed_by=worker_id)
                )
                if updated.rowcount:
                    claimed_ids.append(job_id)
                else:
                    logger.info(f"Job {job_id} was already claimed by another worker")
            await session.commit()

        claimed = [await self.status(job_id) for job_id in claimed_ids]
        if claimed:
            logger.info(f"Worker {worker_id} claimed {len(claimed)} job(s)")
        return claimed

    async def report_progress(self, job_id: str, progress: int) -> BackgroundJob:
        async with self.db.session() as session:
            job = await session.get(BackgroundJob, job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            if job.status != JobStatus.RUNNING:
                raise InvalidStateError(f"Job {job_id} is {job.status.value}; progress needs a running job")
            job.progress = max(0, min(100, int(progress)))
            session.add(job)
            await session.commit()
        return job

    async def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> BackgroundJob:
        return await self._finish(job_id, JobStatus.COMPLETED, result=result)

    async def fail(self, job_id: str, error_message: str) -> BackgroundJob:
        """Record a failure reported by the worker, message captured verbatim."""
        return await self._finish(job_id, JobStatus.FAILED, error_message=error_message or "Job failed")

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        result: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> BackgroundJob:
        async with self.db.session() as session:
            job = await session.get(BackgroundJob, job_id)
            if job is None:
                raise NotFoundError("Job", job_id)
            if job.status != JobStatus.RUNNING:
                raise InvalidStateError(
                    f"Job {job_id} is {job.status.value}; only running jobs can be marked {status.value}"
                )
            job.status = status
            job.completed_at = utc_now()
            job.error_message = error_message
            if status == JobStatus.COMPLETED:
                job.progress = 100
            if result is not None:
                job.result = json.dumps(result)
            session.add(job)
            await session.commit()

        if status == JobStatus.FAILED:
            logger.warning(f"Job {job_id} failed: {error_message}")
        else:
            logger.info(f"Job {job_id} completed successfully")
        return job
