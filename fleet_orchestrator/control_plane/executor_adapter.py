"""
Execution Adapter

Bridges the control plane with whatever actually touches the hardware.

Two seams live here:
1. Bulk operation dispatch: a closed set of fleet-wide operations, each with
   exactly one handler that turns a request into queued jobs.
2. The execution worker: claims due jobs, hands them to a StepExecutor and
   reports the terminal result back to the job queue and the orchestrator.
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Protocol, Tuple

from pydantic import BaseModel, Field

from ..errors import ExecutionFailure, ValidationError
from .job_queue import JobQueue
from .models import BackgroundJob, JobType, as_utc, utc_now
from .schemas import (
    CAMEL_INPUT,
    FirmwareUpdatePayload,
    HealthCheckPayload,
    JobPayload,
    RebootPayload,
    SecurityPatchPayload,
    UtcDatetime,
    parse_job_payload,
)

logger = logging.getLogger(__name__)


class BulkOperation(str, PyEnum):
    FIRMWARE = "firmware"
    REBOOT = "reboot"
    SECURITY = "security"
    HEALTH = "health"


class BulkRequest(BaseModel):
    model_config = CAMEL_INPUT

    server_ids: List[str]
    scheduled_at: Optional[UtcDatetime] = None
    description: Optional[str] = None
    priority: int = 10
    # firmware
    firmware_package_id: Optional[str] = None
    firmware_url: Optional[str] = None
    # reboot
    reboot_type: Literal["graceful", "force"] = "graceful"
    # security
    patch_level: Literal["security", "all"] = "security"
    advisories: List[str] = Field(default_factory=list)
    # health
    check_type: Literal["basic", "hardware", "comprehensive", "network"] = "comprehensive"


HEALTH_CHECK_SETS = {
    "basic": ("system_info", "power_status"),
    "hardware": ("system_info", "event_log", "sensors"),
    "comprehensive": ("system_info", "event_log", "sensors", "storage_controllers", "bios"),
    "network": ("nic_config", "reachability"),
}

JobSpec = Tuple[JobType, JobPayload]


def _firmware(request: BulkRequest) -> JobSpec:
    if not request.firmware_package_id:
        raise ValidationError("Firmware package ID is required")
    return JobType.FIRMWARE_UPDATE, FirmwareUpdatePayload(
        firmware_url=request.firmware_url,
        update_type="staged" if request.scheduled_at else "immediate",
        extensions={"firmware_package_id": request.firmware_package_id, "description": request.description},
    )


def _reboot(request: BulkRequest) -> JobSpec:
    return JobType.SERVER_REBOOT, RebootPayload(
        graceful=request.reboot_type == "graceful",
        extensions={"description": request.description or f"Server reboot ({request.reboot_type})"},
    )


def _security(request: BulkRequest) -> JobSpec:
    return JobType.SECURITY_PATCH, SecurityPatchPayload(
        advisories=tuple(request.advisories),
        extensions={"patch_level": request.patch_level, "description": request.description},
    )


def _health(request: BulkRequest) -> JobSpec:
    return JobType.HEALTH_CHECK, HealthCheckPayload(
        check_type="standalone",
        checks=HEALTH_CHECK_SETS[request.check_type],
        extensions={"description": request.description or f"Health check ({request.check_type})"},
    )


BULK_HANDLERS: Dict[BulkOperation, Callable[[BulkRequest], JobSpec]] = {
    BulkOperation.FIRMWARE: _firmware,
    BulkOperation.REBOOT: _reboot,
    BulkOperation.SECURITY: _security,
    BulkOperation.HEALTH: _health,
}


class BulkDispatcher:
    """Creates one job per server for a bulk operation."""

    def __init__(self, job_queue: JobQueue, handlers: Optional[Dict[BulkOperation, Callable[[BulkRequest], JobSpec]]] = None):
        handlers = handlers if handlers is not None else BULK_HANDLERS
        missing = set(BulkOperation) - set(handlers)
        if missing:
            raise ValueError(f"No handler registered for bulk operation(s): {sorted(m.value for m in missing)}")
        self.job_queue = job_queue
        self.handlers = handlers

    async def dispatch(
        self, operation: BulkOperation, request: BulkRequest, now: Optional[datetime] = None
    ) -> List[BackgroundJob]:
        if not request.server_ids:
            raise ValidationError("Server IDs array is required")
        operation = BulkOperation(operation)
        job_type, payload = self.handlers[operation](request)

        now = as_utc(now) if now else utc_now()
        delay_seconds = 0
        if request.scheduled_at is not None:
            delay_seconds = max(0, int((request.scheduled_at - now).total_seconds()))

        jobs = []
        for server_id in dict.fromkeys(request.server_ids):
            jobs.append(await self.job_queue.create(
                job_type=job_type,
                target_id=server_id,
                priority=request.priority,
                delay_seconds=delay_seconds,
                payload=payload,
            ))
        logger.info(f"Bulk {operation.value}: created {len(jobs)} {job_type.value} job(s)")
        return jobs


class StepExecutor(Protocol):
    """
    Performs the work of one job against a host.

    Returns result data on success; raises ExecutionFailure with a readable
    message when the host reports a failure.
    """

    async def execute(self, job: BackgroundJob, payload: JobPayload) -> Dict[str, Any]:
        ...


class ExecutionWorker:
    """
    Claims due jobs and runs them through a StepExecutor.

    Every terminal result is passed to `on_result` so host runs can advance.
    """

    def __init__(
        self,
        worker_id: str,
        job_queue: JobQueue,
        executor: StepExecutor,
        on_result: Optional[Callable[[BackgroundJob], Awaitable[Any]]] = None,
        max_jobs: int = 5,
    ):
        self.worker_id = worker_id
        self.job_queue = job_queue
        self.executor = executor
        self.on_result = on_result
        self.max_jobs = max_jobs
        self._shutdown_event = asyncio.Event()

    async def run_once(self, now: Optional[datetime] = None) -> List[BackgroundJob]:
        """Claim and execute one batch of due jobs. Returns the finished jobs."""
        finished = []
        for job in await self.job_queue.claim(self.worker_id, max_jobs=self.max_jobs, now=now):
            finished.append(await self._execute(job))
        return finished

    async def _execute(self, job: BackgroundJob) -> BackgroundJob:
        logger.info(f"Worker {self.worker_id} executing {job.job_type.value} job {job.id} on {job.target_id}")
        try:
            result = await self.executor.execute(job, parse_job_payload(job.payload))
        except ExecutionFailure as e:
            done = await self.job_queue.fail(job.id, str(e))
        except Exception as e:
            logger.error(f"Job {job.id} execution failed: {e}", exc_info=True)
            done = await self.job_queue.fail(job.id, f"Executor error: {e}")
        else:
            done = await self.job_queue.complete(job.id, result or {})

        if self.on_result is not None:
            await self.on_result(done)
        return done

    async def run(self, poll_interval: float = 5.0) -> None:
        """Poll for jobs until `shutdown` is called."""
        logger.info(f"Starting worker {self.worker_id}")
        while not self._shutdown_event.is_set():
            try:
                if not await self.run_once():
                    await asyncio.sleep(poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Worker {self.worker_id} error: {e}")
                await asyncio.sleep(poll_interval)
        logger.info(f"Worker {self.worker_id} stopped")

    def shutdown(self) -> None:
        self._shutdown_event.set()
