"""
Host Run State Machine

Tracks the update lifecycle of one host:

    PRECHECKS -> ENTER_MAINT -> APPLY -> POSTCHECKS -> EXIT_MAINT -> DONE

with ERROR reachable from every non-terminal state. Entering a state enqueues
the job that performs it; the job's terminal result, fed back through
`handle_job_result`, drives the next transition.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import update
from sqlmodel import select

from ..errors import DuplicateRunError, InvalidStateError, InvalidTransitionError, NotFoundError
from .job_queue import JobQueue
from .models import (
    BackgroundJob,
    FirmwarePackage,
    HostRun,
    HostRunState,
    HostRunStatus,
    JobStatus,
    JobType,
    ManagedHost,
    utc_now,
)
from .schemas import (
    FirmwareUpdatePayload,
    HealthCheckPayload,
    HostRunContext,
    JobPayload,
    MaintenanceModePayload,
    RollbackStrategy,
    StepResult,
    parse_job_payload,
)

logger = logging.getLogger(__name__)

S = HostRunState

TRANSITIONS: Dict[HostRunState, Tuple[HostRunState, ...]] = {
    S.PRECHECKS: (S.ENTER_MAINT, S.ERROR),
    S.ENTER_MAINT: (S.APPLY, S.ERROR),
    S.APPLY: (S.POSTCHECKS, S.ERROR),
    S.POSTCHECKS: (S.EXIT_MAINT, S.ERROR),
    S.EXIT_MAINT: (S.DONE, S.ERROR),
    S.DONE: (),
    S.ERROR: (),
}

NEXT_STATE = {
    S.PRECHECKS: S.ENTER_MAINT,
    S.ENTER_MAINT: S.APPLY,
    S.APPLY: S.POSTCHECKS,
    S.POSTCHECKS: S.EXIT_MAINT,
    S.EXIT_MAINT: S.DONE,
}

TERMINAL_STATES = frozenset({S.DONE, S.ERROR})

STATE_PROGRESS = {
    S.PRECHECKS: 0,
    S.ENTER_MAINT: 20,
    S.APPLY: 40,
    S.POSTCHECKS: 70,
    S.EXIT_MAINT: 85,
    S.DONE: 100,
}

PRECHECKS = ("connectivity", "disk_space", "backup_status")
POSTCHECKS = ("service_availability", "performance", "connectivity")

CANCEL_MESSAGE = "cancelled by operator"

# Error fragments that make a conditional rollback fire
CONDITIONAL_ROLLBACK_MARKERS = ("boot", "timeout", "timed out")


def step_job(state: HostRunState, ctx: HostRunContext) -> Optional[Tuple[JobType, int, JobPayload]]:
    """Job type, priority and payload that perform `state`, if any."""
    if state == S.PRECHECKS:
        return JobType.HEALTH_CHECK, 1, HealthCheckPayload(
            check_type="readiness", state=state.value, checks=PRECHECKS
        )
    if state == S.ENTER_MAINT:
        return JobType.MAINTENANCE_MODE, 2, MaintenanceModePayload(
            action="enter", state=state.value, evacuate_vms=ctx.clustered
        )
    if state == S.APPLY:
        return JobType.FIRMWARE_UPDATE, 3, FirmwareUpdatePayload(
            firmware_url=ctx.firmware_url, state=state.value
        )
    if state == S.POSTCHECKS:
        return JobType.HEALTH_CHECK, 4, HealthCheckPayload(
            check_type="post_update", state=state.value, checks=POSTCHECKS
        )
    if state == S.EXIT_MAINT:
        return JobType.MAINTENANCE_MODE, 5, MaintenanceModePayload(action="exit", state=state.value)
    return None


def should_roll_back(strategy: RollbackStrategy, error_message: Optional[str]) -> bool:
    if strategy == RollbackStrategy.AUTOMATIC:
        return True
    if strategy == RollbackStrategy.CONDITIONAL:
        error = (error_message or "").lower()
        return any(marker in error for marker in CONDITIONAL_ROLLBACK_MARKERS)
    return False


def load_context(run: HostRun) -> HostRunContext:
    return HostRunContext.model_validate_json(run.context)


def _step_state(payload: JobPayload) -> Optional[str]:
    return getattr(payload, "state", None)


def _is_rollback(payload: JobPayload) -> bool:
    return bool(getattr(payload, "rollback", False))


@dataclass(frozen=True)
class HostRunStatusView:
    host_run: HostRun
    context: HostRunContext
    available_transitions: List[HostRunState]
    jobs: List[BackgroundJob]

    @property
    def state(self) -> HostRunState:
        return self.host_run.state

    @property
    def status(self) -> HostRunStatus:
        return self.host_run.status


class HostRunMachine:
    """
    Drives host runs through the update lifecycle.

    Exactly one running host run may exist per host; `start` enforces this
    with an explicit lookup serialized by an in-process lock.
    Everything else that reads and then rewrites a run holds that run's lock,
    and the state write itself only lands if the run is still where it was read.
    """

    def __init__(
        self,
        db,
        job_queue: JobQueue,
        default_rollback_strategy: Union[RollbackStrategy, str] = RollbackStrategy.MANUAL,
        auto_retry_failed_steps: bool = False,
    ):
        self.db = db
        self.job_queue = job_queue
        self.default_rollback_strategy = RollbackStrategy(default_rollback_strategy)
        self.auto_retry_failed_steps = auto_retry_failed_steps
        self._start_lock = asyncio.Lock()
        self._run_locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, host_run_id: str) -> asyncio.Lock:
        return self._run_locks.setdefault(host_run_id, asyncio.Lock())

    async def get(self, host_run_id: str) -> HostRun:
        async with self.db.session() as session:
            run = await session.get(HostRun, host_run_id)
        if run is None:
            raise NotFoundError("HostRun", host_run_id)
        return run

    async def running_run_for_host(self, host_id: str) -> Optional[HostRun]:
        async with self.db.session() as session:
            result = await session.execute(
                select(HostRun)
                .where(HostRun.host_id == host_id)
                .where(HostRun.status == HostRunStatus.RUNNING)
            )
            return result.scalars().first()

    async def runs_for_plan(self, plan_id: str) -> List[HostRun]:
        async with self.db.session() as session:
            result = await session.execute(
                select(HostRun).where(HostRun.plan_id == plan_id).order_by(HostRun.started_at.asc())
            )
            return list(result.scalars().all())

    async def start(
        self,
        host_run_id: Optional[str],
        server_id: str,
        firmware_url: Optional[str] = None,
        plan_id: Optional[str] = None,
        rollback_strategy: Union[RollbackStrategy, str, None] = None,
        clustered: bool = False,
    ) -> HostRun:
        """Create a host run in PRECHECKS and enqueue its readiness check."""
        host_run_id = host_run_id or str(uuid.uuid4())
        previous_firmware, previous_firmware_url = await self._firmware_snapshot(server_id, firmware_url)
        ctx = HostRunContext(
            server_id=server_id,
            firmware_url=firmware_url,
            plan_id=plan_id,
            rollback_strategy=RollbackStrategy(rollback_strategy or self.default_rollback_strategy),
            clustered=clustered,
            previous_firmware=previous_firmware,
            previous_firmware_url=previous_firmware_url,
        )

        async with self._start_lock:
            existing = await self.running_run_for_host(server_id)
            if existing is not None:
                raise DuplicateRunError(server_id, existing.id)

            async with self.db.session() as session:
                if await session.get(HostRun, host_run_id) is not None:
                    raise InvalidStateError(f"Host run {host_run_id} already exists")
                run = HostRun(
                    id=host_run_id,
                    host_id=server_id,
                    plan_id=plan_id,
                    state=S.PRECHECKS,
                    status=HostRunStatus.RUNNING,
                    context=ctx.model_dump_json(),
                )
                session.add(run)
                await session.commit()

        logger.info(f"Started host run {host_run_id} for host {server_id}")
        await self._enqueue_step(run, ctx)
        return run

    async def _firmware_snapshot(
        self, server_id: str, firmware_url: Optional[str]
    ) -> Tuple[Dict[str, str], Optional[str]]:
        """
        Installed versions of an inventoried host, plus the image that puts
        back the component the run is about to update.

        Hosts that were never inventoried snapshot as empty.
        """
        async with self.db.session() as session:
            host = await session.get(ManagedHost, server_id)
            if host is None:
                return {}, None
            versions = json.loads(host.firmware_versions or "{}")
            if not firmware_url:
                return versions, None
            result = await session.execute(select(FirmwarePackage).where(FirmwarePackage.image_uri == firmware_url))
            target = result.scalars().first()
            if target is None or target.component not in versions:
                return versions, None
            result = await session.execute(
                select(FirmwarePackage)
                .where(FirmwarePackage.component == target.component)
                .where(FirmwarePackage.version == versions[target.component])
            )
            installed = result.scalars().first()
        return versions, installed.image_uri if installed is not None else None

    def available_transitions(self, run: HostRun, jobs: List[BackgroundJob]) -> List[HostRunState]:
        """Edges out of the current state whose preconditions are not known to have failed."""
        if run.status != HostRunStatus.RUNNING:
            return []
        edges = list(TRANSITIONS[run.state])
        if self._precondition_failed(run, jobs):
            edges = [state for state in edges if state == S.ERROR]
        return edges

    def _precondition_failed(self, run: HostRun, jobs: List[BackgroundJob]) -> bool:
        """True when the latest step job of the current state has failed."""
        step_jobs = []
        for job in jobs:
            payload = parse_job_payload(job.payload)
            if _step_state(payload) == run.state.value and not _is_rollback(payload):
                step_jobs.append(job)
        if not step_jobs:
            return False
        return step_jobs[-1].status == JobStatus.FAILED

    async def transition(
        self,
        host_run_id: str,
        target_state: Union[HostRunState, str],
        context: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> HostRun:
        """Move a run along one edge of the state graph."""
        async with self._lock(host_run_id):
            run = await self.get(host_run_id)
            try:
                target = HostRunState(target_state)
            except ValueError as e:
                raise InvalidTransitionError(run.state.value, str(target_state), "unknown state") from e

            if run.status != HostRunStatus.RUNNING or run.state in TERMINAL_STATES:
                raise InvalidTransitionError(run.state.value, target.value, f"host run is {run.status.value}")
            if target not in TRANSITIONS[run.state]:
                raise InvalidTransitionError(run.state.value, target.value)
            if target != S.ERROR:
                jobs = await self.job_queue.jobs_for_run(host_run_id)
                if self._precondition_failed(run, jobs):
                    raise InvalidTransitionError(run.state.value, target.value, "precondition check failed")

            ctx = self._merge_context(load_context(run), context)
            return await self._enter(run, target, ctx, error_message)

    def _merge_context(self, ctx: HostRunContext, updates: Optional[Dict[str, Any]]) -> HostRunContext:
        if not updates:
            return ctx
        known = {k: v for k, v in updates.items() if k in ("firmware_url", "final_inventory")}
        extensions = {**ctx.extensions, **{k: v for k, v in updates.items() if k not in known}}
        return ctx.model_copy(update={**known, "extensions": extensions})

    async def _enter(
        self,
        run: HostRun,
        target: HostRunState,
        ctx: HostRunContext,
        error_message: Optional[str] = None,
        status: Optional[HostRunStatus] = None,
    ) -> HostRun:
        previous = run.state
        now = utc_now()
        if target == S.ERROR:
            error_message = error_message or ctx.error or "State machine entered error state"
            ctx = ctx.model_copy(update={"error": error_message})
        else:
            ctx = ctx.model_copy(update={"progress": STATE_PROGRESS[target]})

        values: Dict[str, Any] = {"state": target, "context": ctx.model_dump_json(), "updated_at": now}
        if target == S.DONE:
            values.update(status=HostRunStatus.COMPLETED, completed_at=now)
        elif target == S.ERROR:
            values.update(status=status or HostRunStatus.FAILED, completed_at=now, error_message=error_message)

        async with self.db.session() as session:
            result = await session.execute(
                update(HostRun)
                .where(HostRun.id == run.id)
                .where(HostRun.state == previous)
                .where(HostRun.status == HostRunStatus.RUNNING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise InvalidTransitionError(previous.value, target.value, "host run changed concurrently")
            await session.commit()
            run = await session.get(HostRun, run.id, populate_existing=True)

        logger.info(f"Host run {run.id} transitioned {previous.value} -> {target.value}")

        if target == S.ERROR:
            await self.job_queue.cancel_for_run(run.id, reason=f"Host run {run.id} entered ERROR")
            logger.error(f"Host run {run.id} failed: {error_message}")
        elif target == S.DONE:
            logger.info(f"Host run {run.id} completed for host {run.host_id}")
        else:
            await self._enqueue_step(run, ctx)
        return run

    async def _enqueue_step(self, run: HostRun, ctx: HostRunContext) -> Optional[BackgroundJob]:
        step = step_job(run.state, ctx)
        if step is None:
            return None
        job_type, priority, payload = step
        return await self.job_queue.create(
            job_type=job_type,
            target_id=run.host_id,
            host_run_id=run.id,
            priority=priority,
            payload=payload,
        )

    async def status(self, host_run_id: str) -> HostRunStatusView:
        run = await self.get(host_run_id)
        jobs = await self.job_queue.jobs_for_run(host_run_id)
        return HostRunStatusView(
            host_run=run,
            context=load_context(run),
            available_transitions=self.available_transitions(run, jobs),
            jobs=jobs,
        )

    async def cancel(self, host_run_id: str) -> HostRun:
        """Force a running host run into ERROR and cancel its queued jobs."""
        async with self._lock(host_run_id):
            run = await self.get(host_run_id)
            if run.status != HostRunStatus.RUNNING:
                raise InvalidStateError(
                    f"Host run {host_run_id} is {run.status.value}; only running runs can be cancelled"
                )
            run = await self._enter(
                run, S.ERROR, load_context(run), error_message=CANCEL_MESSAGE, status=HostRunStatus.CANCELLED
            )
        logger.info(f"Cancelled host run {host_run_id}")
        return run

    async def handle_job_result(self, job: BackgroundJob) -> Optional[HostRun]:
        """
        Feed a job's terminal result back into its host run.

        A completed step job advances the run; a failed one moves it to ERROR.
        Results for finished runs or superseded states are only recorded.
        """
        if not job.host_run_id or job.status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            return None

        async with self._lock(job.host_run_id):
            try:
                return await self._apply_job_result(job)
            except InvalidTransitionError as e:
                logger.info(f"Ignoring result of job {job.id}: {e}")
                return await self.get(job.host_run_id)

    async def _apply_job_result(self, job: BackgroundJob) -> HostRun:
        run = await self.get(job.host_run_id)
        payload = parse_job_payload(job.payload)
        ctx = self._record_result(load_context(run), job, payload)
        run = await self._save_context(run, ctx)

        if _is_rollback(payload):
            await self._continue_rollback(run, ctx, job, payload)
            return run
        if run.status != HostRunStatus.RUNNING:
            logger.info(f"Ignoring result of job {job.id}: host run {run.id} is {run.status.value}")
            return run
        if _step_state(payload) != run.state.value:
            logger.info(f"Ignoring stale result of job {job.id} for state {_step_state(payload)}")
            return run

        if job.status == JobStatus.COMPLETED:
            return await self._enter(run, NEXT_STATE[run.state], ctx)

        if self.auto_retry_failed_steps and job.retry_count < job.max_retries:
            logger.warning(f"Retrying failed step job {job.id} for host run {run.id}")
            await self.job_queue.retry(job.id)
            return run

        failed_state = run.state
        error_message = f"{failed_state.value} step failed: {job.error_message or 'unknown error'}"
        run = await self._enter(run, S.ERROR, ctx, error_message=error_message)
        if failed_state == S.APPLY and should_roll_back(ctx.rollback_strategy, job.error_message):
            await self._start_rollback(run)
        return run

    def _record_result(self, ctx: HostRunContext, job: BackgroundJob, payload: JobPayload) -> HostRunContext:
        result = StepResult(
            job_id=job.id,
            job_type=job.job_type.value,
            state=_step_state(payload),
            status=job.status.value,
            error_message=job.error_message,
            recorded_at=utc_now(),
        )
        return ctx.model_copy(update={"results": ctx.results + (result,)})

    async def _save_context(self, run: HostRun, ctx: HostRunContext) -> HostRun:
        async with self.db.session() as session:
            run = await session.get(HostRun, run.id)
            run.context = ctx.model_dump_json()
            run.updated_at = utc_now()
            session.add(run)
            await session.commit()
        return run

    async def rollback(self, host_run_id: str) -> List[BackgroundJob]:
        """Operator-invoked rollback of a run that ended in ERROR."""
        async with self._lock(host_run_id):
            run = await self.get(host_run_id)
            if run.state != S.ERROR:
                raise InvalidStateError(f"Host run {host_run_id} is in {run.state.value}; rollback needs ERROR")
            if load_context(run).rollback_job_ids:
                raise InvalidStateError(f"Rollback already started for host run {host_run_id}")
            return await self._start_rollback(run)

    async def _start_rollback(self, run: HostRun) -> List[BackgroundJob]:
        """First rollback job: restore the firmware snapshotted at start."""
        ctx = load_context(run)
        if not ctx.previous_firmware_url:
            logger.warning(f"No restore image known for host run {run.id}; worker must resolve target versions")
        job = await self.job_queue.create(
            job_type=JobType.FIRMWARE_UPDATE,
            target_id=run.host_id,
            host_run_id=run.id,
            priority=1,
            payload=FirmwareUpdatePayload(
                firmware_url=ctx.previous_firmware_url,
                state=S.APPLY.value,
                rollback=True,
                target_versions=ctx.previous_firmware,
            ),
        )
        await self._save_context(run, ctx.model_copy(update={"rollback_job_ids": ctx.rollback_job_ids + (job.id,)}))
        logger.warning(f"Rollback started for host run {run.id} ({ctx.rollback_strategy.value} strategy)")
        return [job]

    async def _continue_rollback(self, run: HostRun, ctx: HostRunContext, job: BackgroundJob, payload: JobPayload) -> None:
        """After the firmware restore finishes, take the host out of maintenance."""
        if payload.kind != JobType.FIRMWARE_UPDATE.value:
            logger.info(f"Rollback for host run {run.id} finished with job {job.id} ({job.status.value})")
            return
        if job.status == JobStatus.FAILED:
            logger.error(f"Firmware restore failed for host run {run.id}: {job.error_message}")
        exit_job = await self.job_queue.create(
            job_type=JobType.MAINTENANCE_MODE,
            target_id=run.host_id,
            host_run_id=run.id,
            priority=2,
            payload=MaintenanceModePayload(action="exit", state=S.EXIT_MAINT.value, rollback=True),
        )
        await self._save_context(run, ctx.model_copy(update={"rollback_job_ids": ctx.rollback_job_ids + (exit_job.id,)}))
