"""
Update Orchestrator

Service facade over the job queue, host run state machine, workload analyzer,
window predictor, planner and discovery registry. The API layer talks only to
this class.

Plan lifecycle:

    create_plan -> planned
    start_plan  -> in_progress, first due batch started
    advance     -> starts the next batch once every earlier host run is
                   terminal and the batch window has arrived
                -> completed (every host run DONE) or failed
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlmodel import select

from ..config import FleetSettings
from ..errors import DuplicateRunError, EmptyTargetSetError, InvalidStateError, NotFoundError
from .discovery import DiscoveredHost, DiscoveryRegistry
from .executor_adapter import BulkDispatcher, BulkOperation, BulkRequest
from .host_runs import TERMINAL_STATES, HostRunMachine
from .idempotency_engine import IdempotencyEngine
from .job_queue import JobQueue
from .models import (
    BackgroundJob,
    FirmwarePackage,
    HostRun,
    HostRunState,
    ManagedHost,
    PlanStatus,
    UpdatePlanRecord,
    as_utc,
    utc_now,
)
from .queue_manager import QueueManager
from .schemas import (
    HostProfile,
    MaintenanceWindowRecommendation,
    PlanConstraints,
    PlanType,
    UpdatePlan,
    WindowConstraints,
    WorkloadInsights,
)
from .update_planner import UpdatePlanner, batches_of
from .window_predictor import MaintenanceWindowPredictor
from .workload_analyzer import WorkloadPatternAnalyzer, summarize

logger = logging.getLogger(__name__)

TERMINAL_PLAN_STATUSES = frozenset({PlanStatus.COMPLETED, PlanStatus.FAILED})


def load_plan(record: UpdatePlanRecord) -> UpdatePlan:
    return UpdatePlan.model_validate_json(record.plan)


@dataclass(frozen=True)
class PlanStatusView:
    record: UpdatePlanRecord
    plan: UpdatePlan
    host_runs: List[HostRun]

    @property
    def status(self) -> PlanStatus:
        return self.record.status


class UpdateOrchestrator:
    def __init__(self, db, settings: FleetSettings, redis_client=None):
        self.db = db
        self.settings = settings
        self.redis = redis_client

        queue_manager = QueueManager(redis_client) if redis_client is not None else None
        job_idempotency = IdempotencyEngine(redis_client) if redis_client is not None else None
        self.plan_idempotency = (
            IdempotencyEngine(redis_client, namespace="plan") if redis_client is not None else None
        )

        self.job_queue = JobQueue(
            db,
            queue_manager=queue_manager,
            idempotency_engine=job_idempotency,
            default_max_retries=settings.job_max_retries,
            list_limit=settings.job_list_limit,
        )
        self.host_runs = HostRunMachine(
            db,
            self.job_queue,
            default_rollback_strategy=settings.default_rollback_strategy,
            auto_retry_failed_steps=settings.auto_retry_failed_steps,
        )
        self.analyzer = WorkloadPatternAnalyzer(db, lookback_days=settings.workload_lookback_days)
        self.predictor = MaintenanceWindowPredictor(
            horizon_days=settings.prediction_horizon_days,
            max_windows=settings.max_windows_per_host,
            min_confidence=settings.min_window_confidence,
        )
        self.planner = UpdatePlanner(
            max_concurrent_updates=settings.max_concurrent_updates,
            inter_batch_delay_minutes=settings.inter_batch_delay_minutes,
            avg_update_minutes=settings.avg_update_minutes,
            default_rollback_strategy=settings.default_rollback_strategy,
        )
        self.discovery = DiscoveryRegistry(db)
        self.bulk = BulkDispatcher(self.job_queue)
        self.executor = PlanExecutor(self)

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    async def create_plan(
        self,
        targets: Sequence[str],
        firmware_package_ids: Sequence[str],
        constraints: Optional[PlanConstraints] = None,
        plan_type: Union[PlanType, str] = PlanType.INTELLIGENT_ORCHESTRATION,
        name: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UpdatePlanRecord:
        """
        Build and persist an update plan.

        Everything is validated before the plan row is written; a failed
        request leaves no partial plan behind.
        """
        if idempotency_key:
            existing = await self._find_idempotent_plan(idempotency_key)
            if existing is not None:
                logger.info(f"Idempotent plan found: {existing.id}")
                return existing

        if not targets:
            raise EmptyTargetSetError()
        now = as_utc(now) if now else utc_now()
        plan_type = PlanType(plan_type)
        constraints = constraints or PlanConstraints()

        hosts = await self.discovery.profiles(targets)
        known_firmware = await self._known_firmware(firmware_package_ids)

        recommendations = None
        if plan_type == PlanType.INTELLIGENT_ORCHESTRATION and not constraints.maintenance_windows:
            recommendations = await self.recommend_windows(hosts, now=now)

        plan = self.planner.plan(
            hosts,
            firmware_package_ids,
            known_firmware,
            constraints=constraints,
            plan_type=plan_type,
            name=name,
            now=now,
            recommendations=recommendations,
            plan_id=str(uuid.uuid4()),
        )

        record = UpdatePlanRecord(
            id=plan.id,
            name=plan.name,
            plan_type=plan.plan_type.value,
            status=PlanStatus.PLANNED,
            plan=plan.model_dump_json(),
            idempotency_key=idempotency_key,
            created_at=now,
        )
        async with self.db.session() as session:
            session.add(record)
            await session.commit()

        if idempotency_key and self.plan_idempotency:
            await self.plan_idempotency.store(idempotency_key, record.id)
        logger.info(f"Created plan {record.id} ({plan.plan_type.value}) for {len(hosts)} host(s)")
        return record

    async def _find_idempotent_plan(self, idempotency_key: str) -> Optional[UpdatePlanRecord]:
        if self.plan_idempotency:
            plan_id = await self.plan_idempotency.check(idempotency_key)
            if plan_id:
                async with self.db.session() as session:
                    record = await session.get(UpdatePlanRecord, plan_id)
                    if record:
                        return record
        async with self.db.session() as session:
            result = await session.execute(
                select(UpdatePlanRecord).where(UpdatePlanRecord.idempotency_key == idempotency_key)
            )
            return result.scalars().first()

    async def _known_firmware(self, firmware_package_ids: Sequence[str]) -> List[str]:
        if not firmware_package_ids:
            return []
        async with self.db.session() as session:
            result = await session.execute(
                select(FirmwarePackage.id).where(FirmwarePackage.id.in_(list(firmware_package_ids)))
            )
            return list(result.scalars().all())

    async def get_plan(self, plan_id: str) -> UpdatePlanRecord:
        async with self.db.session() as session:
            record = await session.get(UpdatePlanRecord, plan_id)
        if record is None:
            raise NotFoundError("Plan", plan_id)
        return record

    async def start_plan(
        self, plan_id: str, dry_run: bool = False, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Mark a planned plan in progress and start its first batch if it is due."""
        record = await self.get_plan(plan_id)
        plan = load_plan(record)
        if dry_run:
            return {"dry_run": True, "plan_id": plan_id, "targets": plan.server_ids}
        if record.status != PlanStatus.PLANNED:
            raise InvalidStateError(f"Plan {plan_id} is {record.status.value}; only planned plans can be started")

        async with self.db.session() as session:
            record = await session.get(UpdatePlanRecord, plan_id)
            record.status = PlanStatus.IN_PROGRESS
            record.started_at = now or utc_now()
            session.add(record)
            await session.commit()
        logger.info(f"Started plan {plan_id}: {plan.batch_count} batch(es), {len(plan.server_ids)} host(s)")

        record = await self.executor.advance(plan_id, now=now)
        runs = await self.host_runs.runs_for_plan(plan_id)
        return {"started": True, "plan_id": plan_id, "status": record.status.value, "count": len(runs)}

    async def get_plan_status(self, plan_id: str) -> PlanStatusView:
        record = await self.get_plan(plan_id)
        return PlanStatusView(
            record=record,
            plan=load_plan(record),
            host_runs=await self.host_runs.runs_for_plan(plan_id),
        )

    async def plan_report(self, plan_id: str) -> Dict[str, Any]:
        """Host runs of a plan with the firmware components it applies."""
        view = await self.get_plan_status(plan_id)
        async with self.db.session() as session:
            result = await session.execute(
                select(FirmwarePackage).where(FirmwarePackage.id.in_(list(view.plan.firmware_package_ids)))
            )
            packages = list(result.scalars().all())
        return {
            "id": plan_id,
            "status": view.status.value,
            "components": [
                {"id": p.id, "name": p.name, "version": p.version, "component": p.component}
                for p in packages
            ],
            "runs": view.host_runs,
        }

    # ------------------------------------------------------------------
    # Job results
    # ------------------------------------------------------------------

    async def handle_job_report(self, job: BackgroundJob) -> Optional[HostRun]:
        """Feed a terminal job into its host run and let the owning plan progress."""
        run = await self.host_runs.handle_job_result(job)
        if run is not None and run.plan_id and run.state in TERMINAL_STATES:
            await self.executor.advance(run.plan_id)
        return run

    async def complete_job(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> BackgroundJob:
        job = await self.job_queue.complete(job_id, result)
        await self.handle_job_report(job)
        return job

    async def fail_job(self, job_id: str, error_message: str) -> BackgroundJob:
        job = await self.job_queue.fail(job_id, error_message)
        await self.handle_job_report(job)
        return job

    # ------------------------------------------------------------------
    # Windows, discovery, bulk
    # ------------------------------------------------------------------

    async def recommend_windows(
        self,
        hosts: Sequence[HostProfile],
        update_duration_minutes: Optional[int] = None,
        constraints: Optional[WindowConstraints] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, List[MaintenanceWindowRecommendation]]:
        now = as_utc(now) if now else utc_now()
        patterns = await self.analyzer.analyze_hosts([h.id for h in hosts], now=now)
        return self.predictor.predict_fleet(
            hosts,
            patterns,
            update_duration_minutes or self.settings.avg_update_minutes,
            constraints=constraints,
            now=now,
        )

    async def predict_windows(
        self,
        host_id: str,
        update_duration_minutes: Optional[int] = None,
        constraints: Optional[WindowConstraints] = None,
        now: Optional[datetime] = None,
    ) -> List[MaintenanceWindowRecommendation]:
        host = await self.discovery.get(host_id)
        profiles = await self.discovery.profiles([host.id])
        recommendations = await self.recommend_windows(profiles, update_duration_minutes, constraints, now)
        return recommendations[host.id]

    async def workload_insights(
        self,
        host_ids: Optional[Sequence[str]] = None,
        days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> WorkloadInsights:
        """Fleet-wide activity summary; defaults to every inventoried host."""
        if host_ids:
            ids = [p.id for p in await self.discovery.profiles(host_ids)]
        else:
            async with self.db.session() as session:
                result = await session.execute(select(ManagedHost.id).order_by(ManagedHost.id))
                ids = list(result.scalars().all())
        patterns = await self.analyzer.analyze_hosts(ids, days=days, now=now)
        return summarize(list(patterns.values()))

    async def register_discovered(self, records: Sequence[DiscoveredHost]) -> List[ManagedHost]:
        return await self.discovery.upsert(records)

    async def bulk_operation(
        self, operation: Union[BulkOperation, str], request: BulkRequest
    ) -> List[BackgroundJob]:
        return await self.bulk.dispatch(BulkOperation(operation), request)

    async def get_queue_stats(self) -> Dict[str, Any]:
        """Job counts by status, plus stream depths when Redis is configured."""
        async with self.db.session() as session:
            result = await session.execute(select(BackgroundJob.status, BackgroundJob.job_type))
            rows = result.all()

        status_counts: Dict[str, int] = {}
        type_counts: Dict[str, int] = {}
        for job_status, job_type in rows:
            status_counts[job_status.value] = status_counts.get(job_status.value, 0) + 1
            type_counts[job_type.value] = type_counts.get(job_type.value, 0) + 1

        stats: Dict[str, Any] = {
            "jobs": {"total": len(rows), "by_status": status_counts, "by_type": type_counts},
        }
        if self.job_queue.queue_manager is not None:
            stats["queue"] = await self.job_queue.queue_manager.get_stats()
        return stats


class PlanExecutor:
    """
    Walks a plan's batches as host runs finish and windows arrive.

    Stateless between calls: everything it needs is read back from the plan
    record and the plan's host runs, so `advance` is safe to call repeatedly.
    """

    def __init__(self, orchestrator: UpdateOrchestrator):
        self.orchestrator = orchestrator

    async def advance(self, plan_id: str, now: Optional[datetime] = None) -> UpdatePlanRecord:
        record = await self.orchestrator.get_plan(plan_id)
        if record.status != PlanStatus.IN_PROGRESS:
            return record
        now = as_utc(now) if now else utc_now()
        plan = load_plan(record)
        runs = {run.host_id: run for run in await self.orchestrator.host_runs.runs_for_plan(plan_id)}

        for batch in batches_of(plan):
            servers = [server for group in batch for server in group.servers]
            pending = [server for server in servers if server not in runs]
            if not pending:
                if any(runs[server].state not in TERMINAL_STATES for server in servers):
                    return record
                continue

            window = min(group.scheduled_window for group in batch)
            if now < window:
                logger.debug(f"Plan {plan_id}: batch {batch[0].batch_index} waits for {window.isoformat()}")
                return record
            await self._start_hosts(plan, pending)
            return record

        return await self._finish(record, list(runs.values()))

    async def _start_hosts(self, plan: UpdatePlan, server_ids: List[str]) -> None:
        firmware_url = await self._firmware_url(plan)
        profiles = {p.id: p for p in await self.orchestrator.discovery.profiles(server_ids)}
        started = 0
        for server_id in server_ids:
            try:
                await self.orchestrator.host_runs.start(
                    None,
                    server_id,
                    firmware_url=firmware_url,
                    plan_id=plan.id,
                    rollback_strategy=plan.rollback_plan.strategy,
                    clustered=bool(profiles[server_id].cluster_id),
                )
                started += 1
            except DuplicateRunError as e:
                # Picked up again on a later advance once the other run ends
                logger.warning(f"Plan {plan.id}: {e}")
        logger.info(f"Plan {plan.id}: started {started}/{len(server_ids)} host run(s)")

    async def _firmware_url(self, plan: UpdatePlan) -> Optional[str]:
        async with self.orchestrator.db.session() as session:
            for package_id in plan.firmware_package_ids:
                package = await session.get(FirmwarePackage, package_id)
                if package is not None and package.image_uri:
                    return package.image_uri
        return None

    async def _finish(self, record: UpdatePlanRecord, runs: List[HostRun]) -> UpdatePlanRecord:
        succeeded = all(run.state == HostRunState.DONE for run in runs)
        async with self.orchestrator.db.session() as session:
            record = await session.get(UpdatePlanRecord, record.id)
            record.status = PlanStatus.COMPLETED if succeeded else PlanStatus.FAILED
            record.completed_at = utc_now()
            session.add(record)
            await session.commit()
        failed = sum(1 for run in runs if run.state != HostRunState.DONE)
        if succeeded:
            logger.info(f"Plan {record.id} completed: {len(runs)} host(s) updated")
        else:
            logger.warning(f"Plan {record.id} failed: {failed}/{len(runs)} host run(s) did not finish")
        return record

    async def run_until_complete(
        self, plan_id: str, poll_interval: Optional[float] = None, max_polls: Optional[int] = None
    ) -> UpdatePlanRecord:
        """Advance the plan until it reaches a terminal status."""
        poll_interval = self.orchestrator.settings.plan_poll_interval_seconds if poll_interval is None else poll_interval
        polls = 0
        while True:
            record = await self.advance(plan_id)
            if record.status in TERMINAL_PLAN_STATUSES:
                return record
            if record.status == PlanStatus.PLANNED:
                raise InvalidStateError(f"Plan {plan_id} has not been started")
            polls += 1
            if max_polls is not None and polls >= max_polls:
                return record
            await asyncio.sleep(poll_interval)
