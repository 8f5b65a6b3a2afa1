"""
Fleet Orchestrator API

FastAPI application for firmware update planning and execution.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, List, Literal, Optional, Union

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.asyncio import Redis

from .config import FleetSettings
from .database import Database
from .errors import (
    DuplicateRunError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    OrchestratorError,
    ValidationError,
)
from .control_plane.discovery import DiscoveredHost
from .control_plane.executor_adapter import BulkOperation, BulkRequest
from .control_plane.models import JobStatus, JobType, utc_now
from .control_plane.schemas import CAMEL_INPUT, PlanConstraints, PlanType, RollbackStrategy, WindowConstraints
from .control_plane.update_orchestrator import UpdateOrchestrator, load_plan


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ]
    )
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))


# Initialize settings and logging
settings = FleetSettings()
setup_logging(settings.log_level)
logger = structlog.get_logger(__name__)

# Initialize connections
redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
db = Database(settings)

# Initialize orchestrator (will be created in lifespan)
orchestrator: UpdateOrchestrator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan: startup and shutdown.

    - Initialize database tables
    - Create orchestrator
    - Cleanup on shutdown
    """
    global orchestrator

    logger.info("fleet_orchestrator_starting")
    await db.init_models()

    orchestrator = UpdateOrchestrator(db=db, settings=settings, redis_client=redis_client)

    # Jobs are executed by external workers that claim them over the API
    logger.info("fleet_orchestrator_ready", max_concurrent_updates=settings.max_concurrent_updates)

    yield

    logger.info("fleet_orchestrator_shutting_down")
    await db.dispose()
    await redis_client.aclose()
    logger.info("fleet_orchestrator_stopped")


app = FastAPI(
    title="Fleet Orchestrator API",
    description="""
    Firmware update orchestration for server fleets.

    ## Features

    * **Update Plans**: Cluster-aware, risk-ordered batches scheduled into maintenance windows
    * **Host Runs**: Per-host update lifecycle with prechecks, maintenance mode and rollback
    * **Job Queue**: Prioritized, retryable jobs claimed by external execution workers
    * **Window Prediction**: Maintenance windows scored from historical workload
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)


def get_orchestrator() -> UpdateOrchestrator:
    """Dependency to get orchestrator instance."""
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator not initialized"
        )
    return orchestrator


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (DuplicateRunError, status.HTTP_409_CONFLICT),
    (InvalidStateError, status.HTTP_409_CONFLICT),
)


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
    code = next((c for cls, c in ERROR_STATUS if isinstance(exc, cls)), status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.warning("request_failed", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(status_code=code, content={"success": False, "error": str(exc)})


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class _CamelBody(BaseModel):
    model_config = CAMEL_INPUT


class CreatePlanRequest(_CamelBody):
    name: Optional[str] = None
    targets: List[str] = Field(default_factory=list)
    artifacts: List[str] = Field(default_factory=list, description="Firmware package ids")
    policy: PlanConstraints = Field(default_factory=PlanConstraints)
    plan_type: PlanType = PlanType.INTELLIGENT_ORCHESTRATION
    idempotency_key: Optional[str] = None


class JobData(_CamelBody):
    job_type: JobType
    target_id: str
    host_run_id: Optional[str] = None
    priority: int = 10
    delay_seconds: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)
    max_retries: Optional[int] = None
    idempotency_key: Optional[str] = None


class JobFilters(_CamelBody):
    status: Union[JobStatus, List[JobStatus], None] = None
    job_type: Optional[JobType] = None
    target_id: Optional[str] = None
    host_run_id: Optional[str] = None
    limit: Optional[int] = None


class JobActionRequest(_CamelBody):
    action: Literal["create", "status", "cancel", "retry", "list"]
    job_data: Optional[JobData] = None
    job_id: Optional[str] = None
    filters: JobFilters = Field(default_factory=JobFilters)


class HostRunActionRequest(_CamelBody):
    action: Literal["start", "transition", "status", "cancel", "rollback"]
    host_run_id: Optional[str] = None
    server_id: Optional[str] = None
    firmware_url: Optional[str] = None
    plan_id: Optional[str] = None
    rollback_strategy: Optional[RollbackStrategy] = None
    target_state: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


class ClaimRequest(_CamelBody):
    max_jobs: int = Field(default=5, ge=1, le=100)


class ProgressReport(_CamelBody):
    progress: int = Field(ge=0, le=100)


class CompletionReport(_CamelBody):
    result: Dict[str, Any] = Field(default_factory=dict)


class FailureReport(_CamelBody):
    error_message: str


class DiscoveryReport(_CamelBody):
    hosts: List[DiscoveredHost]


def _require(value: Optional[Any], name: str) -> Any:
    if value is None or value == "":
        raise ValidationError(f"{name} is required")
    return value


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

@app.post("/api/v1/plans", status_code=status.HTTP_201_CREATED)
async def create_plan(
    body: CreatePlanRequest,
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    """
    Create an update plan.

    Groups the targets by cluster, orders groups by risk, splits them into
    batches and schedules each batch into a maintenance window.
    """
    record = await orch.create_plan(
        targets=body.targets,
        firmware_package_ids=body.artifacts,
        constraints=body.policy,
        plan_type=body.plan_type,
        name=body.name,
        idempotency_key=body.idempotency_key,
    )
    logger.info("plan_created", plan_id=record.id, targets=len(body.targets))
    return {"id": record.id, "status": record.status.value, "plan": load_plan(record)}


@app.post("/api/v1/plans/{plan_id}/start")
async def start_plan(
    plan_id: str,
    dry_run: bool = Query(default=False, alias="dryRun"),
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    """Start executing a plan. With dryRun=true only the targets are returned."""
    result = await orch.start_plan(plan_id, dry_run=dry_run)
    logger.info("plan_start_requested", plan_id=plan_id, dry_run=dry_run)
    return result


@app.post("/api/v1/plans/{plan_id}/advance")
async def advance_plan(
    plan_id: str,
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    """Run one executor step for a plan."""
    record = await orch.executor.advance(plan_id)
    return {"id": record.id, "status": record.status.value}


@app.get("/api/v1/plans/{plan_id}/status")
async def get_plan_status(
    plan_id: str,
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    view = await orch.get_plan_status(plan_id)
    return {"id": plan_id, "status": view.status.value, "hosts": view.host_runs}


@app.get("/api/v1/plans/{plan_id}/report")
async def get_plan_report(
    plan_id: str,
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    return await orch.plan_report(plan_id)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@app.post("/api/v1/jobs/actions")
async def job_action(
    body: JobActionRequest,
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    """
    Job queue actions.

    Args:
        action: 'create', 'status', 'cancel', 'retry' or 'list'
        jobData: Job definition for 'create'
        jobId: Target job for 'status', 'cancel' and 'retry'
        filters: Status, type, target and limit for 'list'
    """
    queue = orch.job_queue
    if body.action == "create":
        data = _require(body.job_data, "jobData")
        job = await queue.create(
            job_type=data.job_type,
            target_id=data.target_id,
            host_run_id=data.host_run_id,
            priority=data.priority,
            delay_seconds=data.delay_seconds,
            payload=data.payload,
            max_retries=data.max_retries,
            idempotency_key=data.idempotency_key,
        )
        return {"success": True, "job": job}

    if body.action == "list":
        filters = body.filters
        statuses = filters.status if isinstance(filters.status, list) else ([filters.status] if filters.status else None)
        jobs = await queue.list(
            statuses=statuses,
            job_type=filters.job_type,
            target_id=filters.target_id,
            host_run_id=filters.host_run_id,
            limit=filters.limit,
        )
        return {"success": True, "jobs": jobs}

    job_id = _require(body.job_id, "jobId")
    if body.action == "status":
        job = await queue.status(job_id)
    elif body.action == "cancel":
        job = await queue.cancel(job_id)
    else:
        job = await queue.retry(job_id)
    return {"success": True, "job": job}


@app.post("/api/v1/workers/{worker_id}/claim")
async def claim_jobs(
    worker_id: str,
    body: ClaimRequest = ClaimRequest(),
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    jobs = await orch.job_queue.claim(worker_id, max_jobs=body.max_jobs)
    return {"success": True, "jobs": jobs}


@app.post("/api/v1/jobs/{job_id}/progress")
async def report_progress(
    job_id: str,
    body: ProgressReport,
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    job = await orch.job_queue.report_progress(job_id, body.progress)
    return {"success": True, "job": job}


@app.post("/api/v1/jobs/{job_id}/complete")
async def complete_job(
    job_id: str,
    body: CompletionReport = CompletionReport(),
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    job = await orch.complete_job(job_id, body.result)
    logger.info("job_completed", job_id=job_id, host_run_id=job.host_run_id)
    return {"success": True, "job": job}


@app.post("/api/v1/jobs/{job_id}/fail")
async def fail_job(
    job_id: str,
    body: FailureReport,
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    job = await orch.fail_job(job_id, body.error_message)
    logger.warning("job_failed", job_id=job_id, host_run_id=job.host_run_id, error=body.error_message)
    return {"success": True, "job": job}


@app.get("/api/v1/queue/stats")
async def get_queue_stats(
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    """Get queue statistics."""
    return await orch.get_queue_stats()


# ---------------------------------------------------------------------------
# Host runs
# ---------------------------------------------------------------------------

@app.post("/api/v1/host-runs/actions")
async def host_run_action(
    body: HostRunActionRequest,
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    machine = orch.host_runs
    if body.action == "start":
        run = await machine.start(
            body.host_run_id,
            _require(body.server_id, "serverId"),
            firmware_url=body.firmware_url,
            plan_id=body.plan_id,
            rollback_strategy=body.rollback_strategy,
        )
        return {"success": True, "hostRun": run}

    host_run_id = _require(body.host_run_id, "hostRunId")
    if body.action == "transition":
        run = await machine.transition(
            host_run_id,
            _require(body.target_state, "targetState"),
            context=body.context,
            error_message=body.error_message,
        )
        return {"success": True, "hostRun": run}
    if body.action == "cancel":
        run = await machine.cancel(host_run_id)
        return {"success": True, "hostRun": run}
    if body.action == "rollback":
        jobs = await machine.rollback(host_run_id)
        return {"success": True, "jobs": jobs}

    view = await machine.status(host_run_id)
    return {
        "success": True,
        "hostRun": view.host_run,
        "state": view.state.value,
        "status": view.status.value,
        "context": view.context,
        "availableTransitions": [s.value for s in view.available_transitions],
        "jobs": view.jobs,
    }


# ---------------------------------------------------------------------------
# Hosts
# ---------------------------------------------------------------------------

@app.post("/api/v1/hosts/discovered")
async def register_discovered_hosts(
    body: DiscoveryReport,
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    hosts = await orch.register_discovered(body.hosts)
    logger.info("hosts_discovered", count=len(hosts))
    return {"success": True, "discovered": len(hosts), "hosts": hosts}


@app.get("/api/v1/hosts/workload-insights")
async def get_workload_insights(
    host_ids: Optional[List[str]] = Query(default=None, alias="hostId"),
    days: Optional[int] = Query(default=None, gt=0),
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    """Fleet activity summary over the trailing lookback window."""
    insights = await orch.workload_insights(host_ids, days=days)
    return {"success": True, "insights": insights}


@app.get("/api/v1/hosts/{host_id}/maintenance-windows")
async def get_maintenance_windows(
    host_id: str,
    duration_minutes: Optional[int] = Query(default=None, alias="durationMinutes", gt=0),
    max_downtime_minutes: Optional[int] = Query(default=None, alias="maxDowntimeMinutes"),
    require_approval: bool = Query(default=False, alias="requireApproval"),
    blackout_dates: Optional[List[date]] = Query(default=None, alias="blackoutDate"),
    preferred_days: Optional[List[int]] = Query(default=None, alias="preferredDay"),
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    """Ranked maintenance window recommendations for a host."""
    constraints = WindowConstraints(
        max_downtime_minutes=max_downtime_minutes,
        require_approval=require_approval,
        blackout_dates=tuple(blackout_dates or ()),
        preferred_days=tuple(preferred_days) if preferred_days else None,
    )
    windows = await orch.predict_windows(host_id, duration_minutes, constraints)
    return {"success": True, "server_id": host_id, "windows": windows}


# ---------------------------------------------------------------------------
# Bulk operations
# ---------------------------------------------------------------------------

@app.post("/api/v1/bulk/{operation}")
async def bulk_operation(
    operation: BulkOperation,
    body: BulkRequest,
    orch: UpdateOrchestrator = Depends(get_orchestrator),
):
    jobs = await orch.bulk_operation(operation, body)
    logger.info("bulk_operation_dispatched", operation=operation.value, jobs=len(jobs))
    return {"success": True, "message": f"Created {len(jobs)} {operation.value} jobs", "jobs": jobs}


# Health check
@app.get("/health")
async def health_check(orch: UpdateOrchestrator = Depends(get_orchestrator)):
    """Health check endpoint."""
    database_ok = await orch.db.ping()
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": "ok" if database_ok else "unavailable",
        "service": "fleet-orchestrator",
        "timestamp": utc_now().isoformat(),
    }


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "fleet-orchestrator",
        "version": "1.0.0",
        "status": "operational",
    }


# For running directly with python -m
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "fleet_orchestrator.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )
