"""
Control Plane Data Models

Defines the persisted records of the orchestrator: background jobs, host runs,
update plans and the host/firmware inventory the planner reads.
These models are the source of truth for orchestration state in the database.
"""
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum as PyEnum


def utc_now() -> datetime:
    """Timezone-aware UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize to aware UTC; naive values are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobStatus(str, PyEnum):
    """Background job status."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobType(str, PyEnum):
    """Kind of work an execution worker performs for a job."""
    FIRMWARE_UPDATE = "firmware_update"
    MAINTENANCE_MODE = "maintenance_mode"
    HEALTH_CHECK = "health_check"
    VCENTER_SYNC = "vcenter_sync"
    SERVER_REBOOT = "server_reboot"
    SECURITY_PATCH = "security_patch"


class HostRunState(str, PyEnum):
    PRECHECKS = "PRECHECKS"
    ENTER_MAINT = "ENTER_MAINT"
    APPLY = "APPLY"
    POSTCHECKS = "POSTCHECKS"
    EXIT_MAINT = "EXIT_MAINT"
    DONE = "DONE"
    ERROR = "ERROR"


class HostRunStatus(str, PyEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PlanStatus(str, PyEnum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Readiness(str, PyEnum):
    READY = "ready"
    READY_WITH_WARNINGS = "ready_with_warnings"
    NOT_READY = "not_ready"
    UNKNOWN = "unknown"


class BackgroundJob(SQLModel, table=True):
    """
    A retryable unit of work executed by an external worker.

    Created by the host run state machine or by a bulk operation request.
    Never deleted, only moved to a terminal status.
    """
    __tablename__ = "background_jobs"

    id: str = Field(primary_key=True, description="UUID job identifier")
    job_type: JobType = Field(index=True, description="Job type (e.g. 'firmware_update')")
    host_run_id: Optional[str] = Field(default=None, index=True, description="Owning host run, if any")
    target_id: str = Field(index=True, description="Host/server the job acts on")
    status: JobStatus = Field(default=JobStatus.QUEUED, index=True, description="Current job status")
    priority: int = Field(default=10, index=True, description="Lower runs sooner")
    retry_count: int = Field(default=0, description="Retries performed so far")
    max_retries: int = Field(default=3, description="Maximum retries allowed")
    progress: int = Field(default=0, description="Progress percentage 0-100")
    payload: str = Field(default="{}", description="JSON-encoded typed job payload")
    result: Optional[str] = Field(default=None, description="JSON-encoded result data")
    error_message: Optional[str] = Field(default=None, description="Error message if failed")
    claimed_by: Optional[str] = Field(default=None, description="Worker that claimed the job")
    idempotency_key: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utc_now, index=True)
    scheduled_at: datetime = Field(default_factory=utc_now, index=True)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)


class HostRun(SQLModel, table=True):
    """
    Update lifecycle of one host for one logical update operation.

    At most one run per host may be `running` at a time.
    """
    __tablename__ = "host_runs"

    id: str = Field(primary_key=True, description="UUID host run identifier")
    host_id: str = Field(index=True)
    plan_id: Optional[str] = Field(default=None, index=True)
    state: HostRunState = Field(default=HostRunState.PRECHECKS)
    status: HostRunStatus = Field(default=HostRunStatus.RUNNING, index=True)
    context: str = Field(default="{}", description="JSON-encoded HostRunContext")
    error_message: Optional[str] = Field(default=None)
    started_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = Field(default=None)


class UpdatePlanRecord(SQLModel, table=True):
    """Persisted UpdatePlan. Only `status` and timestamps change after creation."""
    __tablename__ = "update_plans"

    id: str = Field(primary_key=True)
    name: str
    plan_type: str = Field(default="intelligent_orchestration")
    status: PlanStatus = Field(default=PlanStatus.PLANNED, index=True)
    plan: str = Field(description="JSON-encoded UpdatePlan")
    idempotency_key: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)


class ManagedHost(SQLModel, table=True):
    """Inventoried host, upserted by discovery and keyed by management IP."""
    __tablename__ = "hosts"

    id: str = Field(primary_key=True)
    ip_address: str = Field(index=True, unique=True)
    hostname: Optional[str] = Field(default=None)
    model: Optional[str] = Field(default=None)
    service_tag: Optional[str] = Field(default=None)
    firmware_versions: str = Field(default="{}", description="JSON-encoded component -> version map")
    cluster_id: Optional[str] = Field(default=None, index=True)
    ha_enabled: bool = Field(default=False)
    vm_count: int = Field(default=0)
    readiness: Readiness = Field(default=Readiness.UNKNOWN)
    depends_on: str = Field(default="[]", description="JSON-encoded list of host ids")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class FirmwarePackage(SQLModel, table=True):
    __tablename__ = "firmware_packages"

    id: str = Field(primary_key=True)
    name: str
    version: str
    component: str = Field(default="Other", description="BIOS | iDRAC | NIC | HBA | RAID | PSU | Other")
    image_uri: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)


class OperationalEvent(SQLModel, table=True):
    """
    Append-only operational event log.

    Read by the workload analyzer; the orchestrator never writes to it.
    """
    __tablename__ = "operational_events"

    id: str = Field(primary_key=True)
    server_id: str = Field(index=True)
    event_type: str = Field(default="system_event")
    created_at: datetime = Field(default_factory=utc_now, index=True)
