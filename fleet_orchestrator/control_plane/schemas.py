"""
Control Plane Records

Immutable value types exchanged between the planner, the window predictor,
the workload analyzer and the host run state machine. Persisted tables live in
models.py; everything here is either a JSON payload stored inside a table
column or an API-facing result.
"""
from datetime import date, datetime
from enum import Enum as PyEnum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import AfterValidator, AliasGenerator, BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .models import as_utc

# Naive inputs are read as UTC
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]

# Request bodies accept camelCase keys as well as field names
CAMEL_INPUT = ConfigDict(
    populate_by_name=True,
    alias_generator=AliasGenerator(validation_alias=to_camel),
)


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True)


class _CamelRecord(_Record):
    model_config = ConfigDict(frozen=True, **CAMEL_INPUT)


class RiskLevel(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


RISK_ORDER = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class WorkloadImpact(str, PyEnum):
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RollbackStrategy(str, PyEnum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    CONDITIONAL = "conditional"


class PlanType(str, PyEnum):
    INTELLIGENT_ORCHESTRATION = "intelligent_orchestration"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


# ---------------------------------------------------------------------------
# Job payloads
# ---------------------------------------------------------------------------

class HealthCheckPayload(_Record):
    kind: Literal["health_check"] = "health_check"
    check_type: Literal["readiness", "post_update", "standalone"] = "standalone"
    state: Optional[str] = None
    checks: Tuple[str, ...] = ()
    extensions: Dict[str, Any] = Field(default_factory=dict)


class MaintenanceModePayload(_Record):
    kind: Literal["maintenance_mode"] = "maintenance_mode"
    action: Literal["enter", "exit"]
    state: Optional[str] = None
    evacuate_vms: bool = False
    rollback: bool = False
    extensions: Dict[str, Any] = Field(default_factory=dict)


class FirmwareUpdatePayload(_Record):
    kind: Literal["firmware_update"] = "firmware_update"
    firmware_url: Optional[str] = None
    update_type: Literal["immediate", "staged"] = "immediate"
    state: Optional[str] = None
    rollback: bool = False
    # Component -> version the host should end up on, set for restores
    target_versions: Dict[str, str] = Field(default_factory=dict)
    extensions: Dict[str, Any] = Field(default_factory=dict)


class RebootPayload(_Record):
    kind: Literal["server_reboot"] = "server_reboot"
    graceful: bool = True
    extensions: Dict[str, Any] = Field(default_factory=dict)


class SecurityPatchPayload(_Record):
    kind: Literal["security_patch"] = "security_patch"
    advisories: Tuple[str, ...] = ()
    extensions: Dict[str, Any] = Field(default_factory=dict)


class VCenterSyncPayload(_Record):
    kind: Literal["vcenter_sync"] = "vcenter_sync"
    vcenter_id: Optional[str] = None
    extensions: Dict[str, Any] = Field(default_factory=dict)


JobPayload = Annotated[
    Union[
        HealthCheckPayload,
        MaintenanceModePayload,
        FirmwareUpdatePayload,
        RebootPayload,
        SecurityPatchPayload,
        VCenterSyncPayload,
    ],
    Field(discriminator="kind"),
]

job_payload_adapter: TypeAdapter = TypeAdapter(JobPayload)


def parse_job_payload(raw: str) -> JobPayload:
    return job_payload_adapter.validate_json(raw)


def dump_job_payload(payload: JobPayload) -> str:
    return payload.model_dump_json()


# ---------------------------------------------------------------------------
# Host run context
# ---------------------------------------------------------------------------

class StepResult(_Record):
    """Outcome of one job, appended to the host run context."""
    job_id: str
    job_type: str
    state: Optional[str]
    status: str
    error_message: Optional[str] = None
    recorded_at: UtcDatetime


class HostRunContext(_Record):
    server_id: str
    firmware_url: Optional[str] = None
    plan_id: Optional[str] = None
    rollback_strategy: RollbackStrategy = RollbackStrategy.MANUAL
    clustered: bool = False
    progress: int = 0
    results: Tuple[StepResult, ...] = ()
    error: Optional[str] = None
    rollback_job_ids: Tuple[str, ...] = ()
    final_inventory: Optional[Dict[str, str]] = None
    # Inventory snapshot taken at start, restored on rollback
    previous_firmware: Dict[str, str] = Field(default_factory=dict)
    previous_firmware_url: Optional[str] = None
    extensions: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Inventory / workload
# ---------------------------------------------------------------------------

class HostProfile(_Record):
    """Planner and predictor view of a host."""
    id: str
    hostname: Optional[str] = None
    cluster_id: Optional[str] = None
    ha_enabled: bool = False
    vm_count: int = 0
    readiness: str = "unknown"
    depends_on: Tuple[str, ...] = ()


class WorkloadPattern(_Record):
    hourly_load: Tuple[int, ...]
    daily_load: Tuple[int, ...]
    peak_hours: Tuple[int, ...]
    low_activity_periods: Tuple[int, ...]


class WorkloadInsights(_Record):
    hourly_averages: Tuple[float, ...]
    low_activity_hours: Tuple[int, ...]
    peak_activity_hours: Tuple[int, ...]
    overall_average: float
    weekday_average: float
    weekend_average: float
    recommendations: Tuple[str, ...]
    total_servers: int


# ---------------------------------------------------------------------------
# Maintenance windows
# ---------------------------------------------------------------------------

class CriticalHours(_CamelRecord):
    """Daily "HH:MM"-"HH:MM" period during which maintenance must not run."""
    start: str
    end: str
    description: str = ""


class WindowConstraints(_CamelRecord):
    max_downtime_minutes: Optional[int] = None
    require_approval: bool = False
    critical_hours: Tuple[CriticalHours, ...] = ()
    blackout_dates: Tuple[date, ...] = ()
    # Monday = 0 ... Sunday = 6, as datetime.weekday()
    preferred_days: Optional[Tuple[int, ...]] = None


class AlternativeWindow(_Record):
    start: UtcDatetime
    end: UtcDatetime
    confidence: int
    tradeoffs: Tuple[str, ...]


class MaintenanceWindowRecommendation(_Record):
    server_id: str
    suggested_start: UtcDatetime
    suggested_end: UtcDatetime
    confidence: int
    risk_score: int
    workload_impact: WorkloadImpact
    rationale: Tuple[str, ...]
    alternatives: Tuple[AlternativeWindow, ...]


# ---------------------------------------------------------------------------
# Update plan
# ---------------------------------------------------------------------------

class MaintenanceWindow(_CamelRecord):
    start: UtcDatetime
    end: Optional[UtcDatetime] = None


class PlanConstraints(_CamelRecord):
    max_concurrent_updates: Optional[int] = None
    maintenance_windows: Tuple[MaintenanceWindow, ...] = ()
    blackout_dates: Tuple[date, ...] = ()
    critical_system_protection: bool = False
    rollback_strategy: Optional[RollbackStrategy] = None
    inter_batch_delay_minutes: Optional[int] = None


class ServerGroup(_Record):
    group_id: str
    servers: Tuple[str, ...]
    risk_level: RiskLevel
    criticality_score: float
    dependencies: Tuple[str, ...]
    scheduled_window: UtcDatetime
    batch_index: int
    execution_order: int
    safeguards: Tuple[str, ...]


class SafetyChecks(_Record):
    pre_update: Tuple[str, ...]
    post_update: Tuple[str, ...]
    rollback_validation: Tuple[str, ...]


class RollbackPlan(_Record):
    strategy: RollbackStrategy
    automatic: bool
    checkpoints: Tuple[str, ...]
    triggers: Tuple[str, ...]
    recovery_steps: Tuple[str, ...]


class PlanTimeline(_Record):
    total_duration_minutes: int
    avg_update_minutes: int
    inter_batch_delay_minutes: int
    batch_count: int
    batch_durations: Tuple[int, ...]
    estimated_start: UtcDatetime
    estimated_end: UtcDatetime


class UpdatePlan(_Record):
    id: str
    name: str
    plan_type: PlanType
    server_groups: Tuple[ServerGroup, ...]
    firmware_package_ids: Tuple[str, ...]
    safety_checks: SafetyChecks
    rollback_plan: RollbackPlan
    timeline: PlanTimeline
    constraints: PlanConstraints
    created_at: UtcDatetime

    @property
    def server_ids(self) -> List[str]:
        return [server for group in self.server_groups for server in group.servers]

    @property
    def batch_count(self) -> int:
        return self.timeline.batch_count

    def groups_in_batch(self, batch_index: int) -> List[ServerGroup]:
        return [g for g in self.server_groups if g.batch_index == batch_index]
