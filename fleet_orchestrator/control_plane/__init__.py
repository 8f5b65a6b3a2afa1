"""
Control Plane Core

Core orchestration components: models, job queue, host runs, planning.
"""

from .models import BackgroundJob, HostRun, HostRunState, JobStatus, JobType
from .job_queue import JobQueue
from .queue_manager import QueueManager
from .idempotency_engine import IdempotencyEngine
from .host_runs import HostRunMachine
from .workload_analyzer import WorkloadPatternAnalyzer
from .window_predictor import MaintenanceWindowPredictor
from .update_planner import UpdatePlanner
from .update_orchestrator import PlanExecutor, UpdateOrchestrator

__all__ = [
    "BackgroundJob",
    "HostRun",
    "HostRunState",
    "JobStatus",
    "JobType",
    "JobQueue",
    "QueueManager",
    "IdempotencyEngine",
    "HostRunMachine",
    "WorkloadPatternAnalyzer",
    "MaintenanceWindowPredictor",
    "UpdatePlanner",
    "PlanExecutor",
    "UpdateOrchestrator",
]
