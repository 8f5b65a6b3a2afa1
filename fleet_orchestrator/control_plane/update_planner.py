"""
Update Planner

Builds an UpdatePlan for a fleet-wide firmware campaign:

1. group hosts that share a cluster (transitive closure),
2. score risk and criticality per group,
3. sequence groups into batches bounded by max_concurrent_updates, giving
   high-risk groups a batch of their own and never batching a group with a
   group it depends on,
4. schedule each batch, attach safety checks, a rollback plan and a timeline.

Planning is pure: it reads only its arguments and either returns a complete
plan or raises before anything is built.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from ..errors import EmptyTargetSetError, ValidationError
from .models import Readiness, as_utc, utc_now
from .schemas import (
    RISK_ORDER,
    HostProfile,
    MaintenanceWindowRecommendation,
    PlanConstraints,
    PlanTimeline,
    PlanType,
    RiskLevel,
    RollbackPlan,
    RollbackStrategy,
    SafetyChecks,
    ServerGroup,
    UpdatePlan,
)
from .window_predictor import best_window

logger = logging.getLogger(__name__)

PRE_UPDATE_CHECKS = (
    "Verify server connectivity and credentials",
    "Confirm firmware package compatibility",
    "Check cluster health and HA status",
    "Validate backup systems availability",
    "Verify maintenance window approval",
    "Confirm VM migration readiness",
)

POST_UPDATE_CHECKS = (
    "Verify firmware update completion",
    "Check server boot status and connectivity",
    "Validate VM operational status",
    "Confirm cluster rejoining process",
    "Monitor performance metrics",
    "Verify service availability",
)

ROLLBACK_VALIDATION = (
    "Confirm rollback firmware availability",
    "Verify system restore capabilities",
    "Check VM restoration procedures",
    "Validate cluster recovery process",
)

GROUP_SAFEGUARDS = (
    "Verify all servers in group are accessible",
    "Confirm VM status and dependencies",
    "Check cluster health status",
)

HIGH_RISK_SAFEGUARDS = (
    "Ensure backup systems are operational",
    "Verify rollback procedures are tested",
    "Confirm emergency contact availability",
)

CRITICAL_PROTECTION_SAFEGUARD = "Obtain change-advisory sign-off for critical systems"

CHECKPOINTS = (
    "Pre-update system state backup",
    "Firmware package staging verification",
    "Update initiation confirmation",
    "Post-update validation checkpoint",
)

ROLLBACK_TRIGGERS = (
    "Update failure or timeout",
    "System boot failure",
    "Critical service unavailability",
    "Manual rollback request",
    "Performance degradation threshold exceeded",
)

CONDITIONAL_TRIGGERS = (
    "Update failure or timeout",
    "System boot failure",
)

RECOVERY_STEPS = (
    "Halt update process immediately",
    "Restore previous firmware version",
    "Restart server and verify boot",
    "Restore VM operations",
    "Rejoin cluster if applicable",
    "Validate system functionality",
    "Generate incident report",
)


def host_risk_level(host: HostProfile) -> RiskLevel:
    points = 0
    if host.vm_count > 20:
        points += 3
    elif host.vm_count > 10:
        points += 2
    elif host.vm_count > 5:
        points += 1
    if host.ha_enabled:
        points += 2
    if host.readiness == Readiness.NOT_READY.value:
        points += 3
    elif host.readiness == Readiness.READY_WITH_WARNINGS.value:
        points += 1

    if points >= 5:
        return RiskLevel.HIGH
    if points >= 2:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def host_criticality(host: HostProfile) -> float:
    """Weighted toward HA membership and VM count; poor readiness earns no bonus."""
    score = host.vm_count * 2
    if host.ha_enabled:
        score += 20
    if host.readiness == Readiness.READY.value:
        score += 10
    elif host.readiness == Readiness.READY_WITH_WARNINGS.value:
        score += 5
    return float(score)


class _UnionFind:
    def __init__(self, items: Iterable[str]):
        self.parent = {item: item for item in items}

    def find(self, item: str) -> str:
        while self.parent[item] != item:
            self.parent[item] = self.parent[self.parent[item]]
            item = self.parent[item]
        return item

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            self.parent[root_b] = root_a


class _Group:
    """Mutable working copy of a ServerGroup while sequencing."""

    def __init__(self, group_id: str, hosts: List[HostProfile], order: int):
        self.group_id = group_id
        self.hosts = hosts
        self.order = order
        self.risk_level = max((host_risk_level(h) for h in hosts), key=RISK_ORDER.__getitem__)
        self.criticality_score = max(host_criticality(h) for h in hosts)
        self.dependencies: List[str] = []
        self.batch_index = 0

    @property
    def servers(self) -> List[str]:
        return [h.id for h in self.hosts]


class UpdatePlanner:
    def __init__(
        self,
        max_concurrent_updates: int = 3,
        inter_batch_delay_minutes: int = 30,
        avg_update_minutes: int = 45,
        default_rollback_strategy: Union[RollbackStrategy, str] = RollbackStrategy.MANUAL,
    ):
        self.max_concurrent_updates = max_concurrent_updates
        self.inter_batch_delay_minutes = inter_batch_delay_minutes
        self.avg_update_minutes = avg_update_minutes
        self.default_rollback_strategy = RollbackStrategy(default_rollback_strategy)

    def plan(
        self,
        hosts: Sequence[HostProfile],
        firmware_package_ids: Sequence[str],
        known_firmware_ids: Iterable[str],
        constraints: Optional[PlanConstraints] = None,
        plan_type: Union[PlanType, str] = PlanType.INTELLIGENT_ORCHESTRATION,
        name: Optional[str] = None,
        now: Optional[datetime] = None,
        recommendations: Optional[Mapping[str, Sequence[MaintenanceWindowRecommendation]]] = None,
        plan_id: Optional[str] = None,
    ) -> UpdatePlan:
        constraints = constraints or PlanConstraints()
        now = as_utc(now) if now else utc_now()
        plan_type = PlanType(plan_type)
        hosts = self._validate(hosts, firmware_package_ids, known_firmware_ids, constraints)

        groups = self.group_hosts(hosts)
        max_concurrent = self._max_concurrent(constraints, plan_type)
        ordered = self.sequence(groups, max_concurrent)

        delay = constraints.inter_batch_delay_minutes or self.inter_batch_delay_minutes
        base = self._schedule_base(constraints, plan_type, recommendations)
        batch_count = max((g.batch_index for g in ordered), default=-1) + 1
        windows = self.batch_windows(batch_count, base, delay, now, constraints)
        strategy = constraints.rollback_strategy or self.default_rollback_strategy

        server_groups = tuple(
            ServerGroup(
                group_id=g.group_id,
                servers=tuple(g.servers),
                risk_level=g.risk_level,
                criticality_score=g.criticality_score,
                dependencies=tuple(g.dependencies),
                scheduled_window=windows[g.batch_index],
                batch_index=g.batch_index,
                execution_order=position,
                safeguards=self.safeguards(g.risk_level, constraints),
            )
            for position, g in enumerate(ordered)
        )

        plan = UpdatePlan(
            id=plan_id or str(uuid.uuid4()),
            name=name or f"Intelligent Update Plan - {now:%Y-%m-%d}",
            plan_type=plan_type,
            server_groups=server_groups,
            firmware_package_ids=tuple(dict.fromkeys(firmware_package_ids)),
            safety_checks=SafetyChecks(
                pre_update=PRE_UPDATE_CHECKS,
                post_update=POST_UPDATE_CHECKS,
                rollback_validation=ROLLBACK_VALIDATION,
            ),
            rollback_plan=self.rollback_plan(strategy),
            timeline=self.timeline(server_groups, delay, now),
            constraints=constraints.model_copy(update={"rollback_strategy": strategy}),
            created_at=now,
        )
        logger.info(
            f"Planned {plan_type.value} update {plan.id}: {len(hosts)} servers, "
            f"{len(server_groups)} groups, {plan.timeline.batch_count} batches"
        )
        return plan

    def _validate(
        self,
        hosts: Sequence[HostProfile],
        firmware_package_ids: Sequence[str],
        known_firmware_ids: Iterable[str],
        constraints: PlanConstraints,
    ) -> List[HostProfile]:
        if not hosts:
            raise EmptyTargetSetError()
        if not firmware_package_ids:
            raise ValidationError("At least one firmware package is required")
        known = set(known_firmware_ids)
        unknown = [fw for fw in firmware_package_ids if fw not in known]
        if unknown:
            raise ValidationError(f"Unknown firmware package(s): {', '.join(unknown)}")
        if constraints.max_concurrent_updates is not None and constraints.max_concurrent_updates < 1:
            raise ValidationError("max_concurrent_updates must be at least 1")

        unique: Dict[str, HostProfile] = {}
        for host in hosts:
            unique.setdefault(host.id, host)
        return list(unique.values())

    def _max_concurrent(self, constraints: PlanConstraints, plan_type: PlanType) -> int:
        if plan_type == PlanType.SEQUENTIAL:
            return 1
        return constraints.max_concurrent_updates or self.max_concurrent_updates

    def group_hosts(self, hosts: Sequence[HostProfile]) -> List[_Group]:
        """One group per cluster (transitive over shared cluster ids), singletons otherwise."""
        uf = _UnionFind(h.id for h in hosts)
        first_in_cluster: Dict[str, str] = {}
        for host in hosts:
            if not host.cluster_id:
                continue
            if host.cluster_id in first_in_cluster:
                uf.union(first_in_cluster[host.cluster_id], host.id)
            else:
                first_in_cluster[host.cluster_id] = host.id

        members: Dict[str, List[HostProfile]] = {}
        for host in hosts:
            members.setdefault(uf.find(host.id), []).append(host)

        groups = [_Group(str(uuid.uuid4()), group_hosts, order) for order, group_hosts in enumerate(members.values())]

        group_of = {h.id: g for g in groups for h in g.hosts}
        for group in groups:
            deps = []
            for host in group.hosts:
                for dep in host.depends_on:
                    dep_group = group_of.get(dep)
                    if dep_group is not None and dep_group is not group and dep_group.group_id not in deps:
                        deps.append(dep_group.group_id)
            group.dependencies = deps
        return groups

    def sequence(self, groups: List[_Group], max_concurrent: int) -> List[_Group]:
        """
        Order groups (low risk first, then higher criticality) and assign batches.

        A group is only placed after every group it depends on, and never in the
        same batch as one of them.
        """
        remaining = sorted(
            groups,
            key=lambda g: (RISK_ORDER[g.risk_level], -g.criticality_score, g.order),
        )
        placed: Dict[str, int] = {}
        ordered: List[_Group] = []
        batch_index = 0
        batch_size = 0

        while remaining:
            group = next((g for g in remaining if all(d in placed for d in g.dependencies)), None)
            if group is None:
                cycle = ", ".join(s for g in remaining for s in g.servers)
                raise ValidationError(f"Circular host dependencies among: {cycle}")
            remaining.remove(group)

            is_high = group.risk_level == RiskLevel.HIGH
            dependency_in_batch = any(placed[d] == batch_index for d in group.dependencies)
            if batch_size and (is_high or batch_size >= max_concurrent or dependency_in_batch):
                batch_index += 1
                batch_size = 0

            group.batch_index = batch_index
            placed[group.group_id] = batch_index
            ordered.append(group)
            batch_size += 1

            if is_high:
                batch_index += 1
                batch_size = 0

        return ordered

    def _schedule_base(
        self,
        constraints: PlanConstraints,
        plan_type: PlanType,
        recommendations: Optional[Mapping[str, Sequence[MaintenanceWindowRecommendation]]],
    ) -> Optional[datetime]:
        if constraints.maintenance_windows:
            return constraints.maintenance_windows[0].start
        if plan_type == PlanType.INTELLIGENT_ORCHESTRATION and recommendations:
            starts = [w.suggested_start for w in (best_window(r) for r in recommendations.values()) if w]
            if starts:
                return min(starts)
        return None

    def batch_windows(
        self,
        batch_count: int,
        base: Optional[datetime],
        delay_minutes: int,
        now: datetime,
        constraints: PlanConstraints,
    ) -> List[datetime]:
        """
        Start time of each batch.

        Batches are spaced `delay_minutes` apart from the base; a batch that
        lands on a blackout date moves to the next free day, and every later
        batch keeps at least `delay_minutes` after it.
        """
        first = base if base is not None else now + timedelta(minutes=delay_minutes)
        blackout = set(constraints.blackout_dates)
        windows: List[datetime] = []
        for batch_index in range(batch_count):
            window = first + timedelta(minutes=batch_index * delay_minutes)
            if windows:
                window = max(window, windows[-1] + timedelta(minutes=delay_minutes))
            while window.date() in blackout:
                window += timedelta(days=1)
            windows.append(window)
        return windows

    def safeguards(self, risk_level: RiskLevel, constraints: PlanConstraints) -> tuple:
        safeguards = list(GROUP_SAFEGUARDS)
        if risk_level == RiskLevel.HIGH:
            safeguards.extend(HIGH_RISK_SAFEGUARDS)
        if constraints.critical_system_protection and risk_level != RiskLevel.LOW:
            safeguards.append(CRITICAL_PROTECTION_SAFEGUARD)
        return tuple(safeguards)

    def rollback_plan(self, strategy: RollbackStrategy) -> RollbackPlan:
        if strategy == RollbackStrategy.AUTOMATIC:
            return RollbackPlan(
                strategy=strategy,
                automatic=True,
                checkpoints=CHECKPOINTS,
                triggers=ROLLBACK_TRIGGERS,
                recovery_steps=RECOVERY_STEPS,
            )
        if strategy == RollbackStrategy.CONDITIONAL:
            return RollbackPlan(
                strategy=strategy,
                automatic=True,
                checkpoints=CHECKPOINTS,
                triggers=CONDITIONAL_TRIGGERS,
                recovery_steps=RECOVERY_STEPS,
            )
        return RollbackPlan(
            strategy=strategy,
            automatic=False,
            checkpoints=CHECKPOINTS,
            triggers=ROLLBACK_TRIGGERS,
            recovery_steps=("Obtain operator confirmation for rollback",) + RECOVERY_STEPS,
        )

    def timeline(self, groups: Sequence[ServerGroup], delay_minutes: int, now: datetime) -> PlanTimeline:
        """Hosts in a batch update in parallel, so each batch costs one average update time."""
        batch_count = max(g.batch_index for g in groups) + 1
        batch_durations = tuple(self.avg_update_minutes for _ in range(batch_count))
        total = sum(batch_durations) + (batch_count - 1) * delay_minutes
        start = min((g.scheduled_window for g in groups), default=now)
        return PlanTimeline(
            total_duration_minutes=total,
            avg_update_minutes=self.avg_update_minutes,
            inter_batch_delay_minutes=delay_minutes,
            batch_count=batch_count,
            batch_durations=batch_durations,
            estimated_start=start,
            estimated_end=start + timedelta(minutes=total),
        )


def batches_of(plan: UpdatePlan) -> List[List[ServerGroup]]:
    """Server groups bucketed by batch index, in batch order."""
    buckets: Dict[int, List[ServerGroup]] = {}
    for group in plan.server_groups:
        buckets.setdefault(group.batch_index, []).append(group)
    return [buckets[index] for index in sorted(buckets)]
