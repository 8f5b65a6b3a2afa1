"""Tests for the update planner."""
from datetime import datetime, timedelta, timezone

import pytest

from fleet_orchestrator.errors import EmptyTargetSetError, ValidationError
from fleet_orchestrator.control_plane.schemas import (
    HostProfile,
    MaintenanceWindow,
    PlanConstraints,
    PlanType,
    RiskLevel,
    RollbackStrategy,
    WorkloadPattern,
)
from fleet_orchestrator.control_plane.update_planner import (
    HIGH_RISK_SAFEGUARDS,
    UpdatePlanner,
    batches_of,
    host_criticality,
    host_risk_level,
)
from fleet_orchestrator.control_plane.window_predictor import MaintenanceWindowPredictor

NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)
FW = ["fw-bios"]


def host(host_id, **kwargs):
    kwargs.setdefault("readiness", "ready")
    return HostProfile(id=host_id, **kwargs)


@pytest.fixture
def planner():
    return UpdatePlanner(max_concurrent_updates=3, inter_batch_delay_minutes=30, avg_update_minutes=45)


def make_plan(planner, hosts, plan_type=PlanType.PARALLEL, constraints=None, **kwargs):
    return planner.plan(
        hosts, FW, FW, constraints=constraints, plan_type=plan_type, now=NOW, **kwargs
    )


class TestScoring:
    def test_risk_levels(self):
        assert host_risk_level(host("a")) == RiskLevel.LOW
        assert host_risk_level(host("b", vm_count=12)) == RiskLevel.MEDIUM
        assert host_risk_level(host("c", vm_count=25, ha_enabled=True)) == RiskLevel.HIGH
        assert host_risk_level(host("d", readiness="not_ready", vm_count=6, ha_enabled=True)) == RiskLevel.HIGH
        assert host_risk_level(host("e", readiness="ready_with_warnings", vm_count=6)) == RiskLevel.MEDIUM

    def test_criticality(self):
        assert host_criticality(host("a", vm_count=10, ha_enabled=True)) == 50
        assert host_criticality(host("b", readiness="ready_with_warnings")) == 5
        assert host_criticality(host("c", readiness="not_ready", vm_count=3)) == 6


class TestGrouping:
    def test_groups_cover_targets_exactly(self, planner):
        hosts = [
            host("a", cluster_id="c1"),
            host("b", cluster_id="c1"),
            host("c"),
            host("d", cluster_id="c2"),
            host("e"),
        ]
        plan = make_plan(planner, hosts)

        servers = [s for g in plan.server_groups for s in g.servers]
        assert sorted(servers) == ["a", "b", "c", "d", "e"]
        assert len(servers) == len(set(servers))
        clustered = [g for g in plan.server_groups if "a" in g.servers][0]
        assert set(clustered.servers) == {"a", "b"}
        assert len(plan.server_groups) == 4

    def test_duplicate_targets_collapsed(self, planner):
        plan = make_plan(planner, [host("a"), host("a"), host("b")])
        assert sorted(plan.server_ids) == ["a", "b"]

    def test_group_risk_is_highest_member(self, planner):
        hosts = [host("a", cluster_id="c1"), host("b", cluster_id="c1", vm_count=25, ha_enabled=True)]
        plan = make_plan(planner, hosts)
        assert plan.server_groups[0].risk_level == RiskLevel.HIGH
        assert plan.server_groups[0].criticality_score == host_criticality(hosts[1])


class TestSequencing:
    def test_sequential_two_hosts_two_batches(self, planner):
        plan = make_plan(
            planner,
            [host("a"), host("b")],
            plan_type=PlanType.SEQUENTIAL,
            constraints=PlanConstraints(max_concurrent_updates=1),
        )
        assert plan.timeline.batch_count == 2
        assert [len(b) for b in batches_of(plan)] == [1, 1]
        assert plan.timeline.total_duration_minutes == 45 * 2 + 30

    def test_batches_bounded_by_max_concurrent(self, planner):
        hosts = [host(f"h{i}") for i in range(7)]
        plan = make_plan(planner, hosts)
        assert [len(b) for b in batches_of(plan)] == [3, 3, 1]
        assert plan.timeline.batch_count == 3

    def test_high_risk_group_alone_in_batch(self, planner):
        hosts = [
            host("low1"),
            host("risky", vm_count=30, ha_enabled=True),
            host("low2"),
            host("med", vm_count=12),
        ]
        plan = make_plan(planner, hosts)
        risky = [g for g in plan.server_groups if g.risk_level == RiskLevel.HIGH][0]
        assert plan.groups_in_batch(risky.batch_index) == [risky]
        # High risk goes last
        assert risky.batch_index == plan.timeline.batch_count - 1
        assert set(risky.safeguards) >= set(HIGH_RISK_SAFEGUARDS)

    def test_low_risk_first_then_criticality(self, planner):
        hosts = [host("med", vm_count=12), host("low-small"), host("low-big", vm_count=4, ha_enabled=False)]
        plan = make_plan(planner, hosts)
        order = [g.servers[0] for g in sorted(plan.server_groups, key=lambda g: g.execution_order)]
        assert order == ["low-big", "low-small", "med"]

    def test_dependency_never_in_same_batch(self, planner):
        hosts = [host("app", depends_on=("db",)), host("db"), host("web")]
        plan = make_plan(planner, hosts)
        by_server = {g.servers[0]: g for g in plan.server_groups}
        assert by_server["db"].batch_index < by_server["app"].batch_index
        assert by_server["app"].dependencies == (by_server["db"].group_id,)

    def test_dependency_cycle_rejected(self, planner):
        hosts = [host("a", depends_on=("b",)), host("b", depends_on=("a",))]
        with pytest.raises(ValidationError):
            make_plan(planner, hosts)

    def test_execution_order_is_a_permutation(self, planner):
        hosts = [host(f"h{i}", vm_count=i * 4) for i in range(6)]
        plan = make_plan(planner, hosts)
        assert sorted(g.execution_order for g in plan.server_groups) == list(range(len(plan.server_groups)))


class TestScheduling:
    def test_default_schedule_from_now(self, planner):
        plan = make_plan(planner, [host(f"h{i}") for i in range(4)])
        windows = [b[0].scheduled_window for b in batches_of(plan)]
        assert windows == [NOW + timedelta(minutes=30), NOW + timedelta(minutes=60)]

    def test_maintenance_window_base(self, planner):
        start = datetime(2024, 5, 18, 2, 0, tzinfo=timezone.utc)
        constraints = PlanConstraints(maintenance_windows=(MaintenanceWindow(start=start),), max_concurrent_updates=1)
        plan = make_plan(planner, [host("a"), host("b")], constraints=constraints)
        windows = [b[0].scheduled_window for b in batches_of(plan)]
        assert windows == [start, start + timedelta(minutes=30)]
        assert plan.timeline.estimated_start == start
        assert plan.timeline.estimated_end == start + timedelta(minutes=plan.timeline.total_duration_minutes)

    def test_blackout_dates_push_window(self, planner):
        start = datetime(2024, 5, 18, 2, 0, tzinfo=timezone.utc)
        constraints = PlanConstraints(
            maintenance_windows=(MaintenanceWindow(start=start),),
            blackout_dates=(start.date(),),
        )
        plan = make_plan(planner, [host("a")], constraints=constraints)
        assert plan.server_groups[0].scheduled_window == start + timedelta(days=1)

    def test_blackout_push_keeps_batches_in_order(self, planner):
        start = datetime(2024, 6, 1, 23, 45, tzinfo=timezone.utc)
        constraints = PlanConstraints(
            maintenance_windows=(MaintenanceWindow(start=start),),
            blackout_dates=(start.date(),),
            max_concurrent_updates=1,
        )
        plan = make_plan(planner, [host("a"), host("b"), host("c")], constraints=constraints)
        windows = [b[0].scheduled_window for b in batches_of(plan)]
        assert windows == [
            datetime(2024, 6, 2, 23, 45, tzinfo=timezone.utc),
            datetime(2024, 6, 3, 0, 15, tzinfo=timezone.utc),
            datetime(2024, 6, 3, 0, 45, tzinfo=timezone.utc),
        ]

    def test_naive_window_read_as_utc(self):
        window = MaintenanceWindow(start=datetime(2024, 5, 18, 2, 0))
        assert window.start == datetime(2024, 5, 18, 2, 0, tzinfo=timezone.utc)

    def test_policy_accepts_camel_case_keys(self):
        constraints = PlanConstraints.model_validate(
            {"maxConcurrentUpdates": 1, "interBatchDelayMinutes": 15, "blackoutDates": ["2024-06-01"]}
        )
        assert constraints.max_concurrent_updates == 1
        assert constraints.inter_batch_delay_minutes == 15
        assert PlanConstraints(max_concurrent_updates=2).max_concurrent_updates == 2

    def test_intelligent_plan_uses_recommendations(self, planner):
        hosts = [host("a"), host("b")]
        quiet = WorkloadPattern(
            hourly_load=(1,) * 4 + (10,) * 20,
            daily_load=(10,) * 7,
            peak_hours=(),
            low_activity_periods=(0, 1, 2, 3),
        )
        predictor = MaintenanceWindowPredictor()
        recommendations = predictor.predict_fleet(hosts, {"a": quiet, "b": quiet}, 45, now=NOW)
        plan = make_plan(
            planner, hosts, plan_type=PlanType.INTELLIGENT_ORCHESTRATION, recommendations=recommendations
        )
        earliest = min(recs[0].suggested_start for recs in recommendations.values())
        assert plan.server_groups[0].scheduled_window == earliest


class TestSafetyAndRollback:
    def test_safety_checks(self, planner):
        plan = make_plan(planner, [host("a")])
        assert len(plan.safety_checks.pre_update) == 6
        assert len(plan.safety_checks.post_update) == 6
        assert len(plan.safety_checks.rollback_validation) == 4

    def test_rollback_defaults_to_manual(self, planner):
        plan = make_plan(planner, [host("a")])
        assert plan.rollback_plan.strategy == RollbackStrategy.MANUAL
        assert plan.rollback_plan.automatic is False
        assert plan.constraints.rollback_strategy == RollbackStrategy.MANUAL

    def test_automatic_rollback(self, planner):
        constraints = PlanConstraints(rollback_strategy=RollbackStrategy.AUTOMATIC)
        plan = make_plan(planner, [host("a")], constraints=constraints)
        assert plan.rollback_plan.automatic is True
        assert len(plan.rollback_plan.triggers) == 5

    def test_critical_system_protection(self, planner):
        constraints = PlanConstraints(critical_system_protection=True)
        plan = make_plan(planner, [host("a"), host("b", vm_count=12)], constraints=constraints)
        by_server = {g.servers[0]: g for g in plan.server_groups}
        assert len(by_server["a"].safeguards) == 3
        assert len(by_server["b"].safeguards) == 4


class TestValidation:
    def test_empty_targets(self, planner):
        with pytest.raises(EmptyTargetSetError):
            planner.plan([], FW, FW, now=NOW)

    def test_unknown_firmware(self, planner):
        with pytest.raises(ValidationError):
            planner.plan([host("a")], ["fw-missing"], FW, now=NOW)

    def test_no_firmware(self, planner):
        with pytest.raises(ValidationError):
            planner.plan([host("a")], [], FW, now=NOW)

    def test_invalid_concurrency(self, planner):
        with pytest.raises(ValidationError):
            make_plan(planner, [host("a")], constraints=PlanConstraints(max_concurrent_updates=0))
