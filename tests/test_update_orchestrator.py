"""Tests for the orchestrator facade and the plan executor."""
from datetime import timedelta

import pytest
from sqlmodel import select

from fleet_orchestrator.errors import (
    EmptyTargetSetError,
    ExecutionFailure,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from fleet_orchestrator.control_plane.executor_adapter import ExecutionWorker
from fleet_orchestrator.control_plane.models import (
    HostRunState,
    OperationalEvent,
    PlanStatus,
    UpdatePlanRecord,
    utc_now,
)
from fleet_orchestrator.control_plane.schemas import PlanConstraints, PlanType, RollbackStrategy
from fleet_orchestrator.control_plane.update_orchestrator import load_plan


class FleetExecutor:
    def __init__(self, failing=()):
        self.failing = set(failing)

    async def execute(self, job, payload):
        if job.target_id in self.failing:
            raise ExecutionFailure(job.id, "iDRAC unreachable")
        return {}


async def drain(orchestrator, executor=None):
    worker = ExecutionWorker(
        "worker-1", orchestrator.job_queue, executor or FleetExecutor(), on_result=orchestrator.handle_job_report
    )
    while await worker.run_once():
        pass


@pytest.fixture
async def fleet(add_host, add_firmware):
    await add_host("esx-a")
    await add_host("esx-b")
    await add_firmware("fw-bios")


async def sequential_plan(orchestrator, **kwargs):
    return await orchestrator.create_plan(
        targets=["esx-a", "esx-b"],
        firmware_package_ids=["fw-bios"],
        plan_type=PlanType.SEQUENTIAL,
        **kwargs,
    )


class TestCreatePlan:
    async def test_plan_persisted_as_planned(self, orchestrator, fleet):
        record = await sequential_plan(orchestrator, name="BIOS rollout")

        assert record.status == PlanStatus.PLANNED
        assert record.name == "BIOS rollout"
        plan = load_plan(record)
        assert sorted(plan.server_ids) == ["esx-a", "esx-b"]
        assert plan.timeline.batch_count == 2
        assert plan.firmware_package_ids == ("fw-bios",)

    async def test_idempotency_key(self, orchestrator, fleet):
        first = await sequential_plan(orchestrator, idempotency_key="rollout-1")
        second = await sequential_plan(orchestrator, idempotency_key="rollout-1")
        assert first.id == second.id

    async def test_plan_idempotency_uses_redis(self, db, settings, mock_redis, fleet):
        from fleet_orchestrator.control_plane.update_orchestrator import UpdateOrchestrator

        orchestrator = UpdateOrchestrator(db=db, settings=settings, redis_client=mock_redis)
        record = await sequential_plan(orchestrator, idempotency_key="rollout-2")
        mock_redis.setex.assert_awaited_with("idempotency:plan:rollout-2", 86400, record.id)

    async def test_empty_targets(self, orchestrator, fleet):
        with pytest.raises(EmptyTargetSetError):
            await orchestrator.create_plan(targets=[], firmware_package_ids=["fw-bios"])

    @pytest.mark.parametrize(
        "targets, firmware",
        [(["esx-a", "esx-missing"], ["fw-bios"]), (["esx-a"], ["fw-missing"])],
    )
    async def test_invalid_request_leaves_no_plan(self, orchestrator, fleet, db, targets, firmware):
        with pytest.raises(ValidationError):
            await orchestrator.create_plan(targets=targets, firmware_package_ids=firmware)

        async with db.session() as session:
            result = await session.execute(select(UpdatePlanRecord))
            assert result.scalars().all() == []

    async def test_intelligent_plan_scheduled_in_future(self, orchestrator, fleet):
        now = utc_now()
        record = await orchestrator.create_plan(
            targets=["esx-a", "esx-b"], firmware_package_ids=["fw-bios"], now=now
        )
        plan = load_plan(record)
        assert plan.plan_type == PlanType.INTELLIGENT_ORCHESTRATION
        assert all(g.scheduled_window > now for g in plan.server_groups)


class TestPlanExecution:
    async def test_sequential_plan_runs_to_completion(self, orchestrator, fleet):
        now = utc_now()
        record = await sequential_plan(orchestrator, now=now)

        started = await orchestrator.start_plan(record.id, now=now)
        assert started["status"] == "in_progress"
        assert started["count"] == 0

        await orchestrator.executor.advance(record.id, now=now + timedelta(minutes=31))
        view = await orchestrator.get_plan_status(record.id)
        assert [r.host_id for r in view.host_runs] == [load_plan(record).server_groups[0].servers[0]]

        # Batch 1 waits while batch 0 is still running
        await orchestrator.executor.advance(record.id, now=now + timedelta(hours=3))
        assert len((await orchestrator.get_plan_status(record.id)).host_runs) == 1

        await drain(orchestrator)
        view = await orchestrator.get_plan_status(record.id)
        assert view.status == PlanStatus.IN_PROGRESS
        assert view.host_runs[0].state == HostRunState.DONE

        await orchestrator.executor.advance(record.id, now=now + timedelta(hours=3))
        await drain(orchestrator)

        view = await orchestrator.get_plan_status(record.id)
        assert view.status == PlanStatus.COMPLETED
        assert [r.state for r in view.host_runs] == [HostRunState.DONE, HostRunState.DONE]
        assert view.record.completed_at is not None

    async def test_host_failure_does_not_halt_plan(self, orchestrator, fleet):
        now = utc_now()
        record = await sequential_plan(orchestrator, now=now)
        first = load_plan(record).server_groups[0].servers[0]
        later = now + timedelta(hours=3)

        await orchestrator.start_plan(record.id, now=later)
        await drain(orchestrator, FleetExecutor(failing=[first]))
        await orchestrator.executor.advance(record.id, now=later)
        await drain(orchestrator, FleetExecutor(failing=[first]))

        view = await orchestrator.get_plan_status(record.id)
        states = {r.host_id: r.state for r in view.host_runs}
        assert states[first] == HostRunState.ERROR
        assert list(states.values()).count(HostRunState.DONE) == 1
        assert view.status == PlanStatus.FAILED

    async def test_plan_rollback_strategy_reaches_host_runs(self, orchestrator, fleet):
        now = utc_now()
        record = await sequential_plan(
            orchestrator, now=now, constraints=PlanConstraints(rollback_strategy=RollbackStrategy.AUTOMATIC)
        )
        await orchestrator.start_plan(record.id, now=now + timedelta(hours=1))

        run = (await orchestrator.get_plan_status(record.id)).host_runs[0]
        view = await orchestrator.host_runs.status(run.id)
        assert view.context.rollback_strategy == RollbackStrategy.AUTOMATIC
        assert view.context.plan_id == record.id

    async def test_start_twice_rejected(self, orchestrator, fleet):
        record = await sequential_plan(orchestrator)
        await orchestrator.start_plan(record.id)
        with pytest.raises(InvalidStateError):
            await orchestrator.start_plan(record.id)

    async def test_dry_run(self, orchestrator, fleet):
        record = await sequential_plan(orchestrator)
        result = await orchestrator.start_plan(record.id, dry_run=True)

        assert result["dry_run"] is True
        assert sorted(result["targets"]) == ["esx-a", "esx-b"]
        assert (await orchestrator.get_plan(record.id)).status == PlanStatus.PLANNED

    async def test_unknown_plan(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.get_plan_status("missing")

    async def test_run_until_complete(self, orchestrator, fleet):
        now = utc_now() - timedelta(hours=2)
        record = await orchestrator.create_plan(
            targets=["esx-a"], firmware_package_ids=["fw-bios"], plan_type=PlanType.PARALLEL, now=now
        )
        await orchestrator.start_plan(record.id)
        await drain(orchestrator)

        final = await orchestrator.executor.run_until_complete(record.id, poll_interval=0, max_polls=3)
        assert final.status == PlanStatus.COMPLETED

    async def test_run_until_complete_requires_started_plan(self, orchestrator, fleet):
        record = await sequential_plan(orchestrator)
        with pytest.raises(InvalidStateError):
            await orchestrator.executor.run_until_complete(record.id, poll_interval=0)


class TestWindowsAndStats:
    async def test_predict_windows(self, orchestrator, fleet):
        windows = await orchestrator.predict_windows("esx-a", 60)
        assert windows
        assert all(w.server_id == "esx-a" for w in windows)

    async def test_predict_windows_unknown_host(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.predict_windows("missing")

    async def test_workload_insights_across_fleet(self, orchestrator, fleet, db, now):
        busy = now.replace(hour=10) - timedelta(days=1)
        async with db.session() as session:
            for host_id in ("esx-a", "esx-b"):
                for minute in range(20):
                    session.add(OperationalEvent(
                        id=f"{host_id}-{minute}", server_id=host_id, created_at=busy + timedelta(minutes=minute)
                    ))
            await session.commit()

        insights = await orchestrator.workload_insights(now=now)
        assert insights.total_servers == 2
        assert insights.hourly_averages[10] == 20
        assert insights.peak_activity_hours == (10,)
        assert 10 not in insights.low_activity_hours

        only_a = await orchestrator.workload_insights(["esx-a"], now=now)
        assert only_a.total_servers == 1

    async def test_workload_insights_unknown_host(self, orchestrator, fleet):
        with pytest.raises(ValidationError):
            await orchestrator.workload_insights(["missing"])

    async def test_queue_stats(self, orchestrator):
        await orchestrator.host_runs.start("run-1", "srv-1")
        stats = await orchestrator.get_queue_stats()
        assert stats["jobs"]["total"] == 1
        assert stats["jobs"]["by_status"] == {"queued": 1}
        assert "queue" not in stats
