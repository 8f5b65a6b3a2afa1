"""API tests against the FastAPI app with the orchestrator dependency overridden."""
import pytest
from httpx import ASGITransport, AsyncClient

from fleet_orchestrator.main import app, get_orchestrator


@pytest.fixture
async def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def create_job(client, target_id="srv-1"):
    response = await client.post(
        "/api/v1/jobs/actions",
        json={"action": "create", "jobData": {"jobType": "health_check", "targetId": target_id}},
    )
    assert response.status_code == 200
    return response.json()["job"]


class TestService:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "ok"

    async def test_root(self, client):
        response = await client.get("/")
        assert response.json()["service"] == "fleet-orchestrator"

    async def test_orchestrator_unavailable(self):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get("/api/v1/queue/stats")
        assert response.status_code == 503


class TestJobs:
    async def test_create_and_cancel(self, client):
        job = await create_job(client)
        assert job["status"] == "queued"

        response = await client.post("/api/v1/jobs/actions", json={"action": "cancel", "jobId": job["id"]})
        assert response.status_code == 200
        assert response.json()["job"]["status"] == "cancelled"

    async def test_retry_queued_job_conflicts(self, client):
        job = await create_job(client)
        response = await client.post("/api/v1/jobs/actions", json={"action": "retry", "jobId": job["id"]})
        assert response.status_code == 409
        assert response.json()["success"] is False

    async def test_unknown_job(self, client):
        response = await client.post("/api/v1/jobs/actions", json={"action": "status", "jobId": "missing"})
        assert response.status_code == 404
        assert response.json()["success"] is False
        assert "missing" in response.json()["error"]

    async def test_missing_job_id(self, client):
        response = await client.post("/api/v1/jobs/actions", json={"action": "cancel"})
        assert response.status_code == 400

    async def test_worker_lifecycle(self, client):
        job = await create_job(client)

        claimed = await client.post("/api/v1/workers/worker-1/claim", json={"maxJobs": 2})
        assert [j["id"] for j in claimed.json()["jobs"]] == [job["id"]]

        progress = await client.post(f"/api/v1/jobs/{job['id']}/progress", json={"progress": 40})
        assert progress.json()["job"]["progress"] == 40

        done = await client.post(f"/api/v1/jobs/{job['id']}/complete", json={"result": {"healthy": True}})
        assert done.json()["job"]["status"] == "completed"

        again = await client.post(f"/api/v1/jobs/{job['id']}/fail", json={"errorMessage": "late"})
        assert again.status_code == 409

    async def test_list_by_status(self, client):
        await create_job(client, "srv-1")
        await create_job(client, "srv-2")
        response = await client.post(
            "/api/v1/jobs/actions", json={"action": "list", "filters": {"status": "queued"}}
        )
        assert {j["target_id"] for j in response.json()["jobs"]} == {"srv-1", "srv-2"}

    async def test_queue_stats(self, client):
        await create_job(client)
        response = await client.get("/api/v1/queue/stats")
        assert response.json()["jobs"]["by_type"] == {"health_check": 1}


class TestHostRuns:
    async def test_start_then_invalid_transition(self, client):
        response = await client.post(
            "/api/v1/host-runs/actions", json={"action": "start", "serverId": "srv-1"}
        )
        assert response.status_code == 200
        run = response.json()["hostRun"]
        assert run["state"] == "PRECHECKS"

        response = await client.post(
            "/api/v1/host-runs/actions",
            json={"action": "transition", "hostRunId": run["id"], "targetState": "APPLY"},
        )
        assert response.status_code == 409

        status = await client.post("/api/v1/host-runs/actions", json={"action": "status", "hostRunId": run["id"]})
        body = status.json()
        assert body["state"] == "PRECHECKS"
        assert len(body["jobs"]) == 1

    async def test_second_run_for_host_conflicts(self, client):
        payload = {"action": "start", "serverId": "srv-1"}
        assert (await client.post("/api/v1/host-runs/actions", json=payload)).status_code == 200
        assert (await client.post("/api/v1/host-runs/actions", json=payload)).status_code == 409

    async def test_cancel(self, client):
        response = await client.post(
            "/api/v1/host-runs/actions", json={"action": "start", "serverId": "srv-1"}
        )
        run_id = response.json()["hostRun"]["id"]
        response = await client.post("/api/v1/host-runs/actions", json={"action": "cancel", "hostRunId": run_id})
        assert response.json()["hostRun"]["state"] == "ERROR"


class TestHostsAndPlans:
    async def test_discovery_and_windows(self, client):
        response = await client.post(
            "/api/v1/hosts/discovered",
            json={"hosts": [{"ipAddress": "10.9.0.1", "hostname": "esx-01", "vmCount": 3}]},
        )
        assert response.json()["discovered"] == 1
        assert response.json()["hosts"][0]["vm_count"] == 3
        host_id = response.json()["hosts"][0]["id"]

        response = await client.get(
            f"/api/v1/hosts/{host_id}/maintenance-windows", params={"durationMinutes": 60}
        )
        assert response.status_code == 200
        assert response.json()["windows"]

        response = await client.get(
            f"/api/v1/hosts/{host_id}/maintenance-windows",
            params={"durationMinutes": 60, "maxDowntimeMinutes": 30},
        )
        assert response.json()["windows"] == []

    async def test_windows_for_unknown_host(self, client):
        response = await client.get("/api/v1/hosts/missing/maintenance-windows")
        assert response.status_code == 404

    async def test_plan_lifecycle(self, client, add_host, add_firmware):
        await add_host("esx-a")
        await add_host("esx-b")
        await add_firmware("fw-bios")

        response = await client.post(
            "/api/v1/plans",
            json={"name": "BIOS", "targets": ["esx-a", "esx-b"], "artifacts": ["fw-bios"], "planType": "parallel"},
        )
        assert response.status_code == 201
        plan = response.json()
        assert plan["status"] == "planned"
        assert len(plan["plan"]["server_groups"]) == 2

        dry = await client.post(f"/api/v1/plans/{plan['id']}/start", params={"dryRun": "true"})
        assert dry.json()["dry_run"] is True

        started = await client.post(f"/api/v1/plans/{plan['id']}/start")
        assert started.json()["status"] == "in_progress"
        assert (await client.post(f"/api/v1/plans/{plan['id']}/start")).status_code == 409

        status = await client.get(f"/api/v1/plans/{plan['id']}/status")
        assert status.json()["status"] == "in_progress"

        report = await client.get(f"/api/v1/plans/{plan['id']}/report")
        assert report.json()["components"][0]["id"] == "fw-bios"

    async def test_plan_policy_in_camel_case(self, client, add_host, add_firmware):
        await add_host("esx-a")
        await add_host("esx-b")
        await add_firmware("fw-bios")

        response = await client.post(
            "/api/v1/plans",
            json={
                "targets": ["esx-a", "esx-b"],
                "artifacts": ["fw-bios"],
                "planType": "parallel",
                "policy": {"maxConcurrentUpdates": 1, "rollbackStrategy": "automatic"},
            },
        )
        assert response.status_code == 201
        plan = response.json()["plan"]
        assert sorted(g["batch_index"] for g in plan["server_groups"]) == [0, 1]
        assert plan["constraints"]["max_concurrent_updates"] == 1
        assert plan["rollback_plan"]["strategy"] == "automatic"

    async def test_workload_insights(self, client, add_host):
        await add_host("esx-a")
        await add_host("esx-b")

        response = await client.get("/api/v1/hosts/workload-insights")
        assert response.status_code == 200
        insights = response.json()["insights"]
        assert insights["total_servers"] == 2
        assert len(insights["hourly_averages"]) == 24

        response = await client.get("/api/v1/hosts/workload-insights", params={"hostId": "esx-a"})
        assert response.json()["insights"]["total_servers"] == 1

        response = await client.get("/api/v1/hosts/workload-insights", params={"hostId": "missing"})
        assert response.status_code == 400

    async def test_plan_with_empty_targets(self, client):
        response = await client.post("/api/v1/plans", json={"targets": [], "artifacts": ["fw-bios"]})
        assert response.status_code == 400

    async def test_unknown_plan(self, client):
        assert (await client.get("/api/v1/plans/missing/status")).status_code == 404


class TestBulk:
    async def test_health_check_per_server(self, client):
        response = await client.post(
            "/api/v1/bulk/health", json={"serverIds": ["srv-1", "srv-2"], "checkType": "basic"}
        )
        assert response.status_code == 200
        assert response.json()["message"] == "Created 2 health jobs"
        assert [j["target_id"] for j in response.json()["jobs"]] == ["srv-1", "srv-2"]

    async def test_empty_server_list(self, client):
        response = await client.post("/api/v1/bulk/reboot", json={"serverIds": []})
        assert response.status_code == 400

    async def test_unknown_operation(self, client):
        response = await client.post("/api/v1/bulk/format", json={"serverIds": ["srv-1"]})
        assert response.status_code == 422
