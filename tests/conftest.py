"""Shared fixtures: an in-memory database per test and the services built on it."""
import itertools
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from fleet_orchestrator.config import FleetSettings
from fleet_orchestrator.database import Database
from fleet_orchestrator.control_plane.host_runs import HostRunMachine
from fleet_orchestrator.control_plane.job_queue import JobQueue
from fleet_orchestrator.control_plane.models import FirmwarePackage, ManagedHost, Readiness
from fleet_orchestrator.control_plane.update_orchestrator import UpdateOrchestrator


@pytest.fixture
def settings():
    return FleetSettings(
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="redis://localhost:6379/15",
        default_rollback_strategy="manual",
        auto_retry_failed_steps=False,
    )


@pytest.fixture
async def db(settings):
    database = Database(settings)
    await database.init_models()
    yield database
    await database.dispose()


@pytest.fixture
def mock_redis():
    redis = AsyncMock()
    redis.get.return_value = None
    return redis


@pytest.fixture
def job_queue(db):
    return JobQueue(db)


@pytest.fixture
def machine(db, job_queue):
    return HostRunMachine(db, job_queue)


@pytest.fixture
def orchestrator(db, settings):
    return UpdateOrchestrator(db=db, settings=settings)


@pytest.fixture
def add_host(db):
    """Insert an inventoried host directly."""
    counter = itertools.count(1)

    async def _add(
        host_id,
        cluster_id=None,
        ha_enabled=False,
        vm_count=0,
        readiness=Readiness.READY,
        depends_on=(),
        ip_address=None,
        firmware_versions=None,
    ):
        host = ManagedHost(
            id=host_id,
            ip_address=ip_address or f"10.0.0.{next(counter)}",
            hostname=host_id,
            cluster_id=cluster_id,
            ha_enabled=ha_enabled,
            vm_count=vm_count,
            readiness=readiness,
            depends_on=json.dumps(list(depends_on)),
            firmware_versions=json.dumps(firmware_versions or {}),
        )
        async with db.session() as session:
            session.add(host)
            await session.commit()
        return host

    return _add


@pytest.fixture
def add_firmware(db):
    async def _add(
        package_id="fw-bios-2.19",
        image_uri="http://repo.local/bios-2.19.exe",
        version="2.19.1",
        component="BIOS",
    ):
        package = FirmwarePackage(
            id=package_id,
            name=component,
            version=version,
            component=component,
            image_uri=image_uri,
        )
        async with db.session() as session:
            session.add(package)
            await session.commit()
        return package

    return _add


@pytest.fixture
def now():
    # A Wednesday
    return datetime(2024, 5, 15, 12, 0, 0, tzinfo=timezone.utc)
