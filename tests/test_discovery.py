"""Tests for the discovery registry."""
import json

import pydantic
import pytest

from fleet_orchestrator.errors import NotFoundError, ValidationError
from fleet_orchestrator.control_plane.discovery import DiscoveredHost, DiscoveryRegistry, host_profile
from fleet_orchestrator.control_plane.models import Readiness


@pytest.fixture
def registry(db):
    return DiscoveryRegistry(db)


class TestUpsert:
    async def test_same_ip_twice_yields_one_record(self, registry):
        first = await registry.upsert([DiscoveredHost(ip_address="10.1.0.5", hostname="esx-01", vm_count=4)])
        second = await registry.upsert([
            DiscoveredHost(ip_address="10.1.0.5", hostname="esx-01a", vm_count=9, firmware_versions={"BIOS": "2.19.1"})
        ])

        assert first[0].id == second[0].id
        stored = await registry.by_ip("10.1.0.5")
        assert stored.hostname == "esx-01a"
        assert stored.vm_count == 9
        assert json.loads(stored.firmware_versions) == {"BIOS": "2.19.1"}

    async def test_unset_fields_keep_stored_values(self, registry):
        await registry.upsert([DiscoveredHost(ip_address="10.1.0.6", cluster_id="cl-a", ha_enabled=True)])
        await registry.upsert([DiscoveredHost(ip_address="10.1.0.6", vm_count=3)])

        stored = await registry.by_ip("10.1.0.6")
        assert stored.cluster_id == "cl-a"
        assert stored.ha_enabled is True
        assert stored.vm_count == 3

    async def test_default_hostname(self, registry):
        hosts = await registry.upsert([DiscoveredHost(ip_address="10.1.0.7")])
        assert hosts[0].hostname == "server-10-1-0-7"

    async def test_last_record_in_batch_wins(self, registry):
        hosts = await registry.upsert([
            DiscoveredHost(ip_address="10.1.0.8", vm_count=1),
            DiscoveredHost(ip_address="10.1.0.8", vm_count=2),
        ])
        assert len(hosts) == 1
        assert hosts[0].vm_count == 2

    async def test_empty_batch_rejected(self, registry):
        with pytest.raises(ValidationError):
            await registry.upsert([])

    def test_invalid_ip_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            DiscoveredHost(ip_address="not-an-ip")


class TestProfiles:
    async def test_profiles_in_requested_order(self, registry):
        a, b = await registry.upsert([
            DiscoveredHost(ip_address="10.2.0.1", readiness=Readiness.READY, depends_on=("x",)),
            DiscoveredHost(ip_address="10.2.0.2", readiness=Readiness.NOT_READY),
        ])
        profiles = await registry.profiles([b.id, a.id])

        assert [p.id for p in profiles] == [b.id, a.id]
        assert profiles[0].readiness == "not_ready"
        assert profiles[1].depends_on == ("x",)
        assert host_profile(a).id == a.id

    async def test_unknown_host(self, registry):
        with pytest.raises(ValidationError):
            await registry.profiles(["missing"])
        with pytest.raises(NotFoundError):
            await registry.get("missing")
