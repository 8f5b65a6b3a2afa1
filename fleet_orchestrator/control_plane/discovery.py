"""
Discovery Registry

Upserts hosts reported by network discovery into the inventory the planner
reads. Records are keyed by management IP, so re-reporting a host updates it
in place instead of adding a duplicate.
"""
import ipaddress
import json
import logging
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator
from sqlmodel import select

from ..errors import NotFoundError, ValidationError
from .models import ManagedHost, Readiness, utc_now
from .schemas import CAMEL_INPUT, HostProfile

logger = logging.getLogger(__name__)


class DiscoveredHost(BaseModel):
    """A host as reported by a discovery scan. Unset fields keep their stored value."""
    model_config = CAMEL_INPUT

    ip_address: str
    hostname: Optional[str] = None
    model: Optional[str] = None
    service_tag: Optional[str] = None
    firmware_versions: Dict[str, str] = Field(default_factory=dict)
    cluster_id: Optional[str] = None
    ha_enabled: bool = False
    vm_count: int = Field(default=0, ge=0)
    readiness: Readiness = Readiness.UNKNOWN
    depends_on: Tuple[str, ...] = ()

    @field_validator("ip_address")
    @classmethod
    def _valid_ip(cls, value: str) -> str:
        return str(ipaddress.ip_address(value.strip()))


def host_profile(host: ManagedHost) -> HostProfile:
    """Planner view of an inventoried host."""
    return HostProfile(
        id=host.id,
        hostname=host.hostname,
        cluster_id=host.cluster_id,
        ha_enabled=host.ha_enabled,
        vm_count=host.vm_count,
        readiness=Readiness(host.readiness).value,
        depends_on=tuple(json.loads(host.depends_on or "[]")),
    )


class DiscoveryRegistry:
    def __init__(self, db):
        self.db = db

    async def upsert(self, records: Iterable[DiscoveredHost]) -> List[ManagedHost]:
        """
        Insert or update hosts by IP address.

        Later records in the same batch win over earlier ones for the same IP.
        """
        latest: Dict[str, DiscoveredHost] = {}
        for record in records:
            latest[record.ip_address] = record
        if not latest:
            raise ValidationError("At least one discovered host is required")

        saved = []
        created = 0
        async with self.db.session() as session:
            for ip, record in latest.items():
                host = await self.by_ip(ip, session=session)
                fields = record.model_dump(exclude_unset=True, exclude={"ip_address"})
                if "firmware_versions" in fields:
                    fields["firmware_versions"] = json.dumps(fields["firmware_versions"])
                if "depends_on" in fields:
                    fields["depends_on"] = json.dumps(list(fields["depends_on"]))

                if host is None:
                    host = ManagedHost(
                        id=str(uuid.uuid4()),
                        ip_address=ip,
                        hostname=record.hostname or f"server-{ip.replace('.', '-').replace(':', '-')}",
                    )
                    created += 1
                for name, value in fields.items():
                    setattr(host, name, value)
                host.updated_at = utc_now()
                session.add(host)
                saved.append(host)
            await session.commit()

        logger.info(f"Discovery upsert: {created} new, {len(saved) - created} updated")
        return saved

    async def get(self, host_id: str) -> ManagedHost:
        async with self.db.session() as session:
            host = await session.get(ManagedHost, host_id)
        if host is None:
            raise NotFoundError("Host", host_id)
        return host

    async def by_ip(self, ip_address: str, session=None) -> Optional[ManagedHost]:
        if session is None:
            async with self.db.session() as session:
                return await self.by_ip(ip_address, session=session)
        result = await session.execute(select(ManagedHost).where(ManagedHost.ip_address == ip_address))
        return result.scalars().first()

    async def profiles(self, host_ids: Iterable[str]) -> List[HostProfile]:
        """Profiles in the requested order; any unknown id is a validation error."""
        host_ids = list(dict.fromkeys(host_ids))
        if not host_ids:
            return []
        async with self.db.session() as session:
            result = await session.execute(select(ManagedHost).where(ManagedHost.id.in_(host_ids)))
            hosts = {h.id: h for h in result.scalars().all()}
        missing = [h for h in host_ids if h not in hosts]
        if missing:
            raise ValidationError(f"Unknown host(s): {', '.join(missing)}")
        return [host_profile(hosts[h]) for h in host_ids]
