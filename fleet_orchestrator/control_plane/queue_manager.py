"""
Queue Manager

Publishes queued background jobs on Redis Streams so external execution
workers are woken up. The database row stays authoritative; a stream entry is
only a notification and may be lost without losing the job.
"""
import json
import time
from typing import Optional, Dict, Any
from datetime import datetime
import redis.asyncio as redis

from .models import as_utc

PRIORITY_BANDS = ("high", "normal", "low")


def priority_band(priority: int) -> str:
    """Map a job priority (lower = sooner) to a stream band."""
    if priority <= 2:
        return "high"
    elif priority <= 10:
        return "normal"
    return "low"


class QueueManager:
    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client
        self.stream_key = "fleet:jobs:stream"
        self.delayed_key = "fleet:jobs:delayed"

    def _stream(self, band: str) -> str:
        return f"{self.stream_key}:{band}"

    async def enqueue(self, job_id: str, priority: int, job_type: str,
                      target_id: str, job_data: Optional[Dict[str, Any]] = None) -> str:
        """
        Publish a job notification on its priority stream.

        Args:
            job_id: Unique job identifier
            priority: Job priority (lower = sooner)
            job_type: Job type value
            target_id: Host the job acts on
            job_data: Typed job payload for the worker
        """
        message = {
            "job_id": job_id,
            "priority": priority,
            "job_type": job_type,
            "target_id": target_id,
            "timestamp": time.time(),
        }
        if job_data:
            message["job_data"] = json.dumps(job_data)

        return await self.redis.xadd(
            self._stream(priority_band(priority)),
            message,
            maxlen=10000  # Keep last 10k messages
        )

    async def schedule_delayed(self, job_id: str, run_at: datetime) -> str:
        """Park a job in the delayed set until `run_at`."""
        await self.redis.zadd(self.delayed_key, {job_id: as_utc(run_at).timestamp()})
        return f"delayed:{job_id}"

    async def remove(self, job_id: str) -> bool:
        """Remove a job notification (for cancellation)."""
        await self.redis.zrem(self.delayed_key, job_id)
        for band in PRIORITY_BANDS:
            stream = self._stream(band)
            messages = await self.redis.xrange(stream, count=1000)
            for msg_id, msg_data in messages:
                if msg_data.get("job_id") == job_id:
                    await self.redis.xdel(stream, msg_id)
                    return True
        return False

    async def get_stats(self) -> Dict[str, Any]:
        """Get stream statistics."""
        stats = {}
        for band in PRIORITY_BANDS:
            stats[band] = {"length": await self.redis.xlen(self._stream(band))}
        stats["delayed"] = {"count": await self.redis.zcard(self.delayed_key)}
        return stats
