"""
Redis queue for build jobs.

Delivery is at-least-once: a dequeued job is moved atomically to a
processing list and only removed from it once the worker acknowledges it.
Jobs left in the processing list by a crashed worker are put back on the
queue when a worker starts.
"""

import redis.asyncio as redis
import json
from typing import Dict, Any, Optional, Tuple
from datetime import datetime, timezone

from api.src.config import get_settings

settings = get_settings()

BUILD_QUEUE = settings.queue_name
PROCESSING_QUEUE = f"{settings.queue_name}:processing"

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)

async def enqueue_build(build_id: str, attempt: int = 0):
    """Add a build to the processing queue."""
    client = await get_redis_client()

    job = {
        "build_id": str(build_id),
        "attempt": attempt,
        "queued_at": datetime.now(timezone.utc).isoformat(),
    }

    try:
        await client.lpush(BUILD_QUEUE, json.dumps(job))
    finally:
        await client.aclose()

async def dequeue_build(timeout: int = 5) -> Optional[Tuple[str, Dict[str, Any]]]:
    """
    Get next build job from queue.
    Blocks for `timeout` seconds if queue is empty. Returns the raw message,
    needed for acknowledging it, and the decoded job.
    """
    client = await get_redis_client()

    try:
        job_data = await client.blmove(BUILD_QUEUE, PROCESSING_QUEUE, timeout, src="RIGHT", dest="LEFT")
        if job_data:
            return job_data, json.loads(job_data)
        return None
    finally:
        await client.aclose()

async def ack_build(raw_job: str):
    """Remove a processed job from the processing list."""
    client = await get_redis_client()

    try:
        await client.lrem(PROCESSING_QUEUE, 1, raw_job)
    finally:
        await client.aclose()

async def requeue_inflight() -> int:
    """Move every unacknowledged job back onto the queue."""
    client = await get_redis_client()

    moved = 0
    try:
        while await client.lmove(PROCESSING_QUEUE, BUILD_QUEUE, src="RIGHT", dest="RIGHT"):
            moved += 1
        return moved
    finally:
        await client.aclose()

async def get_queue_depths() -> Dict[str, int]:
    """Jobs waiting for a worker and jobs a worker has taken but not acknowledged."""
    client = await get_redis_client()

    try:
        queued = await client.llen(BUILD_QUEUE)
        in_flight = await client.llen(PROCESSING_QUEUE)
        return {"queued": queued, "in_flight": in_flight}
    finally:
        await client.aclose()
