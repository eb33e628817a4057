"""
Queue worker - pulls builds from Redis and executes them.
"""

import asyncio
import logging

from api.src.services.queue import dequeue_build, ack_build, requeue_inflight
from controller.src.config import get_settings
from controller.src.services.executor import execute_build

logger = logging.getLogger(__name__)
settings = get_settings()

async def process_next_build() -> bool:
    """Execute one queued build. Returns False when the queue was empty."""
    result = await dequeue_build(timeout=settings.dequeue_timeout)
    if result is None:
        return False

    raw_job, job = result
    build_id = job.get("build_id", "unknown")
    logger.info(f"Received build {build_id} (attempt {job.get('attempt', 0)})")

    try:
        await execute_build(job)
    except Exception as e:
        logger.exception(f"Failed to execute build {build_id}: {e}")
    finally:
        await ack_build(raw_job)
    return True

async def worker_loop():
    """Main worker loop."""
    moved = await requeue_inflight()
    if moved:
        logger.info(f"Requeued {moved} unacknowledged build(s)")

    logger.info("Worker started, waiting for builds...")

    while True:
        try:
            await process_next_build()
        except asyncio.CancelledError:
            logger.info("Worker shutting down...")
            raise
        except Exception as e:
            logger.exception(f"Worker error: {e}")
            await asyncio.sleep(5)

def run_worker():
    """Entry point for worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker stopped")
