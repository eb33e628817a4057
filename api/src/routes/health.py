"""
Health checks for the API and the two things it cannot work without: the
build database and the Redis build queue.
"""

from typing import Dict

from fastapi import APIRouter, Depends
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.src.db.database import get_db
from api.src.models.db import Build
from api.src.models.status import BuildStatus
from api.src.services.queue import get_queue_depths, get_redis_client

router = APIRouter(tags=["health"])

ACTIVE_STATUSES = (BuildStatus.WAITING_TO_START.value, BuildStatus.RUNNING.value)

async def active_build_counts(db: AsyncSession) -> Dict[str, int]:
    """Number of builds that are waiting for or holding an execution slot."""
    result = await db.execute(
        select(Build.status, func.count())
        .where(Build.status.in_(ACTIVE_STATUSES))
        .group_by(Build.status)
    )
    counts = {status: 0 for status in ACTIVE_STATUSES}
    counts.update({status: count for status, count in result.all()})
    return counts

async def ping_redis():
    client = await get_redis_client()
    try:
        await client.ping()
    finally:
        await client.aclose()

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "patr-ci-api"}

@router.get("/health/db")
async def db_health_check(db: AsyncSession = Depends(get_db)):
    try:
        builds = await active_build_counts(db)
    except SQLAlchemyError as e:
        return {"status": "unhealthy", "database": str(e)}
    return {"status": "healthy", "database": "connected", "builds": builds}

@router.get("/health/redis")
async def redis_health_check():
    try:
        await ping_redis()
    except (RedisError, OSError) as e:
        return {"status": "unhealthy", "redis": str(e)}
    return {"status": "healthy", "redis": "connected"}

@router.get("/health/queue")
async def queue_health_check():
    """
    Queue depths. Jobs stay in_flight until a worker acknowledges them, so a
    number that keeps growing while queued is empty points at stuck workers.
    """
    try:
        depths = await get_queue_depths()
    except (RedisError, OSError) as e:
        return {"status": "unhealthy", "error": str(e)}
    return {"status": "healthy", **depths}

@router.get("/health/all")
async def full_health_check(db: AsyncSession = Depends(get_db)):
    """Combined health check; degraded as soon as one dependency is down."""
    services = {"api": "healthy", "database": "healthy", "redis": "healthy"}
    details = {}

    try:
        details["builds"] = await active_build_counts(db)
    except SQLAlchemyError as e:
        services["database"] = f"unhealthy: {e}"

    try:
        details["queue"] = await get_queue_depths()
    except (RedisError, OSError) as e:
        services["redis"] = f"unhealthy: {e}"

    overall = "healthy" if all(v == "healthy" for v in services.values()) else "degraded"
    return {"status": overall, "services": services, **details}
