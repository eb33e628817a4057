"""
Build step logs from the structured log store (Loki).
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from api.src.config import get_settings
from api.src.models.db import Build
from api.src.models.pipeline import CLONE_CONTAINER, build_job_name
from api.src.services.build_store import BuildNotFoundError, get_build

logger = logging.getLogger(__name__)
settings = get_settings()

# Step 0 is the repository checkout that runs before the first build step
CLONE_STEP_ID = 0

class LogStoreError(Exception):
    """Raised when the log store query fails."""
    pass

def to_nanos(moment: datetime) -> int:
    if moment.tzinfo is None:
        # SQLite hands back naive datetimes; they are stored as UTC
        moment = moment.replace(tzinfo=timezone.utc)
    delta = moment - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1000

def build_log_query(namespace: str, job_name: str, container: str) -> str:
    return f'{{namespace="{namespace}",job="{namespace}/{job_name}",container="{container}"}}'

def normalize_log_entries(streams: List[dict], origin_ns: int) -> List[Tuple[int, str]]:
    """
    Flatten Loki streams into (nanoseconds since origin, line) pairs in time
    order. Entries with unparsable timestamps are dropped.
    """
    entries = []
    for stream in streams:
        for value in stream.get("values", []):
            if len(value) < 2:
                continue
            try:
                timestamp = int(value[0])
            except (TypeError, ValueError):
                continue
            entries.append((max(timestamp - origin_ns, 0), value[1]))
    entries.sort(key=lambda entry: entry[0])
    return entries

async def query_log_store(
    query: str,
    start_ns: int,
    end_ns: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[dict]:
    params = {
        "query": query,
        "start": str(start_ns),
        "direction": "forward",
        "limit": str(settings.log_query_limit),
    }
    if end_ns is not None:
        params["end"] = str(end_ns)

    auth = (settings.loki_username, settings.loki_password) if settings.loki_username else None
    try:
        async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
            response = await client.get(
                f"https://{settings.loki_host}/loki/api/v1/query_range",
                params=params,
                auth=auth,
            )
            response.raise_for_status()
            return response.json()["data"]["result"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        raise LogStoreError(f"Log query failed: {e}")

async def get_logs(
    db: AsyncSession,
    build_id: UUID,
    step_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[Tuple[int, str]]:
    """
    Log lines of one build step with timestamps relative to the build's
    creation, in nanoseconds.
    """
    build: Build = await get_build(db, build_id)
    if step_id == CLONE_STEP_ID:
        container = CLONE_CONTAINER
    else:
        step = next((s for s in build.steps if s.step_id == step_id), None)
        if step is None:
            raise BuildNotFoundError(f"Step {step_id} of build {build_id} not found")
        container = step.name

    origin_ns = to_nanos(build.created)
    start_ns = max(to_nanos(start), origin_ns) if start else origin_ns
    end_ns = to_nanos(end) if end else None

    query = build_log_query(
        settings.k8s_namespace,
        build_job_name(build.repo_id, build.build_num),
        container,
    )
    logger.debug(f"Querying logs for build {build.build_num} step {step_id}: {query}")
    streams = await query_log_store(query, start_ns, end_ns, transport=transport)
    return normalize_log_entries(streams, origin_ns)
