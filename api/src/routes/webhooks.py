"""
Git provider webhook endpoints.
"""

from fastapi import APIRouter, Request, HTTPException, Header, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from uuid import UUID
import json
import logging

from api.src.db.database import get_db
from api.src.models.db import Repository
from api.src.models.status import RepoStatus
from api.src.services.ci import trigger_build
from api.src.services.git_provider import GitProviderError, get_client_for_repo
from api.src.services.github import (
    verify_signature,
    parse_webhook_event,
    WebhookPayloadError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

@router.post("/ci/{repo_id}")
async def ci_webhook(
    repo_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
    x_github_delivery: Optional[str] = Header(None),
):
    """
    Receive GitHub webhook events for a CI-enabled repository.
    """
    if not x_github_event:
        raise HTTPException(status_code=400, detail="Missing X-GitHub-Event header")

    # Get raw body for signature verification
    body = await request.body()

    repository = await db.get(Repository, repo_id)
    if not repository or repository.status != RepoStatus.ACTIVE.value:
        logger.info(f"Ignoring webhook for unknown or inactive repo {repo_id}")
        raise HTTPException(status_code=404, detail="Repository not found or inactive")

    if not verify_signature(body, x_hub_signature_256, repository.webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid signature")

    if x_github_event == "ping":
        return {"status": "pong", "message": "Webhook configured successfully"}

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    try:
        event = parse_webhook_event(x_github_event, payload)
    except WebhookPayloadError as e:
        logger.warning(f"Rejected {x_github_event} webhook for repo {repo_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    if event is None:
        return {
            "status": "ignored",
            "event": x_github_event,
            "message": f"Event type '{x_github_event}' not handled"
        }

    try:
        client = await get_client_for_repo(db, repository)
        build = await trigger_build(db, repository, event, client, trigger_id=x_github_delivery)
    except GitProviderError as e:
        logger.error(f"Failed to process {x_github_event} webhook for repo {repo_id}: {e}")
        raise HTTPException(status_code=502, detail="Git provider request failed")

    if build is None:
        return {"status": "skipped", "reason": "No pipeline configuration found"}

    return {
        "status": build.status,
        "build_num": build.build_num,
        "steps": len(build.steps),
    }
