from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import datetime
from typing import List, Optional
from uuid import UUID
import logging

from api.src.db.database import get_db
from api.src.models.db import GitProvider, Repository
from api.src.models.schemas import (
    BuildLogLine,
    BuildLogsResponse,
    BuildResponse,
    BuildSummary,
    GitRefResponse,
    RepositoryResponse,
    StartBuildRequest,
)
from api.src.models.status import BuildStatus, RepoStatus
from api.src.permissions import require_permission
from api.src.services import build_store, ci
from api.src.services.git_provider import GitProviderError, get_client_for_repo, get_provider_client
from api.src.services.logs import LogStoreError, get_logs

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workspaces/{workspace_id}/ci", tags=["ci"])

async def get_repository(workspace_id: UUID, repo_id: UUID, db: AsyncSession = Depends(get_db)) -> Repository:
    repository = await db.get(Repository, repo_id)
    if (
        not repository
        or repository.workspace_id != workspace_id
        or repository.status == RepoStatus.DELETED.value
    ):
        raise HTTPException(status_code=404, detail="Repository not found")
    return repository

async def get_build_or_404(db: AsyncSession, repository: Repository, build_num: int):
    try:
        return await build_store.get_build_by_num(db, repository.id, build_num)
    except build_store.BuildNotFoundError:
        raise HTTPException(status_code=404, detail="Build not found")

async def provider_client(db: AsyncSession, repository: Repository):
    try:
        return await get_client_for_repo(db, repository)
    except GitProviderError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.get(
    "/repositories",
    response_model=List[RepositoryResponse],
    dependencies=[Depends(require_permission("ci::repo::view"))],
)
async def list_repositories(workspace_id: UUID, db: AsyncSession = Depends(get_db)):
    """List repositories known for the workspace."""
    query = (
        select(Repository)
        .where(Repository.workspace_id == workspace_id)
        .where(Repository.status != RepoStatus.DELETED.value)
        .order_by(Repository.owner, Repository.name)
    )
    result = await db.execute(query)
    return result.scalars().all()

@router.post(
    "/git-providers/{provider_id}/sync",
    response_model=List[RepositoryResponse],
    dependencies=[Depends(require_permission("ci::repo::manage"))],
)
async def sync_repositories(workspace_id: UUID, provider_id: UUID, db: AsyncSession = Depends(get_db)):
    """Refresh the repository list from the git provider."""
    provider = await db.get(GitProvider, provider_id)
    if not provider or provider.workspace_id != workspace_id:
        raise HTTPException(status_code=404, detail="Git provider not found")

    try:
        return await ci.sync_repositories(db, provider, get_provider_client(provider))
    except ci.RepositorySyncInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    except GitProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))

@router.post(
    "/repositories/{repo_id}/activate",
    response_model=RepositoryResponse,
    dependencies=[Depends(require_permission("ci::repo::manage"))],
)
async def activate_repository(
    repository: Repository = Depends(get_repository),
    db: AsyncSession = Depends(get_db),
):
    client = await provider_client(db, repository)
    try:
        return await ci.activate_repository(db, repository, client)
    except GitProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))

@router.post(
    "/repositories/{repo_id}/deactivate",
    response_model=RepositoryResponse,
    dependencies=[Depends(require_permission("ci::repo::manage"))],
)
async def deactivate_repository(
    repository: Repository = Depends(get_repository),
    db: AsyncSession = Depends(get_db),
):
    client = await provider_client(db, repository)
    try:
        return await ci.deactivate_repository(db, repository, client)
    except GitProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))

@router.get(
    "/repositories/{repo_id}/refs",
    response_model=List[GitRefResponse],
    dependencies=[Depends(require_permission("ci::repo::view"))],
)
async def list_refs(
    repository: Repository = Depends(get_repository),
    db: AsyncSession = Depends(get_db),
):
    """List branches and tags a build can be started from."""
    client = await provider_client(db, repository)
    try:
        refs = await client.list_refs(repository.owner, repository.name)
    except GitProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [GitRefResponse(name=ref.name, kind=ref.kind, commit_sha=ref.commit_sha) for ref in refs]

@router.post(
    "/repositories/{repo_id}/builds",
    response_model=BuildResponse,
    dependencies=[Depends(require_permission("ci::build::start"))],
)
async def start_build(
    request: StartBuildRequest,
    repository: Repository = Depends(get_repository),
    db: AsyncSession = Depends(get_db),
):
    """Start a build at the head of a branch."""
    if repository.status != RepoStatus.ACTIVE.value:
        raise HTTPException(status_code=400, detail="CI is not activated for this repository")

    client = await provider_client(db, repository)
    try:
        build = await ci.start_build_for_branch(db, repository, request.branch, client)
    except GitProviderError as e:
        status_code = 404 if e.status_code == 404 else 502
        raise HTTPException(status_code=status_code, detail=str(e))

    if build is None:
        raise HTTPException(status_code=400, detail="No pipeline configuration found")
    return build

@router.get(
    "/repositories/{repo_id}/builds",
    response_model=List[BuildSummary],
    dependencies=[Depends(require_permission("ci::build::view"))],
)
async def list_builds(
    limit: int = 20,
    offset: int = 0,
    status: Optional[BuildStatus] = None,
    repository: Repository = Depends(get_repository),
    db: AsyncSession = Depends(get_db),
):
    """List builds of a repository, newest first."""
    return await build_store.list_builds(db, repository.id, limit=limit, offset=offset, status=status)

@router.get(
    "/repositories/{repo_id}/builds/{build_num}",
    response_model=BuildResponse,
    dependencies=[Depends(require_permission("ci::build::view"))],
)
async def get_build(
    build_num: int,
    repository: Repository = Depends(get_repository),
    db: AsyncSession = Depends(get_db),
):
    """Get a build together with the status of each of its steps."""
    return await get_build_or_404(db, repository, build_num)

@router.get(
    "/repositories/{repo_id}/builds/{build_num}/steps/{step_id}/logs",
    response_model=BuildLogsResponse,
    dependencies=[Depends(require_permission("ci::build::view"))],
)
async def get_build_logs(
    build_num: int,
    step_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    repository: Repository = Depends(get_repository),
    db: AsyncSession = Depends(get_db),
):
    """Get the logs of one build step."""
    build = await get_build_or_404(db, repository, build_num)
    try:
        entries = await get_logs(db, build.id, step_id, start=start, end=end)
    except build_store.BuildNotFoundError:
        raise HTTPException(status_code=404, detail="Build step not found")
    except LogStoreError as e:
        logger.warning(f"Log query for build {build_num} step {step_id} failed: {e}")
        raise HTTPException(status_code=502, detail="Log store unavailable")

    return BuildLogsResponse(
        build_num=build_num,
        step_id=step_id,
        logs=[BuildLogLine(time=time, log=line) for time, line in entries],
    )

@router.post(
    "/repositories/{repo_id}/builds/{build_num}/cancel",
    response_model=BuildResponse,
    dependencies=[Depends(require_permission("ci::build::cancel"))],
)
async def cancel_build(
    build_num: int,
    repository: Repository = Depends(get_repository),
    db: AsyncSession = Depends(get_db),
):
    build = await get_build_or_404(db, repository, build_num)
    client = await provider_client(db, repository)
    await ci.cancel_build(db, repository, build.id, client)
    return await build_store.get_build(db, build.id)

@router.post(
    "/repositories/{repo_id}/builds/{build_num}/restart",
    response_model=BuildResponse,
    dependencies=[Depends(require_permission("ci::build::restart"))],
)
async def restart_build(
    build_num: int,
    repository: Repository = Depends(get_repository),
    db: AsyncSession = Depends(get_db),
):
    """Run a build again; the new build gets the next build number."""
    build = await get_build_or_404(db, repository, build_num)
    client = await provider_client(db, repository)
    try:
        return await ci.restart_build(db, repository, build.id, client)
    except GitProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
