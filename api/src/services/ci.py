"""
API-side CI orchestration: trigger, restart and repository lifecycle.

Handlers only validate, touch the database and enqueue; they never talk to
the execution platform.
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from api.src.config import get_settings
from api.src.models.db import Build, GitProvider, Repository
from api.src.models.event import CommitEvent, event_from_dict
from api.src.models.pipeline import AnyEvent
from api.src.models.status import BuildStatus, RepoStatus
from api.src.services import build_store
from api.src.services.git_provider import GitProviderClient, GitProviderError
from api.src.services.queue import enqueue_build
from api.src.services.status_bridge import report_build_status

logger = logging.getLogger(__name__)
settings = get_settings()

class RepositorySyncInProgress(Exception):
    """Raised when a provider is already syncing its repositories."""
    pass

async def fetch_pipeline_document(client: GitProviderClient, repo: Repository, commit_sha: str) -> Optional[bytes]:
    """Read the pipeline file from the repository at a commit."""
    return await client.fetch_file_at_ref(repo.owner, repo.name, settings.pipeline_file_name, commit_sha)

async def dispatch_build(client: GitProviderClient, repo: Repository, build: Build):
    """Queue a fresh build, or report the outcome of one that finished at creation."""
    status = BuildStatus(build.status)
    if status == BuildStatus.WAITING_TO_START:
        await enqueue_build(str(build.id))
        logger.info(f"Build {build.build_num} of {repo.owner}/{repo.name} queued")
    elif status.is_terminal:
        await report_build_status(client, repo, build)

async def trigger_build(
    db: AsyncSession,
    repo: Repository,
    event: AnyEvent,
    client: GitProviderClient,
    trigger_id: Optional[str] = None,
) -> Optional[Build]:
    """
    Start a build for an event. Returns None when the repository has no
    pipeline file at the event's commit.
    """
    if trigger_id:
        existing = await build_store.find_build_by_trigger(db, repo.id, trigger_id)
        if existing is not None:
            logger.info(f"Delivery {trigger_id} already handled as build {existing.build_num}")
            # The first delivery may have stored the build but failed to queue it
            if BuildStatus(existing.status) == BuildStatus.WAITING_TO_START:
                await enqueue_build(str(existing.id))
            return existing

    document = await fetch_pipeline_document(client, repo, event.commit_sha)
    if document is None:
        logger.info(f"No {settings.pipeline_file_name} in {repo.owner}/{repo.name}@{event.commit_sha}")
        return None

    build = await build_store.create_build_for_event(db, repo, event, document, trigger_id=trigger_id)
    await dispatch_build(client, repo, build)
    return build

async def start_build_for_branch(
    db: AsyncSession,
    repo: Repository,
    branch: str,
    client: GitProviderClient,
) -> Optional[Build]:
    """Manually start a build at the current head of a branch."""
    head = await client.get_branch_head(repo.owner, repo.name, branch)
    event = CommitEvent(
        repo_owner=repo.owner,
        repo_name=repo.name,
        commit_sha=head.commit_sha,
        branch=branch,
        author=head.author,
        message=head.message,
    )
    return await trigger_build(db, repo, event, client)

async def restart_build(
    db: AsyncSession,
    repo: Repository,
    build_id: UUID,
    client: GitProviderClient,
) -> Build:
    """Run a finished build again for the same ref and commit."""
    previous = await build_store.get_build(db, build_id)
    document = await fetch_pipeline_document(client, repo, previous.commit_sha)

    if document is None:
        build = await build_store.create_build(
            db, repo, event_from_dict(previous.event), [],
            status=BuildStatus.ERRORED,
            message=f"{settings.pipeline_file_name} not found at {previous.commit_sha}",
        )
    else:
        build = await build_store.restart(db, build_id, document)

    await dispatch_build(client, repo, build)
    return build

async def cancel_build(
    db: AsyncSession,
    repo: Repository,
    build_id: UUID,
    client: GitProviderClient,
) -> Build:
    """
    Cancel a build. Only the call that actually cancels reports a status;
    the controller tears the execution unit down when it next looks.
    """
    build, changed = await build_store.cancel_build(db, build_id)
    if changed:
        await report_build_status(client, repo, build)
    return build

async def activate_repository(db: AsyncSession, repo: Repository, client: GitProviderClient) -> Repository:
    """Register the CI webhook with a fresh secret and start accepting events."""
    if repo.status == RepoStatus.ACTIVE.value:
        return repo

    secret = secrets.token_hex(32)
    webhook_url = f"{settings.api_base_url}/api/webhooks/ci/{repo.id}"
    webhook_id = await client.create_webhook(repo.owner, repo.name, webhook_url, secret)

    repo.webhook_secret = secret
    repo.webhook_id = webhook_id
    repo.status = RepoStatus.ACTIVE.value
    await db.commit()

    logger.info(f"Activated CI for {repo.owner}/{repo.name}")
    return repo

async def deactivate_repository(db: AsyncSession, repo: Repository, client: GitProviderClient) -> Repository:
    if repo.status != RepoStatus.ACTIVE.value:
        return repo

    if repo.webhook_id:
        await client.delete_webhook(repo.owner, repo.name, repo.webhook_id)

    repo.webhook_secret = None
    repo.webhook_id = None
    repo.status = RepoStatus.INACTIVE.value
    await db.commit()

    logger.info(f"Deactivated CI for {repo.owner}/{repo.name}")
    return repo

async def sync_repositories(db: AsyncSession, provider: GitProvider, client: GitProviderClient) -> List[Repository]:
    """
    Refresh the provider's repository list. Only one sync per provider may
    be in flight; the is_syncing flag is claimed with a conditional update.
    """
    provider_id = provider.id
    claimed = await db.execute(
        update(GitProvider)
        .where(GitProvider.id == provider_id, GitProvider.is_syncing.is_(False))
        .values(is_syncing=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if claimed.rowcount == 0:
        raise RepositorySyncInProgress(f"Git provider {provider_id} is already syncing")

    try:
        remote = await client.list_repositories()

        result = await db.execute(select(Repository).where(Repository.git_provider_id == provider_id))
        known = {repo.git_provider_repo_uid: repo for repo in result.scalars().all()}
        seen = set()

        for item in remote:
            seen.add(item.uid)
            repo = known.get(item.uid)
            if repo is None:
                repo = Repository(
                    workspace_id=provider.workspace_id,
                    git_provider_id=provider_id,
                    git_provider_repo_uid=item.uid,
                    status=RepoStatus.INACTIVE.value,
                )
                db.add(repo)
                known[item.uid] = repo
            elif repo.status == RepoStatus.DELETED.value:
                repo.status = RepoStatus.INACTIVE.value
            repo.owner = item.owner
            repo.name = item.name
            repo.clone_url = item.clone_url
            repo.default_branch = item.default_branch

        for uid, repo in known.items():
            if uid not in seen:
                repo.status = RepoStatus.DELETED.value
    except GitProviderError:
        await db.rollback()
        raise
    finally:
        await db.execute(
            update(GitProvider)
            .where(GitProvider.id == provider_id)
            .values(is_syncing=False, last_synced=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    logger.info(f"Synced {len(seen)} repositories for git provider {provider_id}")
    return [repo for repo in known.values() if repo.status != RepoStatus.DELETED.value]
