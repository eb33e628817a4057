"""
Report build state to the git provider as commit statuses.

Reporting is a best-effort side channel: failures are logged and never
affect the build's own state.
"""

import logging
from typing import Optional

from api.src.config import get_settings
from api.src.models.db import Build, Repository
from api.src.models.status import BuildStatus
from api.src.services.git_provider import GitProviderClient, GitProviderError

logger = logging.getLogger(__name__)
settings = get_settings()

# Cancelled builds are reported as "error" rather than a neutral state.
# This mirrors the platform's long-standing behaviour and is kept on purpose
# until product decides otherwise.
_COMMIT_STATES = {
    BuildStatus.RUNNING: "pending",
    BuildStatus.SUCCEEDED: "success",
    BuildStatus.ERRORED: "error",
    BuildStatus.CANCELLED: "error",
}

_DESCRIPTIONS = {
    BuildStatus.RUNNING: "Build #{num} is running",
    BuildStatus.SUCCEEDED: "Build #{num} succeeded",
    BuildStatus.ERRORED: "Build #{num} failed",
    BuildStatus.CANCELLED: "Build #{num} was cancelled",
}

def commit_state_for(status: BuildStatus) -> Optional[str]:
    """Commit status state for a build status, None when nothing is reported."""
    return _COMMIT_STATES.get(BuildStatus(status))

def build_target_url(repo: Repository, build: Build) -> str:
    return f"{settings.frontend_url}/ci/{repo.id}/builds/{build.build_num}"

def build_description(build: Build) -> str:
    status = BuildStatus(build.status)
    description = _DESCRIPTIONS[status].format(num=build.build_num)
    if build.message and status in (BuildStatus.ERRORED, BuildStatus.CANCELLED):
        description = f"{description}: {build.message}"
    return description

async def report_build_status(client: GitProviderClient, repo: Repository, build: Build) -> bool:
    """
    Post the commit status matching the build's current state.
    Returns True when the provider accepted it.
    """
    state = commit_state_for(build.status)
    if state is None:
        return False

    try:
        await client.report_commit_status(
            owner=repo.owner,
            name=repo.name,
            commit_sha=build.commit_sha,
            state=state,
            target_url=build_target_url(repo, build),
            description=build_description(build),
            context=settings.commit_status_context,
        )
    except GitProviderError as e:
        logger.warning(f"Failed to report {state} status for build {build.build_num} of repo {repo.id}: {e}")
        return False

    logger.info(f"Reported {state} status for {repo.owner}/{repo.name}@{build.commit_sha}")
    return True
