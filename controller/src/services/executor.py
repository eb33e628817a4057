"""
Build executor - runs a queued build as a Kubernetes Job and drives the
build state store from what the pod reports.
"""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple
from uuid import UUID

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.src.db.database import async_session
from api.src.models.db import Build, Repository
from api.src.models.status import BuildStatus, BuildStepStatus
from api.src.services import build_store
from api.src.services.git_provider import GitProviderClient, GitProviderError, get_client_for_repo
from api.src.services.queue import enqueue_build
from api.src.services.status_bridge import report_build_status
from api.src.config import get_settings as get_api_settings
from controller.src.config import get_settings
from controller.src.k8s import (
    get_batch_api,
    get_job_pod,
    delete_job,
    build_execution_plan,
    CLONE_CONTAINER,
)
from controller.src.models.execution import ExecutionHandle, ExecutionOutcome, ExecutionRequest

logger = logging.getLogger(__name__)
settings = get_settings()
api_settings = get_api_settings()

UNSCHEDULABLE_MESSAGE = "Unable to schedule build on the execution platform"

class ExecutionBackendError(Exception):
    """Raised when the execution platform rejects or cannot take a build."""
    pass

def submit(job: client.V1Job) -> ExecutionHandle:
    """
    Create the job. A job that already exists is the same build submitted
    before a redelivery, so it is adopted rather than replaced.
    """
    batch_v1 = get_batch_api()
    namespace = job.metadata.namespace or settings.k8s_namespace
    job_name = job.metadata.name

    try:
        batch_v1.create_namespaced_job(namespace=namespace, body=job)
        logger.info(f"Created job {job_name}")
    except ApiException as e:
        if e.status != 409:
            raise ExecutionBackendError(f"Failed to create job {job_name}: {e.reason}") from e
        logger.info(f"Job {job_name} already exists, watching it")
    except (HTTPError, OSError) as e:
        raise ExecutionBackendError(f"Failed to reach the cluster to create job {job_name}: {e}") from e

    # Steps are the init containers after the clone; sidecars come before it
    init_containers = job.spec.template.spec.init_containers or []
    names = [container.name for container in init_containers]
    steps = names[names.index(CLONE_CONTAINER) + 1:] if CLONE_CONTAINER in names else []
    step_containers = {step_id: name for step_id, name in enumerate(steps, start=1)}

    return ExecutionHandle(job_name=job_name, namespace=namespace, step_containers=step_containers)

def container_step_status(status: Optional[client.V1ContainerStatus]) -> Tuple[BuildStepStatus, Optional[int]]:
    """Map a container status to a step status and, once finished, its exit code."""
    if status is None or status.state is None:
        return BuildStepStatus.WAITING_TO_START, None

    if status.state.terminated is not None:
        exit_code = status.state.terminated.exit_code
        if exit_code == 0:
            return BuildStepStatus.SUCCEEDED, 0
        return BuildStepStatus.ERRORED, exit_code

    if status.state.running is not None:
        return BuildStepStatus.RUNNING, None

    return BuildStepStatus.WAITING_TO_START, None

async def watch(
    handle: ExecutionHandle,
    stop_requested: Callable[[], Awaitable[bool]],
) -> AsyncIterator[Tuple[int, BuildStepStatus]]:
    """
    Poll the job's pod and yield (step_id, status) for every step change.

    Watching ends when the pod finishes, at the first failing container, or
    as soon as stop_requested() returns True. How it ended is recorded on
    the handle.
    """
    reported: Dict[int, BuildStepStatus] = {}
    poll_failures = 0
    deadline = time.monotonic() + settings.job_timeout + 60

    while True:
        if await stop_requested():
            handle.outcome = ExecutionOutcome.STOPPED
            return

        if time.monotonic() > deadline:
            handle.outcome = ExecutionOutcome.TERMINATED
            handle.reason = f"Build did not finish within {settings.job_timeout} seconds"
            return

        try:
            pod = get_job_pod(handle.job_name, handle.namespace)
        except (ApiException, HTTPError, OSError) as e:
            poll_failures += 1
            logger.warning(f"Error reading pod of job {handle.job_name} ({poll_failures} in a row): {e}")
            if poll_failures >= settings.max_poll_failures:
                handle.outcome = ExecutionOutcome.TERMINATED
                handle.reason = f"Lost track of the build after {poll_failures} failed status checks"
                return
            await asyncio.sleep(settings.poll_interval)
            continue
        poll_failures = 0

        if pod is None or pod.status is None:
            await asyncio.sleep(settings.poll_interval)
            continue

        statuses = {status.name: status for status in pod.status.init_container_statuses or []}

        clone_status, clone_exit = container_step_status(statuses.get(CLONE_CONTAINER))
        if clone_status == BuildStepStatus.ERRORED:
            handle.outcome = ExecutionOutcome.CLONE_FAILED
            handle.exit_code = clone_exit
            return

        for step_id, container in handle.step_containers.items():
            status, exit_code = container_step_status(statuses.get(container))
            previous = reported.get(step_id)
            if status == BuildStepStatus.WAITING_TO_START or status == previous:
                continue

            # A step that ran between two polls still goes through running
            if previous is None and status != BuildStepStatus.RUNNING:
                reported[step_id] = BuildStepStatus.RUNNING
                yield step_id, BuildStepStatus.RUNNING

            reported[step_id] = status
            yield step_id, status

            if status == BuildStepStatus.ERRORED:
                handle.outcome = ExecutionOutcome.STEP_FAILED
                handle.failed_step_id = step_id
                handle.exit_code = exit_code
                return

        if pod.status.phase == "Succeeded":
            handle.outcome = ExecutionOutcome.SUCCEEDED
            return
        if pod.status.phase == "Failed":
            handle.outcome = ExecutionOutcome.TERMINATED
            handle.reason = pod.status.reason or pod.status.message
            return

        await asyncio.sleep(settings.poll_interval)

def teardown(handle: ExecutionHandle):
    """Remove the job and everything it started."""
    try:
        deleted = delete_job(handle.job_name, handle.namespace)
    except (ApiException, HTTPError, OSError) as e:
        # activeDeadlineSeconds and the TTL still clean it up
        logger.warning(f"Failed to delete job {handle.job_name}: {e}")
        return
    if not deleted:
        logger.info(f"Job {handle.job_name} was already gone")

async def _report(provider: Optional[GitProviderClient], repo: Repository, build: Build):
    if provider is None:
        return
    await report_build_status(provider, repo, build)

async def _finish(
    db: AsyncSession,
    provider: Optional[GitProviderClient],
    repo: Repository,
    build_id: UUID,
    status: BuildStatus,
    message: Optional[str] = None,
):
    build, changed = await build_store.transition_build(db, build_id, status, message)
    if changed:
        await _report(provider, repo, build)
    return build

async def _build_status(db: AsyncSession, build_id: UUID) -> BuildStatus:
    result = await db.execute(select(Build.status).where(Build.id == build_id))
    status = BuildStatus(result.scalar_one())
    # Do not keep a transaction open between polls
    await db.commit()
    return status

async def _handle_submit_failure(
    db: AsyncSession,
    provider: Optional[GitProviderClient],
    repo: Repository,
    build_id: UUID,
    attempt: int,
    error: Exception,
):
    if attempt + 1 < api_settings.max_submit_attempts:
        logger.warning(f"Submitting build {build_id} failed (attempt {attempt + 1}), requeueing: {error}")
        await enqueue_build(str(build_id), attempt=attempt + 1)
        return

    logger.error(f"Giving up on build {build_id} after {attempt + 1} attempts: {error}")
    await build_store.skip_remaining_steps(db, build_id)
    await _finish(db, provider, repo, build_id, BuildStatus.ERRORED, UNSCHEDULABLE_MESSAGE)

async def _apply_outcome(
    db: AsyncSession,
    provider: Optional[GitProviderClient],
    repo: Repository,
    build_id: UUID,
    request: ExecutionRequest,
    handle: ExecutionHandle,
):
    outcome = handle.outcome

    if outcome == ExecutionOutcome.STOPPED:
        # The cancel already moved the build and its steps, only the job is left
        logger.info(f"Build {request.build_num} of repo {request.repo_id} was cancelled, tearing down")
        teardown(handle)
        return

    if outcome == ExecutionOutcome.SUCCEEDED:
        await _finish(db, provider, repo, build_id, BuildStatus.SUCCEEDED)
        return

    if outcome == ExecutionOutcome.STEP_FAILED:
        step_name = next(
            (step.name for step in request.steps if step.step_id == handle.failed_step_id),
            str(handle.failed_step_id),
        )
        message = f"Step '{step_name}' exited with code {handle.exit_code}"
    elif outcome == ExecutionOutcome.CLONE_FAILED:
        await build_store.skip_remaining_steps(db, build_id)
        message = f"Failed to clone repository at {request.commit_sha} (exit code {handle.exit_code})"
    else:
        message = handle.reason or "Build was terminated by the execution platform"
        steps = await build_store.get_build_steps(db, build_id)
        running = [step for step in steps if step.status == BuildStepStatus.RUNNING.value]
        if running:
            await build_store.transition_step(db, build_id, running[0].step_id, BuildStepStatus.ERRORED)
        await build_store.skip_remaining_steps(db, build_id)

    await _finish(db, provider, repo, build_id, BuildStatus.ERRORED, message)
    teardown(handle)

async def execute_build(message: Dict[str, Any]):
    """
    Run one queued build to completion.

    Safe to call again for the same message: finished builds are skipped and
    an existing job is adopted instead of created twice.
    """
    build_id = UUID(message["build_id"])
    attempt = int(message.get("attempt", 0))

    async with async_session() as db:
        try:
            build = await build_store.get_build(db, build_id)
        except build_store.BuildNotFoundError:
            logger.warning(f"Dropping job for unknown build {build_id}")
            return

        if BuildStatus(build.status).is_terminal:
            logger.info(f"Build {build.build_num} is already {build.status}, nothing to do")
            return

        repo = await db.get(Repository, build.repo_id)
        try:
            provider = await get_client_for_repo(db, repo)
        except GitProviderError as e:
            logger.warning(f"No git provider for repo {repo.id}, statuses will not be reported: {e}")
            provider = None

        request = ExecutionRequest.from_build(build, repo)
        logger.info(f"Executing build {request.build_num} of {repo.owner}/{repo.name} with {len(request.steps)} steps")

        try:
            handle = submit(build_execution_plan(request))
        except ExecutionBackendError as e:
            await _handle_submit_failure(db, provider, repo, build_id, attempt, e)
            return

        build, changed = await build_store.transition_build(db, build_id, BuildStatus.RUNNING)
        if BuildStatus(build.status) == BuildStatus.CANCELLED:
            teardown(handle)
            return
        if changed:
            await _report(provider, repo, build)

        async def stop_requested() -> bool:
            return await _build_status(db, build_id) == BuildStatus.CANCELLED

        async for step_id, status in watch(handle, stop_requested):
            await build_store.transition_step(db, build_id, step_id, status)

        await _apply_outcome(db, provider, repo, build_id, request, handle)
        logger.info(f"Build {request.build_num} of {repo.owner}/{repo.name} finished: {handle.outcome.value}")
