"""
Build state store.

Owns build and step identity and enforces the forward-only state machines:

    build: waiting_to_start -> running -> succeeded | cancelled | errored
    step:  waiting_to_start -> running -> succeeded | cancelled | errored
           waiting_to_start -> skipped_dep_error

Every transition locks the build row (SELECT ... FOR UPDATE) so a user
cancel and a worker completion cannot both win. Transitions requested on a
finished build or step are no-ops that return the current row.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple, Union
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from api.src.models.db import Build, BuildStep, Repository
from api.src.models.event import event_from_dict, event_to_dict
from api.src.models.pipeline import AnyEvent, ServiceContainer, WorkStep
from api.src.models.status import BuildStatus, BuildStepStatus, STEP_FAILURE_STATES
from api.src.services.evaluator import EvaluationError, evaluate
from api.src.services.pipeline_parser import CompileError, compile_pipeline

logger = logging.getLogger(__name__)

EMPTY_PIPELINE_MESSAGE = "No steps apply to this event"
CANCELLED_MESSAGE = "Build cancelled by user"

_BUILD_ORDER = {
    BuildStatus.WAITING_TO_START: 0,
    BuildStatus.RUNNING: 1,
    BuildStatus.SUCCEEDED: 2,
    BuildStatus.CANCELLED: 2,
    BuildStatus.ERRORED: 2,
}

_STEP_ORDER = {
    BuildStepStatus.WAITING_TO_START: 0,
    BuildStepStatus.RUNNING: 1,
    BuildStepStatus.SUCCEEDED: 2,
    BuildStepStatus.CANCELLED: 2,
    BuildStepStatus.ERRORED: 2,
    BuildStepStatus.SKIPPED_DEP_ERROR: 2,
}

class BuildNotFoundError(LookupError):
    """Raised when a build or build step does not exist."""
    pass

class InvalidTransitionError(ValueError):
    """Raised when a transition would move a build or step backwards."""
    pass

def _now() -> datetime:
    return datetime.now(timezone.utc)

async def _lock_build(db: AsyncSession, build_id: UUID) -> Build:
    result = await db.execute(
        select(Build)
        .where(Build.id == build_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    build = result.scalar_one_or_none()
    if build is None:
        raise BuildNotFoundError(f"Build {build_id} not found")
    return build

async def create_build(
    db: AsyncSession,
    repo: Repository,
    event: AnyEvent,
    work_steps: Sequence[WorkStep],
    services: Sequence[ServiceContainer] = (),
    status: BuildStatus = BuildStatus.WAITING_TO_START,
    message: Optional[str] = None,
    trigger_id: Optional[str] = None,
) -> Build:
    """
    Allocate the next build number for the repository and insert the build
    together with all of its steps in one transaction.

    When trigger_id was already used for this repository the existing build
    is returned instead, so a redelivered webhook creates nothing new.
    """
    repo_id = repo.id
    status = BuildStatus(status)
    if trigger_id:
        build = await find_build_by_trigger(db, repo_id, trigger_id)
        if build is not None:
            logger.info(f"Trigger {trigger_id} already produced build {build.build_num} for repo {repo_id}")
            return build

    # The repository row doubles as the build number allocator
    result = await db.execute(
        select(Repository)
        .where(Repository.id == repo_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    locked_repo = result.scalar_one()
    locked_repo.build_counter = (locked_repo.build_counter or 0) + 1
    build_num = locked_repo.build_counter

    now = _now()
    build = Build(
        repo_id=repo_id,
        build_num=build_num,
        git_ref=event.git_ref,
        commit_sha=event.commit_sha,
        status=status.value,
        event=event_to_dict(event),
        services=[service.model_dump(mode="json") for service in services],
        trigger_id=trigger_id,
        author=event.author,
        message=message,
        created=now,
        finished=now if status.is_terminal else None,
    )
    build.steps = [
        BuildStep(
            step_id=i,
            name=work_step.name,
            image=work_step.image,
            commands=list(work_step.commands),
            env=dict(work_step.env),
            status=BuildStepStatus.WAITING_TO_START.value,
        )
        for i, work_step in enumerate(work_steps, start=1)
    ]
    db.add(build)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent delivery of the same trigger committed first
        await db.rollback()
        if trigger_id:
            existing = await find_build_by_trigger(db, repo_id, trigger_id)
            if existing is not None:
                return existing
        raise

    logger.info(
        f"Created build {build_num} for repo {repo_id} at {event.commit_sha} "
        f"with {len(build.steps)} steps ({status.value})"
    )
    return build

async def create_build_for_event(
    db: AsyncSession,
    repo: Repository,
    event: AnyEvent,
    raw_document: Union[bytes, str],
    trigger_id: Optional[str] = None,
) -> Build:
    """
    Compile the pipeline document, evaluate it against the event and create
    the build. Compile and evaluation failures produce a build that is
    already errored and has no steps.
    """
    try:
        pipeline = compile_pipeline(raw_document)
    except CompileError as e:
        logger.info(f"Pipeline for repo {repo.id} failed to compile: {e.message}")
        return await create_build(
            db, repo, event, [],
            status=BuildStatus.ERRORED,
            message=e.message,
            trigger_id=trigger_id,
        )

    result = evaluate(pipeline, event)
    if isinstance(result, EvaluationError):
        logger.info(f"Pipeline for repo {repo.id} failed to evaluate: {result.message}")
        return await create_build(
            db, repo, event, [],
            status=BuildStatus.ERRORED,
            message=result.message,
            trigger_id=trigger_id,
        )

    if not result.work_steps:
        return await create_build(
            db, repo, event, [],
            services=pipeline.services,
            status=BuildStatus.SUCCEEDED,
            message=EMPTY_PIPELINE_MESSAGE,
            trigger_id=trigger_id,
        )

    return await create_build(
        db, repo, event, result.work_steps,
        services=pipeline.services,
        trigger_id=trigger_id,
    )

async def transition_build(
    db: AsyncSession,
    build_id: UUID,
    new_status: BuildStatus,
    message: Optional[str] = None,
) -> Tuple[Build, bool]:
    """
    Move a build forward. Returns the build and whether anything changed.
    """
    new_status = BuildStatus(new_status)
    if new_status == BuildStatus.WAITING_TO_START:
        raise InvalidTransitionError("A build can never re-enter waiting_to_start")

    build = await _lock_build(db, build_id)
    current = BuildStatus(build.status)

    if current.is_terminal or _BUILD_ORDER[new_status] <= _BUILD_ORDER[current]:
        logger.debug(f"Build {build_id} is {current.value}, ignoring transition to {new_status.value}")
        await db.commit()
        return build, False

    now = _now()
    build.status = new_status.value
    if new_status == BuildStatus.RUNNING:
        build.started = now
    if new_status.is_terminal:
        build.finished = now
    if message is not None:
        build.message = message
    await db.commit()

    logger.info(f"Build {build.build_num} of repo {build.repo_id}: {current.value} -> {new_status.value}")
    return build, True

async def _skip_after(db: AsyncSession, build_id: UUID, after_step_id: int) -> int:
    result = await db.execute(
        update(BuildStep)
        .where(
            BuildStep.build_id == build_id,
            BuildStep.step_id > after_step_id,
            BuildStep.status == BuildStepStatus.WAITING_TO_START.value,
        )
        .values(status=BuildStepStatus.SKIPPED_DEP_ERROR.value, finished=_now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount

async def transition_step(
    db: AsyncSession,
    build_id: UUID,
    step_id: int,
    new_status: BuildStepStatus,
) -> Tuple[BuildStep, bool]:
    """
    Move a step forward. Errored and cancelled steps mark every later step
    that has not started as skipped_dep_error in the same transaction.
    """
    new_status = BuildStepStatus(new_status)
    if new_status == BuildStepStatus.WAITING_TO_START:
        raise InvalidTransitionError("A step can never re-enter waiting_to_start")

    await _lock_build(db, build_id)
    result = await db.execute(
        select(BuildStep)
        .where(BuildStep.build_id == build_id, BuildStep.step_id == step_id)
        .execution_options(populate_existing=True)
    )
    step = result.scalar_one_or_none()
    if step is None:
        await db.rollback()
        raise BuildNotFoundError(f"Step {step_id} of build {build_id} not found")

    current = BuildStepStatus(step.status)
    if current.is_terminal or _STEP_ORDER[new_status] <= _STEP_ORDER[current]:
        await db.commit()
        return step, False

    if new_status == BuildStepStatus.SKIPPED_DEP_ERROR and current != BuildStepStatus.WAITING_TO_START:
        await db.rollback()
        raise InvalidTransitionError(f"Step {step_id} already started and cannot be skipped")

    now = _now()
    step.status = new_status.value
    if new_status == BuildStepStatus.RUNNING:
        step.started = now
    if new_status.is_terminal:
        if step.started is None and new_status != BuildStepStatus.SKIPPED_DEP_ERROR:
            step.started = now
        step.finished = now

    skipped = 0
    if new_status in STEP_FAILURE_STATES:
        skipped = await _skip_after(db, build_id, step_id)
    await db.commit()

    logger.info(
        f"Step {step_id} of build {build_id}: {current.value} -> {new_status.value}"
        + (f", skipped {skipped} dependent step(s)" if skipped else "")
    )
    return step, True

async def skip_remaining_steps(db: AsyncSession, build_id: UUID, after_step_id: int = 0) -> int:
    """Skip every step after after_step_id that has not started yet."""
    await _lock_build(db, build_id)
    skipped = await _skip_after(db, build_id, after_step_id)
    await db.commit()
    return skipped

async def cancel_build(db: AsyncSession, build_id: UUID) -> Tuple[Build, bool]:
    """
    Cancel a build on behalf of a user. The first unfinished step is
    cancelled and every step after it is skipped. Cancelling a finished build
    returns it unchanged.
    """
    build, changed = await transition_build(db, build_id, BuildStatus.CANCELLED, CANCELLED_MESSAGE)
    if not changed:
        return build, False

    steps = await get_build_steps(db, build_id)
    pending = [step for step in steps if not BuildStepStatus(step.status).is_terminal]
    if pending:
        await transition_step(db, build_id, pending[0].step_id, BuildStepStatus.CANCELLED)
    return build, True

async def restart(db: AsyncSession, build_id: UUID, raw_document: Union[bytes, str]) -> Build:
    """
    Create a new build for the same ref and commit as an earlier build. The
    earlier build is left untouched.
    """
    previous = await get_build(db, build_id)
    repo = await db.get(Repository, previous.repo_id)
    event = event_from_dict(previous.event)

    logger.info(f"Restarting build {previous.build_num} of repo {repo.id} ({previous.git_ref}@{previous.commit_sha})")
    return await create_build_for_event(db, repo, event, raw_document)

async def get_build(db: AsyncSession, build_id: UUID) -> Build:
    result = await db.execute(
        select(Build)
        .options(selectinload(Build.steps))
        .where(Build.id == build_id)
        .execution_options(populate_existing=True)
    )
    build = result.scalar_one_or_none()
    if build is None:
        raise BuildNotFoundError(f"Build {build_id} not found")
    return build

async def find_build_by_trigger(db: AsyncSession, repo_id: UUID, trigger_id: str) -> Optional[Build]:
    result = await db.execute(
        select(Build)
        .options(selectinload(Build.steps))
        .where(Build.repo_id == repo_id, Build.trigger_id == trigger_id)
    )
    return result.scalar_one_or_none()

async def get_build_by_num(db: AsyncSession, repo_id: UUID, build_num: int) -> Build:
    result = await db.execute(
        select(Build)
        .options(selectinload(Build.steps))
        .where(Build.repo_id == repo_id, Build.build_num == build_num)
        .execution_options(populate_existing=True)
    )
    build = result.scalar_one_or_none()
    if build is None:
        raise BuildNotFoundError(f"Build {build_num} of repo {repo_id} not found")
    return build

async def list_builds(
    db: AsyncSession,
    repo_id: UUID,
    limit: int = 20,
    offset: int = 0,
    status: Optional[BuildStatus] = None,
) -> List[Build]:
    query = (
        select(Build)
        .where(Build.repo_id == repo_id)
        .order_by(Build.build_num.desc())
    )
    if status:
        query = query.where(Build.status == BuildStatus(status).value)

    result = await db.execute(query.limit(limit).offset(offset))
    return list(result.scalars().all())

async def get_build_steps(db: AsyncSession, build_id: UUID) -> List[BuildStep]:
    result = await db.execute(
        select(BuildStep)
        .where(BuildStep.build_id == build_id)
        .order_by(BuildStep.step_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
