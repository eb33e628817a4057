"""
Execution models shared by the job builder and the executor.
"""

from pydantic import BaseModel, ConfigDict
from typing import Dict, List, Optional
from enum import Enum
from uuid import UUID

from api.src.models.db import Build, Repository
from api.src.models.event import EventType, event_from_dict
from api.src.models.pipeline import ServiceContainer

class ExecutionStep(BaseModel):
    step_id: int
    name: str
    image: str
    commands: List[str]
    env: Dict[str, str] = {}

class ExecutionRequest(BaseModel):
    """Everything needed to turn a stored build into an execution unit."""
    model_config = ConfigDict(frozen=True)

    build_id: UUID
    repo_id: UUID
    repo_name: str
    clone_url: str
    build_num: int
    commit_sha: str
    event: EventType
    services: List[ServiceContainer] = []
    steps: List[ExecutionStep]

    @classmethod
    def from_build(cls, build: Build, repo: Repository) -> "ExecutionRequest":
        return cls(
            build_id=build.id,
            repo_id=repo.id,
            repo_name=repo.name,
            clone_url=repo.clone_url,
            build_num=build.build_num,
            commit_sha=build.commit_sha,
            event=event_from_dict(build.event),
            services=[ServiceContainer(**service) for service in build.services or []],
            steps=[
                ExecutionStep(
                    step_id=step.step_id,
                    name=step.name,
                    image=step.image,
                    commands=list(step.commands or []),
                    env=dict(step.env or {}),
                )
                for step in build.steps
            ],
        )

class ExecutionOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    STEP_FAILED = "step_failed"
    CLONE_FAILED = "clone_failed"
    STOPPED = "stopped"
    TERMINATED = "terminated"

class ExecutionHandle(BaseModel):
    """A submitted execution unit and, once watching ends, how it ended."""
    job_name: str
    namespace: str
    # step_id -> container name, in execution order
    step_containers: Dict[int, str]
    outcome: Optional[ExecutionOutcome] = None
    failed_step_id: Optional[int] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None
