from api.src.models.db import GitProvider, Repository, Build, BuildStep
from api.src.models.event import (
    CommitEvent,
    TagEvent,
    PullRequestEvent,
    EventType,
    event_from_dict,
    event_to_dict,
)
from api.src.models.pipeline import (
    Always,
    BranchPattern,
    EventKind,
    AllOf,
    Step,
    ServiceContainer,
    Pipeline,
    WorkStep,
)
from api.src.models.schemas import (
    BuildStepResponse,
    BuildSummary,
    BuildResponse,
    RepositoryResponse,
    BuildLogLine,
    BuildLogsResponse,
    StartBuildRequest,
    GitRefResponse,
)
from api.src.models.status import RepoStatus, BuildStatus, BuildStepStatus

__all__ = [
    "GitProvider",
    "Repository",
    "Build",
    "BuildStep",
    "CommitEvent",
    "TagEvent",
    "PullRequestEvent",
    "EventType",
    "event_from_dict",
    "event_to_dict",
    "Always",
    "BranchPattern",
    "EventKind",
    "AllOf",
    "Step",
    "ServiceContainer",
    "Pipeline",
    "WorkStep",
    "BuildStepResponse",
    "BuildSummary",
    "BuildResponse",
    "RepositoryResponse",
    "BuildLogLine",
    "BuildLogsResponse",
    "StartBuildRequest",
    "GitRefResponse",
    "RepoStatus",
    "BuildStatus",
    "BuildStepStatus",
]
