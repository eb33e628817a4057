"""
Compiled pipeline types.
"""

from fnmatch import fnmatchcase
from pydantic import BaseModel, ConfigDict
from typing import Dict, FrozenSet, List, Optional, Tuple, Union

from api.src.models.event import CommitEvent, TagEvent, PullRequestEvent

AnyEvent = Union[CommitEvent, TagEvent, PullRequestEvent]

# Containers the execution plan adds around the user's steps
CLONE_CONTAINER = "git-clone"
SENTINEL_CONTAINER = "ci-success"

def build_job_name(repo_id, build_num: int) -> str:
    """Job names are stable per build so a resubmission finds the same job."""
    return f"ci-{repo_id}-{build_num}"

class Always(BaseModel):
    """Step runs for every event."""
    model_config = ConfigDict(frozen=True)

    def matches(self, event: AnyEvent) -> bool:
        return True

class BranchPattern(BaseModel):
    """Step runs when the event's ref name matches one of the globs."""
    model_config = ConfigDict(frozen=True)

    patterns: Tuple[str, ...]

    def matches(self, event: AnyEvent) -> bool:
        return any(fnmatchcase(event.ref_name, pattern) for pattern in self.patterns)

class EventKind(BaseModel):
    """Step runs only for the listed event kinds."""
    model_config = ConfigDict(frozen=True)

    kinds: FrozenSet[str]

    def matches(self, event: AnyEvent) -> bool:
        return event.kind in self.kinds

class AllOf(BaseModel):
    model_config = ConfigDict(frozen=True)

    predicates: Tuple[Union[BranchPattern, EventKind], ...]

    def matches(self, event: AnyEvent) -> bool:
        return all(predicate.matches(event) for predicate in self.predicates)

AppliesTo = Union[Always, BranchPattern, EventKind, AllOf]

class Step(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    slug: str
    image: str
    commands: Tuple[str, ...]
    env: Dict[str, str] = {}
    applies_to: AppliesTo = Always()

class ServiceContainer(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    image: str
    port: int
    commands: Optional[Tuple[str, ...]] = None
    env: Dict[str, str] = {}

class Pipeline(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    steps: Tuple[Step, ...]
    services: Tuple[ServiceContainer, ...] = ()

class WorkStep(BaseModel):
    """A step bound to a concrete event, ready to be scheduled."""
    name: str
    image: str
    commands: List[str]
    env: Dict[str, str] = {}
