"""
Git events that trigger a build.

Exactly one variant is active per build. The variants are frozen and
round-trip through JSON so they can be stored on the build row and carried
in queue payloads.
"""

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from typing import Literal, Optional, Union
from typing_extensions import Annotated

class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    repo_owner: str
    repo_name: str
    commit_sha: str
    author: Optional[str] = None

class CommitEvent(_EventBase):
    kind: Literal["commit"] = "commit"
    branch: str
    message: Optional[str] = None

    @property
    def git_ref(self) -> str:
        return f"refs/heads/{self.branch}"

    @property
    def ref_name(self) -> str:
        return self.branch

    @property
    def branch_or_tag_or_pr(self) -> str:
        return self.branch

class TagEvent(_EventBase):
    kind: Literal["tag"] = "tag"
    tag_name: str
    message: Optional[str] = None

    @property
    def git_ref(self) -> str:
        return f"refs/tags/{self.tag_name}"

    @property
    def ref_name(self) -> str:
        return self.tag_name

    @property
    def branch_or_tag_or_pr(self) -> str:
        return self.tag_name

class PullRequestEvent(_EventBase):
    kind: Literal["pull_request"] = "pull_request"
    pr_number: int
    pr_title: str
    head_repo_owner: str
    head_repo_name: str
    base_branch: str

    @property
    def git_ref(self) -> str:
        return f"refs/pull/{self.pr_number}/head"

    @property
    def ref_name(self) -> str:
        # Branch filters on pull requests match the branch being merged into
        return self.base_branch

    @property
    def branch_or_tag_or_pr(self) -> str:
        return str(self.pr_number)

EventType = Annotated[
    Union[CommitEvent, TagEvent, PullRequestEvent],
    Field(discriminator="kind"),
]

EVENT_KINDS = ("commit", "tag", "pull_request")

_event_adapter = TypeAdapter(EventType)

def event_from_dict(data: dict) -> Union[CommitEvent, TagEvent, PullRequestEvent]:
    """Rebuild an event from its stored JSON form."""
    return _event_adapter.validate_python(data)

def event_to_dict(event: Union[CommitEvent, TagEvent, PullRequestEvent]) -> dict:
    return event.model_dump(mode="json")
