"""
Git provider capability interface.

Every supported provider implements GitProviderClient; the `kind` column of
a GitProvider row selects the implementation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from api.src.models.db import GitProvider, Repository

class GitProviderError(Exception):
    """Raised when the git provider rejects or fails a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

@dataclass(frozen=True)
class GitRef:
    name: str
    kind: str  # "branch" or "tag"
    commit_sha: str

@dataclass(frozen=True)
class BranchHead:
    commit_sha: str
    author: Optional[str] = None
    message: Optional[str] = None

@dataclass(frozen=True)
class ProviderRepository:
    uid: str
    owner: str
    name: str
    clone_url: str
    default_branch: Optional[str] = None

class GitProviderClient(ABC):

    @abstractmethod
    async def create_webhook(self, owner: str, name: str, url: str, secret: str) -> str:
        """Register a push/pull request webhook, returning its provider id."""

    @abstractmethod
    async def delete_webhook(self, owner: str, name: str, webhook_id: str) -> None:
        ...

    @abstractmethod
    async def fetch_file_at_ref(self, owner: str, name: str, path: str, ref: str) -> Optional[bytes]:
        """Raw file contents, or None when the file does not exist at ref."""

    @abstractmethod
    async def get_branch_head(self, owner: str, name: str, branch: str) -> BranchHead:
        ...

    @abstractmethod
    async def report_commit_status(
        self,
        owner: str,
        name: str,
        commit_sha: str,
        state: str,
        target_url: str,
        description: str,
        context: str,
    ) -> None:
        ...

    @abstractmethod
    async def list_refs(self, owner: str, name: str) -> List[GitRef]:
        ...

    @abstractmethod
    async def list_repositories(self) -> List[ProviderRepository]:
        ...

def get_provider_client(provider: GitProvider, transport: Optional[httpx.AsyncBaseTransport] = None) -> GitProviderClient:
    """Build the client for a provider row. The access token is read from the row on every call."""
    from api.src.services.github import GitHubClient

    if not provider.access_token:
        raise GitProviderError(f"Git provider {provider.id} is not connected")

    if provider.kind == "github":
        return GitHubClient(provider.access_token, transport=transport)

    raise GitProviderError(f"Unsupported git provider '{provider.kind}'")

async def get_client_for_repo(db: AsyncSession, repo: Repository) -> GitProviderClient:
    provider = await db.get(GitProvider, repo.git_provider_id)
    if provider is None:
        raise GitProviderError(f"Git provider for repository {repo.id} not found")
    return get_provider_client(provider)
