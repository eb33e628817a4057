"""
GitHub service for webhook validation, payload parsing and API calls.
"""

import hmac
import hashlib
import logging
from typing import Optional, Dict, Any, List, Union

import httpx

from api.src.config import get_settings
from api.src.models.event import CommitEvent, TagEvent, PullRequestEvent
from api.src.services.git_provider import (
    BranchHead,
    GitProviderClient,
    GitProviderError,
    GitRef,
    ProviderRepository,
)

logger = logging.getLogger(__name__)
settings = get_settings()

ZERO_SHA = "0000000000000000000000000000000000000000"
PULL_REQUEST_ACTIONS = ("opened", "synchronize", "reopened")
PAGE_SIZE = 100

class WebhookPayloadError(ValueError):
    """Raised when a webhook payload cannot be turned into an event."""
    pass

def verify_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Verify a GitHub webhook signature against the repository's secret."""
    if not secret or not signature:
        return False

    expected = "sha256=" + hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    if not signature.startswith("sha256="):
        signature = "sha256=" + signature
    return hmac.compare_digest(expected, signature)

def _login(user: Optional[Dict[str, Any]]) -> str:
    user = user or {}
    return user.get("login") or user.get("name") or ""

def parse_webhook_event(
    event_name: str,
    payload: Dict[str, Any],
) -> Optional[Union[CommitEvent, TagEvent, PullRequestEvent]]:
    """
    Extract the triggering event from a GitHub webhook payload.
    Returns None for deliveries that should not start a build.
    """
    repo = payload.get("repository") or {}
    repo_owner = _login(repo.get("owner"))
    repo_name = repo.get("name", "")

    if event_name == "push":
        commit_sha = payload.get("after", "")
        if not commit_sha or commit_sha == ZERO_SHA:
            # Branch and tag deletions arrive as pushes with an empty sha
            return None

        head_commit = payload.get("head_commit") or {}
        if not head_commit and payload.get("commits"):
            head_commit = payload["commits"][0]
        author = (head_commit.get("author") or {}).get("name")
        message = head_commit.get("message")

        ref = payload.get("ref", "")
        if ref.startswith("refs/heads/"):
            return CommitEvent(
                repo_owner=repo_owner,
                repo_name=repo_name,
                commit_sha=commit_sha,
                branch=ref[len("refs/heads/"):],
                author=author,
                message=message,
            )
        if ref.startswith("refs/tags/"):
            return TagEvent(
                repo_owner=repo_owner,
                repo_name=repo_name,
                commit_sha=commit_sha,
                tag_name=ref[len("refs/tags/"):],
                author=author,
                message=message,
            )
        raise WebhookPayloadError(f"Unsupported ref '{ref}'")

    if event_name == "pull_request":
        if payload.get("action") not in PULL_REQUEST_ACTIONS:
            return None

        pull_request = payload.get("pull_request") or {}
        head = pull_request.get("head") or {}
        base = pull_request.get("base") or {}
        head_repo = head.get("repo") or {}
        try:
            return PullRequestEvent(
                repo_owner=repo_owner,
                repo_name=repo_name,
                commit_sha=head["sha"],
                pr_number=pull_request["number"],
                pr_title=pull_request.get("title", ""),
                head_repo_owner=_login(head_repo.get("owner")),
                head_repo_name=head_repo.get("name", ""),
                base_branch=base["ref"],
                author=_login(pull_request.get("user")) or None,
            )
        except KeyError as e:
            raise WebhookPayloadError(f"Pull request payload missing {e}")

    return None

class GitHubClient(GitProviderClient):
    """GitHub REST API client."""

    def __init__(self, access_token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.access_token = access_token
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=settings.github_api_url,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "patr-ci",
            },
            timeout=settings.git_provider_timeout,
            transport=self.transport,
        )

    async def _request(self, method: str, url: str, allow_404: bool = False, **kwargs) -> Optional[httpx.Response]:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise GitProviderError(f"GitHub request {method} {url} failed: {e}")

        if allow_404 and response.status_code == 404:
            return None
        if response.is_error:
            raise GitProviderError(
                f"GitHub request {method} {url} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    async def _paginate(self, url: str) -> List[Dict[str, Any]]:
        items = []
        page = 1
        while True:
            response = await self._request("GET", url, params={"per_page": PAGE_SIZE, "page": page})
            batch = response.json()
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                return items
            page += 1

    async def create_webhook(self, owner: str, name: str, url: str, secret: str) -> str:
        response = await self._request("POST", f"/repos/{owner}/{name}/hooks", json={
            "name": "web",
            "active": True,
            "events": ["push", "pull_request"],
            "config": {
                "url": url,
                "content_type": "json",
                "secret": secret,
                "insecure_ssl": "0",
            },
        })
        return str(response.json()["id"])

    async def delete_webhook(self, owner: str, name: str, webhook_id: str) -> None:
        await self._request("DELETE", f"/repos/{owner}/{name}/hooks/{webhook_id}", allow_404=True)

    async def fetch_file_at_ref(self, owner: str, name: str, path: str, ref: str) -> Optional[bytes]:
        response = await self._request(
            "GET",
            f"/repos/{owner}/{name}/contents/{path}",
            allow_404=True,
            params={"ref": ref},
            headers={"Accept": "application/vnd.github.raw"},
        )
        return response.content if response is not None else None

    async def get_branch_head(self, owner: str, name: str, branch: str) -> BranchHead:
        response = await self._request("GET", f"/repos/{owner}/{name}/branches/{branch}", allow_404=True)
        if response is None:
            raise GitProviderError(f"Branch '{branch}' not found in {owner}/{name}", status_code=404)

        commit = response.json()["commit"]
        details = commit.get("commit") or {}
        return BranchHead(
            commit_sha=commit["sha"],
            author=(details.get("author") or {}).get("name"),
            message=details.get("message"),
        )

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
        await self._request("POST", f"/repos/{owner}/{name}/statuses/{commit_sha}", json={
            "state": state,
            "target_url": target_url,
            # GitHub rejects descriptions longer than 140 characters
            "description": description[:140],
            "context": context,
        })

    async def list_refs(self, owner: str, name: str) -> List[GitRef]:
        branches = await self._paginate(f"/repos/{owner}/{name}/branches")
        tags = await self._paginate(f"/repos/{owner}/{name}/tags")
        return [
            GitRef(name=branch["name"], kind="branch", commit_sha=branch["commit"]["sha"])
            for branch in branches
        ] + [
            GitRef(name=tag["name"], kind="tag", commit_sha=tag["commit"]["sha"])
            for tag in tags
        ]

    async def list_repositories(self) -> List[ProviderRepository]:
        repos = await self._paginate("/user/repos")
        return [
            ProviderRepository(
                uid=str(repo["id"]),
                owner=repo["owner"]["login"],
                name=repo["name"],
                clone_url=repo["clone_url"],
                default_branch=repo.get("default_branch"),
            )
            for repo in repos
        ]
