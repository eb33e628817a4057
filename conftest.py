"""Shared fixtures: an in-memory build store and a fake git provider."""

import uuid
from typing import Dict, List, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.src.db.database import Base
from api.src.models.db import GitProvider, Repository
from api.src.models.status import RepoStatus
from api.src.services.git_provider import (
    BranchHead,
    GitProviderClient,
    GitProviderError,
    GitRef,
    ProviderRepository,
)

PIPELINE_YAML = b"""
kind: pipeline
name: ci
steps:
  - name: build
    image: node:20
    commands: [npm ci, npm run build]
  - name: test
    image: node:20
    commands: [npm test]
  - name: deploy
    image: alpine
    commands: ["./deploy {commit_sha}"]
    when:
      branch: main
"""

class FakeGitProvider(GitProviderClient):
    """In-memory git provider that records every commit status it is sent."""

    def __init__(self, files: Optional[Dict[str, bytes]] = None, fail_statuses: bool = False):
        self.files = files if files is not None else {}
        self.fail_statuses = fail_statuses
        self.statuses: List[dict] = []
        self.webhooks: Dict[str, str] = {}
        self.repositories: List[ProviderRepository] = []
        self.heads: Dict[str, BranchHead] = {}

    async def create_webhook(self, owner, name, url, secret):
        webhook_id = str(len(self.webhooks) + 1)
        self.webhooks[webhook_id] = url
        return webhook_id

    async def delete_webhook(self, owner, name, webhook_id):
        self.webhooks.pop(webhook_id, None)

    async def fetch_file_at_ref(self, owner, name, path, ref):
        return self.files.get(ref)

    async def get_branch_head(self, owner, name, branch):
        if branch not in self.heads:
            raise GitProviderError(f"Branch {branch} not found", status_code=404)
        return self.heads[branch]

    async def report_commit_status(self, owner, name, commit_sha, state, target_url, description, context):
        if self.fail_statuses:
            raise GitProviderError("provider is down", status_code=503)
        self.statuses.append({
            "commit_sha": commit_sha,
            "state": state,
            "description": description,
            "context": context,
        })

    async def list_refs(self, owner, name):
        return [GitRef(name=branch, kind="branch", commit_sha=head.commit_sha) for branch, head in self.heads.items()]

    async def list_repositories(self):
        return list(self.repositories)

@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session

@pytest.fixture
async def git_provider(db):
    provider = GitProvider(
        id=uuid.uuid4(),
        workspace_id=uuid.uuid4(),
        kind="github",
        login_name="acme",
        access_token="gho_test",
    )
    db.add(provider)
    await db.commit()
    return provider

@pytest.fixture
async def repo(db, git_provider):
    repository = Repository(
        id=uuid.uuid4(),
        workspace_id=git_provider.workspace_id,
        git_provider_id=git_provider.id,
        git_provider_repo_uid="1001",
        owner="acme",
        name="shop",
        clone_url="https://github.com/acme/shop.git",
        default_branch="main",
        status=RepoStatus.ACTIVE.value,
        webhook_secret="s3cret",
    )
    db.add(repository)
    await db.commit()
    return repository

@pytest.fixture
def fake_provider():
    return FakeGitProvider()
