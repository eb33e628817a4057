"""Tests for build triggering and repository lifecycle."""

import pytest

from api.src.models.db import Repository
from api.src.models.event import CommitEvent
from api.src.models.status import BuildStatus, RepoStatus
from api.src.services import ci
from api.src.services.git_provider import BranchHead, ProviderRepository
from conftest import FakeGitProvider, PIPELINE_YAML

@pytest.fixture
def queued(monkeypatch):
    jobs = []

    async def fake_enqueue(build_id, attempt=0):
        jobs.append(build_id)

    monkeypatch.setattr(ci, "enqueue_build", fake_enqueue)
    return jobs

def commit_event(sha="c0ffee", branch="main"):
    return CommitEvent(repo_owner="acme", repo_name="shop", commit_sha=sha, branch=branch)

async def test_trigger_queues_build(db, repo, queued):
    provider = FakeGitProvider(files={"c0ffee": PIPELINE_YAML})
    build = await ci.trigger_build(db, repo, commit_event(), provider)

    assert build.build_num == 1
    assert queued == [str(build.id)]
    # Nothing is reported until the controller starts the build
    assert provider.statuses == []

async def test_trigger_without_pipeline_file(db, repo, queued):
    provider = FakeGitProvider()
    assert await ci.trigger_build(db, repo, commit_event(), provider) is None
    assert queued == []

async def test_unknown_kind_never_reaches_the_queue(db, repo, queued):
    provider = FakeGitProvider(files={"c0ffee": b"kind: cronjob\nsteps: []\n"})
    build = await ci.trigger_build(db, repo, commit_event(), provider)

    assert build.status == BuildStatus.ERRORED.value
    assert queued == []
    assert [status["state"] for status in provider.statuses] == ["error"]

async def test_empty_evaluation_reports_success(db, repo, queued):
    document = b"kind: pipeline\nsteps:\n  - {name: release, image: alpine, commands: [make], when: {event: tag}}\n"
    provider = FakeGitProvider(files={"c0ffee": document})
    build = await ci.trigger_build(db, repo, commit_event(), provider)

    assert build.status == BuildStatus.SUCCEEDED.value
    assert queued == []
    assert [status["state"] for status in provider.statuses] == ["success"]

async def test_redelivered_webhook(db, repo, queued):
    provider = FakeGitProvider(files={"c0ffee": PIPELINE_YAML})
    first = await ci.trigger_build(db, repo, commit_event(), provider, trigger_id="d-1")
    second = await ci.trigger_build(db, repo, commit_event(), provider, trigger_id="d-1")

    assert first.id == second.id
    assert second.build_num == 1
    # Still waiting, so it is queued again; the controller skips duplicates
    assert queued == [str(first.id), str(first.id)]

async def test_redelivery_after_failed_enqueue(db, repo, monkeypatch):
    provider = FakeGitProvider(files={"c0ffee": PIPELINE_YAML})
    jobs = []

    async def flaky_enqueue(build_id, attempt=0):
        if not jobs:
            jobs.append(None)
            raise ConnectionError("redis is down")
        jobs.append(build_id)

    monkeypatch.setattr(ci, "enqueue_build", flaky_enqueue)

    with pytest.raises(ConnectionError):
        await ci.trigger_build(db, repo, commit_event(), provider, trigger_id="d-1")

    build = await ci.trigger_build(db, repo, commit_event(), provider, trigger_id="d-1")
    assert build.status == BuildStatus.WAITING_TO_START.value
    assert jobs == [None, str(build.id)]

async def test_redelivery_of_finished_build(db, repo, queued):
    provider = FakeGitProvider(files={"c0ffee": PIPELINE_YAML})
    first = await ci.trigger_build(db, repo, commit_event(), provider, trigger_id="d-1")
    await ci.cancel_build(db, repo, first.id, provider)
    reported = len(provider.statuses)

    await ci.trigger_build(db, repo, commit_event(), provider, trigger_id="d-1")
    assert queued == [str(first.id)]
    assert len(provider.statuses) == reported

async def test_start_build_for_branch(db, repo, queued):
    provider = FakeGitProvider(files={"beef": PIPELINE_YAML})
    provider.heads["develop"] = BranchHead(commit_sha="beef", author="dev", message="wip")

    build = await ci.start_build_for_branch(db, repo, "develop", provider)
    assert build.git_ref == "refs/heads/develop"
    assert build.commit_sha == "beef"
    # deploy only applies to main
    assert [step.name for step in build.steps] == ["build", "test"]

async def test_restart_build(db, repo, queued):
    provider = FakeGitProvider(files={"c0ffee": PIPELINE_YAML})
    first = await ci.trigger_build(db, repo, commit_event(), provider)
    await ci.cancel_build(db, repo, first.id, provider)

    second = await ci.restart_build(db, repo, first.id, provider)
    assert second.build_num == 2
    assert second.commit_sha == first.commit_sha
    assert queued == [str(first.id), str(second.id)]

async def test_restart_when_pipeline_file_is_gone(db, repo, queued):
    provider = FakeGitProvider(files={"c0ffee": PIPELINE_YAML})
    first = await ci.trigger_build(db, repo, commit_event(), provider)
    provider.files.clear()

    second = await ci.restart_build(db, repo, first.id, provider)
    assert second.status == BuildStatus.ERRORED.value
    assert "patr.yml not found" in second.message

async def test_activate_and_deactivate(db, repo):
    provider = FakeGitProvider()
    repo.status = RepoStatus.INACTIVE.value
    await db.commit()

    await ci.activate_repository(db, repo, provider)
    assert repo.status == RepoStatus.ACTIVE.value
    assert repo.webhook_secret and repo.webhook_id
    assert provider.webhooks[repo.webhook_id].endswith(f"/api/webhooks/ci/{repo.id}")

    await ci.deactivate_repository(db, repo, provider)
    assert repo.status == RepoStatus.INACTIVE.value
    assert repo.webhook_secret is None
    assert provider.webhooks == {}

async def test_sync_repositories(db, git_provider, repo):
    provider = FakeGitProvider()
    provider.repositories = [
        ProviderRepository(uid="2002", owner="acme", name="api", clone_url="https://github.com/acme/api.git", default_branch="main"),
    ]

    synced = await ci.sync_repositories(db, git_provider, provider)
    assert [r.name for r in synced] == ["api"]

    old = await db.get(Repository, repo.id)
    assert old.status == RepoStatus.DELETED.value

async def test_sync_is_serialised(db, git_provider):
    git_provider.is_syncing = True
    await db.commit()

    with pytest.raises(ci.RepositorySyncInProgress):
        await ci.sync_repositories(db, git_provider, FakeGitProvider())
