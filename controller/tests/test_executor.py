"""Tests for the build executor."""

from types import SimpleNamespace

import pytest
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError

from api.src.models.event import CommitEvent
from api.src.models.status import BuildStatus, BuildStepStatus
from api.src.services import build_store
from controller.src.models.execution import ExecutionHandle, ExecutionOutcome
from controller.src.services import executor
from conftest import FakeGitProvider, PIPELINE_YAML

def container(name, running=False, exit_code=None):
    state = SimpleNamespace(running=None, terminated=None, waiting=None)
    if running:
        state.running = SimpleNamespace()
    if exit_code is not None:
        state.terminated = SimpleNamespace(exit_code=exit_code)
    return SimpleNamespace(name=name, state=state)

def pod(containers, phase="Pending", reason=None):
    return SimpleNamespace(status=SimpleNamespace(
        phase=phase,
        reason=reason,
        message=None,
        init_container_statuses=containers,
    ))

class FakeBatchApi:

    def __init__(self, error_status=None):
        self.error_status = error_status
        self.error = None
        self.created = []

    def create_namespaced_job(self, namespace, body):
        if self.error:
            raise self.error
        if self.error_status:
            raise ApiException(status=self.error_status, reason="Rejected")
        self.created.append(body)

class PodScript:
    """Returns the scripted pod states one poll at a time, then repeats the last."""

    def __init__(self, states):
        self.states = states
        self.calls = 0

    def __call__(self, job_name, namespace=None):
        state = self.states[min(self.calls, len(self.states) - 1)]
        self.calls += 1
        return state

@pytest.fixture
def backend(monkeypatch, session_factory):
    provider = FakeGitProvider()
    batch = FakeBatchApi()
    torn_down = []
    requeued = []

    async def fake_client_for_repo(db, repo):
        return provider

    async def fake_enqueue(build_id, attempt=0):
        requeued.append((build_id, attempt))

    monkeypatch.setattr(executor, "async_session", session_factory)
    monkeypatch.setattr(executor, "get_client_for_repo", fake_client_for_repo)
    monkeypatch.setattr(executor, "get_batch_api", lambda: batch)
    monkeypatch.setattr(executor, "delete_job", lambda name, namespace=None: torn_down.append(name) or True)
    monkeypatch.setattr(executor, "enqueue_build", fake_enqueue)
    monkeypatch.setattr(executor.settings, "poll_interval", 0)

    return SimpleNamespace(provider=provider, batch=batch, torn_down=torn_down, requeued=requeued)

async def create_build(db, repo):
    event = CommitEvent(repo_owner="acme", repo_name="shop", commit_sha="abc123", branch="main")
    return await build_store.create_build_for_event(db, repo, event, PIPELINE_YAML)

async def step_statuses(db, build_id):
    return [BuildStepStatus(step.status) for step in await build_store.get_build_steps(db, build_id)]

async def test_failing_step_skips_the_rest(db, repo, backend, monkeypatch):
    build = await create_build(db, repo)
    monkeypatch.setattr(executor, "get_job_pod", PodScript([
        None,
        pod([container("git-clone", running=True)]),
        pod([container("git-clone", exit_code=0), container("build", running=True)], phase="Pending"),
        pod([
            container("git-clone", exit_code=0),
            container("build", exit_code=0),
            container("test", exit_code=1),
        ], phase="Failed"),
    ]))

    await executor.execute_build({"build_id": str(build.id), "attempt": 0})

    assert len(backend.batch.created) == 1
    assert await step_statuses(db, build.id) == [
        BuildStepStatus.SUCCEEDED,
        BuildStepStatus.ERRORED,
        BuildStepStatus.SKIPPED_DEP_ERROR,
    ]
    result = await build_store.get_build(db, build.id)
    assert result.status == BuildStatus.ERRORED.value
    assert result.message == "Step 'test' exited with code 1"
    assert [status["state"] for status in backend.provider.statuses] == ["pending", "error"]
    assert {status["commit_sha"] for status in backend.provider.statuses} == {"abc123"}
    assert backend.torn_down == [f"ci-{repo.id}-{build.build_num}"]

async def test_successful_build(db, repo, backend, monkeypatch):
    build = await create_build(db, repo)
    done = [container(name, exit_code=0) for name in ("git-clone", "build", "test", "deploy")]
    monkeypatch.setattr(executor, "get_job_pod", PodScript([pod(done, phase="Succeeded")]))

    await executor.execute_build({"build_id": str(build.id)})

    assert await step_statuses(db, build.id) == [BuildStepStatus.SUCCEEDED] * 3
    assert (await build_store.get_build(db, build.id)).status == BuildStatus.SUCCEEDED.value
    assert [status["state"] for status in backend.provider.statuses] == ["pending", "success"]
    assert backend.torn_down == []

async def test_clone_failure(db, repo, backend, monkeypatch):
    build = await create_build(db, repo)
    monkeypatch.setattr(executor, "get_job_pod", PodScript([
        pod([container("git-clone", exit_code=128)], phase="Failed"),
    ]))

    await executor.execute_build({"build_id": str(build.id)})

    assert await step_statuses(db, build.id) == [BuildStepStatus.SKIPPED_DEP_ERROR] * 3
    result = await build_store.get_build(db, build.id)
    assert result.status == BuildStatus.ERRORED.value
    assert "exit code 128" in result.message

async def test_cancel_while_running(db, repo, backend, monkeypatch):
    build = await create_build(db, repo)
    script = PodScript([pod([container("git-clone", exit_code=0), container("build", running=True)])])
    monkeypatch.setattr(executor, "get_job_pod", script)

    original = executor._build_status

    async def cancel_after_first_poll(session, build_id):
        if script.calls >= 1:
            await build_store.cancel_build(session, build_id)
        return await original(session, build_id)

    monkeypatch.setattr(executor, "_build_status", cancel_after_first_poll)

    await executor.execute_build({"build_id": str(build.id)})

    assert (await build_store.get_build(db, build.id)).status == BuildStatus.CANCELLED.value
    assert await step_statuses(db, build.id) == [
        BuildStepStatus.CANCELLED,
        BuildStepStatus.SKIPPED_DEP_ERROR,
        BuildStepStatus.SKIPPED_DEP_ERROR,
    ]
    assert backend.torn_down == [f"ci-{repo.id}-{build.build_num}"]

async def test_finished_build_is_not_executed_again(db, repo, backend):
    build = await create_build(db, repo)
    await build_store.transition_build(db, build.id, BuildStatus.ERRORED, "boom")

    await executor.execute_build({"build_id": str(build.id)})
    assert backend.batch.created == []

async def test_existing_job_is_adopted(db, repo, backend, monkeypatch):
    build = await create_build(db, repo)
    backend.batch.error_status = 409
    done = [container(name, exit_code=0) for name in ("git-clone", "build", "test", "deploy")]
    monkeypatch.setattr(executor, "get_job_pod", PodScript([pod(done, phase="Succeeded")]))

    await executor.execute_build({"build_id": str(build.id)})
    assert (await build_store.get_build(db, build.id)).status == BuildStatus.SUCCEEDED.value

async def test_submission_failure_is_retried(db, repo, backend):
    build = await create_build(db, repo)
    backend.batch.error_status = 500

    await executor.execute_build({"build_id": str(build.id), "attempt": 1})

    assert backend.requeued == [(str(build.id), 2)]
    assert (await build_store.get_build(db, build.id)).status == BuildStatus.WAITING_TO_START.value

async def test_submission_gives_up(db, repo, backend):
    build = await create_build(db, repo)
    backend.batch.error_status = 500

    await executor.execute_build({"build_id": str(build.id), "attempt": 4})

    assert backend.requeued == []
    result = await build_store.get_build(db, build.id)
    assert result.status == BuildStatus.ERRORED.value
    assert result.message == executor.UNSCHEDULABLE_MESSAGE
    assert await step_statuses(db, build.id) == [BuildStepStatus.SKIPPED_DEP_ERROR] * 3
    assert [status["state"] for status in backend.provider.statuses] == ["error"]

async def test_watch_reports_running_before_finished(monkeypatch):
    monkeypatch.setattr(executor.settings, "poll_interval", 0)
    monkeypatch.setattr(executor, "get_job_pod", PodScript([
        pod([container("git-clone", exit_code=0), container("build", exit_code=0)], phase="Succeeded"),
    ]))

    async def never():
        return False

    handle = ExecutionHandle(job_name="ci-x-1", namespace="patrci", step_containers={1: "build"})
    changes = [change async for change in executor.watch(handle, never)]

    assert changes == [(1, BuildStepStatus.RUNNING), (1, BuildStepStatus.SUCCEEDED)]
    assert handle.outcome == ExecutionOutcome.SUCCEEDED

async def test_unreachable_cluster_is_retried(db, repo, backend):
    build = await create_build(db, repo)
    backend.batch.error = MaxRetryError(None, "/apis/batch/v1/namespaces/patrci/jobs", reason=ConnectionRefusedError())

    await executor.execute_build({"build_id": str(build.id), "attempt": 0})

    assert backend.requeued == [(str(build.id), 1)]
    assert (await build_store.get_build(db, build.id)).status == BuildStatus.WAITING_TO_START.value

async def test_unreachable_cluster_gives_up(db, repo, backend):
    build = await create_build(db, repo)
    backend.batch.error = ConnectionRefusedError("connection refused")

    await executor.execute_build({"build_id": str(build.id), "attempt": 4})

    result = await build_store.get_build(db, build.id)
    assert result.status == BuildStatus.ERRORED.value
    assert result.message == executor.UNSCHEDULABLE_MESSAGE

class FlakyPods:
    """Fails the first reads, then hands out the given pod."""

    def __init__(self, failures, state):
        self.failures = failures
        self.state = state
        self.calls = 0

    def __call__(self, job_name, namespace=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise ApiException(status=500, reason="Internal Server Error")
        return self.state

async def test_transient_poll_errors_are_ridden_out(db, repo, backend, monkeypatch):
    build = await create_build(db, repo)
    done = [container(name, exit_code=0) for name in ("git-clone", "build", "test", "deploy")]
    monkeypatch.setattr(executor, "get_job_pod", FlakyPods(2, pod(done, phase="Succeeded")))

    await executor.execute_build({"build_id": str(build.id)})

    assert (await build_store.get_build(db, build.id)).status == BuildStatus.SUCCEEDED.value
    assert [status["state"] for status in backend.provider.statuses] == ["pending", "success"]

async def test_lost_cluster_errors_the_build(db, repo, backend, monkeypatch):
    build = await create_build(db, repo)
    monkeypatch.setattr(executor.settings, "max_poll_failures", 3)
    pods = FlakyPods(100, None)
    monkeypatch.setattr(executor, "get_job_pod", pods)

    await executor.execute_build({"build_id": str(build.id)})

    assert pods.calls == 3
    result = await build_store.get_build(db, build.id)
    assert result.status == BuildStatus.ERRORED.value
    assert "failed status checks" in result.message
    assert await step_statuses(db, build.id) == [BuildStepStatus.SKIPPED_DEP_ERROR] * 3
    assert [status["state"] for status in backend.provider.statuses] == ["pending", "error"]
    assert backend.torn_down == [f"ci-{repo.id}-{build.build_num}"]

async def test_teardown_survives_cluster_errors(monkeypatch):
    def failing_delete(name, namespace=None):
        raise MaxRetryError(None, "/apis/batch/v1", reason=TimeoutError())

    monkeypatch.setattr(executor, "delete_job", failing_delete)
    executor.teardown(ExecutionHandle(job_name="ci-x-1", namespace="patrci", step_containers={}))
