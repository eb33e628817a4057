"""Tests for the Kubernetes Job builder."""

import uuid

from api.src.models.event import CommitEvent, PullRequestEvent
from api.src.models.pipeline import ServiceContainer
from api.src.services.logs import build_log_query
from controller.src.k8s.job_builder import build_execution_plan, build_ci_env, build_job_name
from controller.src.models.execution import ExecutionRequest, ExecutionStep

REPO_ID = uuid.UUID("6f1c1c7e-3a59-4d0e-9d4e-2b8f0b1d2c3a")

def make_request(event=None, services=None):
    return ExecutionRequest(
        build_id=uuid.uuid4(),
        repo_id=REPO_ID,
        repo_name="shop",
        clone_url="https://github.com/acme/shop.git",
        build_num=12,
        commit_sha="c0ffee",
        event=event or CommitEvent(repo_owner="acme", repo_name="shop", commit_sha="c0ffee", branch="main", message="Add cart"),
        services=services or [],
        steps=[
            ExecutionStep(step_id=2, name="test", image="node:20", commands=["npm test"], env={"CI": "override"}),
            ExecutionStep(step_id=1, name="build", image="node:20", commands=["npm ci", "npm run build"]),
        ],
    )

def env_of(container):
    return {var.name: var.value for var in container.env or []}

def test_job_name():
    assert build_job_name(REPO_ID, 12) == f"ci-{REPO_ID}-12"

def test_container_order():
    job = build_execution_plan(make_request())
    pod_spec = job.spec.template.spec

    assert job.metadata.name == f"ci-{REPO_ID}-12"
    assert [c.name for c in pod_spec.init_containers] == ["git-clone", "build", "test"]
    assert [c.name for c in pod_spec.containers] == ["ci-success"]
    assert pod_spec.restart_policy == "Never"
    assert job.spec.backoff_limit == 0
    assert job.spec.active_deadline_seconds > 0

def test_clone_checks_out_the_pinned_commit():
    clone = build_execution_plan(make_request()).spec.template.spec.init_containers[0]
    script = clone.command[2]
    assert clone.command[:2] == ["sh", "-ce"]
    assert "git fetch --depth=1 origin c0ffee" in script
    assert "git checkout --detach FETCH_HEAD" in script

def test_step_runs_commands_in_the_checkout():
    step = build_execution_plan(make_request()).spec.template.spec.init_containers[1]
    assert step.image == "node:20"
    assert step.command[2].splitlines() == ["cd /workdir/shop", "set -x", "npm ci", "npm run build"]
    assert step.volume_mounts[0].mount_path == "/workdir"

def test_ci_environment():
    containers = build_execution_plan(make_request()).spec.template.spec.init_containers
    build_env = env_of(containers[1])
    assert build_env["PATR_CI"] == "true"
    assert build_env["PATR_CI_BUILD_NUMBER"] == "12"
    assert build_env["PATR_CI_EVENT_TYPE"] == "commit"
    assert build_env["PATR_CI_BRANCH"] == "main"
    assert build_env["PATR_CI_COMMIT_MESSAGE"] == "Add cart"
    # Step variables win over the defaults
    assert env_of(containers[2])["CI"] == "override"

def test_pull_request_environment():
    event = PullRequestEvent(
        repo_owner="acme",
        repo_name="shop",
        commit_sha="c0ffee",
        pr_number=5,
        pr_title="Add cart",
        head_repo_owner="fork",
        head_repo_name="shop",
        base_branch="main",
    )
    env = build_ci_env(make_request(event=event))
    assert env["PATR_CI_EVENT_TYPE"] == "pull_request"
    assert env["PATR_CI_PULL_REQUEST_NUMBER"] == "5"
    assert env["PATR_CI_PULL_REQUEST_TITLE"] == "Add cart"
    assert "PATR_CI_TAG" not in env

def test_services_are_sidecars():
    services = [ServiceContainer(name="postgres", image="postgres:16", port=5432, env={"POSTGRES_PASSWORD": "ci"})]
    init_containers = build_execution_plan(make_request(services=services)).spec.template.spec.init_containers

    assert [c.name for c in init_containers] == ["postgres", "git-clone", "build", "test"]
    sidecar = init_containers[0]
    assert sidecar.restart_policy == "Always"
    assert sidecar.ports[0].container_port == 5432
    assert sidecar.command is None

def test_log_query_selects_the_job_containers():
    job = build_execution_plan(make_request())
    clone, build = job.spec.template.spec.init_containers[:2]

    query = build_log_query(job.metadata.namespace, build_job_name(REPO_ID, 12), build.name)
    assert f'job="{job.metadata.namespace}/{job.metadata.name}"' in query
    assert clone.name == "git-clone"
