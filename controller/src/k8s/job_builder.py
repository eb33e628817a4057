"""
Kubernetes Job builder for CI builds.

A build runs as one Job whose pod executes, in order:

    service sidecars (init containers with restartPolicy Always)
    git-clone        checks out the pinned commit into the shared workdir
    <step>...        one init container per build step
    ci-success       the only regular container; runs once every step passed

Init containers run sequentially and the pod stops at the first one that
exits non-zero, which gives steps their fail-fast ordering for free.
"""

from kubernetes import client
from typing import Dict, List, Optional
import shlex

from api.src.models.event import CommitEvent, TagEvent, PullRequestEvent
from api.src.models.pipeline import CLONE_CONTAINER, SENTINEL_CONTAINER, ServiceContainer, build_job_name
from controller.src.config import get_settings
from controller.src.models.execution import ExecutionRequest, ExecutionStep

settings = get_settings()

WORKDIR_VOLUME = "workdir"

def build_labels(request: ExecutionRequest) -> Dict[str, str]:
    return {
        "app": "patr-ci",
        "repo-id": str(request.repo_id),
        "build-num": str(request.build_num),
    }

def build_ci_env(request: ExecutionRequest) -> Dict[str, str]:
    """Environment every step sees, before the step's own variables."""
    event = request.event
    env = {
        "CI": "true",
        "PATR": "true",
        "PATR_CI": "true",
        "PATR_CI_WORKDIR": settings.workdir,
        "PATR_CI_BUILD_NUMBER": str(request.build_num),
        "PATR_CI_EVENT_TYPE": event.kind,
        "PATR_CI_COMMIT_SHA": event.commit_sha,
    }

    if isinstance(event, CommitEvent):
        env["PATR_CI_BRANCH"] = event.branch
        if event.message:
            env["PATR_CI_COMMIT_MESSAGE"] = event.message
    elif isinstance(event, TagEvent):
        env["PATR_CI_TAG"] = event.tag_name
        if event.message:
            env["PATR_CI_COMMIT_MESSAGE"] = event.message
    elif isinstance(event, PullRequestEvent):
        env["PATR_CI_BRANCH"] = event.base_branch
        env["PATR_CI_PULL_REQUEST_NUMBER"] = str(event.pr_number)
        env["PATR_CI_PULL_REQUEST_TITLE"] = event.pr_title

    return env

def to_env_vars(env: Dict[str, str]) -> List[client.V1EnvVar]:
    return [client.V1EnvVar(name=key, value=value) for key, value in env.items()]

def workdir_mount() -> client.V1VolumeMount:
    return client.V1VolumeMount(name=WORKDIR_VOLUME, mount_path=settings.workdir)

def shell_script(commands: List[str], cwd: Optional[str] = None) -> List[str]:
    """`sh -ce` with every command on its own line; -e stops at the first failure."""
    lines = []
    if cwd:
        lines.append(f"cd {shlex.quote(cwd)}")
    lines.append("set -x")
    lines.extend(commands)
    return ["sh", "-ce", "\n".join(lines)]

def build_clone_container(request: ExecutionRequest) -> client.V1Container:
    """Fetch exactly the build's commit, never whatever the branch points at now."""
    repo_dir = shlex.quote(request.repo_name)
    commands = [
        f"git init {repo_dir}",
        f"cd {repo_dir}",
        f"git remote add origin {shlex.quote(request.clone_url)}",
        f"git fetch --depth=1 origin {shlex.quote(request.commit_sha)}",
        "git checkout --detach FETCH_HEAD",
    ]
    return client.V1Container(
        name=CLONE_CONTAINER,
        image=settings.clone_image,
        command=shell_script(commands, cwd=settings.workdir),
        volume_mounts=[workdir_mount()],
    )

def build_step_container(step: ExecutionStep, ci_env: Dict[str, str], repo_dir: str) -> client.V1Container:
    env = dict(ci_env)
    env.update(step.env)

    return client.V1Container(
        name=step.name,
        image=step.image,
        command=shell_script(step.commands, cwd=repo_dir),
        env=to_env_vars(env),
        volume_mounts=[workdir_mount()],
        resources=client.V1ResourceRequirements(
            requests={"cpu": settings.step_cpu_request, "memory": settings.step_memory_request},
            limits={"cpu": settings.step_cpu_limit, "memory": settings.step_memory_limit},
        ),
    )

def build_service_container(service: ServiceContainer) -> client.V1Container:
    """A sidecar that starts before the clone and lives as long as the pod."""
    container = client.V1Container(
        name=service.name,
        image=service.image,
        restart_policy="Always",
        env=to_env_vars(service.env),
        ports=[client.V1ContainerPort(container_port=service.port)],
    )
    if service.commands:
        container.command = shell_script(list(service.commands))
    return container

def build_sentinel_container() -> client.V1Container:
    return client.V1Container(
        name=SENTINEL_CONTAINER,
        image=settings.sentinel_image,
        command=["sh", "-ce", 'echo "CI steps completed successfully"'],
        volume_mounts=[workdir_mount()],
    )

def build_execution_plan(request: ExecutionRequest) -> client.V1Job:
    """
    Build the Kubernetes Job that executes a build.
    """
    job_name = build_job_name(request.repo_id, request.build_num)
    labels = build_labels(request)
    ci_env = build_ci_env(request)
    repo_dir = f"{settings.workdir}/{request.repo_name}"

    init_containers = [build_service_container(service) for service in request.services]
    init_containers.append(build_clone_container(request))
    init_containers.extend(
        build_step_container(step, ci_env, repo_dir)
        for step in sorted(request.steps, key=lambda s: s.step_id)
    )

    pod_spec = client.V1PodSpec(
        init_containers=init_containers,
        containers=[build_sentinel_container()],
        restart_policy="Never",
        volumes=[
            client.V1Volume(name=WORKDIR_VOLUME, empty_dir=client.V1EmptyDirVolumeSource()),
        ],
    )

    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=labels),
        spec=pod_spec,
    )

    job_spec = client.V1JobSpec(
        template=template,
        backoff_limit=0,  # A failed build is never retried by Kubernetes
        active_deadline_seconds=settings.job_timeout,
        ttl_seconds_after_finished=settings.job_ttl_after_finished,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=settings.k8s_namespace,
            labels=labels,
        ),
        spec=job_spec,
    )
