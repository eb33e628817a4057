from controller.src.k8s.client import (
    init_k8s_client,
    get_batch_api,
    get_core_api,
    ensure_namespace,
    get_job_pod,
    delete_job,
)
from controller.src.k8s.job_builder import (
    build_execution_plan,
    build_job_name,
    CLONE_CONTAINER,
    SENTINEL_CONTAINER,
)

__all__ = [
    "init_k8s_client",
    "get_batch_api",
    "get_core_api",
    "ensure_namespace",
    "get_job_pod",
    "delete_job",
    "build_execution_plan",
    "build_job_name",
    "CLONE_CONTAINER",
    "SENTINEL_CONTAINER",
]
