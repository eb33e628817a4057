from pydantic_settings import BaseSettings
from functools import lru_cache

class Settings(BaseSettings):
    # Kubernetes settings
    k8s_namespace: str = "patrci"
    k8s_in_cluster: bool = False  # Set True when running inside K8s

    # Job settings
    job_timeout: int = 3600  # 1 hour default
    job_ttl_after_finished: int = 300  # Clean up jobs after 5 min
    poll_interval: float = 2.0
    max_poll_failures: int = 30
    dequeue_timeout: int = 5

    # Images for the containers the controller adds around user steps
    clone_image: str = "alpine/git"
    sentinel_image: str = "alpine:3"
    workdir: str = "/workdir"

    # Per-container resources of a build step
    step_cpu_request: str = "100m"
    step_memory_request: str = "128Mi"
    step_cpu_limit: str = "1000m"
    step_memory_limit: str = "1Gi"

    class Config:
        env_file = ".env"

@lru_cache()
def get_settings() -> Settings:
    return Settings()
