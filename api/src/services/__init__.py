from api.src.services.pipeline_parser import (
    compile_pipeline,
    compile_document,
    slugify,
    CompileError,
    CompileErrorKind,
)
from api.src.services.evaluator import (
    evaluate,
    EvaluationSuccess,
    EvaluationError,
)
from api.src.services.build_store import (
    create_build,
    create_build_for_event,
    transition_build,
    transition_step,
    skip_remaining_steps,
    cancel_build,
    restart,
    get_build,
    get_build_by_num,
    list_builds,
    get_build_steps,
    BuildNotFoundError,
    InvalidTransitionError,
)
from api.src.services.git_provider import (
    GitProviderClient,
    GitProviderError,
    get_provider_client,
    get_client_for_repo,
)
from api.src.services.github import (
    verify_signature,
    parse_webhook_event,
    WebhookPayloadError,
    GitHubClient,
)
from api.src.services.queue import (
    enqueue_build,
    dequeue_build,
    ack_build,
    requeue_inflight,
    get_queue_depths,
)
from api.src.services.status_bridge import report_build_status, commit_state_for
from api.src.services.logs import get_logs, LogStoreError

__all__ = [
    "compile_pipeline",
    "compile_document",
    "slugify",
    "CompileError",
    "CompileErrorKind",
    "evaluate",
    "EvaluationSuccess",
    "EvaluationError",
    "create_build",
    "create_build_for_event",
    "transition_build",
    "transition_step",
    "skip_remaining_steps",
    "cancel_build",
    "restart",
    "get_build",
    "get_build_by_num",
    "list_builds",
    "get_build_steps",
    "BuildNotFoundError",
    "InvalidTransitionError",
    "GitProviderClient",
    "GitProviderError",
    "get_provider_client",
    "get_client_for_repo",
    "verify_signature",
    "parse_webhook_event",
    "WebhookPayloadError",
    "GitHubClient",
    "enqueue_build",
    "dequeue_build",
    "ack_build",
    "requeue_inflight",
    "get_queue_depths",
    "report_build_status",
    "commit_state_for",
    "get_logs",
    "LogStoreError",
]
