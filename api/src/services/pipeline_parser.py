"""
Pipeline document compiler.

Turns the raw bytes of a repository's pipeline file (YAML or JSON) into a
validated, immutable Pipeline. No I/O happens here.
"""

import re
import yaml
from enum import Enum
from typing import List, Dict, Any, Optional, Union

from api.src.models.event import EVENT_KINDS
from api.src.models.pipeline import (
    AllOf,
    Always,
    AppliesTo,
    BranchPattern,
    CLONE_CONTAINER,
    EventKind,
    Pipeline,
    ServiceContainer,
    SENTINEL_CONTAINER,
    Step,
)

SUPPORTED_KINDS = ("pipeline",)
SUPPORTED_VERSIONS = ("v1", "v0")
MAX_LABEL_LENGTH = 63

# Older documents name pull request events "pull"
EVENT_ALIASES = {"pull": "pull_request"}

# Container names the execution plan uses for its own steps
RESERVED_NAMES = frozenset({CLONE_CONTAINER, SENTINEL_CONTAINER})

_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")

class CompileErrorKind(str, Enum):
    INVALID_DOCUMENT = "invalid_document"
    UNSUPPORTED_KIND = "unsupported_kind"
    EMPTY_PIPELINE = "empty_pipeline"
    INVALID_STEP = "invalid_step"
    DUPLICATE_STEP_NAME = "duplicate_step_name"
    INVALID_SERVICE = "invalid_service"

class CompileError(Exception):
    """Raised when a pipeline document cannot be compiled."""

    def __init__(self, kind: CompileErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

def slugify(name: str) -> str:
    """Lowercase, alphanumeric and hyphen only, at most 63 characters."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:MAX_LABEL_LENGTH].rstrip("-")

def compile_pipeline(raw: Union[bytes, str]) -> Pipeline:
    """Parse and validate a pipeline document."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise CompileError(CompileErrorKind.INVALID_DOCUMENT, "Pipeline file is not valid UTF-8")

    try:
        document = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise CompileError(CompileErrorKind.INVALID_DOCUMENT, f"Invalid YAML: {e}")

    return compile_document(document)

def compile_document(document: Optional[Dict[str, Any]]) -> Pipeline:
    """Validate an already-parsed pipeline document."""
    if not document:
        raise CompileError(CompileErrorKind.INVALID_DOCUMENT, "Empty pipeline configuration")

    if not isinstance(document, dict):
        raise CompileError(CompileErrorKind.INVALID_DOCUMENT, "Pipeline configuration must be a mapping")

    if "kind" not in document:
        raise CompileError(CompileErrorKind.INVALID_DOCUMENT, "Pipeline must declare a 'kind'")

    kind = document["kind"]
    if kind not in SUPPORTED_KINDS:
        raise CompileError(CompileErrorKind.UNSUPPORTED_KIND, f"Unsupported pipeline kind '{kind}'")

    version = document.get("version", SUPPORTED_VERSIONS[0])
    if version not in SUPPORTED_VERSIONS:
        raise CompileError(CompileErrorKind.INVALID_DOCUMENT, f"Unsupported pipeline version '{version}'")

    name = document.get("name", "pipeline")
    if not isinstance(name, str):
        raise CompileError(CompileErrorKind.INVALID_DOCUMENT, "Pipeline 'name' must be a string")

    unknown = set(document) - {"kind", "version", "name", "steps", "services"}
    if unknown:
        raise CompileError(
            CompileErrorKind.INVALID_DOCUMENT,
            f"Unknown pipeline field(s): {', '.join(sorted(unknown))}",
        )

    services = _compile_services(document.get("services") or [])

    if "steps" not in document:
        raise CompileError(CompileErrorKind.EMPTY_PIPELINE, "Pipeline must have 'steps' defined")

    steps = document["steps"]
    if not isinstance(steps, list):
        raise CompileError(CompileErrorKind.INVALID_DOCUMENT, "Pipeline 'steps' must be a list")

    if len(steps) == 0:
        raise CompileError(CompileErrorKind.EMPTY_PIPELINE, "Pipeline must have at least one step")

    taken = set(RESERVED_NAMES) | {service.name for service in services}
    compiled_steps = []
    for i, step in enumerate(steps):
        compiled = compile_step(step, i)
        if compiled.slug in taken:
            raise CompileError(
                CompileErrorKind.DUPLICATE_STEP_NAME,
                f"Step {i} name '{compiled.name}' conflicts with another step, service or reserved name",
            )
        taken.add(compiled.slug)
        compiled_steps.append(compiled)

    return Pipeline(name=name, steps=tuple(compiled_steps), services=tuple(services))

def compile_step(step: Dict[str, Any], index: int) -> Step:
    """Validate a single pipeline step."""
    if not isinstance(step, dict):
        raise CompileError(CompileErrorKind.INVALID_STEP, f"Step {index} must be a mapping")

    # Required fields
    if "name" not in step:
        raise CompileError(CompileErrorKind.INVALID_STEP, f"Step {index} missing 'name'")

    if "image" not in step:
        raise CompileError(CompileErrorKind.INVALID_STEP, f"Step {index} missing 'image'")

    if "commands" not in step and "command" not in step:
        raise CompileError(CompileErrorKind.INVALID_STEP, f"Step {index} missing 'commands'")

    unknown = set(step) - {"name", "image", "commands", "command", "env", "environment", "when"}
    if unknown:
        raise CompileError(
            CompileErrorKind.INVALID_STEP,
            f"Step {index} has unknown field(s): {', '.join(sorted(unknown))}",
        )

    # Validate types
    if not isinstance(step["name"], str):
        raise CompileError(CompileErrorKind.INVALID_STEP, f"Step {index} 'name' must be a string")

    if not isinstance(step["image"], str) or not step["image"].strip():
        raise CompileError(CompileErrorKind.INVALID_STEP, f"Step {index} 'image' must be a non-empty string")

    slug = slugify(step["name"])
    if not slug:
        raise CompileError(
            CompileErrorKind.INVALID_STEP,
            f"Step {index} name '{step['name']}' has no usable characters",
        )

    commands = _compile_commands(step.get("commands", step.get("command")), f"Step {index}")
    env = _compile_env(step.get("env", step.get("environment")), f"Step {index}")

    return Step(
        name=step["name"],
        slug=slug,
        image=step["image"],
        commands=tuple(commands),
        env=env,
        applies_to=_compile_when(step.get("when"), index),
    )

def _compile_commands(commands: Any, where: str) -> List[str]:
    if isinstance(commands, str):
        commands = [commands]

    if not isinstance(commands, list):
        raise CompileError(CompileErrorKind.INVALID_STEP, f"{where} 'commands' must be a list")

    for j, cmd in enumerate(commands):
        if not isinstance(cmd, str):
            raise CompileError(CompileErrorKind.INVALID_STEP, f"{where} command {j} must be a string")

    return commands

def _compile_env(env: Any, where: str) -> Dict[str, str]:
    if env is None:
        return {}

    if not isinstance(env, dict):
        raise CompileError(CompileErrorKind.INVALID_STEP, f"{where} 'env' must be a mapping")

    compiled = {}
    for key, value in env.items():
        if not isinstance(key, str) or not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", key):
            raise CompileError(CompileErrorKind.INVALID_STEP, f"{where} env name '{key}' is invalid")
        if isinstance(value, dict) and "from_secret" in value:
            raise CompileError(
                CompileErrorKind.INVALID_STEP,
                f"{where} env '{key}' reads secret '{value['from_secret']}', secrets are not supported",
            )
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise CompileError(CompileErrorKind.INVALID_STEP, f"{where} env '{key}' must be a scalar")
        compiled[key] = str(value)
    return compiled

def _compile_when(when: Any, index: int) -> AppliesTo:
    if when is None:
        return Always()

    if not isinstance(when, dict):
        raise CompileError(CompileErrorKind.INVALID_STEP, f"Step {index} 'when' must be a mapping")

    unknown = set(when) - {"branch", "event"}
    if unknown:
        raise CompileError(
            CompileErrorKind.INVALID_STEP,
            f"Step {index} 'when' has unknown field(s): {', '.join(sorted(unknown))}",
        )

    branches = _string_list(when.get("branch"), f"Step {index} 'when.branch'")
    events = [
        EVENT_ALIASES.get(event, event)
        for event in _string_list(when.get("event"), f"Step {index} 'when.event'")
    ]

    for event in events:
        if event not in EVENT_KINDS:
            raise CompileError(
                CompileErrorKind.INVALID_STEP,
                f"Step {index} 'when.event' has unknown event '{event}'",
            )

    predicates = []
    if branches:
        predicates.append(BranchPattern(patterns=tuple(branches)))
    if events:
        predicates.append(EventKind(kinds=frozenset(events)))

    if not predicates:
        raise CompileError(
            CompileErrorKind.INVALID_STEP,
            f"Step {index} 'when' must declare at least one of 'branch' or 'event'",
        )
    if len(predicates) == 1:
        return predicates[0]
    return AllOf(predicates=tuple(predicates))

def _string_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise CompileError(CompileErrorKind.INVALID_STEP, f"{where} must be a string or list of strings")
    return value

def _compile_services(services: Any) -> List[ServiceContainer]:
    if not isinstance(services, list):
        raise CompileError(CompileErrorKind.INVALID_SERVICE, "Pipeline 'services' must be a list")

    compiled = []
    seen = set()
    for i, service in enumerate(services):
        if not isinstance(service, dict):
            raise CompileError(CompileErrorKind.INVALID_SERVICE, f"Service {i} must be a mapping")

        for field in ("name", "image", "port"):
            if field not in service:
                raise CompileError(CompileErrorKind.INVALID_SERVICE, f"Service {i} missing '{field}'")

        name = service["name"]
        if not isinstance(name, str) or len(name) > MAX_LABEL_LENGTH or not _LABEL_RE.match(name):
            raise CompileError(
                CompileErrorKind.INVALID_SERVICE,
                f"Service {i} name '{name}' must be a lowercase alphanumeric label",
            )
        if name in seen or name in RESERVED_NAMES:
            raise CompileError(CompileErrorKind.INVALID_SERVICE, f"Service name '{name}' is already in use")
        seen.add(name)

        port = service["port"]
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise CompileError(CompileErrorKind.INVALID_SERVICE, f"Service {i} 'port' must be a TCP port")

        commands = service.get("commands", service.get("command"))
        compiled.append(ServiceContainer(
            name=name,
            image=service["image"],
            port=port,
            commands=tuple(_compile_commands(commands, f"Service {i}")) if commands is not None else None,
            env=_compile_env(service.get("env", service.get("environment")), f"Service {i}"),
        ))
    return compiled
