"""
Bind a compiled pipeline to a git event.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Union

from api.src.models.pipeline import AnyEvent, Pipeline, WorkStep

logger = logging.getLogger(__name__)

PLACEHOLDERS = ("repo_owner", "repo_name", "commit_sha", "branch_or_tag_or_pr")

# `${...}` and `${{ ... }}` belong to the shell or a template and are kept
# verbatim. Elsewhere `{{`/`}}` are literal braces. Any other brace that does
# not wrap an identifier is passed through untouched.
_TOKEN_RE = re.compile(
    r"\$\{\{.*?\}\}|\$\{|\{\{|\}\}"
    r"|\{([A-Za-z_][A-Za-z0-9_]*)\}"
    r"|\{(" + "|".join(PLACEHOLDERS) + r")(?![A-Za-z0-9_}])"
)

@dataclass(frozen=True)
class EvaluationSuccess:
    work_steps: List[WorkStep] = field(default_factory=list)

@dataclass(frozen=True)
class EvaluationError:
    message: str

EvaluationResult = Union[EvaluationSuccess, EvaluationError]

class PlaceholderError(ValueError):
    pass

def placeholder_values(event: AnyEvent) -> Dict[str, str]:
    return {
        "repo_owner": event.repo_owner,
        "repo_name": event.repo_name,
        "commit_sha": event.commit_sha,
        "branch_or_tag_or_pr": event.branch_or_tag_or_pr,
    }

def substitute(text: str, values: Dict[str, str]) -> str:
    """
    Replace `{name}` placeholders in text with their values.

    `{{` and `}}` produce a literal brace; `${VAR}` and `${{ expr }}` are
    left exactly as written.
    """
    def replace(match: re.Match) -> str:
        token = match.group(0)
        if token.startswith("$"):
            return token
        if token == "{{":
            return "{"
        if token == "}}":
            return "}"
        if match.group(2) is not None:
            raise PlaceholderError(f"Unterminated placeholder '{{{match.group(2)}'")
        name = match.group(1)
        if name not in values:
            raise PlaceholderError(f"Unknown placeholder '{{{name}}}'")
        return values[name]

    return _TOKEN_RE.sub(replace, text)

def evaluate(pipeline: Pipeline, event: AnyEvent) -> EvaluationResult:
    """
    Resolve the pipeline's steps against an event.

    Steps that do not apply to the event are dropped; the remaining ones keep
    their declared order. Never raises.
    """
    values = placeholder_values(event)
    work_steps = []

    for step in pipeline.steps:
        try:
            if not step.applies_to.matches(event):
                logger.debug(f"Skipping step {step.slug} for {event.kind} event on {event.ref_name}")
                continue

            work_steps.append(WorkStep(
                name=step.slug,
                image=step.image,
                commands=[substitute(command, values) for command in step.commands],
                env={key: substitute(value, values) for key, value in step.env.items()},
            ))
        except PlaceholderError as e:
            return EvaluationError(f"Step '{step.name}': {e}")
        except Exception as e:
            logger.exception(f"Unexpected error while evaluating step {step.name}")
            return EvaluationError(f"Step '{step.name}' could not be evaluated: {e}")

    return EvaluationSuccess(work_steps)
