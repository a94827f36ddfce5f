"""
Error taxonomy for the avatar pipeline and the classifier that turns any
failure into the message persisted on the task.

Two families live here:
  - Task failures: raised inside a processing routine, caught at the
    orchestrator boundary, classified and persisted (stage → FAILED/UPLOAD_FAILED).
  - Caller errors: raised synchronously from the service's public methods
    (bad stage, bad index, unknown task, busy task). They never touch the stage.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from .models import FailureKind


# ── Task failures ────────────────────────────────────────────────────────────

class AvatarPipelineError(Exception):
    """Base class for failures that end a processing routine."""

    kind = FailureKind.UNKNOWN


class ConfigurationError(AvatarPipelineError):
    """Provider credentials missing or unresolvable."""


class UploadError(AvatarPipelineError):
    kind = FailureKind.UPLOAD


class NoSubjectError(AvatarPipelineError):
    kind = FailureKind.NO_SUBJECT


class ProviderError(AvatarPipelineError):
    """The provider answered with an error status or a non-success envelope."""

    kind = FailureKind.PROVIDER

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class RateLimitError(ProviderError):
    kind = FailureKind.RATE_LIMITED


class AuthError(ProviderError):
    kind = FailureKind.AUTH


class RemoteTaskNotFound(AvatarPipelineError):
    kind = FailureKind.REMOTE_NOT_FOUND


class RemoteTaskExpired(AvatarPipelineError):
    kind = FailureKind.REMOTE_EXPIRED


class PollingTimeoutError(AvatarPipelineError):
    kind = FailureKind.POLLING_TIMEOUT


# ── Caller errors ────────────────────────────────────────────────────────────

class TaskNotFoundError(LookupError):
    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class InvalidTaskStateError(ValueError):
    """The operation is not allowed in the task's current stage."""


class InvalidSelectionError(ValueError):
    """The requested mask index does not point at a detected subject."""


class TaskBusyError(RuntimeError):
    """A processing routine already holds the task's lease."""


class RunnerClosedError(RuntimeError):
    """The runner is shutting down and accepts no new routines."""


# ── Classification ───────────────────────────────────────────────────────────

RATE_LIMIT_MESSAGE = "Provider rate limit reached, please try again later"
AUTH_MESSAGE = "Provider credentials are invalid or lack permission"
UNKNOWN_MESSAGE = "Unknown error"


@dataclass(slots=True)
class FailureClassification:
    """What gets persisted onto a failed task."""

    kind: FailureKind
    message: str


def classify_failure(exc: BaseException) -> FailureClassification:
    """Map any exception raised by a processing routine to a kind and a message."""
    if isinstance(exc, RateLimitError):
        return FailureClassification(FailureKind.RATE_LIMITED, RATE_LIMIT_MESSAGE)
    if isinstance(exc, AuthError):
        return FailureClassification(FailureKind.AUTH, AUTH_MESSAGE)
    if isinstance(exc, AvatarPipelineError):
        return FailureClassification(exc.kind, str(exc) or UNKNOWN_MESSAGE)

    # Raw HTTP errors that escaped the client (e.g. from a storage download)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return FailureClassification(FailureKind.RATE_LIMITED, RATE_LIMIT_MESSAGE)
        if status in (401, 403):
            return FailureClassification(FailureKind.AUTH, AUTH_MESSAGE)
        return FailureClassification(FailureKind.PROVIDER, http_error_message(exc.response))

    return FailureClassification(FailureKind.UNKNOWN, str(exc) or UNKNOWN_MESSAGE)


def http_error_message(response: httpx.Response) -> str:
    """Prefer the provider's own ``message`` field over a bare status line."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("Message")
        if not message:
            metadata = body.get("ResponseMetadata")
            if isinstance(metadata, dict) and isinstance(metadata.get("Error"), dict):
                message = metadata["Error"].get("Message")
        if message:
            return str(message)
    return f"HTTP {response.status_code} error"
