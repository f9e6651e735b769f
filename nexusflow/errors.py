"""Error taxonomy shared by the store, queue, engine and service layers."""

from __future__ import annotations

from typing import Any, Dict, Optional


class NexusflowError(Exception):
    """Base error with a stable, client-visible kind."""

    kind = "internal_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, retryable: Optional[bool] = None) -> None:
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable

    def to_payload(self) -> Dict[str, Any]:
        """Reduce the error to what a client is allowed to see."""
        return {"error": self.message, "kind": self.kind}


class ValidationError(NexusflowError):
    """Malformed input to a create/execute call or an invalid graph."""

    kind = "validation_error"
    status_code = 400


class NotFoundError(NexusflowError):
    kind = "not_found"
    status_code = 404


class AuthorizationError(NexusflowError):
    kind = "forbidden"
    status_code = 403


class EnqueueError(NexusflowError):
    """The queue backend was unreachable or rejected the job."""

    kind = "enqueue_failed"
    status_code = 500


class EngineStepError(NexusflowError):
    """A graph node raised while the engine was walking the workflow."""

    kind = "step_failed"
    status_code = 500

    def __init__(self, message: str, step_name: str, step_index: int) -> None:
        super().__init__(message)
        self.step_name = step_name
        self.step_index = step_index


class StreamTransportError(NexusflowError):
    kind = "stream_error"
    status_code = 502
    retryable = True


class JobFailed(NexusflowError):
    """Raised by job processors to fail a job with explicit retry semantics."""

    kind = "job_failed"
    retryable = True


class ExecutionCancelled(NexusflowError):
    """Signals that an execution was cancelled while the engine was running."""

    kind = "cancelled"
    status_code = 409


class AuthenticationError(NexusflowError):
    """No caller identity was supplied with the request."""

    kind = "unauthenticated"
    status_code = 401
