"""Custom exceptions for TutorChat."""

from typing import Optional


class ChatEngineError(Exception):
    """Base exception for all chat engine errors."""

    kind = "internal"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InputInvalidError(ChatEngineError):
    """Raised when required identifiers or text are missing or malformed."""

    kind = "input_invalid"


class NotFoundError(ChatEngineError):
    """Raised when a requested row does not exist."""

    kind = "not_found"


class AuthMismatchError(ChatEngineError):
    """Raised when a resource is not owned by the requesting user."""

    kind = "auth_mismatch"

    def __init__(self, resource: str, resource_id: object, user_id: object):
        self.resource = resource
        self.resource_id = resource_id
        self.user_id = user_id
        super().__init__(f"{resource} {resource_id} is not owned by user {user_id}")


class ThreadBusyError(ChatEngineError):
    """Raised when a thread already has a turn in flight."""

    kind = "thread_busy"

    def __init__(self, thread_id: object):
        self.thread_id = thread_id
        super().__init__(f"Thread {thread_id} already has a reply in progress")


class DependencyUnavailableError(ChatEngineError):
    """Raised when a store, vector index or model provider call fails."""

    kind = "dependency_unavailable"

    def __init__(self, dependency: str, message: str):
        self.dependency = dependency
        super().__init__(f"{dependency}: {message}")


class RetryableError(DependencyUnavailableError):
    """Transient failure (network, 408/429/5xx, deadline, malformed output)."""

    kind = "retryable"

    def __init__(
        self,
        dependency: str,
        message: str,
        status_code: Optional[int] = None,
    ):
        self.status_code = status_code
        super().__init__(dependency, message)


class NonRetryableError(DependencyUnavailableError):
    """Permanent failure (schema validation, 4xx other than 408/429)."""

    kind = "non_retryable"

    def __init__(
        self,
        dependency: str,
        message: str,
        status_code: Optional[int] = None,
    ):
        self.status_code = status_code
        super().__init__(dependency, message)


class ModelRefusalError(ChatEngineError):
    """Raised when the model refuses to produce the requested output."""

    kind = "model_refusal"

    def __init__(self, message: str, refusal: str = ""):
        self.refusal = refusal
        super().__init__(message)


class OperationCancelledError(ChatEngineError):
    """Raised when an in-flight operation is cancelled by its caller."""

    kind = "cancelled"
