"""
Storymap errors.

Each error class names the code and HTTP status the API reports for it, so
routes can raise and let the app-level handler build the response body.
"""

from typing import Any, Dict, List, Optional


class StorymapError(RuntimeError):
    """
    Base error for Storymap components. Carries metadata for structured logging.

    Attributes:
        category: Error category for classification (e.g., "runtime", "validation")
        retryable: Whether the operation can be retried
        error_code: Stable code returned in API error bodies
        status_code: HTTP status used when the error reaches the API boundary
        metadata: Additional context for logging and debugging
    """

    category: str = "runtime"
    retryable: bool = True
    error_code: str = "internal_error"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.metadata = metadata or {}
        if retryable is not None:
            self.retryable = retryable


# Validation
class ValidationError(StorymapError):
    """Request or batch shape is invalid; ``details`` maps field paths to messages."""

    category = "validation"
    retryable = False
    error_code = "validation_failed"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, List[str]]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, metadata=metadata)
        self.details = details or {}


class ActionRejectedError(ValidationError):
    """Raised when a well-formed request is refused by business rules."""

    error_code = "action_rejected"
    status_code = 422


# Configuration
class ConfigError(StorymapError):
    """Settings are missing or inconsistent."""

    category = "config"
    retryable = False


# Git
class GitCommandError(StorymapError):
    """A git subprocess exited non-zero."""

    category = "git"


class GitLockError(GitCommandError):
    """Another git process held index.lock through every retry."""

    category = "git"
    retryable = False


# Orchestration
class OrchestrationError(StorymapError):
    """Runs, assignments and dispatch."""

    category = "orchestration"


class InvalidTransitionError(OrchestrationError):
    """Raised when a run status change is not in the transition table."""

    retryable = False
    error_code = "validation_failed"
    status_code = 400

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Invalid status transition from {from_status} to {to_status}",
            metadata={"from_status": from_status, "to_status": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class DispatchError(OrchestrationError):
    """Raised by execution clients when the agent endpoint cannot be reached."""

    category = "dispatch"


# Storage
class StorageError(StorymapError):
    """Storage backend failure."""

    category = "storage"


class EntityNotFoundError(StorageError):
    """Referenced project, run, assignment or card does not exist."""

    category = "storage"
    retryable = False
    error_code = "not_found"
    status_code = 404


class ConflictError(StorageError):
    """Raised when a write would violate a uniqueness or state precondition."""

    retryable = False
    error_code = "conflict"
    status_code = 409
