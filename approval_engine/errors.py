"""
Error Taxonomy

Every engine failure is reported synchronously as one of these classes.
Only ConflictError is meant to be retried automatically (reload + reapply);
the rest are terminal for the call and go back to the human actor.
"""

from typing import Any, Callable, Dict, Optional, TypeVar
import logging


T = TypeVar("T")

logger = logging.getLogger("approval_engine.errors")


class WorkflowError(Exception):
    """Base class for all approval engine errors"""
    
    retryable = False
    
    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "detail": self.message,
            "context": self.context
        }


class NotFoundError(WorkflowError, LookupError):
    """Unknown template or instance"""


class ValidationError(WorkflowError, ValueError):
    """Malformed template, missing reject reason or bad input value"""


class AuthorizationError(WorkflowError, PermissionError):
    """Actor is not an eligible approver, delegate or canceler"""


class WorkflowStateError(WorkflowError):
    """Action is invalid for the current status or step"""


class ConflictError(WorkflowError):
    """Optimistic version mismatch on a concurrent write"""
    
    retryable = True
    
    def __init__(self, message: str, instance_id: Optional[str] = None,
                 expected_version: Optional[int] = None,
                 actual_version: Optional[int] = None, **context: Any):
        super().__init__(
            message,
            instance_id=instance_id,
            expected_version=expected_version,
            actual_version=actual_version,
            **context
        )
        self.instance_id = instance_id
        self.expected_version = expected_version
        self.actual_version = actual_version


def retry_on_conflict(operation: Callable[[], T], attempts: int = 3) -> T:
    """
    Run an engine operation, reloading and reapplying it on ConflictError.
    
    The operation must load fresh state on every call. The last ConflictError
    is re-raised once all attempts are used.
    """
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except ConflictError as e:
            if attempt == attempts:
                raise
            logger.warning(
                f"Version conflict on {e.instance_id} (attempt {attempt}/{attempts}), retrying"
            )
    raise ValueError("attempts must be at least 1")
