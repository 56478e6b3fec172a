"""
Error taxonomy for the retention system.

Every error raised by the engine is a ``RetentionError`` carrying an
``ErrorKind`` and a ``retryable`` flag, so callers can tell expected
rejections (validation, conflicts) from storage failures.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(Enum):
    """Classification of engine errors."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    EXECUTION = "execution"
    ESTIMATION = "estimation"


class RetentionError(Exception):
    """Base class for all retention engine errors."""

    kind: ErrorKind = ErrorKind.EXECUTION
    retryable: bool = False

    def __init__(self, message: str, data_type: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.data_type = data_type

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view for the administrative layer."""
        return {
            'error': self.kind.value,
            'message': self.message,
            'data_type': self.data_type,
            'retryable': self.retryable,
        }


class ValidationError(RetentionError):
    """Malformed policy fields or request parameters."""

    kind = ErrorKind.VALIDATION
    retryable = False

    def __init__(self, message: str, errors: Optional[List[str]] = None,
                 data_type: Optional[str] = None):
        super().__init__(message, data_type)
        self.errors = errors or [message]

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['errors'] = list(self.errors)
        return data


class NotFoundError(RetentionError):
    """Unknown data type, table or column."""

    kind = ErrorKind.NOT_FOUND
    retryable = False


class ConflictError(RetentionError):
    """A job is already active for the data type, or cleanup and vacuum collide."""

    kind = ErrorKind.CONFLICT
    retryable = True


class ExecutionError(RetentionError):
    """Delete or vacuum failed mid-operation because of a store error."""

    kind = ErrorKind.EXECUTION
    retryable = True

    def __init__(self, message: str, data_type: Optional[str] = None, operation=None):
        super().__init__(message, data_type)
        self.operation = operation

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['retry_guidance'] = (
            "Committed batches are kept; run the cleanup again once the store is healthy"
        )
        if self.operation is not None:
            data['operation'] = self.operation.to_dict()
        return data


class EstimationError(RetentionError):
    """A read-only statistics query failed; nothing was mutated."""

    kind = ErrorKind.ESTIMATION
    retryable = True
