"""
Storage retention components.

Usage monitoring, growth analysis, retention policies, batched cleanup,
vacuum and job scheduling for an embedded SQLite store.
"""

from .retention_errors import (
    ConflictError, ErrorKind, EstimationError, ExecutionError, NotFoundError,
    RetentionError, ValidationError
)
from .retention_manager import RetentionManager, create_retention_manager
from .retention_query import After, Before, Contains, Equals, IsNull, TableQuery

__all__ = [
    'RetentionManager',
    'create_retention_manager',
    'RetentionError',
    'ErrorKind',
    'ValidationError',
    'NotFoundError',
    'ConflictError',
    'ExecutionError',
    'EstimationError',
    'TableQuery',
    'Equals',
    'Contains',
    'Before',
    'After',
    'IsNull',
]
