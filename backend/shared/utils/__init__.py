"""
Utilities module: Exceptions.
"""

from shared.utils.exceptions import (
    AppException,
    UnresolvedReferenceError,
    MalformedOverrideRecordError,
    WriteConflictError,
    InvariantViolationError,
    VocabularyError,
)

__all__ = [
    "AppException",
    "UnresolvedReferenceError",
    "MalformedOverrideRecordError",
    "WriteConflictError",
    "InvariantViolationError",
    "VocabularyError",
]
