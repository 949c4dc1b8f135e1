"""
Centralized exceptions for the allergen engine.

Every exception logs itself on construction with structured context, so an
error that is raised and then recovered from locally (an unresolved ingredient,
a malformed override record) still leaves an operator-visible trace.

Usage:
    from shared.utils.exceptions import UnresolvedReferenceError, WriteConflictError

    raise UnresolvedReferenceError("line-1", "master_ingredient", "mi-42")
    raise WriteConflictError("recipe-7", reason="stale snapshot", sequence=3)
"""

from typing import Any

from shared.config.logging import get_logger

logger = get_logger(__name__)


class AppException(Exception):
    """
    Base exception with automatic logging.

    All custom exceptions should inherit from this class
    to ensure consistent logging and a stable error code.
    """

    code: str = "APP_ERROR"

    def __init__(
        self,
        detail: str,
        log_level: str = "warning",
        **log_context: Any,
    ):
        # Log the error with context
        log_fn = getattr(logger, log_level, logger.warning)
        log_fn(detail, code=self.code, **log_context)

        self.detail = detail
        self.context = log_context
        super().__init__(detail)


# =============================================================================
# Recoverable input errors
# =============================================================================


class UnresolvedReferenceError(AppException):
    """
    An ingredient line points at a record that is not in the snapshot.

    Never fatal: the line contributes no allergens and the host shows an
    "unrecognized ingredient" warning next to it.

    Usage:
        raise UnresolvedReferenceError("line-1", "master_ingredient", "mi-42")
        raise UnresolvedReferenceError("line-2", None, None, reason="no reference")
    """

    code = "UNRESOLVED_REFERENCE"

    def __init__(
        self,
        line_id: str | None,
        reference_kind: str | None,
        reference_id: str | None,
        reason: str | None = None,
        **log_context: Any,
    ):
        if reason:
            detail = f"Ingrediente {line_id} no reconocido: {reason}"
        else:
            detail = f"Ingrediente {line_id} no reconocido: {reference_kind} {reference_id} no encontrado"

        self.line_id = line_id
        self.reference_kind = reference_kind
        self.reference_id = reference_id
        self.reason = reason or "not_found"

        super().__init__(
            detail,
            log_level="warning",
            line_id=line_id,
            reference_kind=reference_kind,
            reference_id=reference_id,
            **log_context,
        )


class MalformedOverrideRecordError(AppException):
    """
    The manual override record is missing or has an unexpected shape.
    Recovered by substituting an empty override record.
    """

    code = "MALFORMED_OVERRIDE_RECORD"

    def __init__(self, reason: str, **log_context: Any):
        detail = f"Registro de alérgenos manuales inválido: {reason}"
        self.reason = reason
        super().__init__(detail, log_level="warning", **log_context)


# =============================================================================
# Persistence errors
# =============================================================================


class WriteConflictError(AppException):
    """
    Two recomputations for the same recipe tried to write concurrently, or a
    write was built from a snapshot older than the one already persisted.

    This is a retry signal for the host, never data loss: the freshest
    snapshot wins.
    """

    code = "WRITE_CONFLICT"
    retryable = True

    def __init__(
        self,
        recipe_id: str,
        reason: str = "concurrent write",
        **log_context: Any,
    ):
        detail = f"Conflicto de escritura en la declaración de la receta {recipe_id}: {reason}"
        self.recipe_id = recipe_id
        self.reason = reason
        super().__init__(detail, log_level="warning", recipe_id=recipe_id, **log_context)


# =============================================================================
# Defects
# =============================================================================


class InvariantViolationError(AppException):
    """
    A declaration broke a safety invariant (e.g. an allergen in both
    Contains and MayContain). Treated as a defect: nothing is persisted.
    """

    code = "INVARIANT_VIOLATION"

    def __init__(self, invariant: str, recipe_id: str | None = None, **log_context: Any):
        detail = f"Invariante violada en la declaración de alérgenos: {invariant}"
        self.invariant = invariant
        self.recipe_id = recipe_id
        super().__init__(detail, log_level="critical", recipe_id=recipe_id, **log_context)


class VocabularyError(AppException):
    """Invalid change to the allergen vocabulary (custom slots)."""

    code = "VOCABULARY_ERROR"

    def __init__(self, detail: str, **log_context: Any):
        super().__init__(detail, log_level="warning", **log_context)
