"""
Declaration Writer.

The declaration has one canonical in-memory form (sets of kinds per tier) and
two serialized shapes, both written by the same instruction:

- legacy aggregate record:
    allergenInfo = {"contains": [...], "mayContain": [...], "crossContactRisk": [...]}
- normalized flags, one boolean per standard kind and tier:
    allergen_<kind>_contains / allergen_<kind>_may_contain / allergen_<kind>_environment

The normalized flags are the read-side source of truth for standard kinds.
Custom kinds only exist in the legacy lists.

The writer is the only integration point with the persistence layer. It
serializes writes per recipe, discards instructions built from a snapshot
older than the one already written, and never sets the declaration-confirmed
timestamp (that belongs to the operator's confirmation workflow).
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from allergen_sync.domain.vocabulary import STANDARD_ALLERGENS, normalize_kind
from allergen_sync.schemas import (
    AllergenDeclaration,
    MaterializedDeclaration,
    OverrideUpdate,
    WriteInstruction,
)
from allergen_sync.services.reconciler import assert_declaration_invariants
from shared.config.constants import AllergenTier, FieldNames, Limits
from shared.config.logging import get_logger
from shared.utils.exceptions import WriteConflictError

logger = get_logger(__name__)


# =============================================================================
# Serializers
# =============================================================================


def flag_field(kind: str, tier: AllergenTier) -> str:
    return FieldNames.RECIPE_FLAG.format(kind=kind, tier=tier.value)


def to_legacy_record(declaration: AllergenDeclaration) -> dict[str, list[str]]:
    """Legacy aggregate record. Notes keep operator order."""
    return {
        FieldNames.LEGACY_CONTAINS: declaration.sorted_contains,
        FieldNames.LEGACY_MAY_CONTAIN: declaration.sorted_may_contain,
        FieldNames.LEGACY_CROSS_CONTACT: list(declaration.cross_contact_notes),
    }


def to_normalized_flags(
    declaration: AllergenDeclaration,
    environment: frozenset[str] = frozenset(),
) -> dict[str, bool]:
    """One boolean per standard kind and tier; environment is passed through."""
    flags: dict[str, bool] = {}
    for kind in STANDARD_ALLERGENS:
        flags[flag_field(kind, AllergenTier.CONTAINS)] = kind in declaration.contains
        flags[flag_field(kind, AllergenTier.MAY_CONTAIN)] = kind in declaration.may_contain
        flags[flag_field(kind, AllergenTier.ENVIRONMENT)] = kind in environment
    return flags


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [v for v in value if isinstance(v, str)]


def read_materialized(record: Mapping[str, Any] | MaterializedDeclaration | None) -> MaterializedDeclaration:
    """
    Read the declaration currently stored on a recipe record.

    Standard kinds come from the normalized flags when the record has them,
    otherwise from the legacy lists. Custom kinds always come from the legacy
    lists. Unexpected shapes read as empty.
    """
    if isinstance(record, MaterializedDeclaration):
        return record
    if not record:
        return MaterializedDeclaration()

    legacy = record.get(FieldNames.LEGACY_INFO) or record.get("allergen_info") or {}
    if not isinstance(legacy, Mapping):
        legacy = {}

    legacy_contains = {normalize_kind(k) for k in _string_list(legacy.get(FieldNames.LEGACY_CONTAINS))}
    legacy_may_contain = {normalize_kind(k) for k in _string_list(legacy.get(FieldNames.LEGACY_MAY_CONTAIN))}
    notes = tuple(_string_list(legacy.get(FieldNames.LEGACY_CROSS_CONTACT)))

    has_flags = any(flag_field(kind, AllergenTier.CONTAINS) in record for kind in STANDARD_ALLERGENS)

    if has_flags:
        contains = {k for k in STANDARD_ALLERGENS if record.get(flag_field(k, AllergenTier.CONTAINS)) is True}
        may_contain = {k for k in STANDARD_ALLERGENS if record.get(flag_field(k, AllergenTier.MAY_CONTAIN)) is True}
        contains |= {k for k in legacy_contains if k not in STANDARD_ALLERGENS}
        may_contain |= {k for k in legacy_may_contain if k not in STANDARD_ALLERGENS}
    else:
        contains = legacy_contains
        may_contain = legacy_may_contain

    environment = frozenset(
        k for k in STANDARD_ALLERGENS if record.get(flag_field(k, AllergenTier.ENVIRONMENT)) is True
    )

    contains_set = frozenset(contains)
    return MaterializedDeclaration(
        contains=contains_set,
        may_contain=frozenset(may_contain) - contains_set,
        cross_contact_notes=notes,
        environment=environment,
    )


def build_write_instruction(
    recipe_id: str,
    sequence: int,
    declaration: AllergenDeclaration,
    fingerprint: str,
    current: MaterializedDeclaration | None = None,
) -> WriteInstruction:
    """Build the dual-shape write for a declaration."""
    environment = current.environment if current is not None else frozenset()
    return WriteInstruction(
        recipe_id=recipe_id,
        sequence=sequence,
        fingerprint=fingerprint,
        declaration=declaration,
        allergen_info=to_legacy_record(declaration),
        allergen_flags=to_normalized_flags(declaration, environment),
    )


# =============================================================================
# Persistence contract
# =============================================================================


class DeclarationSink(Protocol):
    """
    Host persistence layer.

    Each call is one authoritative write and must abort (raise
    WriteConflictError) rather than interleave with a concurrent write.
    """

    def write_declaration(self, instruction: WriteInstruction) -> None: ...

    def write_overrides(self, update: OverrideUpdate) -> None: ...


@dataclass
class WriterStats:
    """Counters for operator diagnostics."""

    declarations_written: int = 0
    overrides_written: int = 0
    stale_rejected: int = 0
    conflicts: int = 0
    locks_cleaned: int = 0


class DeclarationWriter:
    """
    Serialized access to the sink, freshest snapshot wins.

    Per-recipe state (the write lock and the last written sequence) is kept
    only while it may be needed: the engine releases it when it evicts a
    node, and unheld locks are pruned oldest first once more than
    max_cached_locks accumulate.

    Usage:
        writer = DeclarationWriter(sink)
        writer.write(instruction)
    """

    def __init__(self, sink: DeclarationSink, *, max_cached_locks: int = Limits.MAX_CACHED_WRITE_LOCKS):
        self._sink = sink
        self._max_cached_locks = max_cached_locks
        self._locks: dict[str, threading.Lock] = {}
        # _meta_lock is non-reentrant and only guards the two dicts below
        self._meta_lock = threading.Lock()
        self._last_sequence: dict[str, int] = {}
        self.stats = WriterStats()

    @property
    def sink(self) -> DeclarationSink:
        return self._sink

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    def _get_lock(self, recipe_id: str) -> threading.Lock:
        with self._meta_lock:
            lock = self._locks.get(recipe_id)
            if lock is None:
                if len(self._locks) >= self._max_cached_locks:
                    self._cleanup_unheld_locks()
                lock = threading.Lock()
                self._locks[recipe_id] = lock
            return lock

    def _cleanup_unheld_locks(self) -> int:
        """
        Drop unheld locks, oldest first, down to the hysteresis target.
        Called under _meta_lock.
        """
        target_count = int(self._max_cached_locks * Limits.LOCK_CLEANUP_HYSTERESIS_RATIO)
        to_remove = len(self._locks) - target_count
        if to_remove <= 0:
            return 0

        keys_to_remove = [
            recipe_id for recipe_id, lock in list(self._locks.items()) if not lock.locked()
        ][:to_remove]
        for recipe_id in keys_to_remove:
            del self._locks[recipe_id]
            self._last_sequence.pop(recipe_id, None)

        self.stats.locks_cleaned += len(keys_to_remove)
        if keys_to_remove:
            logger.debug("Writer lock cleanup completed", cleaned=len(keys_to_remove))
        return len(keys_to_remove)

    def release(self, recipe_id: str) -> bool:
        """
        Drop the per-recipe state of an idle recipe.

        Returns False, keeping the state, when a write for the recipe is in progress.
        """
        with self._meta_lock:
            lock = self._locks.get(recipe_id)
            if lock is not None and lock.locked():
                return False
            self._locks.pop(recipe_id, None)
            self._last_sequence.pop(recipe_id, None)
            return True

    def last_written_sequence(self, recipe_id: str) -> int | None:
        return self._last_sequence.get(recipe_id)

    def _check_fresh(self, recipe_id: str, sequence: int) -> None:
        last = self._last_sequence.get(recipe_id)
        if last is not None and sequence < last:
            self.stats.stale_rejected += 1
            raise WriteConflictError(
                recipe_id,
                reason="stale snapshot",
                sequence=sequence,
                last_written_sequence=last,
            )

    def write(self, instruction: WriteInstruction) -> None:
        """
        Persist a declaration.

        Raises:
            InvariantViolationError: the declaration is inconsistent (nothing written).
            WriteConflictError: a fresher snapshot was already written, or the sink aborted.
        """
        assert_declaration_invariants(instruction.declaration, recipe_id=instruction.recipe_id)

        with self._get_lock(instruction.recipe_id):
            self._check_fresh(instruction.recipe_id, instruction.sequence)
            try:
                self._sink.write_declaration(instruction)
            except WriteConflictError:
                self.stats.conflicts += 1
                raise
            self._last_sequence[instruction.recipe_id] = instruction.sequence
            self.stats.declarations_written += 1

        logger.info(
            "Allergen declaration written",
            recipe_id=instruction.recipe_id,
            sequence=instruction.sequence,
            contains=instruction.allergen_info[FieldNames.LEGACY_CONTAINS],
            may_contain=instruction.allergen_info[FieldNames.LEGACY_MAY_CONTAIN],
        )

    def write_overrides(self, update: OverrideUpdate) -> None:
        """
        Persist an orphan-promotion cleanup.

        Raises:
            WriteConflictError: a fresher snapshot was already written, or the sink aborted.
        """
        with self._get_lock(update.recipe_id):
            self._check_fresh(update.recipe_id, update.sequence)
            try:
                self._sink.write_overrides(update)
            except WriteConflictError:
                self.stats.conflicts += 1
                raise
            self._last_sequence[update.recipe_id] = max(
                update.sequence, self._last_sequence.get(update.recipe_id, update.sequence)
            )
            self.stats.overrides_written += 1

        logger.info(
            "Orphaned allergen promotions removed",
            recipe_id=update.recipe_id,
            removed=list(update.removed_promotions),
        )

    def forget(self, recipe_id: str) -> None:
        """Drop per-recipe state (recipe deleted)."""
        with self._meta_lock:
            self._locks.pop(recipe_id, None)
            self._last_sequence.pop(recipe_id, None)
