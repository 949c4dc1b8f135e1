"""
Change Detector.

Two fingerprints keep recomputation idempotent:

- declaration fingerprint: (contains, may_contain, cross-contact notes), each
  sorted. A write is only issued when the computed fingerprint differs from
  the one of the declaration currently stored on the recipe.
- ingredient fingerprint: the sorted list of "<line id>:<raw id>:<sub-recipe id>"
  identities. It tells whether an ingredient-list notification changed
  anything the engine reads. Master-ingredient and sub-recipe changes do not
  show up here; they arrive through their own notifications.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from typing import Any

from allergen_sync.schemas import AllergenDeclaration, IngredientLine, MaterializedDeclaration
from allergen_sync.services.resolver import reference_identity, resolve_ingredient


def _digest(payload: Any) -> str:
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def declaration_fingerprint(declaration: AllergenDeclaration | MaterializedDeclaration) -> str:
    """Stable fingerprint of a declaration; environment flags are not part of it."""
    return _digest([
        sorted(declaration.contains),
        sorted(declaration.may_contain),
        sorted(declaration.cross_contact_notes),
    ])


def ingredient_fingerprint(lines: Iterable[Mapping[str, Any] | IngredientLine]) -> str:
    """Fingerprint of the ingredient-line identity list (order-insensitive)."""
    return _digest(sorted(reference_identity(resolve_ingredient(line)) for line in lines))


def needs_write(computed_fp: str, stored_fp: str) -> bool:
    """True when the declaration currently stored differs from the computed one."""
    return computed_fp != stored_fp


class ChangeDetector:
    """
    Per-recipe memory of the ingredient identities last recomputed.

    Only used to skip ingredient notifications that changed nothing the
    engine reads. Whether to write is never decided from this memory.

    Usage:
        detector = ChangeDetector()
        if detector.ingredients_changed(fp):
            ...
            detector.record_recompute(fp)
    """

    def __init__(self) -> None:
        self._last_ingredient_fp: str | None = None

    @property
    def last_ingredient_fingerprint(self) -> str | None:
        return self._last_ingredient_fp

    def ingredients_changed(self, fingerprint: str) -> bool:
        return fingerprint != self._last_ingredient_fp

    def record_recompute(self, ingredient_fp: str) -> None:
        self._last_ingredient_fp = ingredient_fp

    def reset(self) -> None:
        self._last_ingredient_fp = None
