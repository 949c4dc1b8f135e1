"""
Sub-Recipe Allergen Lookup.

A prepared ingredient contributes the sub-recipe's own reconciled
declaration, never its ingredients. Lookups are one level deep; each
sub-recipe keeps its own declaration fresh through its own engine node.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from allergen_sync.schemas import ExtractedAllergens, MaterializedDeclaration, PreparedRef
from allergen_sync.services.writer import read_materialized
from shared.utils.exceptions import UnresolvedReferenceError


def sub_recipe_name(record: Any, fallback: str) -> str:
    if isinstance(record, Mapping):
        value = record.get("name")
        if isinstance(value, str) and value.strip():
            return value
    return fallback


def lookup_sub_recipe(
    reference: PreparedRef,
    declarations: Mapping[str, Mapping[str, Any] | MaterializedDeclaration],
) -> tuple[ExtractedAllergens, str]:
    """
    Read a sub-recipe's reconciled Contains/MayContain sets.

    Returns:
        (allergens, display name)

    Raises:
        UnresolvedReferenceError: the sub-recipe is not in the snapshot.
    """
    record = declarations.get(reference.sub_recipe_id)
    if record is None:
        raise UnresolvedReferenceError(
            reference.line_id,
            "sub_recipe",
            reference.sub_recipe_id,
            via_legacy_name=reference.via_legacy_name,
        )

    materialized = read_materialized(record)
    allergens = ExtractedAllergens.build(materialized.contains, materialized.may_contain)
    return allergens, sub_recipe_name(record, fallback=reference.sub_recipe_id)
