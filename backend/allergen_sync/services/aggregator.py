"""
Auto-Detection Aggregator.

Folds the allergens of every ingredient line into auto_contains and
auto_may_contain. Contains found on any line wins over MayContain found on
another, so the fold runs in two passes (all Contains first, then MayContain
minus Contains) and its result does not depend on line order.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from allergen_sync.domain.vocabulary import AllergenVocabulary
from allergen_sync.schemas import (
    AllergenSource,
    AutoDetected,
    IngredientContribution,
    IngredientLine,
    PreparedRef,
    RawRef,
    UnresolvedLine,
)
from allergen_sync.services.extractor import extract_for_reference
from allergen_sync.services.resolver import resolve_ingredient
from allergen_sync.services.sub_recipe import lookup_sub_recipe
from shared.config.constants import AllergenTier, IngredientType
from shared.utils.exceptions import UnresolvedReferenceError


def _contribution_for(
    line: Mapping[str, Any] | IngredientLine,
    master_ingredients: Mapping[str, Mapping[str, Any]],
    sub_recipes: Mapping[str, Any],
    vocabulary: AllergenVocabulary,
    recipe_id: str | None,
) -> IngredientContribution:
    """
    Resolve and look up one ingredient line.

    Raises:
        UnresolvedReferenceError: the line cannot contribute.
    """
    reference = resolve_ingredient(line)

    if isinstance(reference, RawRef):
        allergens, name = extract_for_reference(reference, master_ingredients, vocabulary)
        return IngredientContribution(reference.line_id, IngredientType.RAW, name, allergens)

    if isinstance(reference, PreparedRef):
        if recipe_id is not None and reference.sub_recipe_id == recipe_id:
            # Reading our own stored declaration would make allergens impossible to remove
            raise UnresolvedReferenceError(
                reference.line_id, "sub_recipe", reference.sub_recipe_id, reason="self_reference"
            )
        allergens, name = lookup_sub_recipe(reference, sub_recipes)
        return IngredientContribution(reference.line_id, IngredientType.PREPARED, name, allergens)

    raise UnresolvedReferenceError(reference.line_id, None, None, reason=reference.reason)


def collect_contributions(
    lines: Iterable[Mapping[str, Any] | IngredientLine],
    master_ingredients: Mapping[str, Mapping[str, Any]],
    sub_recipes: Mapping[str, Any],
    vocabulary: AllergenVocabulary | None = None,
    *,
    recipe_id: str | None = None,
) -> tuple[list[IngredientContribution], list[UnresolvedLine]]:
    """Contributions of every resolvable line, plus the lines that were not."""
    vocabulary = vocabulary or AllergenVocabulary.default()
    contributions: list[IngredientContribution] = []
    unresolved: list[UnresolvedLine] = []

    for line in lines:
        try:
            contributions.append(
                _contribution_for(line, master_ingredients, sub_recipes, vocabulary, recipe_id)
            )
        except UnresolvedReferenceError as exc:
            unresolved.append(UnresolvedLine(
                line_id=exc.line_id,
                reference_kind=exc.reference_kind,
                reference_id=exc.reference_id,
                reason=exc.reason,
            ))

    return contributions, unresolved


def aggregate(
    contributions: Sequence[IngredientContribution],
    unresolved: Sequence[UnresolvedLine] = (),
) -> AutoDetected:
    """Fold per-line allergens into recipe-level auto-detected sets."""
    auto_contains: set[str] = set()
    for contribution in contributions:
        auto_contains |= contribution.allergens.contains

    auto_may_contain: set[str] = set()
    for contribution in contributions:
        auto_may_contain |= contribution.allergens.may_contain - auto_contains

    sources: dict[str, list[AllergenSource]] = {}
    for contribution in contributions:
        for tier, kinds in (
            (AllergenTier.CONTAINS, contribution.allergens.contains),
            (AllergenTier.MAY_CONTAIN, contribution.allergens.may_contain),
        ):
            for kind in kinds:
                sources.setdefault(kind, []).append(AllergenSource(
                    line_id=contribution.line_id,
                    ingredient_name=contribution.ingredient_name,
                    ingredient_type=contribution.ingredient_type,
                    tier=tier,
                ))

    return AutoDetected(
        contains=frozenset(auto_contains),
        may_contain=frozenset(auto_may_contain),
        sources={kind: tuple(found) for kind, found in sources.items()},
        unresolved=tuple(unresolved),
    )


def detect_allergens(
    lines: Iterable[Mapping[str, Any] | IngredientLine],
    master_ingredients: Mapping[str, Mapping[str, Any]],
    sub_recipes: Mapping[str, Any],
    vocabulary: AllergenVocabulary | None = None,
    *,
    recipe_id: str | None = None,
) -> AutoDetected:
    """Resolve, extract/look up and aggregate a recipe's ingredient lines."""
    contributions, unresolved = collect_contributions(
        lines, master_ingredients, sub_recipes, vocabulary, recipe_id=recipe_id
    )
    return aggregate(contributions, unresolved)
