"""
Reconciler.

Pure combination of auto-detected allergens with the operator's manual
overrides:

    final_contains    = auto_contains
                        | manual_contains
                        | {k in promoted_to_contains if k in auto_may_contain}
    final_may_contain = (auto_may_contain | manual_may_contain) - final_contains

Cross-contact notes pass through unchanged. A promotion only counts while
its auto-detected MayContain basis exists; promotions that lost it are
removed from the override record by orphan cleanup. Manual additions are
never removed by the engine.
"""

from __future__ import annotations

from allergen_sync.schemas import (
    AllergenDeclaration,
    AllergenSource,
    AllergenWithContext,
    AutoDetected,
    ManualOverrides,
    OverrideUpdate,
)
from shared.config.constants import AllergenOrigin, AllergenTier
from shared.config.logging import get_logger
from shared.utils.exceptions import InvariantViolationError

logger = get_logger(__name__)


def reconcile(auto: AutoDetected, overrides: ManualOverrides) -> AllergenDeclaration:
    """Combine auto-detected sets and manual overrides into the final declaration."""
    granted_promotions = {k for k in overrides.promoted_to_contains if k in auto.may_contain}

    final_contains = frozenset(auto.contains | set(overrides.manual_contains) | granted_promotions)
    final_may_contain = frozenset((auto.may_contain | set(overrides.manual_may_contain)) - final_contains)

    declaration = AllergenDeclaration(
        contains=final_contains,
        may_contain=final_may_contain,
        cross_contact_notes=tuple(overrides.cross_contact_notes),
    )
    assert_declaration_invariants(declaration)
    return declaration


def assert_declaration_invariants(declaration: AllergenDeclaration, recipe_id: str | None = None) -> None:
    """
    Reject a declaration that is not safe to persist.

    Raises:
        InvariantViolationError: an allergen is in both Contains and MayContain.
    """
    overlap = declaration.contains & declaration.may_contain
    if overlap:
        raise InvariantViolationError(
            "contains and may_contain overlap",
            recipe_id=recipe_id,
            overlap=sorted(overlap),
        )


# =============================================================================
# Orphan Promotion Cleanup
# =============================================================================


def valid_promotions(overrides: ManualOverrides, auto_may_contain: frozenset[str]) -> list[str]:
    """Promotions whose auto-detected MayContain basis still exists, in operator order."""
    return [k for k in overrides.promoted_to_contains if k in auto_may_contain]


def clean_orphan_promotions(
    recipe_id: str,
    sequence: int,
    overrides: ManualOverrides,
    auto_may_contain: frozenset[str],
) -> OverrideUpdate | None:
    """
    Build the override update that drops orphaned promotions, or None when
    every promotion is still valid. Only promotedToContains changes.
    """
    kept = valid_promotions(overrides, auto_may_contain)
    if len(kept) == len(overrides.promoted_to_contains):
        return None

    removed = tuple(k for k in overrides.promoted_to_contains if k not in auto_may_contain)
    logger.info(
        "Orphaned allergen promotions detected",
        recipe_id=recipe_id,
        removed=list(removed),
        kept=kept,
    )
    return OverrideUpdate(
        recipe_id=recipe_id,
        sequence=sequence,
        overrides=overrides.with_promotions(kept),
        removed_promotions=removed,
    )


# =============================================================================
# Provenance
# =============================================================================


def describe_allergens(auto: AutoDetected, overrides: ManualOverrides) -> list[AllergenWithContext]:
    """
    Every allergen of the final declaration with its tier, its origin and the
    ingredient lines that contributed it. Auto-detected entries come first,
    then manual additions; each (kind, tier) appears once.
    """
    declaration = reconcile(auto, overrides)
    result: list[AllergenWithContext] = []
    seen: set[str] = set()

    def sources_for(kind: str, tier: AllergenTier) -> tuple[AllergenSource, ...]:
        return tuple(s for s in auto.sources.get(kind, ()) if s.tier == tier)

    for kind in sorted(auto.contains):
        seen.add(kind)
        result.append(AllergenWithContext(
            kind=kind,
            tier=AllergenTier.CONTAINS,
            origin=AllergenOrigin.AUTO,
            sources=sources_for(kind, AllergenTier.CONTAINS),
        ))

    for kind in sorted(auto.may_contain):
        if kind in seen:
            continue
        seen.add(kind)
        promoted = kind in overrides.promoted_to_contains
        if promoted:
            tier = AllergenTier.CONTAINS
            origin = AllergenOrigin.PROMOTED
        elif kind in declaration.contains:
            # Upgraded by a manual Contains entry
            tier = AllergenTier.CONTAINS
            origin = AllergenOrigin.MANUAL
        else:
            tier = AllergenTier.MAY_CONTAIN
            origin = AllergenOrigin.AUTO
        result.append(AllergenWithContext(
            kind=kind,
            tier=tier,
            origin=origin,
            sources=sources_for(kind, AllergenTier.MAY_CONTAIN),
            note=overrides.manual_notes.get(kind) if origin is not AllergenOrigin.AUTO else None,
        ))

    for kind in overrides.manual_contains:
        if kind in seen:
            continue
        seen.add(kind)
        result.append(AllergenWithContext(
            kind=kind,
            tier=AllergenTier.CONTAINS,
            origin=AllergenOrigin.MANUAL,
            note=overrides.manual_notes.get(kind),
        ))

    for kind in overrides.manual_may_contain:
        if kind in seen or kind in declaration.contains:
            continue
        seen.add(kind)
        result.append(AllergenWithContext(
            kind=kind,
            tier=AllergenTier.MAY_CONTAIN,
            origin=AllergenOrigin.MANUAL,
            note=overrides.manual_notes.get(kind),
        ))

    return result
