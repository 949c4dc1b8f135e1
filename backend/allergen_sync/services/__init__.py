"""
Allergen engine services.

Pipeline of one recompute pass:
    resolver -> extractor / sub_recipe -> aggregator -> reconciler
    -> change_detector -> writer
engine wires them into one reactive node per recipe.
"""

from allergen_sync.services.aggregator import aggregate, collect_contributions, detect_allergens
from allergen_sync.services.change_detector import (
    ChangeDetector,
    declaration_fingerprint,
    ingredient_fingerprint,
    needs_write,
)
from allergen_sync.services.engine import (
    AllergenSyncEngine,
    ChangeReason,
    DependencyIndex,
    DrainReport,
    InputProvider,
    RecipeAllergenNode,
    load_overrides,
    recompute,
)
from allergen_sync.services.extractor import extract_from_master_ingredient
from allergen_sync.services.reconciler import (
    clean_orphan_promotions,
    describe_allergens,
    reconcile,
)
from allergen_sync.services.resolver import resolve_ingredient
from allergen_sync.services.sub_recipe import lookup_sub_recipe
from allergen_sync.services.writer import (
    DeclarationSink,
    DeclarationWriter,
    build_write_instruction,
    read_materialized,
    to_legacy_record,
    to_normalized_flags,
)

__all__ = [
    "aggregate",
    "collect_contributions",
    "detect_allergens",
    "ChangeDetector",
    "declaration_fingerprint",
    "ingredient_fingerprint",
    "needs_write",
    "AllergenSyncEngine",
    "ChangeReason",
    "DependencyIndex",
    "DrainReport",
    "InputProvider",
    "RecipeAllergenNode",
    "load_overrides",
    "recompute",
    "extract_from_master_ingredient",
    "clean_orphan_promotions",
    "describe_allergens",
    "reconcile",
    "resolve_ingredient",
    "lookup_sub_recipe",
    "DeclarationSink",
    "DeclarationWriter",
    "build_write_instruction",
    "read_materialized",
    "to_legacy_record",
    "to_normalized_flags",
]
