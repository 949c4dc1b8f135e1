"""
Allergen declaration reconciliation engine.

Keeps each recipe's allergen declaration consistent with its ingredients and
the operator's manual overrides.
"""

from allergen_sync.services.engine import AllergenSyncEngine, ChangeReason, RecipeAllergenNode

__version__ = "1.0.0"

__all__ = ["AllergenSyncEngine", "ChangeReason", "RecipeAllergenNode"]
