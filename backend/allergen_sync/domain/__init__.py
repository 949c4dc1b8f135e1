"""
Domain module: allergen vocabulary.
"""

from allergen_sync.domain.vocabulary import (
    STANDARD_ALLERGENS,
    AllergenVocabulary,
    CustomAllergenSlot,
    is_standard_kind,
    normalize_kind,
)

__all__ = [
    "STANDARD_ALLERGENS",
    "AllergenVocabulary",
    "CustomAllergenSlot",
    "is_standard_kind",
    "normalize_kind",
]
