"""
Centralized constants for the allergen engine.
Avoid magic strings and repeated constants.

Usage:
    from shared.config.constants import AllergenTier, IngredientType

    if tier == AllergenTier.CONTAINS:
        ...
"""

from enum import Enum
from typing import Final


# =============================================================================
# Allergen Tiers
# =============================================================================


class AllergenTier(str, Enum):
    """Risk tiers of an allergen declaration."""

    CONTAINS = "contains"          # Definite presence
    MAY_CONTAIN = "may_contain"    # Possible/trace presence
    ENVIRONMENT = "environment"    # Shared environment only (manual-only, never computed)


class AllergenOrigin(str, Enum):
    """Where an allergen in the final declaration came from."""

    AUTO = "auto"
    MANUAL = "manual"
    PROMOTED = "promoted"


# =============================================================================
# Ingredient Lines
# =============================================================================


class IngredientType:
    """Ingredient line type discriminator values."""

    RAW: Final[str] = "raw"
    PREPARED: Final[str] = "prepared"

    # Lines without any discriminator are raw (legacy records)
    DEFAULT: Final[str] = RAW


# =============================================================================
# Engine State
# =============================================================================


class EngineState(str, Enum):
    """Per-recipe node states: IDLE -> RECOMPUTING -> (UNCHANGED | WRITING) -> IDLE."""

    IDLE = "IDLE"
    RECOMPUTING = "RECOMPUTING"
    UNCHANGED = "UNCHANGED"
    WRITING = "WRITING"


# =============================================================================
# Field Conventions
# =============================================================================


class FieldNames:
    """Record field names shared by the extractor and the serializers."""

    CONTAINS_FLAG: Final[str] = "allergen_{kind}"
    MAY_CONTAIN_FLAG: Final[str] = "allergen_{kind}_may_contain"

    CUSTOM_ACTIVE: Final[str] = "allergen_custom{slot}_active"
    CUSTOM_NAME: Final[str] = "allergen_custom{slot}_name"
    CUSTOM_MAY_CONTAIN: Final[str] = "allergen_custom{slot}_may_contain"

    # Normalized recipe columns, one per (kind, tier)
    RECIPE_FLAG: Final[str] = "allergen_{kind}_{tier}"

    # Legacy aggregate record
    LEGACY_INFO: Final[str] = "allergenInfo"
    LEGACY_CONTAINS: Final[str] = "contains"
    LEGACY_MAY_CONTAIN: Final[str] = "mayContain"
    LEGACY_CROSS_CONTACT: Final[str] = "crossContactRisk"

    # Owned by the confirmation workflow; the engine never writes it
    DECLARED_AT: Final[str] = "allergen_declared_at"


# Values a master-ingredient flag may take to mean "set"
TRUTHY_FLAG_VALUES: Final[tuple] = (True, "true", 1)


# =============================================================================
# Events
# =============================================================================


ALLERGEN_DECLARATION_UPDATED: Final[str] = "ALLERGEN_DECLARATION_UPDATED"
ALLERGEN_OVERRIDES_CLEANED: Final[str] = "ALLERGEN_OVERRIDES_CLEANED"


# =============================================================================
# Limits
# =============================================================================


class Limits:
    """Vocabulary and writer limits."""

    MAX_CUSTOM_ALLERGEN_SLOTS: Final[int] = 3
    MAX_CUSTOM_NAME_LENGTH: Final[int] = 40

    # Per-recipe writer locks kept before unheld ones are pruned
    MAX_CACHED_WRITE_LOCKS: Final[int] = 1000
    # Pruning stops at this share of MAX_CACHED_WRITE_LOCKS
    LOCK_CLEANUP_HYSTERESIS_RATIO: Final[float] = 0.8
