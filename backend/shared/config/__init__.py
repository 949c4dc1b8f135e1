"""
Configuration module: Settings, logging, constants.
"""

from shared.config.settings import settings, get_settings, Settings
from shared.config.logging import get_logger, setup_logging
from shared.config.constants import (
    AllergenTier,
    AllergenOrigin,
    IngredientType,
    EngineState,
    Limits,
)

__all__ = [
    # settings
    "settings",
    "get_settings",
    "Settings",
    # logging
    "get_logger",
    "setup_logging",
    # constants
    "AllergenTier",
    "AllergenOrigin",
    "IngredientType",
    "EngineState",
    "Limits",
]
