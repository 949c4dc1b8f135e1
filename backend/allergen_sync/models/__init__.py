"""
SQLAlchemy ORM Models Package.

- base: Base class
- declaration: RecipeAllergenDeclaration (legacy record + normalized flags)
- override: RecipeAllergenOverride (operator-owned record)
- outbox: OutboxEvent
"""

from .base import Base
from .declaration import FLAG_COLUMNS, RecipeAllergenDeclaration, flag_column_names
from .outbox import OutboxEvent, OutboxStatus
from .override import RecipeAllergenOverride

__all__ = [
    "Base",
    "FLAG_COLUMNS",
    "RecipeAllergenDeclaration",
    "flag_column_names",
    "OutboxEvent",
    "OutboxStatus",
    "RecipeAllergenOverride",
]
