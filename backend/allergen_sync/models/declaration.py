"""
Materialized allergen declaration of a recipe.

Both serialized shapes live on the same row so one UPDATE writes them
together:
- allergen_info: legacy aggregate {"contains", "mayContain", "crossContactRisk"}
- allergen_<kind>_<tier>: one boolean column per standard kind and tier

allergen_declared_at belongs to the operator confirmation workflow. The
engine reads the row but never assigns that column.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Integer, String, false, func
from sqlalchemy.orm import Mapped, mapped_column

from allergen_sync.domain.vocabulary import STANDARD_ALLERGENS
from shared.config.constants import AllergenTier, FieldNames

from .base import Base


def flag_column_names() -> list[str]:
    """Every normalized flag column, in table order."""
    return [
        FieldNames.RECIPE_FLAG.format(kind=kind, tier=tier.value)
        for kind in STANDARD_ALLERGENS
        for tier in AllergenTier
    ]


FLAG_COLUMNS: tuple[str, ...] = tuple(flag_column_names())


# Mixin carrying one boolean mapped_column per flag; declarative copies them onto the model
AllergenFlagColumns = type(
    "AllergenFlagColumns",
    (),
    {
        name: mapped_column(Boolean, nullable=False, default=False, server_default=false())
        for name in FLAG_COLUMNS
    },
)


class RecipeAllergenDeclaration(AllergenFlagColumns, Base):
    """
    One row per recipe.

    The version column is the optimistic lock: an UPDATE that finds a
    different version than the one it loaded raises StaleDataError.
    """

    __tablename__ = "recipe_allergen_declaration"

    recipe_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    allergen_info: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    # Fingerprint and snapshot sequence of the last engine write
    fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_sequence: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    allergen_declared_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def flags(self) -> dict[str, bool]:
        return {name: bool(getattr(self, name)) for name in FLAG_COLUMNS}

    def to_record(self) -> dict[str, Any]:
        """Flat record in the shape the declaration reader expects."""
        return {
            FieldNames.LEGACY_INFO: self.allergen_info or {},
            **self.flags(),
            FieldNames.DECLARED_AT: self.allergen_declared_at,
        }

    def __repr__(self) -> str:
        return f"<RecipeAllergenDeclaration(recipe_id={self.recipe_id!r}, version={self.version})>"
