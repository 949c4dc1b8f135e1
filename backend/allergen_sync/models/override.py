"""
Operator-owned manual override record of a recipe.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class RecipeAllergenOverride(Base):
    """
    Stored as the raw JSON record (camelCase keys) so a malformed record
    survives untouched until an operator fixes it.
    """

    __tablename__ = "recipe_allergen_override"

    recipe_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    record: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<RecipeAllergenOverride(recipe_id={self.recipe_id!r}, version={self.version})>"
