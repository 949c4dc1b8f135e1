"""
Ingredient Reference Resolver.

Decides whether an ingredient line references a master ingredient or a
prepared sub-recipe. Older records keep the referenced id in the generic
`name` field, so resolution follows one ordered strategy:

1. The line's type comes from its own discriminator (`ingredient_type`,
   then legacy `type`, defaulting to raw). It is never guessed from the shape
   of any id.
2. Raw lines: `master_ingredient_id`, then legacy `name`.
3. Prepared lines: `prepared_recipe_id`, then legacy `name`.

Anything else resolves to Unresolved. Resolution never raises; incomplete
legacy data is expected.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from allergen_sync.schemas import (
    IngredientLine,
    PreparedRef,
    RawRef,
    ResolvedReference,
    Unresolved,
)
from shared.config.constants import IngredientType


def parse_line(line: Mapping[str, Any] | IngredientLine) -> IngredientLine | None:
    """Parse a raw ingredient record; None when it lacks a usable shape."""
    if isinstance(line, IngredientLine):
        return line
    if not isinstance(line, Mapping):
        return None
    try:
        return IngredientLine.model_validate(dict(line))
    except ValidationError:
        return None


def _raw_line_id(line: Any) -> str | None:
    if isinstance(line, Mapping):
        value = line.get("id")
        return str(value) if value is not None else None
    return None


def resolve_ingredient(line: Mapping[str, Any] | IngredientLine) -> ResolvedReference:
    """Resolve one ingredient line to RawRef, PreparedRef or Unresolved."""
    parsed = parse_line(line)
    if parsed is None:
        return Unresolved(line_id=_raw_line_id(line), reason="malformed_line")

    ingredient_type = parsed.effective_type

    if ingredient_type == IngredientType.RAW:
        if parsed.master_ingredient_id:
            return RawRef(parsed.id, parsed.master_ingredient_id)
        if parsed.name:
            return RawRef(parsed.id, parsed.name, via_legacy_name=True)
        return Unresolved(line_id=parsed.id, reason="missing_reference")

    if ingredient_type == IngredientType.PREPARED:
        if parsed.prepared_recipe_id:
            return PreparedRef(parsed.id, parsed.prepared_recipe_id)
        if parsed.name:
            return PreparedRef(parsed.id, parsed.name, via_legacy_name=True)
        return Unresolved(line_id=parsed.id, reason="missing_reference")

    return Unresolved(line_id=parsed.id, reason=f"unknown_type:{ingredient_type}")


def reference_identity(reference: ResolvedReference) -> str:
    """
    Stable identity of a resolved line for change detection:
    "<line id>:<master ingredient id>:<sub-recipe id>".
    """
    if isinstance(reference, RawRef):
        return f"{reference.line_id}:{reference.master_ingredient_id}:"
    if isinstance(reference, PreparedRef):
        return f"{reference.line_id}::{reference.sub_recipe_id}"
    return f"{reference.line_id or ''}::"
