"""
Data contracts of the allergen engine.

Records coming from collaborators (ingredient lines, override records) are
parsed with Pydantic; values produced by the engine are immutable dataclasses.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from allergen_sync.domain.vocabulary import AllergenVocabulary, normalize_kind
from shared.config.constants import AllergenOrigin, AllergenTier, IngredientType
from shared.utils.exceptions import MalformedOverrideRecordError


# =============================================================================
# Ingredient Lines
# =============================================================================


class IngredientLine(BaseModel):
    """
    One ingredient line of a recipe.

    Quantity, unit and cost fields live on the same record and are kept as
    extra fields; the engine ignores them.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    ingredient_type: str | None = None
    # Legacy discriminator used by older records
    type: str | None = None
    master_ingredient_id: str | None = None
    prepared_recipe_id: str | None = None
    # Legacy single reference field: holds the master-ingredient or recipe id
    name: str | None = None

    @field_validator("id", "master_ingredient_id", "prepared_recipe_id", "name", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return str(value)
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def effective_type(self) -> str:
        """Declared type: typed discriminator, then legacy one, then raw."""
        return (self.ingredient_type or self.type or IngredientType.DEFAULT).strip().lower()


# =============================================================================
# Resolved References
# =============================================================================


@dataclass(frozen=True, slots=True)
class RawRef:
    """Line references a master-ingredient record."""

    line_id: str
    master_ingredient_id: str
    via_legacy_name: bool = False


@dataclass(frozen=True, slots=True)
class PreparedRef:
    """Line references another recipe used as a sub-component."""

    line_id: str
    sub_recipe_id: str
    via_legacy_name: bool = False


@dataclass(frozen=True, slots=True)
class Unresolved:
    """Line cannot be resolved; it contributes nothing."""

    line_id: str | None
    reason: str


ResolvedReference = Union[RawRef, PreparedRef, Unresolved]


# =============================================================================
# Detection
# =============================================================================


@dataclass(frozen=True, slots=True)
class ExtractedAllergens:
    """Contains/MayContain sets of a single ingredient (Contains dominates)."""

    contains: frozenset[str] = frozenset()
    may_contain: frozenset[str] = frozenset()

    @classmethod
    def build(cls, contains: Sequence[str] | set[str], may_contain: Sequence[str] | set[str]) -> ExtractedAllergens:
        contains_set = frozenset(contains)
        return cls(contains=contains_set, may_contain=frozenset(may_contain) - contains_set)

    @property
    def is_empty(self) -> bool:
        return not self.contains and not self.may_contain


@dataclass(frozen=True, slots=True)
class AllergenSource:
    """An ingredient line that contributed an allergen."""

    line_id: str
    ingredient_name: str
    ingredient_type: str
    tier: AllergenTier


@dataclass(frozen=True, slots=True)
class UnresolvedLine:
    """Operator-facing record of an ingredient line that contributed nothing."""

    line_id: str | None
    reference_kind: str | None
    reference_id: str | None
    reason: str


@dataclass(frozen=True, slots=True)
class IngredientContribution:
    """Allergens contributed by one resolved ingredient line."""

    line_id: str
    ingredient_type: str
    ingredient_name: str
    allergens: ExtractedAllergens


@dataclass(frozen=True)
class AutoDetected:
    """Result of aggregating every ingredient line of a recipe."""

    contains: frozenset[str] = frozenset()
    may_contain: frozenset[str] = frozenset()
    sources: Mapping[str, tuple[AllergenSource, ...]] = field(default_factory=dict)
    unresolved: tuple[UnresolvedLine, ...] = ()


# =============================================================================
# Manual Overrides
# =============================================================================


def _normalize_kinds(values: Sequence[str]) -> list[str]:
    """Lower-case, drop blanks and duplicates, keep operator order."""
    seen: dict[str, None] = {}
    for value in values:
        kind = normalize_kind(value)
        if kind:
            seen.setdefault(kind, None)
    return list(seen)


class ManualOverrides(BaseModel):
    """
    Operator-owned allergen overrides of a recipe.

    Accepts and emits the camelCase keys of the persisted record.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    manual_contains: list[str] = Field(default_factory=list, alias="manualContains")
    manual_may_contain: list[str] = Field(default_factory=list, alias="manualMayContain")
    promoted_to_contains: list[str] = Field(default_factory=list, alias="promotedToContains")
    manual_notes: dict[str, str] = Field(default_factory=dict, alias="manualNotes")
    cross_contact_notes: list[str] = Field(default_factory=list, alias="crossContactNotes")

    @field_validator("manual_contains", "manual_may_contain", "promoted_to_contains", mode="after")
    @classmethod
    def _normalize(cls, value: list[str]) -> list[str]:
        return _normalize_kinds(value)

    @field_validator("manual_notes", mode="after")
    @classmethod
    def _normalize_note_keys(cls, value: dict[str, str]) -> dict[str, str]:
        return {normalize_kind(k): v for k, v in value.items() if normalize_kind(k)}

    @classmethod
    def empty(cls) -> ManualOverrides:
        return cls()

    @classmethod
    def parse(cls, raw: Any, **log_context: Any) -> ManualOverrides:
        """
        Parse a persisted override record.

        Raises:
            MalformedOverrideRecordError: record missing or not the expected shape.
        """
        if isinstance(raw, ManualOverrides):
            return raw
        if raw is None:
            raise MalformedOverrideRecordError("missing", **log_context)
        if not isinstance(raw, Mapping):
            raise MalformedOverrideRecordError(f"expected an object, got {type(raw).__name__}", **log_context)
        try:
            return cls.model_validate(dict(raw))
        except ValidationError as exc:
            raise MalformedOverrideRecordError(
                f"{exc.error_count()} invalid field(s)",
                fields=[".".join(str(p) for p in err["loc"]) for err in exc.errors()],
                **log_context,
            ) from exc

    def with_promotions(self, promotions: Sequence[str]) -> ManualOverrides:
        """Copy with promotedToContains replaced; every other field untouched."""
        return self.model_copy(update={"promoted_to_contains": list(promotions)})

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


# =============================================================================
# Declarations
# =============================================================================


@dataclass(frozen=True)
class AllergenDeclaration:
    """The reconciled declaration of a recipe."""

    contains: frozenset[str] = frozenset()
    may_contain: frozenset[str] = frozenset()
    cross_contact_notes: tuple[str, ...] = ()

    @property
    def sorted_contains(self) -> list[str]:
        return sorted(self.contains)

    @property
    def sorted_may_contain(self) -> list[str]:
        return sorted(self.may_contain)


@dataclass(frozen=True)
class MaterializedDeclaration:
    """A declaration as currently stored on a recipe record."""

    contains: frozenset[str] = frozenset()
    may_contain: frozenset[str] = frozenset()
    cross_contact_notes: tuple[str, ...] = ()
    # Manual-only tier, preserved by the writer
    environment: frozenset[str] = frozenset()

    def as_declaration(self) -> AllergenDeclaration:
        return AllergenDeclaration(
            contains=self.contains,
            may_contain=self.may_contain,
            cross_contact_notes=self.cross_contact_notes,
        )


@dataclass(frozen=True)
class AllergenWithContext:
    """One allergen of the final declaration with where it came from."""

    kind: str
    tier: AllergenTier
    origin: AllergenOrigin
    sources: tuple[AllergenSource, ...] = ()
    note: str | None = None


# =============================================================================
# Persistence Instructions
# =============================================================================


@dataclass(frozen=True)
class WriteInstruction:
    """
    Single authoritative write of a recipe's declaration, in both shapes.

    Deliberately has no place for the declaration-confirmed timestamp.
    """

    recipe_id: str
    sequence: int
    fingerprint: str
    declaration: AllergenDeclaration
    allergen_info: dict[str, list[str]]
    allergen_flags: dict[str, bool]

    def to_record_update(self) -> dict[str, Any]:
        """Flat update for a recipe record: legacy aggregate plus normalized flags."""
        return {"allergenInfo": self.allergen_info, **self.allergen_flags}


@dataclass(frozen=True)
class OverrideUpdate:
    """Replacement override record produced by orphan-promotion cleanup."""

    recipe_id: str
    sequence: int
    overrides: ManualOverrides
    removed_promotions: tuple[str, ...]


# =============================================================================
# Inputs and Results
# =============================================================================


@dataclass(frozen=True)
class InputSnapshot:
    """
    Everything one recompute pass reads. Nothing else is consulted.

    master_ingredients: id -> master-ingredient record (allergen flag fields)
    sub_recipes: id -> recipe record or MaterializedDeclaration
    overrides: persisted override record as stored (may be missing/malformed)
    current: the recipe's currently stored declaration fields, if any
    """

    recipe_id: str
    sequence: int = 0
    ingredients: Sequence[Mapping[str, Any] | IngredientLine] = ()
    master_ingredients: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    sub_recipes: Mapping[str, Any] = field(default_factory=dict)
    overrides: Any = None
    current: Mapping[str, Any] | None = None
    vocabulary: AllergenVocabulary = field(default_factory=AllergenVocabulary.default)


@dataclass(frozen=True)
class RecomputeResult:
    """Outcome of one pure recompute pass."""

    recipe_id: str
    sequence: int
    auto: AutoDetected
    overrides: ManualOverrides
    declaration: AllergenDeclaration
    fingerprint: str
    stored_fingerprint: str
    ingredient_fingerprint: str
    write: WriteInstruction | None = None
    override_update: OverrideUpdate | None = None
    overrides_recovered: bool = False

    @property
    def unresolved(self) -> tuple[UnresolvedLine, ...]:
        return self.auto.unresolved

    @property
    def changed(self) -> bool:
        return self.write is not None
