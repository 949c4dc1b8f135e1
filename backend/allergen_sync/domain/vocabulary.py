"""
Allergen vocabulary: the closed set of recognized allergen kinds.

Standard kinds are fixed. Each organization may define up to
settings.max_custom_allergen_slots custom kinds, each with a name and an
active flag. A custom kind can be deactivated, but renaming an active slot
changes the identity of every declaration that mentions it, so it requires
an explicit migration.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Final

from shared.config.constants import Limits
from shared.config.settings import settings
from shared.utils.exceptions import VocabularyError


STANDARD_ALLERGENS: Final[tuple[str, ...]] = (
    "peanut", "crustacean", "treenut", "shellfish", "sesame",
    "soy", "fish", "wheat", "milk", "sulphite", "egg",
    "gluten", "mustard", "celery", "garlic", "onion",
    "nitrite", "mushroom", "hot_pepper", "citrus", "pork",
)

_STANDARD_SET: Final[frozenset[str]] = frozenset(STANDARD_ALLERGENS)


def normalize_kind(name: str) -> str:
    """Canonical identifier for an allergen kind: trimmed, lower-case."""
    return name.strip().lower()


def is_standard_kind(kind: str) -> bool:
    return kind in _STANDARD_SET


@dataclass(frozen=True, slots=True)
class CustomAllergenSlot:
    """An organization-defined allergen kind."""

    slot: int
    name: str
    active: bool = True

    @property
    def kind(self) -> str:
        return normalize_kind(self.name)


class AllergenVocabulary:
    """
    Immutable vocabulary of allergen kinds.

    Mutating operations return a new vocabulary so a snapshot handed to a
    recompute pass can never change underneath it.

    Usage:
        vocabulary = AllergenVocabulary.default()
        vocabulary = vocabulary.define_custom(1, "Lupin")
        vocabulary.kinds  # standard kinds + "lupin"
    """

    def __init__(
        self,
        custom_slots: Iterable[CustomAllergenSlot] = (),
        *,
        max_custom_slots: int | None = None,
    ):
        self._max_custom_slots = (
            max_custom_slots if max_custom_slots is not None else settings.max_custom_allergen_slots
        )
        slots = sorted(custom_slots, key=lambda s: s.slot)
        self._validate(slots)
        self._custom_slots: tuple[CustomAllergenSlot, ...] = tuple(slots)

    @classmethod
    def default(cls) -> AllergenVocabulary:
        """Vocabulary with standard kinds only."""
        return cls()

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def standard(self) -> tuple[str, ...]:
        return STANDARD_ALLERGENS

    @property
    def custom_slots(self) -> tuple[CustomAllergenSlot, ...]:
        return self._custom_slots

    @property
    def max_custom_slots(self) -> int:
        return self._max_custom_slots

    @property
    def active_custom_kinds(self) -> frozenset[str]:
        return frozenset(s.kind for s in self._custom_slots if s.active)

    @property
    def kinds(self) -> tuple[str, ...]:
        """All currently recognized kinds: standard first, then active custom kinds by slot."""
        return STANDARD_ALLERGENS + tuple(s.kind for s in self._custom_slots if s.active)

    def get_slot(self, slot: int) -> CustomAllergenSlot | None:
        for custom in self._custom_slots:
            if custom.slot == slot:
                return custom
        return None

    def is_known(self, kind: str) -> bool:
        return is_standard_kind(kind) or kind in self.active_custom_kinds

    # =========================================================================
    # Custom slot management
    # =========================================================================

    def define_custom(self, slot: int, name: str, *, migrate: bool = False) -> AllergenVocabulary:
        """
        Define (or re-activate) a custom kind in the given slot.

        Raises:
            VocabularyError: slot out of range, name empty/too long/taken,
                or the slot already holds a different name and migrate is False.
        """
        existing = self.get_slot(slot)
        if existing is not None and existing.kind != normalize_kind(name) and not migrate:
            raise VocabularyError(
                f"El alérgeno personalizado '{existing.name}' no puede renombrarse sin migración",
                slot=slot,
                current_name=existing.name,
                requested_name=name,
            )

        others = [s for s in self._custom_slots if s.slot != slot]
        return AllergenVocabulary(
            [*others, CustomAllergenSlot(slot=slot, name=name.strip(), active=True)],
            max_custom_slots=self._max_custom_slots,
        )

    def deactivate_custom(self, slot: int) -> AllergenVocabulary:
        """Deactivate a custom slot; its name is kept for a later re-activation."""
        existing = self.get_slot(slot)
        if existing is None:
            raise VocabularyError(f"El espacio de alérgeno personalizado {slot} no está definido", slot=slot)

        others = [s for s in self._custom_slots if s.slot != slot]
        return AllergenVocabulary(
            [*others, replace(existing, active=False)],
            max_custom_slots=self._max_custom_slots,
        )

    # =========================================================================
    # Validation
    # =========================================================================

    def _validate(self, slots: list[CustomAllergenSlot]) -> None:
        seen_slots: set[int] = set()
        seen_kinds: set[str] = set()
        for custom in slots:
            if not 1 <= custom.slot <= self._max_custom_slots:
                raise VocabularyError(
                    f"Espacio de alérgeno personalizado inválido: {custom.slot}",
                    slot=custom.slot,
                    max_slots=self._max_custom_slots,
                )
            if custom.slot in seen_slots:
                raise VocabularyError(f"Espacio {custom.slot} definido dos veces", slot=custom.slot)

            kind = custom.kind
            if not kind or len(kind) > Limits.MAX_CUSTOM_NAME_LENGTH:
                raise VocabularyError("Nombre de alérgeno personalizado inválido", slot=custom.slot)
            if is_standard_kind(kind) or kind in seen_kinds:
                raise VocabularyError(
                    f"El alérgeno '{custom.name}' ya existe en el vocabulario",
                    slot=custom.slot,
                )

            seen_slots.add(custom.slot)
            seen_kinds.add(kind)

    def __repr__(self) -> str:
        custom = ", ".join(f"{s.slot}:{s.kind}{'' if s.active else '(inactive)'}" for s in self._custom_slots)
        return f"<AllergenVocabulary(custom=[{custom}])>"
