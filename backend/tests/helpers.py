"""
Test doubles and record builders shared by the engine tests.
"""

from typing import Any

from allergen_sync.domain.vocabulary import AllergenVocabulary
from allergen_sync.schemas import (
    InputSnapshot,
    OverrideUpdate,
    PreparedRef,
    RawRef,
    WriteInstruction,
)
from allergen_sync.services.resolver import resolve_ingredient


def master_ingredient(name: str, contains=(), may_contain=(), **fields: Any) -> dict[str, Any]:
    """Master-ingredient record in its flag-field convention."""
    record: dict[str, Any] = {"product": name}
    for kind in contains:
        record[f"allergen_{kind}"] = True
    for kind in may_contain:
        record[f"allergen_{kind}_may_contain"] = True
    record.update(fields)
    return record


def raw_line(line_id: str, master_ingredient_id: str, **fields: Any) -> dict[str, Any]:
    return {"id": line_id, "ingredient_type": "raw", "master_ingredient_id": master_ingredient_id, **fields}


def prepared_line(line_id: str, recipe_id: str, **fields: Any) -> dict[str, Any]:
    return {"id": line_id, "ingredient_type": "prepared", "prepared_recipe_id": recipe_id, **fields}


def overrides_record(
    manual_contains=(),
    manual_may_contain=(),
    promoted=(),
    notes=None,
    cross_contact=(),
) -> dict[str, Any]:
    """Override record with the persisted camelCase keys."""
    return {
        "manualContains": list(manual_contains),
        "manualMayContain": list(manual_may_contain),
        "promotedToContains": list(promoted),
        "manualNotes": dict(notes or {}),
        "crossContactNotes": list(cross_contact),
    }


class InMemoryHost:
    """
    Recipe store double.

    Acts as the engine's input provider, dependency index and declaration
    sink at once; writes are applied to the stored records so the next
    snapshot sees them.
    """

    def __init__(self, master_ingredients=None, vocabulary: AllergenVocabulary | None = None):
        self.ingredients: dict[str, list[dict[str, Any]]] = {}
        self.master_ingredients: dict[str, dict[str, Any]] = dict(master_ingredients or {})
        self.overrides: dict[str, Any] = {}
        self.records: dict[str, dict[str, Any]] = {}
        self.vocabulary = vocabulary or AllergenVocabulary.default()

        self.declaration_writes: list[WriteInstruction] = []
        self.override_writes: list[OverrideUpdate] = []
        self.snapshots_loaded = 0

    # InputProvider

    def load_snapshot(self, recipe_id: str) -> InputSnapshot:
        self.snapshots_loaded += 1
        return InputSnapshot(
            recipe_id=recipe_id,
            ingredients=tuple(self.ingredients.get(recipe_id, ())),
            master_ingredients=dict(self.master_ingredients),
            sub_recipes={rid: dict(record) for rid, record in self.records.items()},
            overrides=self.overrides.get(recipe_id),
            current=self.records.get(recipe_id),
            vocabulary=self.vocabulary,
        )

    # DependencyIndex

    def recipes_using_master_ingredient(self, master_ingredient_id: str) -> list[str]:
        return [
            recipe_id
            for recipe_id, lines in self.ingredients.items()
            if any(
                isinstance(ref := resolve_ingredient(line), RawRef)
                and ref.master_ingredient_id == master_ingredient_id
                for line in lines
            )
        ]

    def recipes_using_sub_recipe(self, sub_recipe_id: str) -> list[str]:
        return [
            recipe_id
            for recipe_id, lines in self.ingredients.items()
            if any(
                isinstance(ref := resolve_ingredient(line), PreparedRef)
                and ref.sub_recipe_id == sub_recipe_id
                for line in lines
            )
        ]

    # DeclarationSink

    def write_declaration(self, instruction: WriteInstruction) -> None:
        self.declaration_writes.append(instruction)
        record = dict(self.records.get(instruction.recipe_id, {}))
        record.update(instruction.to_record_update())
        self.records[instruction.recipe_id] = record

    def write_overrides(self, update: OverrideUpdate) -> None:
        self.override_writes.append(update)
        self.overrides[update.recipe_id] = update.overrides.to_record()

    # Helpers

    def stored_info(self, recipe_id: str) -> dict[str, list[str]]:
        return self.records.get(recipe_id, {}).get("allergenInfo", {})

    def writes_for(self, recipe_id: str) -> list[WriteInstruction]:
        return [w for w in self.declaration_writes if w.recipe_id == recipe_id]
