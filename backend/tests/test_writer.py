"""
Tests for the declaration serializers and the serialized writer.

Tests verify:
- Both shapes are produced from one declaration
- The confirmation timestamp is never part of a write
- Environment flags are preserved, never computed
- Stale and inconsistent writes are rejected
"""

from unittest.mock import MagicMock

import pytest

from allergen_sync.domain.vocabulary import STANDARD_ALLERGENS
from allergen_sync.schemas import (
    AllergenDeclaration,
    ManualOverrides,
    MaterializedDeclaration,
    OverrideUpdate,
)
from allergen_sync.services.change_detector import declaration_fingerprint
from allergen_sync.services.writer import (
    DeclarationWriter,
    build_write_instruction,
    read_materialized,
    to_legacy_record,
    to_normalized_flags,
)
from shared.utils.exceptions import InvariantViolationError, WriteConflictError


def _instruction(recipe_id="r-1", sequence=1, contains=("milk",), may_contain=(), current=None):
    declaration = AllergenDeclaration(frozenset(contains), frozenset(may_contain), ("Shared fryer",))
    return build_write_instruction(
        recipe_id, sequence, declaration, declaration_fingerprint(declaration), current
    )


class TestSerializers:
    """Legacy aggregate and normalized flags."""

    def test_legacy_record(self):
        decl = AllergenDeclaration(frozenset({"milk", "egg"}), frozenset({"soy"}), ("Shared fryer",))

        assert to_legacy_record(decl) == {
            "contains": ["egg", "milk"],
            "mayContain": ["soy"],
            "crossContactRisk": ["Shared fryer"],
        }

    def test_normalized_flags_cover_every_standard_kind(self):
        decl = AllergenDeclaration(frozenset({"milk"}), frozenset({"soy"}))

        flags = to_normalized_flags(decl)

        assert len(flags) == len(STANDARD_ALLERGENS) * 3
        assert flags["allergen_milk_contains"] is True
        assert flags["allergen_milk_may_contain"] is False
        assert flags["allergen_soy_may_contain"] is True
        assert flags["allergen_peanut_contains"] is False

    def test_custom_kinds_only_in_legacy_record(self):
        decl = AllergenDeclaration(contains=frozenset({"lupin"}))

        instruction = build_write_instruction("r-1", 1, decl, declaration_fingerprint(decl))

        assert instruction.allergen_info["contains"] == ["lupin"]
        assert not any("lupin" in name for name in instruction.allergen_flags)

    def test_no_confirmation_timestamp(self):
        update = _instruction().to_record_update()

        assert "allergen_declared_at" not in update
        assert not any("declared" in key for key in update)

    def test_environment_preserved_from_current(self):
        current = MaterializedDeclaration(environment=frozenset({"peanut"}))

        flags = _instruction(current=current).allergen_flags

        assert flags["allergen_peanut_environment"] is True
        assert flags["allergen_peanut_contains"] is False


class TestReadMaterialized:
    """Reading what is stored on a recipe."""

    def test_empty(self):
        assert read_materialized(None) == MaterializedDeclaration()
        assert read_materialized({}) == MaterializedDeclaration()

    def test_round_trip_of_written_record(self):
        instruction = _instruction(contains=("milk", "lupin"), may_contain=("egg",))

        stored = read_materialized(instruction.to_record_update())

        assert stored.as_declaration() == instruction.declaration

    def test_legacy_only_record(self):
        stored = read_materialized({"allergenInfo": {"contains": ["Milk"], "mayContain": ["milk", "egg"]}})

        assert stored.contains == {"milk"}
        assert stored.may_contain == {"egg"}

    def test_snake_case_legacy_key(self):
        stored = read_materialized({"allergen_info": {"contains": ["fish"]}})

        assert stored.contains == {"fish"}

    def test_unexpected_shapes_read_as_empty(self):
        stored = read_materialized({"allergenInfo": "milk", "allergen_egg_contains": "yes"})

        assert stored == MaterializedDeclaration()


class TestDeclarationWriter:
    """Serialized, freshest-wins access to the sink."""

    def test_write_reaches_sink(self):
        sink = MagicMock()
        writer = DeclarationWriter(sink)
        instruction = _instruction()

        writer.write(instruction)

        sink.write_declaration.assert_called_once_with(instruction)
        assert writer.last_written_sequence("r-1") == 1
        assert writer.stats.declarations_written == 1

    def test_stale_instruction_rejected(self):
        sink = MagicMock()
        writer = DeclarationWriter(sink)
        writer.write(_instruction(sequence=5))

        with pytest.raises(WriteConflictError) as exc_info:
            writer.write(_instruction(sequence=4))

        assert exc_info.value.retryable is True
        assert sink.write_declaration.call_count == 1
        assert writer.stats.stale_rejected == 1

    def test_other_recipes_are_independent(self):
        writer = DeclarationWriter(MagicMock())
        writer.write(_instruction(recipe_id="r-1", sequence=5))

        writer.write(_instruction(recipe_id="r-2", sequence=1))

        assert writer.last_written_sequence("r-2") == 1

    def test_invariant_violation_never_reaches_sink(self):
        sink = MagicMock()
        writer = DeclarationWriter(sink)
        instruction = _instruction(contains=("milk",), may_contain=("milk",))

        with pytest.raises(InvariantViolationError):
            writer.write(instruction)

        sink.write_declaration.assert_not_called()

    def test_sink_conflict_propagates(self):
        sink = MagicMock()
        sink.write_declaration.side_effect = WriteConflictError("r-1")
        writer = DeclarationWriter(sink)

        with pytest.raises(WriteConflictError):
            writer.write(_instruction())

        assert writer.last_written_sequence("r-1") is None
        assert writer.stats.conflicts == 1

    def test_override_update_checked_for_freshness(self):
        sink = MagicMock()
        writer = DeclarationWriter(sink)
        writer.write(_instruction(sequence=3))
        update = OverrideUpdate("r-1", 2, ManualOverrides.empty(), ("sesame",))

        with pytest.raises(WriteConflictError):
            writer.write_overrides(update)

        sink.write_overrides.assert_not_called()

    def test_forget(self):
        writer = DeclarationWriter(MagicMock())
        writer.write(_instruction(sequence=9))

        writer.forget("r-1")

        assert writer.last_written_sequence("r-1") is None
        writer.write(_instruction(sequence=1))

    def test_release_drops_idle_recipe_state(self):
        writer = DeclarationWriter(MagicMock())
        writer.write(_instruction(sequence=4))

        assert writer.release("r-1") is True

        assert writer.lock_count == 0
        assert writer.last_written_sequence("r-1") is None

    def test_release_keeps_state_during_write(self):
        sink = MagicMock()
        writer = DeclarationWriter(sink)
        released = []
        sink.write_declaration.side_effect = lambda instruction: released.append(writer.release("r-1"))

        writer.write(_instruction(sequence=4))

        assert released == [False]
        assert writer.last_written_sequence("r-1") == 4

    def test_unheld_locks_pruned_past_limit(self):
        writer = DeclarationWriter(MagicMock(), max_cached_locks=5)

        for index in range(20):
            writer.write(_instruction(recipe_id=f"r-{index}", sequence=index + 1))

        assert writer.lock_count <= 5
        assert writer.stats.locks_cleaned >= 15
        # Most recent recipe keeps its state
        assert writer.last_written_sequence("r-19") == 20
        assert writer.last_written_sequence("r-0") is None
