"""
Tests for the per-recipe allergen node and the engine registry.

Tests verify:
- The declaration scenarios end to end through the in-memory host
- Idempotence: an unchanged declaration is never written twice
- Promotion cleanup after an ingredient is removed
- Notifications during a running pass coalesce into one follow-up pass
- Write conflicts are retried on the latest inputs
- Dependent recipes are re-invalidated when a sub-recipe changes
"""

import threading
from unittest.mock import patch

import pytest

from allergen_sync.schemas import InputSnapshot, ManualOverrides
from allergen_sync.services.engine import (
    AllergenSyncEngine,
    ChangeReason,
    RecipeAllergenNode,
    load_overrides,
    recompute,
)
from shared.config.constants import EngineState
from shared.config.settings import Settings
from shared.utils.exceptions import WriteConflictError
from tests.helpers import (
    InMemoryHost,
    master_ingredient,
    overrides_record,
    prepared_line,
    raw_line,
)


@pytest.fixture
def engine(host):
    return AllergenSyncEngine(host, host, dependencies=host)


class TestRecompute:
    """The pure recompute function."""

    def test_first_computation_needs_write(self, catalog):
        snapshot = InputSnapshot("r-1", sequence=1, ingredients=(raw_line("l1", "mi-milk"),), master_ingredients=catalog)

        result = recompute(snapshot)

        assert result.declaration.contains == {"milk"}
        assert result.write is not None
        assert result.write.sequence == 1
        assert result.changed

    def test_same_inputs_same_result(self, catalog):
        """P1: recompute is a pure function of its snapshot."""
        snapshot = InputSnapshot(
            "r-1",
            ingredients=(raw_line("l1", "mi-chocolate"), raw_line("l2", "mi-milk")),
            master_ingredients=catalog,
            overrides=overrides_record(manual_contains=["gluten"]),
        )

        assert recompute(snapshot) == recompute(snapshot)

    def test_no_write_when_stored_matches(self, catalog):
        """P1: a recompute over its own written output issues no write."""
        snapshot = InputSnapshot("r-1", ingredients=(raw_line("l1", "mi-milk"),), master_ingredients=catalog)
        first = recompute(snapshot)

        second = recompute(InputSnapshot(
            "r-1",
            ingredients=snapshot.ingredients,
            master_ingredients=catalog,
            current=first.write.to_record_update(),
        ))

        assert second.write is None
        assert second.fingerprint == first.fingerprint

    def test_malformed_overrides_recovered(self, catalog):
        """Scenario E."""
        snapshot = InputSnapshot(
            "r-1",
            ingredients=(raw_line("l1", "mi-tahini"),),
            master_ingredients=catalog,
            overrides="not a record",
        )

        result = recompute(snapshot)

        assert result.overrides_recovered is True
        assert result.overrides == ManualOverrides.empty()
        assert result.declaration.may_contain == {"sesame"}
        assert result.override_update is None

    def test_load_overrides(self):
        overrides, recovered = load_overrides(overrides_record(manual_contains=["milk"]), "r-1")

        assert recovered is False
        assert overrides.manual_contains == ["milk"]
        assert load_overrides(None, "r-1") == (ManualOverrides.empty(), True)


class TestScenarios:
    """Declaration scenarios through the engine."""

    def test_single_contains_ingredient(self, host, engine):
        """Scenario A."""
        host.master_ingredients["mi-peanut"] = master_ingredient("Peanuts", contains=["peanut"])
        host.ingredients["r-1"] = [raw_line("l1", "mi-peanut")]

        report = engine.notify_ingredients_changed("r-1")

        assert report.passes == 1
        assert host.stored_info("r-1") == {"contains": ["peanut"], "mayContain": [], "crossContactRisk": []}
        assert host.records["r-1"]["allergen_peanut_contains"] is True

    def test_promotion_then_removal(self, host, engine):
        """Scenario B / P5."""
        host.ingredients["r-1"] = [raw_line("l1", "mi-tahini"), raw_line("l2", "mi-salt")]
        host.overrides["r-1"] = overrides_record(promoted=["sesame"], manual_contains=["gluten"])

        engine.notify_overrides_changed("r-1")

        assert host.stored_info("r-1")["contains"] == ["gluten", "sesame"]
        assert host.stored_info("r-1")["mayContain"] == []

        host.ingredients["r-1"] = [raw_line("l2", "mi-salt")]
        engine.notify_ingredients_changed("r-1")

        assert host.stored_info("r-1")["contains"] == ["gluten"]
        assert host.overrides["r-1"]["promotedToContains"] == []
        assert host.overrides["r-1"]["manualContains"] == ["gluten"]
        assert len(host.override_writes) == 1

    def test_contains_dominates_across_lines(self, host, engine):
        """Scenario C."""
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk"), raw_line("l2", "mi-chocolate")]

        engine.notify_ingredients_changed("r-1")

        assert host.stored_info("r-1")["contains"] == ["milk"]
        assert host.stored_info("r-1")["mayContain"] == ["soy"]

    def test_manual_contains_survives_churn(self, host, engine):
        """Scenario D / P6."""
        host.overrides["r-1"] = overrides_record(manual_contains=["gluten"])

        for lines in (
            [raw_line("l1", "mi-milk")],
            [],
            [raw_line("l2", "mi-tahini"), raw_line("l3", "mi-peanut-butter")],
            [raw_line("l4", "mi-salt")],
        ):
            host.ingredients["r-1"] = lines
            engine.notify_ingredients_changed("r-1")
            assert "gluten" in host.stored_info("r-1")["contains"]

        assert host.override_writes == []

    def test_malformed_override_record_left_untouched(self, host, engine):
        """Scenario E."""
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk")]
        host.overrides["r-1"] = {"promotedToContains": "sesame"}

        report = engine.recompute_now("r-1")

        assert report.last_result.overrides_recovered
        assert host.stored_info("r-1")["contains"] == ["milk"]
        assert host.overrides["r-1"] == {"promotedToContains": "sesame"}

    def test_environment_and_confirmation_untouched(self, host, engine):
        host.records["r-1"] = {"allergen_peanut_environment": True, "allergen_declared_at": "2024-03-01T10:00:00Z"}
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk")]

        engine.notify_ingredients_changed("r-1")

        write = host.writes_for("r-1")[0]
        assert write.allergen_flags["allergen_peanut_environment"] is True
        assert "allergen_declared_at" not in write.to_record_update()
        assert host.records["r-1"]["allergen_declared_at"] == "2024-03-01T10:00:00Z"


class TestIdempotence:
    """No write storms on unrelated changes."""

    def test_second_recompute_does_not_write(self, host, engine):
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk")]
        engine.notify_ingredients_changed("r-1")

        report = engine.recompute_now("r-1")

        assert report.last_result.write is None
        assert len(host.declaration_writes) == 1
        assert engine.node("r-1").stats.unchanged == 1

    def test_reverted_declaration_is_rewritten(self, host, engine):
        host.ingredients["r-1"] = [raw_line("l1", "mi-peanut-butter")]
        engine.notify_ingredients_changed("r-1")
        # A stale editor save puts the old, empty declaration back
        host.records["r-1"] = {"allergenInfo": {"contains": [], "mayContain": [], "crossContactRisk": []}}

        report = engine.recompute_now("r-1")

        assert report.last_result.write is not None
        assert host.stored_info("r-1")["contains"] == ["peanut"]
        assert len(host.writes_for("r-1")) == 2

    def test_unchanged_ingredient_identities_skip_recompute(self, host, engine):
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk", quantity=1)]
        engine.notify_ingredients_changed("r-1")
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk", quantity=3)]

        report = engine.notify_ingredients_changed("r-1")

        assert report.results == ()
        assert engine.node("r-1").stats.skipped == 1

    def test_master_ingredient_change_is_not_skipped(self, host, engine):
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk")]
        engine.notify_ingredients_changed("r-1")
        host.master_ingredients["mi-milk"] = master_ingredient("Whole milk", contains=["milk"], may_contain=["egg"])

        engine.notify_master_ingredient_changed("mi-milk")

        assert host.stored_info("r-1")["mayContain"] == ["egg"]

    def test_empty_recipe_without_record_does_not_write(self, host, engine):
        engine.notify_ingredients_changed("r-empty")

        assert host.declaration_writes == []

    def test_node_returns_to_idle(self, host, engine):
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk")]

        engine.notify_ingredients_changed("r-1")

        node = engine.node("r-1")
        assert node.state == EngineState.IDLE
        assert not node.dirty
        assert not node.busy


class ChangingHost(InMemoryHost):
    """Runs a hook inside load_snapshot, simulating a change during RECOMPUTING."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.hooks = []

    def load_snapshot(self, recipe_id):
        snapshot = super().load_snapshot(recipe_id)
        if self.hooks:
            self.hooks.pop(0)()
        return snapshot


class TestCoalescing:
    """Changes arriving during a pass schedule exactly one follow-up."""

    def test_change_during_recompute_runs_one_follow_up(self, catalog):
        host = ChangingHost(master_ingredients=catalog)
        engine = AllergenSyncEngine(host, host, dependencies=host)
        host.ingredients["r-1"] = [raw_line("l1", "mi-tahini")]
        nested = []

        def change_ingredients():
            host.ingredients["r-1"] = [raw_line("l1", "mi-tahini"), raw_line("l2", "mi-milk")]
            for _ in range(3):
                nested.append(engine.notify_ingredients_changed("r-1"))

        host.hooks.append(change_ingredients)

        report = engine.notify_ingredients_changed("r-1")

        assert nested == [None, None, None]
        assert report.passes == 2
        assert host.stored_info("r-1")["contains"] == ["milk"]
        assert engine.node("r-1").stats.coalesced == 3

    def test_change_during_write_reads_latest_inputs(self, catalog):
        class NotifyingHost(InMemoryHost):
            def write_declaration(self, instruction):
                super().write_declaration(instruction)
                if len(self.declaration_writes) == 1:
                    self.ingredients["r-1"] = [raw_line("l1", "mi-flour")]
                    engine.notify_ingredients_changed("r-1")

        notifying = NotifyingHost(master_ingredients=catalog)
        engine = AllergenSyncEngine(notifying, notifying)
        notifying.ingredients["r-1"] = [raw_line("l1", "mi-milk")]

        report = engine.notify_ingredients_changed("r-1")

        assert report.passes == 2
        assert notifying.stored_info("r-1")["contains"] == ["gluten", "wheat"]
        assert [w.sequence for w in notifying.declaration_writes] == [1, 2]

    def test_own_write_echo_does_not_write_again(self, catalog):
        class EchoHost(InMemoryHost):
            def write_declaration(self, instruction):
                super().write_declaration(instruction)
                engine.recompute_now(instruction.recipe_id)

        echo = EchoHost(master_ingredients=catalog)
        engine = AllergenSyncEngine(echo, echo)
        echo.ingredients["r-1"] = [raw_line("l1", "mi-milk")]

        report = engine.notify_ingredients_changed("r-1")

        assert report.passes == 2
        assert len(echo.declaration_writes) == 1

    def test_concurrent_notification_from_another_thread(self, catalog):
        class BlockingHost(InMemoryHost):
            entered = threading.Event()
            release = threading.Event()
            block_once = True

            def load_snapshot(self, recipe_id):
                if self.block_once:
                    self.block_once = False
                    self.entered.set()
                    self.release.wait(timeout=5)
                return super().load_snapshot(recipe_id)

        blocking = BlockingHost(master_ingredients=catalog)
        engine = AllergenSyncEngine(blocking, blocking)
        blocking.ingredients["r-1"] = [raw_line("l1", "mi-milk")]
        results = {}

        worker = threading.Thread(
            target=lambda: results.update(report=engine.notify_ingredients_changed("r-1"))
        )
        worker.start()
        assert blocking.entered.wait(timeout=5)

        blocking.ingredients["r-1"] = [raw_line("l1", "mi-milk"), raw_line("l2", "mi-tahini")]
        assert engine.notify_ingredients_changed("r-1") is None

        blocking.release.set()
        worker.join(timeout=5)

        # The blocked pass already read the new lines; the follow-up finds nothing new
        node = engine.node("r-1")
        assert results["report"].passes == 1
        assert node.stats.passes == 2
        assert node.stats.skipped == 1
        assert blocking.stored_info("r-1")["mayContain"] == ["sesame"]
        assert len(blocking.declaration_writes) == 1


class ConflictingHost(InMemoryHost):
    """Sink that aborts the first N declaration writes."""

    def __init__(self, *args, failures=1, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures

    def write_declaration(self, instruction):
        if self.failures > 0:
            self.failures -= 1
            raise WriteConflictError(instruction.recipe_id)
        super().write_declaration(instruction)


class TestWriteConflicts:
    """Conflicts are a retry signal, never data loss."""

    def test_conflict_retried_once(self, catalog):
        host = ConflictingHost(master_ingredients=catalog)
        engine = AllergenSyncEngine(host, host)
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk")]

        report = engine.notify_ingredients_changed("r-1")

        assert report.conflicts == 1
        assert report.passes == 2
        assert not report.retry_suggested
        assert host.stored_info("r-1")["contains"] == ["milk"]

    def test_persistent_conflict_is_bounded(self, catalog):
        host = ConflictingHost(master_ingredients=catalog, failures=100)
        engine = AllergenSyncEngine(host, host, settings=Settings(max_follow_up_passes=3))
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk")]

        report = engine.notify_ingredients_changed("r-1")

        assert report.passes == 3
        assert report.conflicts == 3
        assert report.pending
        assert report.retry_suggested
        assert engine.node("r-1").dirty


class TestFanOut:
    """Dependent recipes follow their sub-recipes."""

    def test_sub_recipe_write_updates_parent(self, host, engine):
        host.ingredients["r-sauce"] = [raw_line("l1", "mi-milk")]
        host.ingredients["r-dish"] = [prepared_line("l2", "r-sauce"), raw_line("l3", "mi-flour")]

        first = engine.notify_ingredients_changed("r-dish")
        assert first.last_result.unresolved[0].reference_id == "r-sauce"

        engine.notify_ingredients_changed("r-sauce")

        assert host.stored_info("r-dish")["contains"] == ["gluten", "milk", "wheat"]

    def test_master_ingredient_change_reaches_grandparent(self, host, engine):
        host.ingredients["r-sauce"] = [raw_line("l1", "mi-milk")]
        host.ingredients["r-dish"] = [prepared_line("l2", "r-sauce")]
        engine.notify_ingredients_changed("r-sauce")
        host.master_ingredients["mi-milk"] = master_ingredient("Whole milk", contains=["milk", "egg"])

        reports = engine.notify_master_ingredient_changed("mi-milk")

        assert list(reports) == ["r-sauce"]
        assert host.stored_info("r-sauce")["contains"] == ["egg", "milk"]
        assert host.stored_info("r-dish")["contains"] == ["egg", "milk"]

    def test_cycle_terminates(self, host, engine):
        host.ingredients["r-a"] = [raw_line("l1", "mi-milk"), prepared_line("l2", "r-b")]
        host.ingredients["r-b"] = [prepared_line("l3", "r-a")]

        report = engine.notify_ingredients_changed("r-a")

        assert report.passes == 2
        assert host.stored_info("r-a")["contains"] == ["milk"]
        assert host.stored_info("r-b")["contains"] == ["milk"]

    def test_self_reference_is_unresolved(self, host, engine):
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk"), prepared_line("l2", "r-1")]

        report = engine.notify_ingredients_changed("r-1")

        assert report.last_result.unresolved[0].reason == "self_reference"
        assert host.stored_info("r-1")["contains"] == ["milk"]

    def test_no_dependency_index(self, host):
        engine = AllergenSyncEngine(host, host)

        assert engine.notify_master_ingredient_changed("mi-milk") == {}


class TestRegistry:
    """Node lifecycle."""

    def test_node_is_reused(self, engine):
        assert engine.node("r-1") is engine.node("r-1")

    def test_idle_nodes_evicted(self, host):
        engine = AllergenSyncEngine(host, host, settings=Settings(node_cache_size=2))

        for recipe_id in ("r-1", "r-2", "r-3"):
            engine.node(recipe_id)

        assert engine.node_count == 2
        assert engine.nodes_evicted == 1

    def test_forget(self, host, engine):
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk")]
        engine.notify_ingredients_changed("r-1")

        engine.forget("r-1")

        assert engine.node_count == 0
        assert engine.writer.last_written_sequence("r-1") is None

    def test_sequences_increase_across_recipes(self, host, engine):
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk")]
        host.ingredients["r-2"] = [raw_line("l1", "mi-flour")]

        engine.notify_ingredients_changed("r-1")
        engine.notify_ingredients_changed("r-2")

        assert [w.sequence for w in host.declaration_writes] == [1, 2]

    def test_explicit_reason(self, host, engine):
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk")]

        report = engine.node("r-1").invalidate(ChangeReason.EXPLICIT)

        assert report.recipe_id == "r-1"
        assert report.passes == 1

    def test_evicted_nodes_release_writer_state(self, host):
        engine = AllergenSyncEngine(host, host, settings=Settings(node_cache_size=2))

        for index in range(50):
            recipe_id = f"r-{index}"
            host.ingredients[recipe_id] = [raw_line("l1", "mi-milk")]
            engine.notify_ingredients_changed(recipe_id)

        assert len(host.declaration_writes) == 50
        assert engine.node_count == 2
        assert engine.writer.lock_count <= 2
        assert engine.writer.last_written_sequence("r-0") is None

    def test_node_handed_out_survives_competing_lookup(self, host):
        engine = AllergenSyncEngine(host, host, settings=Settings(node_cache_size=1))
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk")]
        original_drain = RecipeAllergenNode.drain
        still_registered = []

        def drain_after_competing_lookup(node, reason=ChangeReason.EXPLICIT):
            # Another caller looks up a different recipe before this drain starts
            engine.node("r-2")
            still_registered.append(engine.node(node.recipe_id) is node)
            return original_drain(node, reason)

        with patch.object(RecipeAllergenNode, "drain", autospec=True, side_effect=drain_after_competing_lookup):
            report = engine.notify_ingredients_changed("r-1")

        assert still_registered == [True]
        assert engine.nodes_evicted == 0
        assert report.passes == 1
        assert host.stored_info("r-1")["contains"] == ["milk"]

    def test_sequence_taken_before_snapshot_load(self, catalog):
        host = ChangingHost(master_ingredients=catalog)
        engine = AllergenSyncEngine(host, host)
        host.ingredients["r-1"] = [raw_line("l1", "mi-milk")]
        host.ingredients["r-2"] = [raw_line("l1", "mi-flour")]
        # r-2 is loaded and written while r-1's load is still in progress
        host.hooks.append(lambda: engine.notify_ingredients_changed("r-2"))

        engine.notify_ingredients_changed("r-1")

        assert [(w.recipe_id, w.sequence) for w in host.declaration_writes] == [("r-2", 2), ("r-1", 1)]
