"""
Allergen sync engine: one dataflow node per recipe.

A node has a declared input set (ingredient lines, master-ingredient catalog,
sub-recipe declarations, manual override record) read through an
InputProvider, and a pure recompute function. The host calls invalidate()
whenever one of those inputs changes; the node then runs

    IDLE -> RECOMPUTING -> (UNCHANGED | WRITING) -> IDLE

Notifications that arrive while a pass is RECOMPUTING or WRITING (re-entrant,
from the writer's own callbacks, or from another thread) only mark the node
dirty. The running drain picks that up and runs exactly one follow-up pass on
the latest inputs instead of queueing stale ones.

Each recipe has its own run lock and no lock is shared between recipes.
"""

from __future__ import annotations

import itertools
import threading
from collections import OrderedDict
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Protocol

from allergen_sync.schemas import InputSnapshot, ManualOverrides, RecomputeResult
from allergen_sync.services.aggregator import detect_allergens
from allergen_sync.services.change_detector import (
    ChangeDetector,
    declaration_fingerprint,
    ingredient_fingerprint,
    needs_write,
)
from allergen_sync.services.reconciler import clean_orphan_promotions, reconcile
from allergen_sync.services.writer import (
    DeclarationSink,
    DeclarationWriter,
    build_write_instruction,
    read_materialized,
)
from shared.config.constants import EngineState, Limits
from shared.config.logging import get_logger
from shared.config.settings import Settings, get_settings
from shared.infrastructure.correlation import recompute_pass
from shared.utils.exceptions import MalformedOverrideRecordError, WriteConflictError

logger = get_logger(__name__)


class ChangeReason(str, Enum):
    """Which declared input changed."""

    INGREDIENTS = "ingredients"
    MASTER_INGREDIENT = "master_ingredient"
    SUB_RECIPE = "sub_recipe"
    OVERRIDES = "overrides"
    EXPLICIT = "explicit"


# =============================================================================
# Collaborator contracts
# =============================================================================


class InputProvider(Protocol):
    """Host-side loader of the latest complete input snapshot of a recipe."""

    def load_snapshot(self, recipe_id: str) -> InputSnapshot: ...


class DependencyIndex(Protocol):
    """Host-side reverse index used to fan notifications out to dependent recipes."""

    def recipes_using_master_ingredient(self, master_ingredient_id: str) -> Iterable[str]: ...

    def recipes_using_sub_recipe(self, recipe_id: str) -> Iterable[str]: ...


# =============================================================================
# Pure recompute
# =============================================================================


def load_overrides(raw: object, recipe_id: str) -> tuple[ManualOverrides, bool]:
    """
    Parse the override record, substituting an empty one when it is missing
    or malformed.

    Returns:
        (overrides, recovered) where recovered is True when the empty record was substituted.
    """
    try:
        return ManualOverrides.parse(raw, recipe_id=recipe_id), False
    except MalformedOverrideRecordError:
        return ManualOverrides.empty(), True


def recompute(snapshot: InputSnapshot) -> RecomputeResult:
    """
    Pure function of the snapshot: compute the declaration and decide which
    writes, if any, it requires against the declaration currently stored.
    """
    overrides, recovered = load_overrides(snapshot.overrides, snapshot.recipe_id)

    auto = detect_allergens(
        snapshot.ingredients,
        snapshot.master_ingredients,
        snapshot.sub_recipes,
        snapshot.vocabulary,
        recipe_id=snapshot.recipe_id,
    )
    declaration = reconcile(auto, overrides)

    fingerprint = declaration_fingerprint(declaration)
    current = read_materialized(snapshot.current)
    stored_fingerprint = declaration_fingerprint(current)

    write = None
    if needs_write(fingerprint, stored_fingerprint):
        write = build_write_instruction(
            snapshot.recipe_id, snapshot.sequence, declaration, fingerprint, current
        )

    # A substituted empty record must never be written back over the operator's data
    override_update = None
    if not recovered:
        override_update = clean_orphan_promotions(
            snapshot.recipe_id, snapshot.sequence, overrides, auto.may_contain
        )

    return RecomputeResult(
        recipe_id=snapshot.recipe_id,
        sequence=snapshot.sequence,
        auto=auto,
        overrides=overrides,
        declaration=declaration,
        fingerprint=fingerprint,
        stored_fingerprint=stored_fingerprint,
        ingredient_fingerprint=ingredient_fingerprint(snapshot.ingredients),
        write=write,
        override_update=override_update,
        overrides_recovered=recovered,
    )


# =============================================================================
# Per-recipe node
# =============================================================================


@dataclass
class NodeStats:
    """Counters for operator diagnostics."""

    passes: int = 0
    writes: int = 0
    override_cleanups: int = 0
    unchanged: int = 0
    skipped: int = 0
    coalesced: int = 0
    conflicts: int = 0


@dataclass(frozen=True)
class DrainReport:
    """What one invalidate() call ended up doing."""

    recipe_id: str
    results: tuple[RecomputeResult, ...] = ()
    conflicts: int = 0
    # True when the pass bound was reached with notifications still pending
    pending: bool = False

    @property
    def passes(self) -> int:
        return len(self.results)

    @property
    def last_result(self) -> RecomputeResult | None:
        return self.results[-1] if self.results else None

    @property
    def retry_suggested(self) -> bool:
        return self.pending or (self.conflicts > 0 and not self.results)


class RecipeAllergenNode:
    """
    Reactive allergen declaration of one recipe.

    Usage:
        node = RecipeAllergenNode("recipe-1", provider, writer)
        report = node.invalidate(ChangeReason.INGREDIENTS)
    """

    def __init__(
        self,
        recipe_id: str,
        provider: InputProvider,
        writer: DeclarationWriter,
        *,
        sequence: Iterator[int] | None = None,
        max_follow_up_passes: int | None = None,
        on_written: Callable[[str], None] | None = None,
    ):
        self.recipe_id = recipe_id
        self._provider = provider
        self._writer = writer
        self._sequence = sequence or itertools.count(1)
        self._max_passes = max_follow_up_passes or get_settings().max_follow_up_passes
        self._on_written = on_written

        self._detector = ChangeDetector()
        self._state = EngineState.IDLE
        self._run_lock = threading.Lock()
        self._flag_lock = threading.Lock()
        self._dirty = False
        self._pending_reasons: set[ChangeReason] = set()

        self.stats = NodeStats()

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    @property
    def detector(self) -> ChangeDetector:
        return self._detector

    def mark_dirty(self, reason: ChangeReason) -> None:
        """Record a pending change without draining it."""
        with self._flag_lock:
            self._pending_reasons.add(reason)
            self._dirty = True

    def _take_pending(self) -> frozenset[ChangeReason]:
        with self._flag_lock:
            reasons = frozenset(self._pending_reasons)
            self._pending_reasons.clear()
            self._dirty = False
            return reasons

    def invalidate(self, reason: ChangeReason = ChangeReason.EXPLICIT) -> DrainReport | None:
        """
        Notify the node that an input changed and drain pending work.

        Returns None when another pass already runs for this recipe; that pass
        runs one follow-up on the latest inputs.
        """
        self.mark_dirty(reason)
        return self.drain(reason)

    def drain(self, reason: ChangeReason = ChangeReason.EXPLICIT) -> DrainReport | None:
        """Run passes while the node is dirty. reason is only used for logging."""
        results: list[RecomputeResult] = []
        conflicts_before = self.stats.conflicts
        passes = 0
        drained_any = False

        # Outer loop closes the window between the inner loop ending and the lock release
        while self._dirty and passes < self._max_passes:
            if not self._run_lock.acquire(blocking=False):
                break
            drained_any = True
            try:
                while self._dirty and passes < self._max_passes:
                    passes += 1
                    result = self._run_pass(self._take_pending())
                    if result is not None:
                        results.append(result)
            finally:
                self._state = EngineState.IDLE
                self._run_lock.release()

        if not drained_any:
            self.stats.coalesced += 1
            logger.debug("Recompute coalesced into running pass", recipe_id=self.recipe_id, reason=reason.value)
            return None

        report = DrainReport(
            recipe_id=self.recipe_id,
            results=tuple(results),
            conflicts=self.stats.conflicts - conflicts_before,
            pending=self._dirty,
        )
        if report.pending:
            logger.warning(
                "Follow-up pass bound reached with pending changes",
                recipe_id=self.recipe_id,
                max_passes=self._max_passes,
            )
        return report

    def _run_pass(self, reasons: frozenset[ChangeReason]) -> RecomputeResult | None:
        with recompute_pass():
            self.stats.passes += 1
            self._state = EngineState.RECOMPUTING

            # Numbered before loading so a later load never gets an older number
            sequence = next(self._sequence)
            snapshot = replace(self._provider.load_snapshot(self.recipe_id), sequence=sequence)

            if reasons == {ChangeReason.INGREDIENTS}:
                fp = ingredient_fingerprint(snapshot.ingredients)
                if not self._detector.ingredients_changed(fp):
                    self.stats.skipped += 1
                    self._state = EngineState.UNCHANGED
                    logger.debug("Ingredient identities unchanged, recompute skipped", recipe_id=self.recipe_id)
                    return None

            result = recompute(snapshot)
            self._detector.record_recompute(result.ingredient_fingerprint)

            if result.write is None and result.override_update is None:
                self.stats.unchanged += 1
                self._state = EngineState.UNCHANGED
                logger.debug("Allergen declaration unchanged", recipe_id=self.recipe_id, sequence=result.sequence)
                return result

            self._state = EngineState.WRITING
            try:
                if result.write is not None:
                    self._writer.write(result.write)
                    self.stats.writes += 1
                if result.override_update is not None:
                    self._writer.write_overrides(result.override_update)
                    self.stats.override_cleanups += 1
            except WriteConflictError:
                # Retry signal: one follow-up pass on the latest inputs
                self.stats.conflicts += 1
                self.mark_dirty(ChangeReason.EXPLICIT)
                return result

            if result.write is not None and self._on_written is not None:
                self._on_written(self.recipe_id)
            return result


# =============================================================================
# Registry
# =============================================================================


class AllergenSyncEngine:
    """
    Owns one node per recipe and routes change notifications to them.

    Usage:
        engine = AllergenSyncEngine(provider, sink, dependencies=index)
        engine.notify_ingredients_changed("recipe-1")
        engine.notify_master_ingredient_changed("mi-42")
    """

    def __init__(
        self,
        provider: InputProvider,
        sink: DeclarationSink,
        *,
        dependencies: DependencyIndex | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._provider = provider
        self._writer = DeclarationWriter(
            sink,
            max_cached_locks=max(self._settings.node_cache_size, Limits.MAX_CACHED_WRITE_LOCKS),
        )
        self._dependencies = dependencies
        self._sequence = itertools.count(1)
        self._nodes: OrderedDict[str, RecipeAllergenNode] = OrderedDict()
        self._meta_lock = threading.Lock()
        self._nodes_evicted = 0

    @property
    def writer(self) -> DeclarationWriter:
        return self._writer

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def nodes_evicted(self) -> int:
        return self._nodes_evicted

    def node(self, recipe_id: str) -> RecipeAllergenNode:
        """Get or create the node of a recipe."""
        return self._get_node(recipe_id)

    def _get_node(self, recipe_id: str, reason: ChangeReason | None = None) -> RecipeAllergenNode:
        """
        Get or create a node, optionally marking it dirty under the registry lock.

        A dirty node is never evicted, so a node handed out for a notification
        stays the registered one until its drain has run.
        """
        with self._meta_lock:
            node = self._nodes.get(recipe_id)
            created = node is None
            if created:
                node = RecipeAllergenNode(
                    recipe_id,
                    self._provider,
                    self._writer,
                    sequence=self._sequence,
                    max_follow_up_passes=self._settings.max_follow_up_passes,
                    on_written=self._on_written,
                )
                self._nodes[recipe_id] = node
            else:
                self._nodes.move_to_end(recipe_id)
            if reason is not None:
                node.mark_dirty(reason)
            if created:
                self._evict_idle_nodes(keep=recipe_id)
            return node

    def _evict_idle_nodes(self, keep: str) -> None:
        """
        Drop least recently used idle nodes beyond the cache size, together
        with their writer state. Called under _meta_lock.
        """
        excess = len(self._nodes) - self._settings.node_cache_size
        if excess <= 0:
            return
        for recipe_id in list(self._nodes):
            if excess <= 0:
                break
            candidate = self._nodes[recipe_id]
            if recipe_id == keep or candidate.busy or candidate.dirty:
                continue
            del self._nodes[recipe_id]
            self._writer.release(recipe_id)
            self._nodes_evicted += 1
            excess -= 1

    def _invalidate(self, recipe_id: str, reason: ChangeReason) -> DrainReport | None:
        return self._get_node(recipe_id, reason).drain(reason)

    # =========================================================================
    # Notifications
    # =========================================================================

    def notify_ingredients_changed(self, recipe_id: str) -> DrainReport | None:
        return self._invalidate(recipe_id, ChangeReason.INGREDIENTS)

    def notify_overrides_changed(self, recipe_id: str) -> DrainReport | None:
        return self._invalidate(recipe_id, ChangeReason.OVERRIDES)

    def recompute_now(self, recipe_id: str) -> DrainReport | None:
        return self._invalidate(recipe_id, ChangeReason.EXPLICIT)

    def notify_master_ingredient_changed(self, master_ingredient_id: str) -> dict[str, DrainReport | None]:
        """Recompute every recipe that references the master ingredient."""
        if self._dependencies is None:
            return {}
        return {
            recipe_id: self._invalidate(recipe_id, ChangeReason.MASTER_INGREDIENT)
            for recipe_id in self._dependencies.recipes_using_master_ingredient(master_ingredient_id)
        }

    def notify_sub_recipe_changed(self, sub_recipe_id: str) -> dict[str, DrainReport | None]:
        """Recompute every recipe that uses the sub-recipe as a prepared ingredient."""
        if self._dependencies is None:
            return {}
        return {
            recipe_id: self._invalidate(recipe_id, ChangeReason.SUB_RECIPE)
            for recipe_id in self._dependencies.recipes_using_sub_recipe(sub_recipe_id)
            if recipe_id != sub_recipe_id
        }

    def forget(self, recipe_id: str) -> None:
        """Recipe deleted: the node's only terminal state."""
        with self._meta_lock:
            self._nodes.pop(recipe_id, None)
        self._writer.forget(recipe_id)

    def _on_written(self, recipe_id: str) -> None:
        if self._dependencies is not None:
            self.notify_sub_recipe_changed(recipe_id)
