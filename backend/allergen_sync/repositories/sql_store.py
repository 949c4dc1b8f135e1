"""
SQL reference store for the allergen engine.

Implements the persistence contract (DeclarationSink) on top of SQLAlchemy
and serves the stored inputs a recompute pass needs: the current
declaration, the override record and the declarations of sub-recipes.

OUTBOX-PATTERN: every declaration change writes an outbox event in the same
transaction, so readers that follow the event stream see each change once.

Conflicting writes (another transaction updated the row since it was
loaded) abort with WriteConflictError; the engine treats that as a retry
signal.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from allergen_sync.domain.vocabulary import AllergenVocabulary, normalize_kind
from allergen_sync.models import (
    OutboxEvent,
    OutboxStatus,
    RecipeAllergenDeclaration,
    RecipeAllergenOverride,
)
from allergen_sync.schemas import (
    InputSnapshot,
    IngredientLine,
    MaterializedDeclaration,
    OverrideUpdate,
    PreparedRef,
    WriteInstruction,
)
from allergen_sync.services.resolver import resolve_ingredient
from allergen_sync.services.writer import read_materialized
from shared.config.constants import (
    ALLERGEN_DECLARATION_UPDATED,
    ALLERGEN_OVERRIDES_CLEANED,
    FieldNames,
)
from shared.config.logging import persistence_logger as logger
from shared.config.settings import get_settings
from shared.infrastructure.db import get_db_context, safe_commit
from shared.utils.exceptions import WriteConflictError

AGGREGATE_TYPE = "recipe"


def write_outbox_event(
    db: Session,
    event_type: str,
    aggregate_id: str,
    payload: dict[str, Any],
) -> OutboxEvent:
    """
    Queue an event in the outbox table.

    MUST be called within the same transaction as the row it describes.
    """
    outbox_event = OutboxEvent(
        event_type=event_type,
        aggregate_type=AGGREGATE_TYPE,
        aggregate_id=aggregate_id,
        payload=json.dumps(payload),
        status=OutboxStatus.PENDING,
        retry_count=0,
    )
    db.add(outbox_event)
    # Don't flush/commit - let the caller control the transaction
    logger.debug("Outbox event queued", event_type=event_type, aggregate_id=aggregate_id)
    return outbox_event


class SqlDeclarationStore:
    """
    Usage:
        with open_store() as store:
            engine = AllergenSyncEngine(provider, store)
    """

    def __init__(self, db: Session, *, publish_events: bool | None = None):
        self._db = db
        if publish_events is None:
            publish_events = get_settings().publish_declaration_events
        self._publish_events = publish_events

    @property
    def db(self) -> Session:
        return self._db

    # =========================================================================
    # Reads
    # =========================================================================

    def get_declaration_row(self, recipe_id: str) -> RecipeAllergenDeclaration | None:
        return self._db.get(RecipeAllergenDeclaration, recipe_id)

    def load_current(self, recipe_id: str) -> dict[str, Any] | None:
        """Stored declaration record of a recipe, None when it never had one."""
        row = self.get_declaration_row(recipe_id)
        return row.to_record() if row is not None else None

    def load_overrides(self, recipe_id: str) -> Any:
        """Raw override record as stored; None when the recipe has none."""
        row = self._db.get(RecipeAllergenOverride, recipe_id)
        return row.record if row is not None else None

    def sub_recipe_declarations(self, recipe_ids: Iterable[str]) -> dict[str, MaterializedDeclaration]:
        """
        Stored declarations of the given recipes.

        Recipes without a declaration row are left out, so lines pointing at
        them are reported unresolved.
        """
        ids = sorted(set(recipe_ids))
        if not ids:
            return {}
        rows = self._db.scalars(
            select(RecipeAllergenDeclaration).where(RecipeAllergenDeclaration.recipe_id.in_(ids))
        ).all()
        return {row.recipe_id: read_materialized(row.to_record()) for row in rows}

    def snapshot(
        self,
        recipe_id: str,
        ingredients: Sequence[Mapping[str, Any] | IngredientLine],
        master_ingredients: Mapping[str, Mapping[str, Any]],
        vocabulary: AllergenVocabulary | None = None,
    ) -> InputSnapshot:
        """
        Assemble a recompute input from host-owned ingredient data and the
        rows this store owns.
        """
        sub_recipe_ids = [
            ref.sub_recipe_id
            for ref in (resolve_ingredient(line) for line in ingredients)
            if isinstance(ref, PreparedRef)
        ]
        return InputSnapshot(
            recipe_id=recipe_id,
            ingredients=tuple(ingredients),
            master_ingredients=master_ingredients,
            sub_recipes=self.sub_recipe_declarations(sub_recipe_ids),
            overrides=self.load_overrides(recipe_id),
            current=self.load_current(recipe_id),
            vocabulary=vocabulary or AllergenVocabulary.default(),
        )

    # =========================================================================
    # Operator writes
    # =========================================================================

    def save_overrides(self, recipe_id: str, record: Any) -> RecipeAllergenOverride:
        """Store an operator's override record verbatim."""
        row = self._db.get(RecipeAllergenOverride, recipe_id)
        if row is None:
            row = RecipeAllergenOverride(recipe_id=recipe_id, record=record)
            self._db.add(row)
        else:
            row.record = record
        self._commit(recipe_id)
        return row

    # =========================================================================
    # DeclarationSink
    # =========================================================================

    def write_declaration(self, instruction: WriteInstruction) -> None:
        """
        Write both declaration shapes in one transaction.

        Raises:
            WriteConflictError: the row changed since it was loaded.
        """
        row = self.get_declaration_row(instruction.recipe_id)
        if row is None:
            row = RecipeAllergenDeclaration(recipe_id=instruction.recipe_id)
            self._db.add(row)

        row.allergen_info = dict(instruction.allergen_info)
        for name, value in instruction.allergen_flags.items():
            setattr(row, name, value)
        row.fingerprint = instruction.fingerprint
        row.last_sequence = instruction.sequence

        if self._publish_events:
            write_outbox_event(
                self._db,
                ALLERGEN_DECLARATION_UPDATED,
                instruction.recipe_id,
                {
                    "recipe_id": instruction.recipe_id,
                    "fingerprint": instruction.fingerprint,
                    FieldNames.LEGACY_INFO: instruction.allergen_info,
                },
            )

        self._commit(instruction.recipe_id)
        logger.debug("Declaration row updated", recipe_id=instruction.recipe_id, version=row.version)

    def write_overrides(self, update: OverrideUpdate) -> None:
        """
        Remove orphaned promotions from the stored record.

        Only the promotions named in the update are removed from whatever the
        row holds now; operator edits made since the snapshot are kept.

        Raises:
            WriteConflictError: the row changed since it was loaded.
        """
        row = self._db.get(RecipeAllergenOverride, update.recipe_id)
        if row is None or not isinstance(row.record, Mapping):
            logger.warning("Override record gone or malformed, cleanup skipped", recipe_id=update.recipe_id)
            return

        removed = set(update.removed_promotions)
        record = dict(row.record)
        promoted = record.get("promotedToContains")
        if not isinstance(promoted, list):
            return
        kept = [kind for kind in promoted if not (isinstance(kind, str) and normalize_kind(kind) in removed)]
        if len(kept) == len(promoted):
            return

        record["promotedToContains"] = kept
        row.record = record

        if self._publish_events:
            write_outbox_event(
                self._db,
                ALLERGEN_OVERRIDES_CLEANED,
                update.recipe_id,
                {"recipe_id": update.recipe_id, "removed": sorted(removed)},
            )

        self._commit(update.recipe_id)

    # =========================================================================
    # Outbox
    # =========================================================================

    def pending_events(self, limit: int = 100) -> list[OutboxEvent]:
        return list(self._db.scalars(
            select(OutboxEvent)
            .where(OutboxEvent.status == OutboxStatus.PENDING)
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(limit)
        ).all())

    def _commit(self, recipe_id: str) -> None:
        try:
            safe_commit(self._db)
        except (StaleDataError, IntegrityError) as exc:
            raise WriteConflictError(recipe_id, reason=type(exc).__name__) from exc


@contextmanager
def open_store(*, publish_events: bool | None = None) -> Iterator[SqlDeclarationStore]:
    """Store on a session of the configured database; the session is closed on exit."""
    with get_db_context() as db:
        yield SqlDeclarationStore(db, publish_events=publish_events)
