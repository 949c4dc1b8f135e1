"""
Allergen Extractor.

Reads a master-ingredient record into its Contains/MayContain sets using the
record's field convention:

    allergen_<kind>                   -> Contains
    allergen_<kind>_may_contain       -> MayContain
    allergen_custom<N>_active/_name/_may_contain
                                      -> custom kind N (Contains unless may_contain)

A kind flagged both ways is Contains only.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from allergen_sync.domain.vocabulary import AllergenVocabulary, normalize_kind
from allergen_sync.schemas import ExtractedAllergens, RawRef
from shared.config.constants import TRUTHY_FLAG_VALUES, FieldNames
from shared.utils.exceptions import UnresolvedReferenceError


def is_flag_set(value: Any) -> bool:
    """Master-ingredient flags arrive as booleans, "true" strings or 1."""
    return value in TRUTHY_FLAG_VALUES


def _custom_kind(record: Mapping[str, Any], slot: int, vocabulary: AllergenVocabulary) -> str | None:
    """
    Identifier of an active custom slot on a record, or None.

    When the organization configured the slot, its configured name is the
    identifier and its active flag must also be set.
    """
    if not is_flag_set(record.get(FieldNames.CUSTOM_ACTIVE.format(slot=slot))):
        return None

    configured = vocabulary.get_slot(slot)
    if configured is not None:
        return configured.kind if configured.active else None

    name = record.get(FieldNames.CUSTOM_NAME.format(slot=slot))
    if not isinstance(name, str) or not normalize_kind(name):
        return None
    return normalize_kind(name)


def extract_from_master_ingredient(
    record: Mapping[str, Any] | None,
    vocabulary: AllergenVocabulary | None = None,
) -> ExtractedAllergens:
    """Extract Contains/MayContain sets from one master-ingredient record."""
    if not record:
        return ExtractedAllergens()

    vocabulary = vocabulary or AllergenVocabulary.default()
    contains: set[str] = set()
    may_contain: set[str] = set()

    for kind in vocabulary.standard:
        if is_flag_set(record.get(FieldNames.CONTAINS_FLAG.format(kind=kind))):
            contains.add(kind)
        if is_flag_set(record.get(FieldNames.MAY_CONTAIN_FLAG.format(kind=kind))):
            may_contain.add(kind)

    for slot in range(1, vocabulary.max_custom_slots + 1):
        kind = _custom_kind(record, slot, vocabulary)
        if kind is None:
            continue
        if is_flag_set(record.get(FieldNames.CUSTOM_MAY_CONTAIN.format(slot=slot))):
            may_contain.add(kind)
        else:
            contains.add(kind)

    return ExtractedAllergens.build(contains, may_contain)


def master_ingredient_name(record: Mapping[str, Any], fallback: str) -> str:
    """Display name of a master ingredient."""
    for key in ("product", "common_name", "name"):
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return fallback


def extract_for_reference(
    reference: RawRef,
    catalog: Mapping[str, Mapping[str, Any]],
    vocabulary: AllergenVocabulary | None = None,
) -> tuple[ExtractedAllergens, str]:
    """
    Look up a raw reference in the master-ingredient catalog and extract it.

    Returns:
        (allergens, display name)

    Raises:
        UnresolvedReferenceError: no catalog record for the referenced id.
    """
    record = catalog.get(reference.master_ingredient_id)
    if record is None:
        raise UnresolvedReferenceError(
            reference.line_id,
            "master_ingredient",
            reference.master_ingredient_id,
            via_legacy_name=reference.via_legacy_name,
        )
    name = master_ingredient_name(record, fallback=reference.master_ingredient_id)
    return extract_from_master_ingredient(record, vocabulary), name
