"""
Sequence Validation - Reports dangling scene references

A sequence is valid when every id-referenced item resolves in the scene
catalog. Inline items always count as valid. Validation never raises for
missing scenes and never modifies the sequence.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Union

from scenes import Scene, ScenesManager
from sequence_schema import Sequence


@dataclass
class ValidationResult:
    valid: bool
    missing_scene_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"valid": self.valid, "missing_scene_ids": list(self.missing_scene_ids)}


SceneCatalog = Union[ScenesManager, Iterable[Scene], Iterable[str]]


def _known_ids(catalog: SceneCatalog) -> set:
    if isinstance(catalog, ScenesManager):
        return {s.id for s in catalog.get_all_scenes()}
    known = set()
    for entry in catalog:
        known.add(entry.id if isinstance(entry, Scene) else entry)
    return known


def validate_sequence(sequence: Sequence, catalog: SceneCatalog) -> ValidationResult:
    """
    Check every id reference against the catalog.

    Missing ids are reported once each, in first-seen order.
    """
    known = _known_ids(catalog)
    missing = []
    for item in sequence.items:
        if item.inline_scene is not None or not item.scene_id:
            continue
        if item.scene_id not in known and item.scene_id not in missing:
            missing.append(item.scene_id)
    return ValidationResult(valid=not missing, missing_scene_ids=missing)


class ValidationService:
    """Validates stored sequences against the live scene catalog"""

    def __init__(self, store, catalog: ScenesManager):
        self.store = store
        self.catalog = catalog

    def validate(self, sequence: Union[Sequence, str]) -> ValidationResult:
        if not isinstance(sequence, Sequence):
            sequence = self.store.get_sequence(sequence)
        return validate_sequence(sequence, self.catalog)

    def validate_all(self) -> dict:
        known = _known_ids(self.catalog)
        return {s.id: validate_sequence(s, known) for s in self.store.get_all_sequences()}
