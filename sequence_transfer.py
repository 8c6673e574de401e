"""
Sequence Transfer - JSON export and import for sequences

Exports always use the current on-disk shape (schemaVersion 2, `scenes`
array). Imports accept a single sequence object, a list of them, or an
export envelope ({"sequences": [...]}) in either the legacy or current
shape. An import is validated as a whole before anything is written.
"""

import json
import logging
from typing import Iterable, List, Union

from sequence_errors import MalformedImport
from sequence_schema import (
    Sequence,
    generate_item_id,
    generate_sequence_id,
    normalize_sequence,
    now_ms,
)
from sequences import SequenceStore

logger = logging.getLogger(__name__)


def export_sequence_json(sequence: Sequence) -> str:
    return json.dumps(sequence.to_dict(), indent=2)


def export_sequences_json(sequences: Iterable[Sequence]) -> str:
    return json.dumps([s.to_dict() for s in sequences], indent=2)


def _entries(parsed) -> list:
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict) and isinstance(parsed.get("sequences"), list):
        return parsed["sequences"]
    return [parsed]


def check_import_entries(entries: list) -> List[str]:
    """Return every structural problem found in the raw import entries"""
    problems = []
    if not entries:
        problems.append("Import contains no sequences")
    for i, entry in enumerate(entries):
        label = f"Sequence {i + 1}"
        if not isinstance(entry, dict):
            problems.append(f"{label} is not an object")
            continue
        name = entry.get("name")
        if name is not None and not isinstance(name, str):
            problems.append(f"{label}: name must be a string")
        raw_items = entry.get("scenes", entry.get("items", []))
        if not isinstance(raw_items, list):
            problems.append(f"{label}: scenes must be a list")
            continue
        for j, item in enumerate(raw_items):
            if not isinstance(item, dict):
                problems.append(f"{label}, item {j + 1} is not an object")
            elif not (item.get("sceneId") or item.get("presetId")
                      or isinstance(item.get("inlineSceneJson"), dict)
                      or isinstance(item.get("inlinePresetJson"), dict)):
                problems.append(f"{label}, item {j + 1} has no scene reference")
    return problems


def _reject_constant(token):
    raise ValueError(f"{token} is not a valid JSON number")


def parse_sequences_json(text: Union[str, bytes]) -> List[Sequence]:
    """Parse and normalize import text without touching the store"""
    try:
        parsed = json.loads(text, parse_constant=_reject_constant)
    except (TypeError, ValueError) as e:
        raise MalformedImport([f"Invalid JSON: {e}"])

    entries = _entries(parsed)
    problems = check_import_entries(entries)
    if problems:
        raise MalformedImport(problems)

    sequences = []
    for i, entry in enumerate(entries):
        if not entry.get("name"):
            entry = dict(entry, name=f"Imported Sequence {i + 1}")
        sequences.append(normalize_sequence(entry))
    return sequences


def import_sequences_json(store: SequenceStore, text: Union[str, bytes]) -> List[Sequence]:
    """
    Import sequences into the store.

    Raises MalformedImport (nothing written) if any entry is unusable.
    Sequences whose id is already taken, in the store or earlier in the
    same import, get fresh sequence and item ids.
    """
    sequences = parse_sequences_json(text)

    taken = {s.id for s in store.get_all_sequences()}
    now = now_ms()
    for sequence in sequences:
        if sequence.id in taken:
            sequence.id = generate_sequence_id()
            for item in sequence.items:
                item.id = generate_item_id()
        sequence.updated_at = now
        taken.add(sequence.id)

    imported = store.insert_sequences(sequences)
    logger.info("📥 Imported %d sequences", len(imported))
    return imported
