"""
Sequences Module - Sequence persistence and the sequence command store

This module implements:
- SequencesManager: SQLite key-value persistence for whole Sequence records
- SequenceStore: the single source of truth for every Sequence's item list.
  All mutations (add, update, delete, reorder) go through it, keep `order`
  dense, write the full record back and notify listeners.

Records are normalized once when they enter the store (load, import), so
legacy flat `items` records are transparently upgraded. A legacy record is
written back in the current shape the first time it's loaded.

Version: 2.0.0
"""

import copy
import json
import logging
import math
import sqlite3
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from reorder_coordinator import ReorderCoordinator
from scenes import ScenesManager
from sequence_errors import (
    InvalidPatch,
    ItemNotFound,
    MalformedImport,
    NoScenesAvailable,
    SequenceNotFound,
)
from sequence_schema import (
    DURATION_MODES,
    FADE_TYPES,
    LEGACY_TRANSITIONS,
    MAX_DURATION_SECONDS,
    SCHEMA_CURRENT,
    SCHEMA_VERSION,
    Sequence,
    SequenceItem,
    densify_order,
    detect_schema,
    generate_item_id,
    generate_sequence_id,
    normalize_items,
    normalize_sequence,
    now_ms,
)

logger = logging.getLogger(__name__)


# Patch keys accepted by update_item, mapped to the on-disk item keys
ITEM_PATCH_KEYS = {
    "name": "name",
    "scene_id": "sceneId",
    "sceneId": "sceneId",
    "inline_scene": "inlineSceneJson",
    "inlineSceneJson": "inlineSceneJson",
    "duration_mode": "durationMode",
    "durationMode": "durationMode",
    "duration_seconds": "durationSeconds",
    "durationSeconds": "durationSeconds",
    "transition": "fadeTypeOverride",
    "fadeTypeOverride": "fadeTypeOverride",
    "fade_duration_seconds": "fadeDurationSeconds",
    "fadeDurationSeconds": "fadeDurationSeconds",
    "notes": "notes",
}

SEQUENCE_PATCH_KEYS = {
    "name": "name",
    "description": "description",
    "background_colour": "background_colour",
    "backgroundColour": "background_colour",
    "default_fade_type": "default_fade_type",
    "defaultFadeType": "default_fade_type",
}

Listener = Callable[[str, Dict[str, Any]], None]


# ============================================================
# Database Schema
# ============================================================

def init_sequences_tables(db_path: str):
    """Initialize the sequences table"""
    conn = sqlite3.connect(db_path)
    c = conn.cursor()

    # Whole sequence stored as JSON; columns beside it are for listing only
    c.execute('''CREATE TABLE IF NOT EXISTS sequences (
        sequence_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        data TEXT NOT NULL,
        schema_version INTEGER NOT NULL DEFAULT 1,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )''')

    c.execute('''CREATE TABLE IF NOT EXISTS schema_versions (
        module TEXT PRIMARY KEY,
        version INTEGER NOT NULL,
        migrated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )''')

    c.execute('''INSERT OR REPLACE INTO schema_versions (module, version, migrated_at)
                 VALUES ('sequences', ?, CURRENT_TIMESTAMP)''', (SCHEMA_VERSION,))

    c.execute('CREATE INDEX IF NOT EXISTS idx_sequences_name ON sequences(name)')

    conn.commit()
    conn.close()
    logger.debug("Sequences table initialized at %s", db_path)


# ============================================================
# Persistence
# ============================================================

class SequencesManager:
    """
    Key-value persistence for Sequence records keyed by id.
    Every save replaces the full record (last writer wins, no merging).
    Thread-safe with connection-per-operation pattern.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.lock = threading.Lock()
        init_sequences_tables(db_path)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def save(self, sequence: Sequence):
        self.save_many([sequence])

    def save_many(self, sequences: Iterable[Sequence]):
        """Write several records in one transaction"""
        with self.lock:
            conn = self._get_conn()
            try:
                c = conn.cursor()
                for sequence in sequences:
                    c.execute('''INSERT OR REPLACE INTO sequences
                                (sequence_id, name, data, schema_version, created_at, updated_at)
                                VALUES (?, ?, ?, ?, ?, ?)''',
                              (sequence.id, sequence.name, json.dumps(sequence.to_dict()),
                               SCHEMA_VERSION, sequence.created_at, sequence.updated_at))
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
            finally:
                conn.close()

    def delete(self, sequence_id: str) -> bool:
        with self.lock:
            conn = self._get_conn()
            c = conn.cursor()
            c.execute('DELETE FROM sequences WHERE sequence_id = ?', (sequence_id,))
            deleted = c.rowcount > 0
            conn.commit()
            conn.close()
        return deleted

    def get(self, sequence_id: str) -> Optional[dict]:
        conn = self._get_conn()
        c = conn.cursor()
        c.execute('SELECT * FROM sequences WHERE sequence_id = ?', (sequence_id,))
        row = c.fetchone()
        conn.close()
        if not row:
            return None
        return self._row_to_record(row)

    def get_all(self) -> List[dict]:
        """All stored records as raw on-disk dicts, oldest first"""
        conn = self._get_conn()
        c = conn.cursor()
        c.execute('SELECT * FROM sequences ORDER BY created_at, sequence_id')
        rows = c.fetchall()
        conn.close()

        records = []
        for row in rows:
            record = self._row_to_record(row)
            if record is not None:
                records.append(record)
        return records

    def _row_to_record(self, row: sqlite3.Row) -> Optional[dict]:
        try:
            record = json.loads(row["data"])
        except (TypeError, ValueError) as e:
            logger.error("❌ Unreadable sequence record %s: %s", row["sequence_id"], e)
            return None
        if not isinstance(record, dict):
            logger.error("❌ Sequence record %s is not an object", row["sequence_id"])
            return None
        record.setdefault("id", row["sequence_id"])
        return record


# ============================================================
# Command Store
# ============================================================

class SequenceStore:
    """
    Owns the canonical in-memory Sequences and persists every mutation.

    Callers get deep copies; the live objects are only changed through the
    methods below. Methods accept either a Sequence or a sequence id.
    Listeners are notified after the store lock is released, and only for
    changes that are actually observable.
    """

    def __init__(self, manager: SequencesManager, scenes: ScenesManager):
        self.manager = manager
        self.scenes = scenes
        self.lock = threading.RLock()
        self._sequences: Dict[str, Sequence] = {}
        self._listeners: List[Listener] = []
        self.load()

    # ---- Loading ----

    def load(self) -> int:
        """(Re)load every record from persistence, upgrading legacy ones"""
        loaded = {}
        migrated = []
        for record in self.manager.get_all():
            try:
                sequence = normalize_sequence(record)
            except MalformedImport as e:
                logger.error("❌ Skipping sequence %s: %s", record.get("id"), e)
                continue
            loaded[sequence.id] = sequence
            if record.get("schemaVersion") != SCHEMA_VERSION or detect_schema(record) != SCHEMA_CURRENT:
                migrated.append(sequence)

        if migrated:
            self.manager.save_many(migrated)
            logger.info("🔄 Migrated %d sequences to schema v%d", len(migrated), SCHEMA_VERSION)

        with self.lock:
            self._sequences = loaded
        return len(loaded)

    # ---- Listeners ----

    def subscribe(self, listener: Listener):
        with self.lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: Listener):
        with self.lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, event: str, sequence_id: str, sequence: Optional[Sequence], **extra):
        payload = {
            "sequence_id": sequence_id,
            "sequence": sequence.to_dict() if sequence else None,
        }
        payload.update(extra)
        with self.lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, payload)
            except Exception:
                logger.exception("Sequence listener failed for %s", event)

    # ---- Queries ----

    def _sequence_id(self, sequence: Union[Sequence, str]) -> str:
        return sequence.id if isinstance(sequence, Sequence) else sequence

    def _live(self, sequence: Union[Sequence, str]) -> Sequence:
        sequence_id = self._sequence_id(sequence)
        live = self._sequences.get(sequence_id)
        if live is None:
            raise SequenceNotFound(sequence_id)
        return live

    def get_sequence(self, sequence: Union[Sequence, str]) -> Sequence:
        with self.lock:
            return copy.deepcopy(self._live(sequence))

    def find_sequence(self, sequence_id: Optional[str]) -> Optional[Sequence]:
        if not sequence_id:
            return None
        with self.lock:
            live = self._sequences.get(sequence_id)
            return copy.deepcopy(live) if live else None

    def get_all_sequences(self) -> List[Sequence]:
        with self.lock:
            ordered = sorted(self._sequences.values(), key=lambda s: (s.created_at, s.id))
            return copy.deepcopy(ordered)

    def has_sequence(self, sequence_id: str) -> bool:
        with self.lock:
            return sequence_id in self._sequences

    # ---- Sequence lifecycle ----

    def create_sequence(self, name: str, scene_ids: Iterable[str] = ()) -> Sequence:
        """Create and persist a new sequence with one manual item per scene id"""
        name = (name or "").strip()
        if not name:
            raise InvalidPatch("Sequence name is required")

        now = now_ms()
        items = [
            SequenceItem(id=generate_item_id(), name=f"Scene {i + 1}", scene_id=scene_id, order=i)
            for i, scene_id in enumerate(scene_ids)
        ]
        sequence = Sequence(id=generate_sequence_id(), name=name, items=items,
                            created_at=now, updated_at=now)

        with self.lock:
            self._sequences[sequence.id] = sequence
            self.manager.save(sequence)
            result = copy.deepcopy(sequence)

        logger.info("✅ Created sequence: %s (%s)", sequence.name, sequence.id)
        self._notify("sequence_created", sequence.id, result)
        return result

    def save_sequence(self, raw: Union[Sequence, dict]) -> Sequence:
        """Normalize and upsert a full sequence record (create or replace)"""
        sequence = normalize_sequence(raw)
        with self.lock:
            existed = sequence.id in self._sequences
            sequence.updated_at = now_ms()
            self._sequences[sequence.id] = sequence
            self.manager.save(sequence)
            result = copy.deepcopy(sequence)

        self._notify("sequence_updated" if existed else "sequence_created", sequence.id, result)
        return result

    def insert_sequences(self, sequences: List[Sequence]) -> List[Sequence]:
        """Persist several new sequences in one transaction (all or nothing)"""
        with self.lock:
            clashes = [s.id for s in sequences if s.id in self._sequences]
            if clashes:
                raise InvalidPatch(f"Sequence ids already exist: {', '.join(clashes)}")
            self.manager.save_many(sequences)
            for sequence in sequences:
                self._sequences[sequence.id] = sequence
            results = copy.deepcopy(sequences)

        for sequence in results:
            self._notify("sequence_created", sequence.id, sequence)
        return results

    def update_sequence(self, sequence: Union[Sequence, str], patch: Dict[str, Any]) -> bool:
        """
        Apply a sequence-level patch (name, description, background colour,
        default fade). Returns False without persisting or notifying when
        the patch changes nothing.
        """
        changes = {}
        for key, value in patch.items():
            field_name = SEQUENCE_PATCH_KEYS.get(key)
            if field_name is None:
                raise InvalidPatch(f"Unknown sequence field: {key}")
            changes[field_name] = value

        if "name" in changes:
            if not isinstance(changes["name"], str) or not changes["name"].strip():
                raise InvalidPatch("Sequence name is required")
            changes["name"] = changes["name"].strip()
        if "default_fade_type" in changes and changes["default_fade_type"] not in FADE_TYPES:
            raise InvalidPatch(f"Unknown fade type: {changes['default_fade_type']}")
        if "background_colour" in changes and (
                not isinstance(changes["background_colour"], str) or not changes["background_colour"]):
            raise InvalidPatch("Background colour must be a colour string")
        if "description" in changes and not isinstance(changes["description"], str):
            raise InvalidPatch("Description must be a string")

        with self.lock:
            live = self._live(sequence)
            if all(getattr(live, name) == value for name, value in changes.items()):
                return False
            for name, value in changes.items():
                setattr(live, name, value)
            result = self._commit(live)

        self._notify("sequence_updated", result.id, result)
        return True

    def duplicate_sequence(self, sequence: Union[Sequence, str]) -> Sequence:
        with self.lock:
            source = self._live(sequence)
            now = now_ms()
            duplicate = copy.deepcopy(source)
            duplicate.id = generate_sequence_id()
            duplicate.name = f"{source.name} (Copy)"
            duplicate.created_at = now
            duplicate.updated_at = now
            for item in duplicate.items:
                item.id = generate_item_id()
            self._sequences[duplicate.id] = duplicate
            self.manager.save(duplicate)
            result = copy.deepcopy(duplicate)

        logger.info("📋 Duplicated sequence %s -> %s", source.id, duplicate.id)
        self._notify("sequence_created", duplicate.id, result)
        return result

    def delete_sequence(self, sequence: Union[Sequence, str]) -> bool:
        sequence_id = self._sequence_id(sequence)
        with self.lock:
            existed = self._sequences.pop(sequence_id, None) is not None
            deleted = self.manager.delete(sequence_id) or existed

        if deleted:
            logger.info("🗑️ Deleted sequence: %s", sequence_id)
            self._notify("sequence_deleted", sequence_id, None)
        return deleted

    # ---- Item commands ----

    def add_item(self, sequence: Union[Sequence, str], scene_ref: Union[str, Dict[str, Any]],
                 patch: Optional[Dict[str, Any]] = None) -> SequenceItem:
        """
        Append an item referencing a saved scene (id) or carrying an inline
        scene blob. Raises NoScenesAvailable when the catalog is empty.
        """
        if not self.scenes.has_scenes():
            raise NoScenesAvailable()

        if isinstance(scene_ref, dict):
            raw = {"inlineSceneJson": scene_ref}
        elif isinstance(scene_ref, str) and scene_ref:
            raw = {"sceneId": scene_ref}
        else:
            raise InvalidPatch("Scene reference must be a scene id or a scene state object")

        with self.lock:
            live = self._live(sequence)
            index = len(live.items)
            raw.update({"id": generate_item_id(), "durationMode": "manual", "order": index})
            scene_name = self.scenes_name(scene_ref) if isinstance(scene_ref, str) else None
            raw["name"] = scene_name or f"Scene {index + 1}"
            if patch:
                raw = _apply_item_patch(raw, patch)
            item = normalize_items([raw])[0]
            item.order = index
            live.items.append(item)
            result = self._commit(live)
            added = copy.deepcopy(item)

        self._notify("item_added", result.id, result, item_id=added.id, index=index)
        return added

    def scenes_name(self, scene_id: str) -> Optional[str]:
        scene = self.scenes.get_scene(scene_id)
        return scene.name if scene else None

    def update_item(self, sequence: Union[Sequence, str], item_id: str, patch: Dict[str, Any]) -> bool:
        """
        Apply a patch to one item.

        If the patched item is deep-equal to the current one the call
        returns False without writing or notifying, so UI round-trips of
        derived values can't loop update -> re-render -> update.
        """
        with self.lock:
            live = self._live(sequence)
            index = live.item_index(item_id)
            if index < 0:
                raise ItemNotFound(item_id)

            current = live.items[index]
            raw = _apply_item_patch(current.to_dict(), patch)
            updated = normalize_items([raw])[0]
            updated.order = current.order
            if updated == current:
                return False

            live.items[index] = updated
            result = self._commit(live)

        self._notify("item_updated", result.id, result, item_id=item_id, index=index)
        return True

    def delete_item(self, sequence: Union[Sequence, str], item_id: str) -> int:
        """Remove an item, re-densify order; returns the index it occupied"""
        with self.lock:
            live = self._live(sequence)
            index = live.item_index(item_id)
            if index < 0:
                raise ItemNotFound(item_id)
            del live.items[index]
            densify_order(live.items)
            result = self._commit(live)

        self._notify("item_deleted", result.id, result, item_id=item_id, index=index)
        return index

    def reorder(self, sequence: Union[Sequence, str], from_index: int, to_index: int,
                current: Optional[int] = None) -> Tuple[Sequence, Optional[int]]:
        """
        Move the item at from_index to to_index (post-removal index).

        `current` is an optional external pointer that is corrected in the
        same call; the corrected value is returned next to the sequence.
        """
        with self.lock:
            live = self._live(sequence)
            try:
                items, pointer = ReorderCoordinator.move(live.items, from_index, to_index, current)
            except IndexError as e:
                raise InvalidPatch(str(e))
            if from_index == to_index:
                return copy.deepcopy(live), pointer
            live.items = densify_order(items)
            result = self._commit(live)

        self._notify("reordered", result.id, result, from_index=from_index, to_index=to_index)
        return result, pointer

    # ---- Stats ----

    def sequence_stats(self) -> dict:
        sequences = self.get_all_sequences()
        total_items = sum(len(s.items) for s in sequences)
        return {
            "total_sequences": len(sequences),
            "total_items": total_items,
            "average_items": round(total_items / len(sequences), 1) if sequences else 0,
            "total_duration_seconds": round(sum(s.total_duration_seconds for s in sequences)),
            "sequences_with_manual": sum(1 for s in sequences if s.has_manual_items),
        }

    # ---- Internals ----

    def _commit(self, live: Sequence) -> Sequence:
        """Persist the full live record; caller holds the lock"""
        live.updated_at = now_ms()
        self.manager.save(live)
        return copy.deepcopy(live)


def _patch_seconds(key: str, value: Any) -> Optional[Union[int, float]]:
    """Check a seconds value from a patch; None passes through"""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidPatch(f"{key} must be a number")
    if not math.isfinite(value):
        raise InvalidPatch(f"{key} must be a finite number")
    if value < 0:
        raise InvalidPatch(f"{key} can't be negative")
    if value > MAX_DURATION_SECONDS:
        raise InvalidPatch(f"{key} can't exceed {MAX_DURATION_SECONDS} seconds")
    return value


def _apply_item_patch(raw: dict, patch: Dict[str, Any]) -> dict:
    """Apply a patch to an on-disk item dict, validating keys and values"""
    raw = dict(raw)
    for key, value in patch.items():
        if key == "duration":
            # Legacy single-field duration: 0 or None means manual
            number = _patch_seconds("duration", value)
            if number:
                raw["durationMode"] = "seconds"
                raw["durationSeconds"] = number
            else:
                raw["durationMode"] = "manual"
                raw.pop("durationSeconds", None)
            continue

        disk_key = ITEM_PATCH_KEYS.get(key)
        if disk_key is None:
            raise InvalidPatch(f"Unknown item field: {key}")

        if disk_key == "durationMode" and value not in DURATION_MODES:
            raise InvalidPatch(f"Unknown duration mode: {value}")
        if disk_key in ("durationSeconds", "fadeDurationSeconds"):
            _patch_seconds(key, value)
        if disk_key == "fadeTypeOverride" and value is not None \
                and value not in FADE_TYPES and value not in LEGACY_TRANSITIONS:
            raise InvalidPatch(f"Unknown transition: {value}")
        if disk_key == "inlineSceneJson" and value is not None and not isinstance(value, dict):
            raise InvalidPatch("Inline scene must be an object")

        if value is None:
            raw.pop(disk_key, None)
        else:
            raw[disk_key] = value

        if disk_key == "sceneId" and "inlineSceneJson" not in patch and "inline_scene" not in patch:
            raw.pop("inlineSceneJson", None)
        if disk_key == "durationSeconds" and value and "durationMode" not in patch \
                and "duration_mode" not in patch:
            raw["durationMode"] = "seconds"
    return raw


# ============================================================
# API Endpoint Helpers
# ============================================================

def validate_sequence_data(data: dict) -> Tuple[bool, Optional[str]]:
    """Validate Sequence creation/update payloads"""
    if not isinstance(data, dict):
        return False, "Sequence must be an object"
    if not isinstance(data.get("name"), str) or not data["name"].strip():
        return False, "Sequence name is required"

    items = data.get("scenes", data.get("items", []))
    if not isinstance(items, list):
        return False, "Sequence items must be a list"

    for i, item in enumerate(items):
        if not isinstance(item, dict):
            return False, f"Item {i + 1} must be an object"
        has_ref = item.get("sceneId") or item.get("presetId") \
            or isinstance(item.get("inlineSceneJson"), dict) or isinstance(item.get("inlinePresetJson"), dict)
        if not has_ref:
            return False, f"Item {i + 1} must have either sceneId or inlineSceneJson"

    fade = data.get("defaultFadeType")
    if fade is not None and fade not in FADE_TYPES:
        return False, f"Unknown fade type: {fade}"

    return True, None
