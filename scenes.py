"""
Scenes Module - Saved renderer snapshots and scene reference resolution

This module implements:
- Scene: a named, saved snapshot of renderer configuration
- ScenesManager: SQLite-backed scene catalog (CRUD, name-conflict checks,
  JSON import/export)
- SceneResolver: resolves a sequence item's scene reference to a loadable
  renderer state blob

The renderer state is opaque here. It is stored and returned as a dict and
merged over the catalog's renderer defaults when loaded.
"""

import copy
import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sequence_errors import MalformedImport, NameConflict
from sequence_schema import SequenceItem, now_ms

logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1
DEFAULT_SCENE_NAME = "Untitled Scene"

# Keys older renderers stored in scene state that current ones reject
LEGACY_STATE_KEYS = ("iconId", "iconAssetId")


def generate_scene_id() -> str:
    return f"scene-{now_ms()}-{uuid.uuid4().hex[:7]}"


# ============================================================
# Data Model
# ============================================================

@dataclass
class Scene:
    """A saved renderer snapshot. Referenced by sequences, never owned by them."""
    id: str
    name: str
    state: Dict[str, Any]
    thumbnail: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict:
        result = {
            "id": self.id,
            "name": self.name,
            "state": self.state,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.thumbnail:
            result["thumbnail"] = self.thumbnail
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "Scene":
        state = data.get("state")
        created_at = data.get("createdAt") or now_ms()
        return cls(
            id=str(data.get("id") or generate_scene_id()),
            name=str(data.get("name") or DEFAULT_SCENE_NAME),
            state=state if isinstance(state, dict) else {},
            thumbnail=data.get("thumbnail"),
            created_at=created_at,
            updated_at=data.get("updatedAt") or created_at,
        )


def load_scene_state(scene: Optional[Scene], defaults: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """
    Turn a stored scene into a renderable state blob.

    Returns None when the scene has no state. Legacy keys are dropped and
    the stored values are layered over the renderer defaults.
    """
    if scene is None or not scene.state:
        return None
    return _merge_state(scene.state, defaults)


def _merge_state(state: Dict[str, Any], defaults: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    stored = {k: v for k, v in state.items() if k not in LEGACY_STATE_KEYS}
    merged = copy.deepcopy(defaults) if defaults else {}
    merged.update(copy.deepcopy(stored))
    return merged


# ============================================================
# Database Schema
# ============================================================

def init_scenes_tables(db_path: str):
    """Initialize the scenes table"""
    conn = sqlite3.connect(db_path)
    c = conn.cursor()

    c.execute('''CREATE TABLE IF NOT EXISTS scenes (
        scene_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        state TEXT NOT NULL DEFAULT '{}',
        thumbnail TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )''')

    c.execute('''CREATE TABLE IF NOT EXISTS schema_versions (
        module TEXT PRIMARY KEY,
        version INTEGER NOT NULL,
        migrated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )''')

    c.execute('''INSERT OR REPLACE INTO schema_versions (module, version, migrated_at)
                 VALUES ('scenes', ?, CURRENT_TIMESTAMP)''', (SCHEMA_VERSION,))

    c.execute('CREATE INDEX IF NOT EXISTS idx_scenes_name ON scenes(name)')

    conn.commit()
    conn.close()
    logger.debug("Scenes table initialized at %s", db_path)


# ============================================================
# Scene Catalog
# ============================================================

class ScenesManager:
    """
    Scene catalog with CRUD operations.
    Thread-safe with connection-per-operation pattern.
    """

    def __init__(self, db_path: str, default_state: Optional[Dict[str, Any]] = None):
        self.db_path = db_path
        self.default_state = dict(default_state or {})
        self.lock = threading.Lock()
        init_scenes_tables(db_path)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    # ---- Queries ----

    def get_all_scenes(self) -> List[Scene]:
        """Get all Scenes, oldest first"""
        conn = self._get_conn()
        c = conn.cursor()
        c.execute('SELECT * FROM scenes ORDER BY created_at, scene_id')
        rows = c.fetchall()
        conn.close()
        return [self._row_to_scene(row) for row in rows]

    def get_scene(self, scene_id: str) -> Optional[Scene]:
        conn = self._get_conn()
        c = conn.cursor()
        c.execute('SELECT * FROM scenes WHERE scene_id = ?', (scene_id,))
        row = c.fetchone()
        conn.close()
        if not row:
            return None
        return self._row_to_scene(row)

    def has_scenes(self) -> bool:
        conn = self._get_conn()
        c = conn.cursor()
        c.execute('SELECT 1 FROM scenes LIMIT 1')
        row = c.fetchone()
        conn.close()
        return row is not None

    def load_scene_state(self, scene: Optional[Scene]) -> Optional[Dict[str, Any]]:
        return load_scene_state(scene, self.default_state)

    def check_name_conflict(self, name: str, exclude_id: Optional[str] = None) -> Optional[NameConflict]:
        """Return a NameConflict for another scene with the same name (case-insensitive)"""
        wanted = name.strip().lower()
        for scene in self.get_all_scenes():
            if scene.id != exclude_id and scene.name.lower() == wanted:
                return NameConflict(scene.id, scene.name)
        return None

    # ---- Mutations ----

    def save_scene(self, name: str, state: Dict[str, Any], update_existing_id: Optional[str] = None,
                   thumbnail: Optional[str] = None) -> Scene:
        """
        Save the renderer state as a scene.

        With `update_existing_id` the existing scene is overwritten (the
        user chose "update existing"). Otherwise a name already in use
        raises NameConflict and nothing is written.
        """
        scene_name = name.strip() or DEFAULT_SCENE_NAME

        if update_existing_id:
            existing = self.get_scene(update_existing_id)
            if existing:
                existing.name = scene_name
                existing.state = dict(state)
                if thumbnail is not None:
                    existing.thumbnail = thumbnail
                existing.updated_at = now_ms()
                self._write(existing)
                logger.info("✅ Updated scene: %s (%s)", existing.name, existing.id)
                return existing

        conflict = self.check_name_conflict(scene_name)
        if conflict:
            raise conflict

        now = now_ms()
        scene = Scene(
            id=generate_scene_id(),
            name=scene_name,
            state=dict(state),
            thumbnail=thumbnail,
            created_at=now,
            updated_at=now,
        )
        self._write(scene)
        logger.info("✅ Created scene: %s (%s)", scene.name, scene.id)
        return scene

    def update_scene(self, scene_id: str, name: str, state: Dict[str, Any]) -> Optional[Scene]:
        """Rename and re-snapshot a scene; raises NameConflict on a clash"""
        scene = self.get_scene(scene_id)
        if not scene:
            return None

        new_name = name.strip() or scene.name
        conflict = self.check_name_conflict(new_name, exclude_id=scene_id)
        if conflict:
            raise conflict

        scene.name = new_name
        scene.state = dict(state)
        scene.updated_at = now_ms()
        self._write(scene)
        logger.info("✅ Updated scene: %s (%s)", scene.name, scene_id)
        return scene

    def delete_scene(self, scene_id: str) -> bool:
        with self.lock:
            conn = self._get_conn()
            c = conn.cursor()
            c.execute('DELETE FROM scenes WHERE scene_id = ?', (scene_id,))
            deleted = c.rowcount > 0
            conn.commit()
            conn.close()
        if deleted:
            logger.info("🗑️ Deleted scene: %s", scene_id)
        return deleted

    def _write(self, scene: Scene):
        with self.lock:
            conn = self._get_conn()
            c = conn.cursor()
            c.execute('''INSERT OR REPLACE INTO scenes
                        (scene_id, name, state, thumbnail, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)''',
                      (scene.id, scene.name, json.dumps(scene.state), scene.thumbnail,
                       scene.created_at, scene.updated_at))
            conn.commit()
            conn.close()

    def _row_to_scene(self, row: sqlite3.Row) -> Scene:
        state = json.loads(row["state"]) if row["state"] else {}
        return Scene(
            id=row["scene_id"],
            name=row["name"],
            state=state if isinstance(state, dict) else {},
            thumbnail=row["thumbnail"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ---- Import / Export ----

    def export_scenes_json(self) -> str:
        return json.dumps([s.to_dict() for s in self.get_all_scenes()], indent=2)

    def import_scenes_json(self, text: str) -> List[Scene]:
        """
        Import scenes from JSON (a single scene or a list).

        All entries are checked before anything is written. Ids that clash
        with existing scenes are replaced; names that clash get a suffix.
        """
        try:
            parsed = json.loads(text)
        except (TypeError, ValueError) as e:
            raise MalformedImport([f"Invalid JSON: {e}"])

        entries = parsed if isinstance(parsed, list) else [parsed]
        problems = []
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict):
                problems.append(f"Scene {i + 1} is not an object")
            elif not isinstance(entry.get("state"), dict):
                problems.append(f"Scene {i + 1} ('{entry.get('name', 'Unknown')}') is missing its state")
        if problems:
            raise MalformedImport(problems)

        existing = self.get_all_scenes()
        taken_ids = {s.id for s in existing}
        taken_names = {s.name.lower() for s in existing}

        imported = []
        for entry in entries:
            scene = Scene.from_dict(entry)
            if scene.id in taken_ids:
                scene.id = generate_scene_id()
            base_name = scene.name
            suffix = 2
            while scene.name.lower() in taken_names:
                scene.name = f"{base_name} ({suffix})"
                suffix += 1
            taken_ids.add(scene.id)
            taken_names.add(scene.name.lower())
            imported.append(scene)

        for scene in imported:
            self._write(scene)
        logger.info("📥 Imported %d scenes", len(imported))
        return imported


# ============================================================
# Scene Resolution
# ============================================================

class SceneResolver:
    """
    Resolves sequence item scene references to renderable state blobs.

    Pure lookup: inline blobs are merged over the renderer defaults, id
    references are looked up in the catalog. A reference that doesn't
    resolve yields None.
    """

    def __init__(self, catalog: ScenesManager):
        self.catalog = catalog

    def resolve(self, item: SequenceItem) -> Optional[Dict[str, Any]]:
        if item.inline_scene is not None:
            if not item.inline_scene:
                return None
            return _merge_state(item.inline_scene, self.catalog.default_state)
        if not item.scene_id:
            return None
        scene = self.catalog.get_scene(item.scene_id)
        return self.catalog.load_scene_state(scene)

