"""
Sequence Schema - Canonical data model and on-disk schema normalization

This module defines the one in-memory shape the engine works with:
- SequenceItem: a single playlist entry (scene reference, duration, transition)
- Sequence: an ordered list of SequenceItems plus playback defaults

Two on-disk shapes exist and both are accepted by `normalize_sequence`:
- Legacy (v1): flat `items` with `duration` (0 = manual) and
  `transition` in {"instant", "fade", "smooth"}
- Current (v2): `scenes` with `durationMode`/`durationSeconds` and
  `fadeTypeOverride` in {"cut", "crossfade", "fadeToBlack", "custom"}

Normalization runs once at the store boundary (load and import). Nothing
else in the engine branches on the schema variant.

Version: 2.0.0
"""

import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from sequence_errors import MalformedImport


# ============================================================
# Schema Version - For migrations
# ============================================================
SCHEMA_VERSION = 2

SCHEMA_LEGACY = "legacy"
SCHEMA_CURRENT = "current"

DURATION_SECONDS = "seconds"
DURATION_MANUAL = "manual"
DURATION_MODES = (DURATION_SECONDS, DURATION_MANUAL)

FADE_CUT = "cut"
FADE_CROSSFADE = "crossfade"
FADE_TO_BLACK = "fadeToBlack"
FADE_CUSTOM = "custom"
FADE_TYPES = (FADE_CUT, FADE_CROSSFADE, FADE_TO_BLACK, FADE_CUSTOM)

# Legacy transition enum -> fade type
LEGACY_TRANSITIONS = {
    "instant": FADE_CUT,
    "fade": FADE_CROSSFADE,
    "smooth": FADE_CROSSFADE,
}

DEFAULT_BACKGROUND_COLOUR = "#000000"
DEFAULT_FADE_TYPE = FADE_CUT
DEFAULT_FADE_SECONDS = 1.5

# Longest timed item or fade; larger stored values are clamped
MAX_DURATION_SECONDS = 24 * 60 * 60

DEFAULT_SEQUENCE_NAME = "Untitled Sequence"


def now_ms() -> int:
    return int(time.time() * 1000)


def _token() -> str:
    return uuid.uuid4().hex[:7]


def generate_sequence_id() -> str:
    return f"sequence-{now_ms()}-{_token()}"


def generate_item_id() -> str:
    return f"item-{now_ms()}-{_token()}"


def _as_number(value: Any) -> Optional[Union[int, float]]:
    """Coerce a JSON value to a finite number, or None if it isn't one"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        return int(number) if number.is_integer() else number
    return None


def _as_epoch_ms(value: Any) -> Optional[int]:
    number = _as_number(value)
    if number is None or number < 0:
        return None
    return int(number)


def _fade_type(value: Any) -> Optional[str]:
    """Map a fade/transition name from either schema to a fade type"""
    if not isinstance(value, str):
        return None
    if value in FADE_TYPES:
        return value
    return LEGACY_TRANSITIONS.get(value)


# ============================================================
# Canonical Data Models
# ============================================================

@dataclass
class Transition:
    """How the renderer should blend into a newly loaded scene"""
    fade_type: str
    duration_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {"fade_type": self.fade_type, "duration_seconds": self.duration_seconds}


@dataclass
class SequenceItem:
    """
    One playlist entry.

    The scene is either referenced by `scene_id` (a saved scene in the
    catalog) or embedded as `inline_scene` (portable/imported sequences).
    `transition` overrides the sequence's default fade; None means default.
    """
    id: str
    name: str = ""
    scene_id: Optional[str] = None
    inline_scene: Optional[Dict[str, Any]] = None
    duration_mode: str = DURATION_MANUAL
    duration_seconds: Optional[Union[int, float]] = None
    transition: Optional[str] = None
    fade_duration_seconds: Optional[Union[int, float]] = None
    notes: str = ""
    order: int = 0

    @property
    def scene_ref(self) -> Union[str, Dict[str, Any], None]:
        """The inline blob if there is one, otherwise the scene id"""
        if self.inline_scene is not None:
            return self.inline_scene
        return self.scene_id

    @property
    def is_manual(self) -> bool:
        return self.duration_mode == DURATION_MANUAL

    @property
    def auto_advance_seconds(self) -> Optional[float]:
        """Seconds before auto-advance, or None if this item waits for `next`"""
        if self.duration_mode != DURATION_SECONDS:
            return None
        if self.duration_seconds is None or self.duration_seconds <= 0:
            return None
        return self.duration_seconds

    def to_dict(self, sequence_id: Optional[str] = None) -> dict:
        result = {
            "id": self.id,
            "order": self.order,
            "name": self.name,
            "durationMode": self.duration_mode,
        }
        if sequence_id is not None:
            result["sequenceId"] = sequence_id
        if self.scene_id is not None:
            result["sceneId"] = self.scene_id
        if self.inline_scene is not None:
            result["inlineSceneJson"] = self.inline_scene
        if self.duration_seconds is not None:
            result["durationSeconds"] = self.duration_seconds
        if self.transition is not None:
            result["fadeTypeOverride"] = self.transition
        if self.fade_duration_seconds is not None:
            result["fadeDurationSeconds"] = self.fade_duration_seconds
        if self.notes:
            result["notes"] = self.notes
        return result


@dataclass
class Sequence:
    """
    An ordered, timed playlist of scene references.
    Array position is the playback order; `order` mirrors it for older readers.
    """
    id: str
    name: str
    items: List[SequenceItem] = field(default_factory=list)
    background_colour: str = DEFAULT_BACKGROUND_COLOUR
    default_fade_type: str = DEFAULT_FADE_TYPE
    description: str = ""
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict:
        return {
            "schemaVersion": SCHEMA_VERSION,
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "backgroundColour": self.background_colour,
            "defaultFadeType": self.default_fade_type,
            "scenes": [item.to_dict(self.id) for item in self.items],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def item_index(self, item_id: str) -> int:
        """Index of an item by id, -1 if not found"""
        for i, item in enumerate(self.items):
            if item.id == item_id:
                return i
        return -1

    def transition_into(self, index: int) -> Optional[Transition]:
        """
        Transition used when entering the item at `index`.

        Transitions are applied BETWEEN items: the fade configured on item N
        is used going from N to N+1. The first item has no transition.
        """
        if index <= 0 or index > len(self.items):
            return None
        previous = self.items[index - 1]
        fade_type = previous.transition or self.default_fade_type
        if fade_type == FADE_CUT:
            return Transition(fade_type=FADE_CUT, duration_seconds=0.0)
        duration = previous.fade_duration_seconds
        if duration is None:
            duration = DEFAULT_FADE_SECONDS
        return Transition(fade_type=fade_type, duration_seconds=float(duration))

    @property
    def total_duration_seconds(self) -> float:
        """Sum of timed item durations (manual items contribute nothing)"""
        return sum(item.auto_advance_seconds or 0 for item in self.items)

    @property
    def has_manual_items(self) -> bool:
        return any(item.auto_advance_seconds is None for item in self.items)


# ============================================================
# Normalization
# ============================================================

def detect_schema(raw: dict) -> str:
    """
    Decide which on-disk schema a raw sequence record uses.

    An explicit `schemaVersion` tag wins. Without one, a non-empty `scenes`
    list means current and a non-empty `items` list means legacy. Empty
    sequences carry no evidence either way and are read as current.
    """
    version = raw.get("schemaVersion")
    if isinstance(version, int) and not isinstance(version, bool):
        return SCHEMA_LEGACY if version < SCHEMA_VERSION else SCHEMA_CURRENT

    scenes = raw.get("scenes")
    items = raw.get("items")
    if isinstance(scenes, list) and scenes:
        return SCHEMA_CURRENT
    if isinstance(items, list) and items:
        return SCHEMA_LEGACY
    return SCHEMA_CURRENT


def _detect_item_schema(raw: dict) -> str:
    if any(key in raw for key in ("durationMode", "durationSeconds", "fadeTypeOverride", "inlineSceneJson")):
        return SCHEMA_CURRENT
    if "duration" in raw or "transition" in raw:
        return SCHEMA_LEGACY
    return SCHEMA_CURRENT


def _duration(mode: Any, seconds: Any):
    """Resolve (duration_mode, duration_seconds); non-positive seconds mean manual"""
    seconds = _as_number(seconds)
    if mode not in DURATION_MODES:
        mode = DURATION_SECONDS if seconds is not None else DURATION_MANUAL
    if mode == DURATION_SECONDS and (seconds is None or seconds <= 0):
        mode = DURATION_MANUAL
    if mode == DURATION_MANUAL:
        seconds = None
    elif seconds > MAX_DURATION_SECONDS:
        seconds = MAX_DURATION_SECONDS
    return mode, seconds


def _positive(value: Any) -> Optional[Union[int, float]]:
    number = _as_number(value)
    if number is None or number <= 0:
        return None
    return min(number, MAX_DURATION_SECONDS)


def _scene_fields(raw: dict):
    scene_id = raw.get("sceneId") or raw.get("presetId") or None
    if scene_id is not None:
        scene_id = str(scene_id)
    inline = raw.get("inlineSceneJson")
    if inline is None:
        inline = raw.get("inlinePresetJson")
    if not isinstance(inline, dict):
        inline = None
    return scene_id, inline


def _normalize_current_item(raw: dict, index: int) -> SequenceItem:
    scene_id, inline = _scene_fields(raw)
    mode, seconds = _duration(raw.get("durationMode"), raw.get("durationSeconds"))
    notes = raw.get("notes")
    return SequenceItem(
        id=str(raw.get("id") or generate_item_id()),
        name=str(raw.get("name") or f"Scene {index + 1}"),
        scene_id=scene_id,
        inline_scene=inline,
        duration_mode=mode,
        duration_seconds=seconds,
        transition=_fade_type(raw.get("fadeTypeOverride")),
        fade_duration_seconds=_positive(raw.get("fadeDurationSeconds")),
        notes=notes if isinstance(notes, str) else "",
        order=index,
    )


def _normalize_legacy_item(raw: dict, index: int) -> SequenceItem:
    scene_id, inline = _scene_fields(raw)
    mode, seconds = _duration(None, raw.get("duration"))
    return SequenceItem(
        id=str(raw.get("id") or generate_item_id()),
        name=str(raw.get("name") or f"Scene {index + 1}"),
        scene_id=scene_id,
        inline_scene=inline,
        duration_mode=mode,
        duration_seconds=seconds,
        transition=_fade_type(raw.get("transition")),
        order=index,
    )


def _stored_order(raw: Any, index: int) -> int:
    if isinstance(raw, SequenceItem):
        return raw.order
    order = _as_number(raw.get("order")) if isinstance(raw, dict) else None
    return int(order) if order is not None else index


def densify_order(items: List[SequenceItem]) -> List[SequenceItem]:
    """Rewrite `order` so that items[i].order == i"""
    for i, item in enumerate(items):
        item.order = i
    return items


def normalize_items(raw_items: Iterable[Any], schema: Optional[str] = None) -> List[SequenceItem]:
    """
    Normalize raw items from either schema into SequenceItems.

    Items are stably sorted by their stored `order` (array position when
    absent) and `order` is re-densified. Non-object entries raise
    MalformedImport.
    """
    raw_items = list(raw_items or [])
    keyed = sorted(
        ((_stored_order(raw, i), i, raw) for i, raw in enumerate(raw_items)),
        key=lambda entry: (entry[0], entry[1]),
    )

    items = []
    for order, index, raw in keyed:
        if isinstance(raw, SequenceItem):
            raw = raw.to_dict()
        if not isinstance(raw, dict):
            raise MalformedImport([f"Item {index + 1} is not an object"])
        item_schema = schema or _detect_item_schema(raw)
        if item_schema == SCHEMA_LEGACY:
            items.append(_normalize_legacy_item(raw, index))
        else:
            items.append(_normalize_current_item(raw, index))
    return densify_order(items)


def normalize_sequence(raw: Union[dict, Sequence]) -> Sequence:
    """
    Normalize a raw sequence record (legacy or current) to a Sequence.

    Idempotent: normalizing an already-normalized sequence, or its
    `to_dict()` output, yields an equal Sequence.
    """
    if isinstance(raw, Sequence):
        raw = raw.to_dict()
    if not isinstance(raw, dict):
        raise MalformedImport(["Sequence must be a JSON object"])

    schema = detect_schema(raw)
    raw_items = raw.get("scenes") if schema == SCHEMA_CURRENT else raw.get("items")
    if not isinstance(raw_items, list):
        raw_items = []

    default_fade = raw.get("defaultFadeType")
    if default_fade not in FADE_TYPES:
        default_fade = DEFAULT_FADE_TYPE

    created_at = _as_epoch_ms(raw.get("createdAt"))
    updated_at = _as_epoch_ms(raw.get("updatedAt"))
    if created_at is None:
        created_at = now_ms()
    if updated_at is None:
        updated_at = created_at

    description = raw.get("description")
    background = raw.get("backgroundColour")

    return Sequence(
        id=str(raw.get("id") or generate_sequence_id()),
        name=str(raw.get("name") or DEFAULT_SEQUENCE_NAME),
        items=normalize_items(raw_items, schema),
        background_colour=background if isinstance(background, str) and background else DEFAULT_BACKGROUND_COLOUR,
        default_fade_type=default_fade,
        description=description if isinstance(description, str) else "",
        created_at=created_at,
        updated_at=updated_at,
    )
