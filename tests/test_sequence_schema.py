"""
Pixli - Sequence Schema Tests

Tests cover normalization of both on-disk shapes:
1. Legacy flat `items` records
2. Current `scenes` records
3. Idempotence
4. Transitions between items
"""

import pytest
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sequence_errors import MalformedImport
from sequence_schema import (
    MAX_DURATION_SECONDS,
    SCHEMA_CURRENT,
    SCHEMA_LEGACY,
    Sequence,
    SequenceItem,
    detect_schema,
    normalize_items,
    normalize_sequence,
)


LEGACY_RECORD = {
    "id": "seq-legacy",
    "name": "Old Show",
    "items": [
        {"id": "i1", "presetId": "scene-1", "duration": 5, "transition": "fade", "order": 0},
        {"id": "i2", "sceneId": "scene-2", "duration": 0, "transition": "instant", "order": 1},
        {"id": "i3", "inlinePresetJson": {"hue": 10}, "duration": 3, "transition": "smooth", "order": 2},
    ],
    "createdAt": 1700000000000,
    "updatedAt": 1700000001000,
}

CURRENT_RECORD = {
    "schemaVersion": 2,
    "id": "seq-current",
    "name": "New Show",
    "backgroundColour": "#112233",
    "defaultFadeType": "crossfade",
    "scenes": [
        {"id": "a", "sceneId": "scene-1", "durationMode": "seconds", "durationSeconds": 4, "order": 0},
        {"id": "b", "inlineSceneJson": {"hue": 200}, "durationMode": "manual", "order": 1,
         "fadeTypeOverride": "fadeToBlack", "fadeDurationSeconds": 3},
    ],
    "createdAt": 1700000000000,
    "updatedAt": 1700000002000,
}


class TestDetectSchema:

    def test_explicit_tag_wins(self):
        assert detect_schema({"schemaVersion": 1, "scenes": [{"sceneId": "x"}]}) == SCHEMA_LEGACY
        assert detect_schema({"schemaVersion": 2, "items": [{"sceneId": "x"}]}) == SCHEMA_CURRENT

    def test_heuristic(self):
        assert detect_schema(LEGACY_RECORD) == SCHEMA_LEGACY
        assert detect_schema({"scenes": [{"sceneId": "x"}]}) == SCHEMA_CURRENT

    def test_empty_sequence_is_current(self):
        assert detect_schema({"items": []}) == SCHEMA_CURRENT
        assert detect_schema({"scenes": []}) == SCHEMA_CURRENT
        assert detect_schema({}) == SCHEMA_CURRENT


class TestLegacyNormalization:

    def test_items_mapped(self):
        seq = normalize_sequence(LEGACY_RECORD)
        first, second, third = seq.items

        assert first.scene_id == "scene-1"
        assert first.duration_mode == "seconds"
        assert first.duration_seconds == 5
        assert first.transition == "crossfade"

        assert second.duration_mode == "manual"
        assert second.duration_seconds is None
        assert second.transition == "cut"

        assert third.inline_scene == {"hue": 10}
        assert third.transition == "crossfade"

    def test_defaults_filled(self):
        seq = normalize_sequence(LEGACY_RECORD)
        assert seq.background_colour == "#000000"
        assert seq.default_fade_type == "cut"
        assert seq.created_at == 1700000000000

    def test_output_is_current_shape(self):
        data = normalize_sequence(LEGACY_RECORD).to_dict()
        assert data["schemaVersion"] == 2
        assert "items" not in data
        assert [s["id"] for s in data["scenes"]] == ["i1", "i2", "i3"]
        assert data["scenes"][0]["sceneId"] == "scene-1"


class TestCurrentNormalization:

    def test_fields_kept(self):
        seq = normalize_sequence(CURRENT_RECORD)
        assert seq.background_colour == "#112233"
        assert seq.default_fade_type == "crossfade"
        assert seq.items[1].transition == "fadeToBlack"
        assert seq.items[1].fade_duration_seconds == 3

    def test_zero_seconds_is_manual(self):
        seq = normalize_sequence({"scenes": [{"sceneId": "x", "durationMode": "seconds", "durationSeconds": 0}]})
        assert seq.items[0].duration_mode == "manual"
        assert seq.items[0].auto_advance_seconds is None

    def test_order_sorted_and_densified(self):
        raw = {"scenes": [
            {"id": "c", "sceneId": "x", "order": 7},
            {"id": "a", "sceneId": "x", "order": 1},
            {"id": "b", "sceneId": "x", "order": 3},
        ]}
        seq = normalize_sequence(raw)
        assert [i.id for i in seq.items] == ["a", "b", "c"]
        assert [i.order for i in seq.items] == [0, 1, 2]

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), "NaN", "-Infinity"])
    def test_non_finite_numbers_ignored(self, value):
        seq = normalize_sequence({"createdAt": value, "scenes": [
            {"sceneId": "x", "durationMode": "seconds", "durationSeconds": value,
             "fadeDurationSeconds": value, "order": value},
        ]})
        item = seq.items[0]
        assert item.duration_mode == "manual"
        assert item.fade_duration_seconds is None
        assert item.order == 0
        assert seq.created_at > 0

    def test_durations_clamped(self):
        seq = normalize_sequence({"scenes": [
            {"sceneId": "x", "durationSeconds": 10 ** 9, "fadeDurationSeconds": 10 ** 9},
        ]})
        assert seq.items[0].duration_seconds == MAX_DURATION_SECONDS
        assert seq.items[0].fade_duration_seconds == MAX_DURATION_SECONDS

    def test_unknown_fade_type_falls_back(self):
        seq = normalize_sequence({"defaultFadeType": "wipe", "scenes": []})
        assert seq.default_fade_type == "cut"

    def test_non_object_rejected(self):
        with pytest.raises(MalformedImport):
            normalize_sequence(["not", "a", "sequence"])

    def test_non_object_item_rejected(self):
        with pytest.raises(MalformedImport):
            normalize_items(["nope"])


class TestIdempotence:

    @pytest.mark.parametrize("record", [LEGACY_RECORD, CURRENT_RECORD], ids=["legacy", "current"])
    def test_normalize_twice(self, record):
        once = normalize_sequence(record)
        assert normalize_sequence(once) == once
        assert normalize_sequence(once.to_dict()) == once


class TestTransitions:

    def test_first_item_has_no_transition(self):
        seq = normalize_sequence(CURRENT_RECORD)
        assert seq.transition_into(0) is None

    def test_uses_previous_item_override(self):
        seq = Sequence(id="s", name="s", items=[
            SequenceItem(id="a", transition="fadeToBlack", fade_duration_seconds=4),
            SequenceItem(id="b", order=1),
        ])
        transition = seq.transition_into(1)
        assert transition.fade_type == "fadeToBlack"
        assert transition.duration_seconds == 4.0

    def test_default_fade_duration(self):
        seq = Sequence(id="s", name="s", default_fade_type="crossfade",
                       items=[SequenceItem(id="a"), SequenceItem(id="b", order=1)])
        assert seq.transition_into(1).duration_seconds == 1.5

    def test_totals(self):
        seq = normalize_sequence(CURRENT_RECORD)
        assert seq.total_duration_seconds == 4
        assert seq.has_manual_items
