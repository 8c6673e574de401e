"""
Pixli - Sequence Player Tests

Tests cover the playback scheduler:
1. play / pause / stop / next / previous state machine
2. Timed auto-advance on a simulated clock
3. Sequence-switch guard
4. Missing scenes and stale timers
5. Reorder / delete / update while playing
"""

import pytest
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from playback_state import PlaybackState
from scenes import SceneResolver, ScenesManager
from sequence_errors import InvalidPatch
from sequence_player import PlaybackScheduler
from sequences import SequenceStore, SequencesManager


# ============================================================
# Simulated timers
# ============================================================

class FakeTimer:
    def __init__(self, deadline, callback):
        self.deadline = deadline
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeTimers:
    """Timer factory + clock driven by advance()"""

    def __init__(self):
        self.now = 0.0
        self.created = []

    def clock(self):
        return self.now

    def factory(self, delay, callback):
        timer = FakeTimer(self.now + delay, callback)
        self.created.append(timer)
        return timer

    @property
    def live(self):
        return [t for t in self.created if not t.cancelled and t.deadline is not None]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = sorted((t for t in self.live if t.deadline <= target), key=lambda t: t.deadline)
            if not due:
                break
            timer = due[0]
            self.now = timer.deadline
            timer.deadline = None  # fired
            timer.callback()
        self.now = target


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def scenes(tmp_path):
    manager = ScenesManager(str(tmp_path / "player.db"), default_state={"speed": 1.0})
    for name in ("A", "B", "C", "D", "E"):
        manager.save_scene(name, {"label": name})
    return manager


@pytest.fixture
def scene_ids(scenes):
    return {s.name: s.id for s in scenes.get_all_scenes()}


@pytest.fixture
def store(tmp_path, scenes):
    return SequenceStore(SequencesManager(str(tmp_path / "player.db")), scenes)


@pytest.fixture
def timers():
    return FakeTimers()


@pytest.fixture
def loads():
    return []


@pytest.fixture
def player(store, scenes, timers, loads):
    scheduler = PlaybackScheduler(store, SceneResolver(scenes), on_load_scene=loads.append,
                                  timer_factory=timers.factory, clock=timers.clock)
    yield scheduler
    scheduler.close()


def make_sequence(store, scene_ids, names, durations=None, name="Show", **extra):
    durations = durations or [None] * len(names)
    raw_items = []
    for scene_name, seconds in zip(names, durations):
        item = {"sceneId": scene_ids.get(scene_name, scene_name), "name": scene_name}
        if seconds:
            item.update({"durationMode": "seconds", "durationSeconds": seconds})
        else:
            item["durationMode"] = "manual"
        raw_items.append(item)
    record = {"name": name, "scenes": raw_items}
    record.update(extra)
    return store.save_sequence(record)


def loaded_names(loads):
    return [event.state["label"] for event in loads]


# ============================================================
# State machine
# ============================================================

class TestPlaybackStateMachine:

    def test_play_from_stopped_loads_first_item(self, player, store, scene_ids, loads):
        seq = make_sequence(store, scene_ids, ["A", "B"])
        player.select_sequence(seq.id)

        assert player.play() is True
        assert player.state == PlaybackState.PLAYING
        assert player.current_index == 0
        assert player.cursor.sequence_id == seq.id
        assert loaded_names(loads) == ["A"]

    def test_loaded_state_merges_scene_defaults(self, player, store, scene_ids, loads):
        seq = make_sequence(store, scene_ids, ["A"])
        player.play(seq.id)
        assert loads[0].state == {"speed": 1.0, "label": "A"}
        assert loads[0].background_colour == "#000000"

    def test_play_empty_sequence_is_noop(self, player, store, loads):
        seq = store.create_sequence("Empty")
        player.select_sequence(seq.id)

        assert player.play() is False
        assert player.state == PlaybackState.STOPPED
        assert loads == []

    def test_play_without_selection_is_noop(self, player):
        assert player.play() is False
        assert player.state == PlaybackState.STOPPED

    def test_pause_and_resume(self, player, store, scene_ids, timers, loads):
        seq = make_sequence(store, scene_ids, ["A", "B"], [2, None])
        player.play(seq.id)
        timers.advance(1)

        assert player.pause() is True
        assert player.state == PlaybackState.PAUSED
        assert timers.live == []
        timers.advance(10)
        assert player.current_index == 0

        assert player.play() is True
        assert player.state == PlaybackState.PLAYING
        assert player.current_index == 0
        assert len(timers.live) == 1
        assert loaded_names(loads) == ["A", "A"]

    def test_pause_when_not_playing(self, player):
        assert player.pause() is False

    def test_stop_resets_cursor(self, player, store, scene_ids, timers):
        seq = make_sequence(store, scene_ids, ["A", "B"], [2, 2])
        player.play(seq.id)
        player.next()

        assert player.stop() is True
        assert player.state == PlaybackState.STOPPED
        assert player.current_index == 0
        assert player.cursor.sequence_id is None
        assert timers.live == []
        assert player.stop() is False

    def test_next_and_previous_ignored_when_stopped(self, player, store, scene_ids):
        seq = make_sequence(store, scene_ids, ["A", "B"])
        player.select_sequence(seq.id)
        assert player.next() is False
        assert player.previous() is False
        assert player.current_index == 0

    def test_previous_wraps_freely(self, player, store, scene_ids, loads):
        seq = make_sequence(store, scene_ids, ["A", "B", "C"])
        player.play(seq.id)

        player.previous()
        assert player.current_index == 2
        assert player.state == PlaybackState.PLAYING
        assert loaded_names(loads) == ["A", "C"]

    def test_next_wrap_while_playing_stops(self, player, store, scene_ids):
        seq = make_sequence(store, scene_ids, ["A", "B"])
        player.play(seq.id)
        player.next()
        player.next()
        assert player.state == PlaybackState.STOPPED
        assert player.current_index == 0

    def test_next_wrap_while_paused_keeps_paused(self, player, store, scene_ids, loads):
        seq = make_sequence(store, scene_ids, ["A", "B"])
        player.play(seq.id)
        player.next()
        player.pause()

        player.next()
        assert player.state == PlaybackState.PAUSED
        assert player.current_index == 0
        # No loads while paused
        assert loaded_names(loads) == ["A", "B"]

    def test_loop_wraps_to_start(self, player, store, scene_ids, loads):
        seq = make_sequence(store, scene_ids, ["A", "B"])
        player.set_loop(True)
        player.play(seq.id)
        player.next()
        player.next()
        assert player.state == PlaybackState.PLAYING
        assert player.current_index == 0
        assert loaded_names(loads) == ["A", "B", "A"]

    def test_jump_to_loads_item(self, player, store, scene_ids, loads):
        seq = make_sequence(store, scene_ids, ["A", "B", "C"])
        player.play(seq.id)
        assert player.jump_to(2) is True
        assert player.current_index == 2
        assert loaded_names(loads) == ["A", "C"]

    def test_jump_to_out_of_range(self, player, store, scene_ids):
        seq = make_sequence(store, scene_ids, ["A"])
        player.play(seq.id)
        with pytest.raises(InvalidPatch):
            player.jump_to(3)

    def test_state_change_callback(self, store, scenes, scene_ids, timers):
        updates = []
        scheduler = PlaybackScheduler(store, SceneResolver(scenes), on_state_change=updates.append,
                                      timer_factory=timers.factory, clock=timers.clock)
        seq = make_sequence(store, scene_ids, ["A"])
        scheduler.play(seq.id)
        scheduler.stop()
        assert [u["state"] for u in updates][-2:] == ["playing", "stopped"]
        scheduler.close()


# ============================================================
# Timers
# ============================================================

class TestAutoAdvance:

    def test_timed_then_manual_scenario(self, player, store, scene_ids, timers, loads):
        """[2s, manual]: auto-advance once, wait, then next() wraps and stops"""
        seq = make_sequence(store, scene_ids, ["A", "B"], [2, None])
        player.play(seq.id)
        assert len(timers.live) == 1

        timers.advance(1.999)
        assert player.current_index == 0

        timers.advance(0.001)
        assert player.current_index == 1
        assert player.state == PlaybackState.PLAYING
        assert timers.live == []
        assert loaded_names(loads) == ["A", "B"]

        player.next()
        assert player.state == PlaybackState.STOPPED
        assert player.current_index == 0

    def test_timed_sequence_ends_on_its_own(self, player, store, scene_ids, timers):
        seq = make_sequence(store, scene_ids, ["A", "B"], [1, 1])
        player.play(seq.id)
        timers.advance(5)
        assert player.state == PlaybackState.STOPPED

    def test_at_most_one_live_timer(self, player, store, scene_ids, timers):
        seq = make_sequence(store, scene_ids, ["A", "B", "C"], [2, 2, 2])
        player.play(seq.id)
        player.next()
        player.previous()
        player.jump_to(2)
        assert len(timers.live) == 1

    def test_stale_timer_is_ignored(self, player, store, scene_ids, timers):
        seq = make_sequence(store, scene_ids, ["A", "B", "C"], [2, None, None])
        player.play(seq.id)
        stale = timers.live[0]

        player.next()
        assert stale.cancelled
        # A cancelled timer that fires anyway must not advance
        stale.callback()
        assert player.current_index == 1
        assert player.state == PlaybackState.PLAYING

    def test_time_remaining(self, player, store, scene_ids, timers):
        seq = make_sequence(store, scene_ids, ["A", "B"], [4, None])
        assert player.time_remaining() is None
        player.play(seq.id)
        timers.advance(1.5)
        assert player.time_remaining() == pytest.approx(2.5)
        player.pause()
        assert player.time_remaining() is None

    def test_timer_rereads_live_items(self, player, store, scene_ids, timers, loads):
        seq = make_sequence(store, scene_ids, ["A", "B", "C"], [2, None, None])
        player.play(seq.id)
        # Changed directly in the store while the timer is pending
        second = store.get_sequence(seq.id).items[1]
        store.delete_item(seq.id, second.id)

        timers.advance(2)
        assert player.current_index == 1
        assert loaded_names(loads) == ["A", "C"]

    def test_close_cancels_timer(self, store, scenes, scene_ids, timers):
        scheduler = PlaybackScheduler(store, SceneResolver(scenes), timer_factory=timers.factory,
                                      clock=timers.clock)
        seq = make_sequence(store, scene_ids, ["A", "B"], [2, 2])
        scheduler.play(seq.id)
        scheduler.close()
        assert timers.live == []
        assert scheduler.state == PlaybackState.STOPPED


# ============================================================
# Transitions
# ============================================================

class TestTransitions:

    def test_transition_comes_from_previous_item(self, player, store, scene_ids, loads):
        seq = store.save_sequence({
            "name": "Fades",
            "defaultFadeType": "cut",
            "scenes": [
                {"sceneId": scene_ids["A"], "fadeTypeOverride": "crossfade", "fadeDurationSeconds": 2},
                {"sceneId": scene_ids["B"]},
                {"sceneId": scene_ids["C"]},
            ],
        })
        player.play(seq.id)
        player.next()
        player.next()

        assert loads[0].transition is None
        assert loads[1].transition.fade_type == "crossfade"
        assert loads[1].transition.duration_seconds == 2.0
        assert loads[2].transition.fade_type == "cut"
        assert loads[2].transition.duration_seconds == 0.0


# ============================================================
# Sequence-switch guard
# ============================================================

class TestSequenceSwitchGuard:

    @pytest.fixture
    def two_sequences(self, store, scene_ids):
        s1 = make_sequence(store, scene_ids, ["A", "B"], [2, 2], name="S1")
        s2 = make_sequence(store, scene_ids, ["C", "D"], [2, 2], name="S2")
        return s1, s2

    def test_switching_does_not_hijack_playback(self, player, two_sequences, timers, loads):
        s1, s2 = two_sequences
        player.play(s1.id)
        assert loaded_names(loads) == ["A"]

        player.select_sequence(s2.id)
        assert player.is_guarded()
        assert player.current_index == 0
        assert loaded_names(loads) == ["A"]
        assert timers.live == []

        player.next()
        timers.advance(10)
        assert loaded_names(loads) == ["A"]

    def test_play_adopts_selected_sequence(self, player, two_sequences, loads):
        s1, s2 = two_sequences
        player.play(s1.id)
        player.select_sequence(s2.id)

        assert player.play() is True
        assert not player.is_guarded()
        assert player.cursor.sequence_id == s2.id
        assert loaded_names(loads) == ["A", "C"]

    def test_jump_bypasses_guard(self, player, two_sequences, loads):
        s1, s2 = two_sequences
        player.play(s1.id)
        player.select_sequence(s2.id)

        player.jump_to(1)
        assert player.cursor.sequence_id == s2.id
        assert loaded_names(loads) == ["A", "D"]

    def test_switching_back_resumes_loads(self, player, two_sequences, loads):
        s1, s2 = two_sequences
        player.play(s1.id)
        player.select_sequence(s2.id)
        player.select_sequence(s1.id)
        assert not player.is_guarded()
        assert loaded_names(loads) == ["A", "A"]

    def test_switching_while_stopped_is_not_guarded(self, player, two_sequences, loads):
        s1, s2 = two_sequences
        player.select_sequence(s1.id)
        player.select_sequence(s2.id)
        assert not player.is_guarded()
        player.play()
        assert loaded_names(loads) == ["C"]


# ============================================================
# Missing scenes
# ============================================================

class TestDanglingReference:

    def test_missing_scene_emits_no_load_and_waits(self, player, store, scene_ids, timers, loads):
        seq = make_sequence(store, scene_ids, ["A", "missing-scene", "C"], [1, 1, 1])
        player.play(seq.id)
        timers.advance(1)

        assert player.current_index == 1
        assert player.state == PlaybackState.PLAYING
        assert loaded_names(loads) == ["A"]
        # Behaves like a manual item
        assert timers.live == []

        player.next()
        assert loaded_names(loads) == ["A", "C"]

    def test_missing_scene_is_logged(self, player, store, scene_ids, caplog):
        seq = make_sequence(store, scene_ids, ["missing-scene"])
        with caplog.at_level("WARNING", logger="sequence_player"):
            player.play(seq.id)
        assert "not found" in caplog.text

    def test_inline_scene_loads_without_catalog(self, player, store, loads):
        seq = store.save_sequence({"name": "Inline", "scenes": [{"inlineSceneJson": {"label": "Z"}}]})
        player.play(seq.id)
        assert loads[0].state == {"speed": 1.0, "label": "Z"}


# ============================================================
# Mutations while playing
# ============================================================

class TestMutationsWhilePlaying:

    @pytest.fixture
    def five(self, store, scene_ids):
        return make_sequence(store, scene_ids, ["A", "B", "C", "D", "E"])

    def _current_name(self, player, store):
        seq = store.get_sequence(player.selected_sequence_id)
        return seq.items[player.current_index].name

    @pytest.mark.parametrize("from_index,to_index,expected", [
        (0, 3, 1),
        (4, 1, 3),
        (2, 4, 4),
        (3, 4, 2),
    ])
    def test_reorder_keeps_pointer_on_item(self, player, store, five, from_index, to_index, expected):
        player.play(five.id)
        player.jump_to(2)

        player.reorder(from_index, to_index)
        assert player.current_index == expected
        assert self._current_name(player, store) == "C"
        assert [i.order for i in store.get_sequence(five.id).items] == [0, 1, 2, 3, 4]

    def test_reorder_does_not_reload(self, player, store, five, loads):
        player.play(five.id)
        player.jump_to(2)
        before = len(loads)
        player.reorder(0, 4)
        assert len(loads) == before

    def test_delete_earlier_item_shifts_pointer(self, player, store, five):
        player.play(five.id)
        player.jump_to(2)
        first = store.get_sequence(five.id).items[0]

        player.delete_item(first.id)
        assert player.current_index == 1
        assert self._current_name(player, store) == "C"

    def test_delete_current_item_loads_next(self, player, store, five, loads):
        player.play(five.id)
        player.jump_to(2)
        current = store.get_sequence(five.id).items[2]

        player.delete_item(current.id)
        assert player.current_index == 2
        assert player.state == PlaybackState.PLAYING
        assert loaded_names(loads)[-1] == "D"

    def test_delete_current_last_item_stops(self, player, store, five):
        player.play(five.id)
        player.jump_to(4)
        last = store.get_sequence(five.id).items[4]

        player.delete_item(last.id)
        assert player.state == PlaybackState.STOPPED

    def test_delete_only_item_stops(self, player, store, scene_ids):
        seq = make_sequence(store, scene_ids, ["A"])
        player.play(seq.id)
        player.delete_item(store.get_sequence(seq.id).items[0].id)
        assert player.state == PlaybackState.STOPPED

    def test_delete_later_item_keeps_pointer(self, player, store, five):
        player.play(five.id)
        player.jump_to(1)
        player.delete_item(store.get_sequence(five.id).items[3].id)
        assert player.current_index == 1

    def test_update_current_duration_rearms(self, player, store, scene_ids, timers):
        seq = make_sequence(store, scene_ids, ["A", "B"], [2, None])
        player.play(seq.id)
        timers.advance(1)

        item = store.get_sequence(seq.id).items[0]
        assert player.update_item(item.id, {"duration_seconds": 5}) is True
        assert len(timers.live) == 1
        assert player.time_remaining() == pytest.approx(5)

        timers.advance(4.9)
        assert player.current_index == 0
        timers.advance(0.2)
        assert player.current_index == 1

    def test_update_current_notes_keeps_countdown(self, player, store, scene_ids, timers, loads):
        seq = make_sequence(store, scene_ids, ["A", "B"], [10, None])
        player.play(seq.id)
        timers.advance(9)
        timer = timers.live[0]

        item = store.get_sequence(seq.id).items[0]
        assert player.update_item(item.id, {"notes": "slow build", "name": "Intro"}) is True
        assert not timer.cancelled
        assert player.time_remaining() == pytest.approx(1)
        assert loaded_names(loads) == ["A"]

        timers.advance(1.5)
        assert player.current_index == 1

    def test_update_current_fade_keeps_countdown(self, player, store, scene_ids, timers):
        seq = make_sequence(store, scene_ids, ["A", "B"], [10, None])
        player.play(seq.id)
        timers.advance(4)

        item = store.get_sequence(seq.id).items[0]
        player.update_item(item.id, {"transition": "crossfade", "fade_duration_seconds": 3})
        assert player.time_remaining() == pytest.approx(6)

    def test_update_current_scene_reloads(self, player, store, scene_ids, loads):
        seq = make_sequence(store, scene_ids, ["A", "B"])
        player.play(seq.id)
        item = store.get_sequence(seq.id).items[0]

        player.update_item(item.id, {"scene_id": scene_ids["E"]})
        assert loaded_names(loads) == ["A", "E"]

    def test_noop_update_does_not_reload(self, player, store, scene_ids, loads, timers):
        seq = make_sequence(store, scene_ids, ["A", "B"], [2, None])
        player.play(seq.id)
        item = store.get_sequence(seq.id).items[0]
        timer = timers.live[0]

        assert player.update_item(item.id, {"duration": 2}) is False
        assert not timer.cancelled
        assert loaded_names(loads) == ["A"]

    def test_deleting_playing_sequence_stops(self, player, store, scene_ids, timers):
        seq = make_sequence(store, scene_ids, ["A", "B"], [2, 2])
        player.play(seq.id)
        store.delete_sequence(seq.id)

        assert player.state == PlaybackState.STOPPED
        assert player.selected_sequence_id is None
        assert timers.live == []

    def test_mutating_other_sequence_leaves_cursor(self, player, store, scene_ids, five):
        other = make_sequence(store, scene_ids, ["A", "B", "C"], name="Other")
        player.play(five.id)
        player.jump_to(2)
        player.reorder(0, 2, sequence_id=other.id)
        player.delete_item(store.get_sequence(other.id).items[0].id, sequence_id=other.id)
        assert player.current_index == 2
