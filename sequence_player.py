"""
Sequence Player - Playback scheduler for scene sequences

This module provides:
- PlaybackScheduler: stopped / playing / paused state machine that owns a
  single auto-advance timer and emits SceneLoadEvents to the renderer
- Item mutations routed through the scheduler so the playing pointer is
  corrected in the same locked step as the list change

Architecture:
- The store is the source of truth; every command and every timer fire
  re-reads the live sequence instead of a snapshot taken at arm time
- At most one timer is live. Each arm bumps a generation counter and a
  fire from an older generation is ignored
- The renderer is write-only: loads go out through `on_load_scene`, state
  changes through `on_state_change`

Version: 2.0.0
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Union

from playback_state import PlaybackCursor, PlaybackState, SceneLoadEvent
from reorder_coordinator import correct_pointer_for_delete
from scenes import SceneResolver
from sequence_errors import InvalidPatch
from sequence_schema import Sequence, SequenceItem
from sequences import SequenceStore

logger = logging.getLogger(__name__)


TimerFactory = Callable[[float, Callable[[], None]], Any]


def thread_timer(delay_seconds: float, callback: Callable[[], None]) -> threading.Timer:
    """Default timer factory: a daemon one-shot threading.Timer"""
    timer = threading.Timer(delay_seconds, callback)
    timer.daemon = True
    timer.start()
    return timer


class PlaybackScheduler:
    """
    Drives playback of the selected sequence.

    `selected_sequence_id` is what the user is looking at; the cursor's
    `sequence_id` is what play was pressed for. While the two differ
    (the user switched sequences without stopping) no loads are emitted
    and no timer is armed until `play()` or `jump_to()` adopts the
    selected sequence.
    """

    def __init__(self, store: SequenceStore, resolver: SceneResolver,
                 on_load_scene: Optional[Callable[[SceneLoadEvent], None]] = None,
                 on_state_change: Optional[Callable[[Dict[str, Any]], None]] = None,
                 timer_factory: Optional[TimerFactory] = None,
                 clock: Callable[[], float] = time.monotonic,
                 loop: bool = False):
        self.store = store
        self.resolver = resolver
        self.on_load_scene = on_load_scene
        self.on_state_change = on_state_change
        self.timer_factory = timer_factory or thread_timer
        self.clock = clock
        self.loop = loop

        self.lock = threading.RLock()
        self.cursor = PlaybackCursor()
        self.selected_sequence_id: Optional[str] = None

        self._timer = None
        self._timer_deadline: Optional[float] = None
        self._generation = 0

        self.store.subscribe(self._on_store_event)

    # ============================================================
    # Queries
    # ============================================================

    @property
    def state(self) -> PlaybackState:
        return self.cursor.state

    @property
    def current_index(self) -> int:
        return self.cursor.current_index

    def is_guarded(self) -> bool:
        """True while playback belongs to a sequence other than the selected one"""
        started_for = self.cursor.sequence_id
        return started_for is not None and started_for != self.selected_sequence_id

    def time_remaining(self) -> Optional[float]:
        """Seconds until auto-advance, None when no timer is armed"""
        with self.lock:
            if self._timer_deadline is None:
                return None
            return max(0.0, self._timer_deadline - self.clock())

    def status(self) -> dict:
        with self.lock:
            sequence = self._selected()
            item = self._item_at(sequence, self.cursor.current_index)
            status = self.cursor.to_dict()
            status.update({
                "selected_sequence_id": self.selected_sequence_id,
                "guarded": self.is_guarded(),
                "loop": self.loop,
                "item_count": len(sequence.items) if sequence else 0,
                "current_item_id": item.id if item and self.cursor.state != PlaybackState.STOPPED else None,
                "time_remaining": self.time_remaining(),
            })
            return status

    # ============================================================
    # Commands
    # ============================================================

    def select_sequence(self, sequence_id: Optional[str]):
        """Change the selected sequence. Never hijacks playback of another one."""
        with self.lock:
            if sequence_id == self.selected_sequence_id:
                return
            self.selected_sequence_id = sequence_id
            if self.cursor.state != PlaybackState.STOPPED:
                self._cancel_timer()
                self.cursor.current_index = 0
                if not self.is_guarded():
                    self._enter_current(load=self.cursor.state == PlaybackState.PLAYING)
            self._state_changed()

    def set_loop(self, loop: bool):
        with self.lock:
            self.loop = bool(loop)
            self._state_changed()

    def play(self, sequence_id: Optional[str] = None) -> bool:
        """
        Start, resume or restart playback.

        From stopped: start the selected sequence at index 0. From paused:
        resume at the current item. While playing a sequence other than the
        selected one: restart on the selected one. No-op for an empty or
        unknown sequence.
        """
        with self.lock:
            if sequence_id is not None and sequence_id != self.selected_sequence_id:
                self.select_sequence(sequence_id)

            sequence = self._selected()
            if sequence is None or not sequence.items:
                logger.debug("Play ignored: nothing to play for %s", self.selected_sequence_id)
                return False

            previous_state = self.cursor.state
            if previous_state == PlaybackState.PLAYING and not self.is_guarded():
                return False

            if previous_state == PlaybackState.STOPPED or self.is_guarded():
                self.cursor.current_index = 0
                self.cursor.sequence_id = sequence.id

            self.cursor.state = PlaybackState.PLAYING
            self._clamp_index(sequence)
            self._enter_current(load=True)
            if previous_state == PlaybackState.PAUSED:
                logger.info("▶️ Resumed %s at item %d", sequence.id, self.cursor.current_index)
            else:
                logger.info("▶️ Playing sequence: %s", sequence.name)
            self._state_changed()
            return True

    def pause(self) -> bool:
        with self.lock:
            if self.cursor.state != PlaybackState.PLAYING:
                return False
            self._cancel_timer()
            self.cursor.state = PlaybackState.PAUSED
            logger.info("⏸️ Paused at item %d", self.cursor.current_index)
            self._state_changed()
            return True

    def stop(self) -> bool:
        with self.lock:
            if self.cursor.state == PlaybackState.STOPPED:
                return False
            self._reset()
            logger.info("⏹️ Playback stopped")
            self._state_changed()
            return True

    def next(self) -> bool:
        """
        Advance one item. Wrapping past the end while playing stops
        playback unless looping; while paused it wraps freely.
        """
        with self.lock:
            if self.cursor.state == PlaybackState.STOPPED:
                return False
            sequence = self._selected()
            if sequence is None or not sequence.items:
                return self.stop()

            new_index = (self.cursor.current_index + 1) % len(sequence.items)
            if new_index == 0 and self.cursor.state == PlaybackState.PLAYING and not self.loop:
                logger.info("🏁 Reached end of %s", sequence.id)
                return self.stop()

            self._move_to(new_index)
            return True

    def previous(self) -> bool:
        with self.lock:
            if self.cursor.state == PlaybackState.STOPPED:
                return False
            sequence = self._selected()
            if sequence is None or not sequence.items:
                return self.stop()

            self._move_to((self.cursor.current_index - 1) % len(sequence.items))
            return True

    def jump_to(self, index: int) -> bool:
        """Explicit jump within the selected sequence; lifts the switch guard"""
        with self.lock:
            sequence = self._selected()
            count = len(sequence.items) if sequence else 0
            if not 0 <= index < count:
                raise InvalidPatch(f"Index {index} out of range for {count} items")

            self.cursor.current_index = index
            if self.cursor.state == PlaybackState.STOPPED:
                self._state_changed()
                return False

            self.cursor.sequence_id = sequence.id
            self._enter_current(load=self.cursor.state == PlaybackState.PLAYING)
            self._state_changed()
            return True

    def close(self):
        """Tear down: cancel the timer and detach from the store"""
        with self.lock:
            self._reset()
            self.store.unsubscribe(self._on_store_event)

    # ============================================================
    # Item mutations (pointer-aware)
    # ============================================================

    def _target(self, sequence_id: Optional[str]) -> Optional[str]:
        return sequence_id or self.selected_sequence_id

    def _tracks(self, sequence_id: Optional[str]) -> bool:
        return sequence_id == self.selected_sequence_id and self.cursor.state != PlaybackState.STOPPED

    def reorder(self, from_index: int, to_index: int, sequence_id: Optional[str] = None) -> Sequence:
        """Move an item and keep the pointer on the same logical item"""
        with self.lock:
            target = self._target(sequence_id)
            tracking = self._tracks(target)
            current = self.cursor.current_index if tracking else None
            sequence, pointer = self.store.reorder(target, from_index, to_index, current=current)
            if tracking and pointer != self.cursor.current_index:
                self.cursor.current_index = pointer
                self._state_changed()
            return sequence

    def add_item(self, scene_ref: Union[str, Dict[str, Any]], patch: Optional[Dict[str, Any]] = None,
                 sequence_id: Optional[str] = None) -> SequenceItem:
        with self.lock:
            return self.store.add_item(self._target(sequence_id), scene_ref, patch)

    def update_item(self, item_id: str, patch: Dict[str, Any], sequence_id: Optional[str] = None) -> bool:
        """
        Patch an item. While the current item is playing, a duration change
        re-arms its timer and a scene change reloads it. Other edits leave
        the running countdown alone.
        """
        with self.lock:
            target = self._target(sequence_id)
            before = self.store.get_sequence(target)
            changed = self.store.update_item(target, item_id, patch)
            if not changed or not self._tracks(target):
                return changed

            index = before.item_index(item_id)
            if index != self.cursor.current_index:
                return changed

            if self.cursor.state != PlaybackState.PLAYING:
                return changed
            old, new = before.items[index], self.store.get_sequence(target).items[index]
            scene_changed = new.scene_ref != old.scene_ref
            if scene_changed or new.auto_advance_seconds != old.auto_advance_seconds:
                self._enter_current(load=scene_changed)
            return changed

    def delete_item(self, item_id: str, sequence_id: Optional[str] = None) -> int:
        """
        Delete an item and correct the pointer.

        Deleting the current item keeps the pointer on the slot (the next
        item slides in and is loaded). Deleting it when it was last acts
        like reaching the end; deleting the only item stops playback.
        """
        with self.lock:
            target = self._target(sequence_id)
            deleted_index = self.store.delete_item(target, item_id)
            if not self._tracks(target):
                return deleted_index

            remaining = len(self.store.get_sequence(target).items)
            current = self.cursor.current_index
            pointer = correct_pointer_for_delete(current, deleted_index, remaining)
            playing = self.cursor.state == PlaybackState.PLAYING

            if remaining == 0:
                self.stop()
            elif pointer is None:
                if playing and not self.loop:
                    self.stop()
                else:
                    self._move_to(0)
            elif deleted_index == current:
                self._move_to(pointer)
            elif pointer != current:
                self.cursor.current_index = pointer
                self._state_changed()
            return deleted_index

    # ============================================================
    # Internals
    # ============================================================

    def _selected(self) -> Optional[Sequence]:
        return self.store.find_sequence(self.selected_sequence_id)

    @staticmethod
    def _item_at(sequence: Optional[Sequence], index: int) -> Optional[SequenceItem]:
        if sequence is None or not 0 <= index < len(sequence.items):
            return None
        return sequence.items[index]

    def _clamp_index(self, sequence: Sequence):
        if self.cursor.current_index >= len(sequence.items):
            self.cursor.current_index = 0

    def _move_to(self, index: int):
        self.cursor.current_index = index
        self._enter_current(load=self.cursor.state == PlaybackState.PLAYING)
        self._state_changed()

    def _reset(self):
        self._cancel_timer()
        self.cursor = PlaybackCursor()

    def _enter_current(self, load: bool):
        """
        (Re)enter the current item: cancel any timer, emit a load if asked,
        then arm the auto-advance timer if the item is timed. A scene that
        doesn't resolve is logged and treated like a manual item.
        """
        self._cancel_timer()
        if self.is_guarded():
            return

        sequence = self._selected()
        item = self._item_at(sequence, self.cursor.current_index)
        if item is None:
            return

        state = self.resolver.resolve(item)
        if state is None:
            logger.warning("⚠️ Scene for item %s (%s) not found; waiting for next",
                           item.id, item.scene_id)
            return

        if load:
            event = SceneLoadEvent(
                sequence_id=sequence.id,
                item_id=item.id,
                index=self.cursor.current_index,
                state=state,
                transition=sequence.transition_into(self.cursor.current_index),
                background_colour=sequence.background_colour,
            )
            self._emit_load(event)

        if self.cursor.state == PlaybackState.PLAYING:
            seconds = item.auto_advance_seconds
            if seconds is not None:
                self._arm_timer(seconds)

    def _arm_timer(self, seconds: float):
        self._cancel_timer()
        self._generation += 1
        generation = self._generation
        self._timer_deadline = self.clock() + seconds
        self._timer = self.timer_factory(seconds, lambda: self._on_timer(generation))

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._timer_deadline = None
        self._generation += 1

    def _on_timer(self, generation: int):
        with self.lock:
            if generation != self._generation or self.cursor.state != PlaybackState.PLAYING:
                return
            self._timer = None
            self._timer_deadline = None
            self.next()

    def _emit_load(self, event: SceneLoadEvent):
        if not self.on_load_scene:
            return
        try:
            self.on_load_scene(event)
        except Exception:
            logger.exception("Scene load callback failed for item %s", event.item_id)

    def _state_changed(self):
        if not self.on_state_change:
            return
        try:
            self.on_state_change(self.status())
        except Exception:
            logger.exception("Playback state callback failed")

    def _on_store_event(self, event: str, payload: Dict[str, Any]):
        if event != "sequence_deleted":
            return
        sequence_id = payload.get("sequence_id")
        with self.lock:
            affected = sequence_id in (self.selected_sequence_id, self.cursor.sequence_id)
            if sequence_id == self.selected_sequence_id:
                self.selected_sequence_id = None
            if affected and self.cursor.state != PlaybackState.STOPPED:
                logger.info("Sequence %s deleted during playback", sequence_id)
                self.stop()
