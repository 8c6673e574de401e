"""
Playback State - Cursor and load event types for sequence playback

Extracted from sequence_player.py so the blueprints and tests can use the
types without pulling in the scheduler.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from sequence_schema import Transition


class PlaybackState(Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass
class PlaybackCursor:
    """
    Where playback is. `sequence_id` is the sequence playback was started
    for, which may differ from the sequence the user has selected.
    """
    current_index: int = 0
    state: PlaybackState = PlaybackState.STOPPED
    sequence_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "current_index": self.current_index,
            "state": self.state.value,
            "sequence_id": self.sequence_id,
        }


@dataclass
class SceneLoadEvent:
    """Delivered to the renderer whenever playback enters an item"""
    sequence_id: str
    item_id: str
    index: int
    state: Dict[str, Any] = field(default_factory=dict)
    transition: Optional[Transition] = None
    background_colour: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "sequence_id": self.sequence_id,
            "item_id": self.item_id,
            "index": self.index,
            "state": self.state,
            "transition": self.transition.to_dict() if self.transition else None,
            "background_colour": self.background_colour,
        }
