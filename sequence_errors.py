"""
Sequence Errors - Exception taxonomy for the sequence engine

Store-layer errors are raised synchronously and handled at the UI boundary
(the Flask blueprints). The playback scheduler never raises these for
missing scenes or empty sequences; it logs and idles instead.
"""

from typing import List, Optional


class SequenceError(Exception):
    """Base class for all sequence engine errors"""


class NoScenesAvailable(SequenceError):
    """Raised when adding an item while the scene catalog is empty"""

    def __init__(self, message: str = "No scenes available - save a scene first"):
        super().__init__(message)


class MalformedImport(SequenceError):
    """Raised when imported JSON can't be parsed or is missing required fields.

    The import is aborted as a whole; `problems` lists every issue found.
    """

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "Malformed import")


class NameConflict(SequenceError):
    """Raised when saving a scene under a name another scene already uses"""

    def __init__(self, existing_scene_id: str, existing_scene_name: str):
        self.existing_scene_id = existing_scene_id
        self.existing_scene_name = existing_scene_name
        super().__init__(f"A scene named '{existing_scene_name}' already exists")

    def to_dict(self) -> dict:
        return {
            "existing_scene_id": self.existing_scene_id,
            "existing_scene_name": self.existing_scene_name,
        }


class SceneNotFound(SequenceError):
    """A catalog lookup by id that found nothing.

    Only raised by the scenes API. Validation and playback report missing
    scenes without raising.
    """

    def __init__(self, scene_id: Optional[str]):
        self.scene_id = scene_id
        super().__init__(f"Scene not found: {scene_id}")


class SequenceNotFound(SequenceError):
    def __init__(self, sequence_id: str):
        self.sequence_id = sequence_id
        super().__init__(f"Sequence not found: {sequence_id}")


class ItemNotFound(SequenceError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Sequence item not found: {item_id}")


class InvalidPatch(SequenceError):
    """Raised for patches with unknown fields, bad values or out-of-range indices"""
