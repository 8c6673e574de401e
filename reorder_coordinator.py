"""
Reorder Coordinator - Drag-and-drop index math for ordered item lists

Moves are plain remove-then-insert array operations: the item at
`from_index` is removed and re-inserted at `to_index`, where `to_index` is
interpreted in the list AFTER removal. Any externally-held pointer (the
"currently playing" index) is corrected in the same call so it keeps
pointing at the same logical item.

Nothing here knows about drag libraries, storage or timers.
"""

from typing import List, Optional, Sequence as SequenceType, Tuple, TypeVar

T = TypeVar("T")


def array_move(items: SequenceType[T], from_index: int, to_index: int) -> List[T]:
    """Return a new list with items[from_index] moved to to_index"""
    count = len(items)
    if not 0 <= from_index < count:
        raise IndexError(f"from_index {from_index} out of range for {count} items")
    if not 0 <= to_index < count:
        raise IndexError(f"to_index {to_index} out of range for {count} items")

    moved = list(items)
    item = moved.pop(from_index)
    moved.insert(to_index, item)
    return moved


def correct_pointer_for_move(current: int, from_index: int, to_index: int) -> int:
    """
    Pointer correction after moving from_index -> to_index.

    - the moved item is the pointed-at one: follow it
    - an earlier item jumped past the pointer: shift down by one
    - a later item jumped in front of the pointer: shift up by one
    - otherwise unchanged
    """
    if from_index == current:
        return to_index
    if from_index < current <= to_index:
        return current - 1
    if to_index <= current < from_index:
        return current + 1
    return current


def correct_pointer_for_delete(current: int, deleted_index: int, remaining: int) -> Optional[int]:
    """
    Pointer correction after deleting deleted_index.

    Returns the new pointer, or None when nothing is left to point at
    (the list is empty, or the pointed-at item was the last one).
    Deleting the pointed-at item leaves the pointer on the item that slid
    into its slot.
    """
    if remaining <= 0:
        return None
    if deleted_index < current:
        return current - 1
    if deleted_index == current and current >= remaining:
        return None
    return current


class ReorderCoordinator:
    """
    Applies a move to a list and corrects an external pointer atomically.

    Stateless; callers hold whatever lock protects both the list and the
    pointer for the duration of `move`.
    """

    @staticmethod
    def move(items: SequenceType[T], from_index: int, to_index: int,
             current: Optional[int] = None) -> Tuple[List[T], Optional[int]]:
        moved = array_move(items, from_index, to_index)
        if current is None:
            return moved, None
        return moved, correct_pointer_for_move(current, from_index, to_index)
