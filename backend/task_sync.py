"""
Client-side view of one task list: keeps an ordered copy of a live query and
pushes drag-and-drop reorders back to the store.
"""
import logging
from typing import Callable, Optional, TypeVar

from database import TaskStore, Unsubscribe
from errors import InvalidInputError
from models import Task, TaskCategory, TaskFilter

logger = logging.getLogger(__name__)

T = TypeVar("T")


def move_item(items: list[T], old_index: int, new_index: int) -> list[T]:
    """Return a copy of items with the element at old_index moved to new_index."""
    result = list(items)
    result.insert(new_index, result.pop(old_index))
    return result


class TaskListSync:
    """
    Owns the in-memory task list for one (user, category, filter) selection.

    The list changes only when the store pushes a snapshot or when reorder()
    applies a local move. on_change is called with the list after either.
    """

    def __init__(self, store: TaskStore, on_change: Optional[Callable[[list[Task]], None]] = None):
        self.store = store
        self.on_change = on_change
        self.tasks: list[Task] = []
        self.user_id: Optional[str] = None
        self.category = TaskCategory.ALL
        self.task_filter = TaskFilter.ALL
        self._unsubscribe: Optional[Unsubscribe] = None
        self._generation = 0

    def subscribe(self, user_id: str, category: TaskCategory, task_filter: TaskFilter):
        """Follow a new selection, dropping the previous one first."""
        self.unsubscribe()
        self.user_id = user_id
        self.category = category
        self.task_filter = task_filter
        generation = self._generation

        def deliver(tasks: list[Task]):
            # Snapshot from a replaced subscription
            if generation != self._generation:
                return
            self.tasks = list(tasks)
            self._emit()

        self._unsubscribe = self.store.subscribe(user_id, category, task_filter, deliver)

    def unsubscribe(self):
        self._generation += 1
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    @property
    def is_subscribed(self) -> bool:
        return self._unsubscribe is not None

    def reorder(self, old_index: int, new_index: int) -> bool:
        """
        Move the task at old_index to new_index and persist positions 0..N-1.

        The local order is updated before the write and stays as it is if the
        write raises. Returns False when nothing moved.
        """
        if old_index == new_index:
            return False
        size = len(self.tasks)
        if not (0 <= old_index < size and 0 <= new_index < size):
            raise InvalidInputError(
                f"Cannot move task from {old_index} to {new_index} in a list of {size}"
            )

        self.tasks = move_item(self.tasks, old_index, new_index)
        self._emit()

        ordered_ids = [task.id for task in self.tasks]
        logger.debug("Persisting order for user %s: %s", self.user_id, ordered_ids)
        # TODO: roll back self.tasks when this write fails once the UI can show a revert
        self.store.reorder_tasks(self.user_id, ordered_ids)
        return True

    def _emit(self):
        if self.on_change is not None:
            self.on_change(list(self.tasks))
