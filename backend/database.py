import logging
import os
import secrets
import sqlite3
import subprocess
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Optional

from errors import InvalidInputError, StoreError, TaskNotFoundError
from models import Priority, Task, TaskCategory, TaskFilter, User

logger = logging.getLogger(__name__)

TaskCallback = Callable[[list[Task]], None]
Unsubscribe = Callable[[], None]

# Columns a task update may touch. id, user_id and created_at never change.
UPDATABLE_FIELDS = ("text", "completed", "priority", "due_date", "category", "position")


def init_db(database_path: str):
    """Initialize database by running Alembic migrations."""
    backend_dir = os.path.dirname(os.path.abspath(__file__))
    env = dict(os.environ, DATABASE_PATH=os.path.abspath(database_path))
    subprocess.run(
        ["alembic", "upgrade", "head"],
        cwd=backend_dir,
        env=env,
        check=True
    )


def _row_to_task(row) -> Task:
    """Convert a database row to a Task model."""
    return Task(
        id=row["id"],
        user_id=row["user_id"],
        text=row["text"],
        category=row["category"],
        completed=bool(row["completed"]),
        priority=row["priority"] or Priority.MEDIUM,
        due_date=row["due_date"],
        position=row["position"] if row["position"] is not None else 0,
        created_at=row["created_at"],
    )


def _to_column(value):
    """Convert a model value to what SQLite stores."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (TaskCategory, Priority)):
        return value.value
    return value


class _Subscription:
    """One live query. Delivery and cancellation share a lock so nothing fires after cancel."""

    def __init__(self, user_id: str, category: TaskCategory, task_filter: TaskFilter, callback: TaskCallback):
        self.user_id = user_id
        self.category = category
        self.task_filter = task_filter
        self.callback = callback
        self.active = True
        self.lock = threading.RLock()


class TaskStore:
    """
    Document store for tasks, users, sessions and per-user API keys.

    Every task query and mutation is scoped to a user id. Mutations push the full
    current result of each of that user's live queries to its subscriber.
    """

    def __init__(self, database_path: str):
        self.database_path = database_path
        self._subscriptions: list[_Subscription] = []
        self._lock = threading.Lock()

    @contextmanager
    def get_db(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(self.database_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def close(self):
        """Cancel every live query. The store can't deliver anything afterwards."""
        with self._lock:
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            with subscription.lock:
                subscription.active = False

    # Tasks

    def list_tasks(
        self,
        user_id: str,
        category: TaskCategory = TaskCategory.ALL,
        task_filter: TaskFilter = TaskFilter.ALL
    ) -> list[Task]:
        """Tasks owned by user_id, narrowed by category and completion, in position order."""
        clauses = ["user_id = ?"]
        params: list = [user_id]
        if category is not TaskCategory.ALL:
            clauses.append("category = ?")
            params.append(category.value)
        if task_filter is TaskFilter.ACTIVE:
            clauses.append("completed = 0")
        elif task_filter is TaskFilter.COMPLETED:
            clauses.append("completed = 1")

        with self.get_db() as conn:
            rows = conn.execute(
                f"SELECT * FROM tasks WHERE {' AND '.join(clauses)} ORDER BY position, created_at",
                params
            ).fetchall()
            return [_row_to_task(row) for row in rows]

    def get_task(self, user_id: str, task_id: str) -> Optional[Task]:
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE id = ? AND user_id = ?",
                (task_id, user_id)
            ).fetchone()
            return _row_to_task(row) if row else None

    def create_task(
        self,
        user_id: str,
        text: str,
        category: TaskCategory,
        priority: Priority = Priority.MEDIUM,
        due_date: Optional[str] = None
    ) -> Task:
        """Create a task at the end of its user+category ordering."""
        text = text.strip()
        if not text:
            raise InvalidInputError("Task text cannot be empty")
        if category is TaskCategory.ALL:
            raise InvalidInputError("Tasks must be filed under a specific category")

        task_id = str(uuid.uuid4())
        created_at = datetime.now().isoformat()
        try:
            with self.get_db() as conn:
                last = conn.execute(
                    "SELECT MAX(position) FROM tasks WHERE user_id = ? AND category = ?",
                    (user_id, category.value)
                ).fetchone()[0]
                position = 0 if last is None else last + 1
                conn.execute(
                    """INSERT INTO tasks
                       (id, user_id, text, category, completed, priority, due_date, position, created_at)
                       VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?)""",
                    (task_id, user_id, text, category.value, priority.value, due_date, position, created_at)
                )
                conn.commit()
        except sqlite3.Error as e:
            logger.exception("Error adding task for user %s", user_id)
            raise StoreError("Failed to add task. Please try again.") from e

        self._notify(user_id)
        return Task(
            id=task_id,
            user_id=user_id,
            text=text,
            category=category,
            completed=False,
            priority=priority,
            due_date=due_date,
            position=position,
            created_at=created_at,
        )

    def update_task(self, user_id: str, task_id: str, **updates) -> Task:
        """
        Update a task with any fields provided.
        Only writes fields that differ from current values.

        Args:
            user_id: Owner; tasks of other users are reported as not found
            task_id: Task ID to update
            **updates: Field names and values (text, completed, priority, due_date, category)
        """
        try:
            with self.get_db() as conn:
                row = conn.execute(
                    "SELECT * FROM tasks WHERE id = ? AND user_id = ?",
                    (task_id, user_id)
                ).fetchone()
                if not row:
                    raise TaskNotFoundError(task_id)

                changes = {}
                for field, new_value in updates.items():
                    if field not in UPDATABLE_FIELDS:
                        continue
                    new_value = _to_column(new_value)
                    if new_value != row[field]:
                        changes[field] = new_value

                if changes:
                    set_clause = ", ".join(f"{field} = ?" for field in changes.keys())
                    values = list(changes.values()) + [task_id, user_id]
                    conn.execute(f"UPDATE tasks SET {set_clause} WHERE id = ? AND user_id = ?", values)
                    conn.commit()

                updated_row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        except sqlite3.Error as e:
            logger.exception("Error updating task %s", task_id)
            raise StoreError("Failed to update task. Please try again.") from e

        if changes:
            self._notify(user_id)
        return _row_to_task(updated_row)

    def delete_task(self, user_id: str, task_id: str):
        try:
            with self.get_db() as conn:
                cursor = conn.execute(
                    "DELETE FROM tasks WHERE id = ? AND user_id = ?",
                    (task_id, user_id)
                )
                conn.commit()
        except sqlite3.Error as e:
            logger.exception("Error deleting task %s", task_id)
            raise StoreError("Failed to delete task. Please try again.") from e
        if cursor.rowcount == 0:
            raise TaskNotFoundError(task_id)
        self._notify(user_id)

    def reorder_tasks(self, user_id: str, ordered_ids: list[str]):
        """
        Batched write: set each task's position to its index in ordered_ids.
        All-or-nothing; an unknown or foreign id leaves every position untouched.
        """
        if len(set(ordered_ids)) != len(ordered_ids):
            raise InvalidInputError("Task order contains the same task more than once")
        if not ordered_ids:
            return

        try:
            with self.get_db() as conn:
                for position, task_id in enumerate(ordered_ids):
                    cursor = conn.execute(
                        "UPDATE tasks SET position = ? WHERE id = ? AND user_id = ?",
                        (position, task_id, user_id)
                    )
                    if cursor.rowcount == 0:
                        conn.rollback()
                        raise TaskNotFoundError(task_id)
                conn.commit()
        except sqlite3.Error as e:
            logger.exception("Error saving task order for user %s", user_id)
            raise StoreError("Failed to save the new task order. Please try again.") from e

        self._notify(user_id)

    # Live queries

    def subscribe(
        self,
        user_id: str,
        category: TaskCategory,
        task_filter: TaskFilter,
        callback: TaskCallback
    ) -> Unsubscribe:
        """
        Register a live query. callback gets the full current list right away and
        again after every change to the user's tasks. Returns the cancel function.
        """
        subscription = _Subscription(user_id, category, task_filter, callback)
        with self._lock:
            self._subscriptions.append(subscription)
        self._deliver(subscription)

        def unsubscribe():
            # Waits for an in-flight delivery to finish
            with subscription.lock:
                subscription.active = False
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return unsubscribe

    def subscriber_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for s in self._subscriptions if user_id is None or s.user_id == user_id)

    def _notify(self, user_id: str):
        with self._lock:
            targets = [s for s in self._subscriptions if s.user_id == user_id]
        for subscription in targets:
            self._deliver(subscription)

    def _deliver(self, subscription: _Subscription):
        with subscription.lock:
            if not subscription.active:
                return
            try:
                tasks = self.list_tasks(subscription.user_id, subscription.category, subscription.task_filter)
            except sqlite3.Error:
                logger.exception("Error fetching tasks in real-time for user %s", subscription.user_id)
                tasks = []
            try:
                subscription.callback(tasks)
            except Exception:
                logger.exception("Task subscriber for user %s failed", subscription.user_id)

    # Users and sessions

    def upsert_user(self, user: User) -> User:
        now = datetime.now().isoformat()
        with self.get_db() as conn:
            conn.execute(
                """INSERT INTO users (id, display_name, email, created_at) VALUES (?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET display_name = excluded.display_name, email = excluded.email""",
                (user.id, user.display_name, user.email, now)
            )
            conn.commit()
        return user

    def create_session(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        with self.get_db() as conn:
            conn.execute(
                "INSERT INTO sessions (token, user_id, created_at) VALUES (?, ?, ?)",
                (token, user_id, datetime.now().isoformat())
            )
            conn.commit()
        return token

    def get_session_user(self, token: str) -> Optional[User]:
        with self.get_db() as conn:
            row = conn.execute(
                """SELECT users.id, users.display_name, users.email
                   FROM sessions JOIN users ON users.id = sessions.user_id
                   WHERE sessions.token = ?""",
                (token,)
            ).fetchone()
        if not row:
            return None
        return User(id=row["id"], display_name=row["display_name"], email=row["email"])

    def delete_session(self, token: str) -> bool:
        with self.get_db() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE token = ?", (token,))
            conn.commit()
            return cursor.rowcount > 0

    # Per-user API key

    def get_api_key(self, user_id: str) -> Optional[str]:
        try:
            with self.get_db() as conn:
                row = conn.execute("SELECT api_key FROM api_keys WHERE user_id = ?", (user_id,)).fetchone()
        except sqlite3.Error as e:
            logger.exception("Error fetching API key for user %s", user_id)
            raise StoreError("Failed to fetch API key.") from e
        return row["api_key"] if row else None

    def save_api_key(self, user_id: str, api_key: str):
        try:
            with self.get_db() as conn:
                conn.execute(
                    """INSERT INTO api_keys (user_id, api_key, updated_at) VALUES (?, ?, ?)
                       ON CONFLICT(user_id) DO UPDATE SET api_key = excluded.api_key, updated_at = excluded.updated_at""",
                    (user_id, api_key, datetime.now().isoformat())
                )
                conn.commit()
        except sqlite3.Error as e:
            logger.exception("Error saving API key for user %s", user_id)
            raise StoreError("Failed to save API key.") from e

    def delete_api_key(self, user_id: str) -> bool:
        try:
            with self.get_db() as conn:
                cursor = conn.execute("DELETE FROM api_keys WHERE user_id = ?", (user_id,))
                conn.commit()
        except sqlite3.Error as e:
            logger.exception("Error deleting API key for user %s", user_id)
            raise StoreError("Failed to delete API key.") from e
        return cursor.rowcount > 0


# Process-wide store handle

_store: Optional[TaskStore] = None


def init_store(database_path: str) -> TaskStore:
    """Create the shared store once. Calling again with the same path returns it."""
    global _store
    if _store is not None and _store.database_path != database_path:
        close_store()
    if _store is None:
        _store = TaskStore(database_path)
    return _store


def get_store() -> TaskStore:
    """FastAPI dependency for the shared store."""
    if _store is None:
        raise StoreError("Document store is not initialized. Check the server configuration.")
    return _store


def close_store():
    global _store
    if _store is not None:
        _store.close()
        _store = None
