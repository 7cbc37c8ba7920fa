"""
Kanban Database Layer

Provides SQLite-based storage for projects, tasks, labels, comments and the
activity log. Runs in WAL mode with a single shared connection guarded by a
re-entrant lock; writers use ``BEGIN IMMEDIATE`` so the database write lock
is held before any read-then-write sequence (position allocation, shifts).

Row-level helpers take an open cursor so the service layer can compose
several of them inside one transaction.
"""

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .errors import StorageError

logger = logging.getLogger(__name__)


PROJECT_COLUMNS = ("name", "description", "repo_url")
TASK_COLUMNS = (
    "project_id", "parent_task_id", "title", "description", "status",
    "priority", "assignee", "due_date", "position",
)
LABEL_COLUMNS = ("name", "color")


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id() -> str:
    """Generate an opaque unique identifier."""
    return str(uuid.uuid4())


class KanbanDatabase:
    """
    SQLite entity store for the kanban board.

    Features:
    - WAL mode for concurrent read/write access
    - Foreign keys with cascading deletes from projects and tasks
    - Serialized writers via BEGIN IMMEDIATE and an in-process RLock
    - Storage failures surfaced as StorageError with the cause logged
    """

    def __init__(self, db_path: str):
        """
        Initialize KanbanDatabase with SQLite WAL mode configuration.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _initialize_database(self, drop_existing: bool = False) -> None:
        """Open the connection, apply pragmas and create the schema.

        Args:
            drop_existing: If True, drops all existing tables first
        """
        try:
            # Autocommit mode; transaction boundaries are explicit
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False,
            )

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")

            if drop_existing:
                self._drop_existing_tables()

            self._create_schema()

        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

    def _create_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                repo_url TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                parent_task_id TEXT,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'backlog'
                    CHECK (status IN ('backlog', 'todo', 'in_progress', 'in_review', 'done')),
                priority TEXT NOT NULL DEFAULT 'medium'
                    CHECK (priority IN ('critical', 'high', 'medium', 'low')),
                assignee TEXT,
                due_date TEXT,
                position INTEGER NOT NULL DEFAULT 0 CHECK (position >= 0),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE,
                FOREIGN KEY (parent_task_id) REFERENCES tasks (id) ON DELETE SET NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS labels (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                name TEXT NOT NULL,
                color TEXT NOT NULL DEFAULT '#6366f1',
                created_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_labels (
                task_id TEXT NOT NULL,
                label_id TEXT NOT NULL,
                PRIMARY KEY (task_id, label_id),
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE,
                FOREIGN KEY (label_id) REFERENCES labels (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS comments (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                content TEXT NOT NULL,
                author TEXT NOT NULL DEFAULT 'user',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE
            )
        """)

        # task_id is nulled on the task_deleted entry so it survives the cascade
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS activity_log (
                id TEXT PRIMARY KEY,
                task_id TEXT,
                project_id TEXT,
                action TEXT NOT NULL,
                details TEXT,
                actor TEXT NOT NULL DEFAULT 'user',
                created_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE,
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE
            )
        """)

        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_tasks_column ON tasks (project_id, status, position)"
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks (parent_task_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_labels_project ON labels (project_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_task_labels_label ON task_labels (label_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_comments_task ON comments (task_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_activity_task ON activity_log (task_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_activity_project ON activity_log (project_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_activity_created ON activity_log (created_at)")

    def _drop_existing_tables(self) -> None:
        """Drop all tables in reverse dependency order."""
        cursor = self._connection.cursor()
        cursor.execute("DROP TABLE IF EXISTS activity_log")
        cursor.execute("DROP TABLE IF EXISTS comments")
        cursor.execute("DROP TABLE IF EXISTS task_labels")
        cursor.execute("DROP TABLE IF EXISTS labels")
        cursor.execute("DROP TABLE IF EXISTS tasks")
        cursor.execute("DROP TABLE IF EXISTS projects")

    # Connection and transaction management

    def _cursor(self) -> sqlite3.Cursor:
        if self._connection is None:
            raise StorageError("Database connection is closed")
        return self._connection.cursor()

    def _rollback(self) -> None:
        if self._connection is not None and self._connection.in_transaction:
            try:
                self._connection.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.error(f"Rollback failed: {e}")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Context manager for an immediate write transaction.

        Yields a cursor inside ``BEGIN IMMEDIATE``. Commits on normal exit and
        rolls back on any exception. ``sqlite3.Error`` is logged and re-raised
        as StorageError; other exceptions propagate unchanged.
        """
        with self._connection_lock:
            cursor = self._cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                yield cursor
                cursor.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                logger.error(f"Database error in transaction on {self.db_path}: {e}")
                raise StorageError() from e
            except BaseException:
                self._rollback()
                raise

    @contextmanager
    def read(self) -> Iterator[sqlite3.Cursor]:
        """Context manager yielding a cursor for read-only queries."""
        with self._connection_lock:
            cursor = self._cursor()
            try:
                yield cursor
            except sqlite3.Error as e:
                logger.error(f"Database error reading {self.db_path}: {e}")
                raise StorageError() from e

    def is_connected(self) -> bool:
        """Check whether the database answers a trivial query."""
        try:
            with self.read() as cursor:
                cursor.execute("SELECT 1")
                return cursor.fetchone() is not None
        except StorageError:
            return False

    def close(self):
        """Close database connection."""
        with self._connection_lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def initialize_fresh(self) -> None:
        """
        Initialize database with clean slate - drops all existing tables first.

        Useful for fresh installations and tests requiring a clean state.
        """
        with self._connection_lock:
            if self._connection:
                self.close()
            self._initialize_database(drop_existing=True)

    # Generic row helpers

    @staticmethod
    def _row_to_dict(cursor: sqlite3.Cursor, row: Optional[Sequence[Any]]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        columns = [column[0] for column in cursor.description]
        return dict(zip(columns, row))

    def fetch_one(self, cursor: sqlite3.Cursor, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        """Execute a query and return the first row as a dict, or None."""
        cursor.execute(query, tuple(params))
        return self._row_to_dict(cursor, cursor.fetchone())

    def fetch_all(self, cursor: sqlite3.Cursor, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Execute a query and return all rows as dicts."""
        cursor.execute(query, tuple(params))
        columns = [column[0] for column in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def _update_row(
        self, cursor: sqlite3.Cursor, table: str, allowed: Sequence[str],
        row_id: str, fields: Dict[str, Any], touch: bool = True,
    ) -> int:
        """Update whitelisted columns of one row. Returns affected row count."""
        assignments = []
        params: List[Any] = []
        for column, value in fields.items():
            if column not in allowed:
                raise ValueError(f"Column '{column}' cannot be updated on {table}")
            assignments.append(f"{column} = ?")
            params.append(value)
        if touch:
            assignments.append("updated_at = ?")
            params.append(utc_now())
        if not assignments:
            return 0
        params.append(row_id)
        cursor.execute(f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?", params)
        return cursor.rowcount

    # Projects

    def get_project_row(self, cursor: sqlite3.Cursor, project_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one(cursor, "SELECT * FROM projects WHERE id = ?", (project_id,))

    def get_project_by_name(self, cursor: sqlite3.Cursor, name: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one(
            cursor,
            "SELECT * FROM projects WHERE name = ? ORDER BY created_at ASC, rowid ASC LIMIT 1",
            (name,),
        )

    def list_project_rows(self, cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
        """All projects in creation order, each with its task count."""
        return self.fetch_all(cursor, """
            SELECT p.*,
                   (SELECT COUNT(*) FROM tasks t WHERE t.project_id = p.id) AS task_count
            FROM projects p
            ORDER BY p.created_at ASC, p.rowid ASC
        """)

    def insert_project(
        self, cursor: sqlite3.Cursor, name: str,
        description: Optional[str] = None, repo_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        project_id = new_id()
        now = utc_now()
        cursor.execute(
            """
            INSERT INTO projects (id, name, description, repo_url, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (project_id, name, description, repo_url, now, now),
        )
        return self.get_project_row(cursor, project_id)

    def update_project_row(self, cursor: sqlite3.Cursor, project_id: str, fields: Dict[str, Any]) -> int:
        return self._update_row(cursor, "projects", PROJECT_COLUMNS, project_id, fields)

    def count_project_children(self, cursor: sqlite3.Cursor, project_id: str) -> Dict[str, int]:
        """Counts of rows that a project delete cascades to."""
        cursor.execute("""
            SELECT
                (SELECT COUNT(*) FROM tasks WHERE project_id = ?),
                (SELECT COUNT(*) FROM labels WHERE project_id = ?),
                (SELECT COUNT(*) FROM comments c JOIN tasks t ON t.id = c.task_id
                  WHERE t.project_id = ?),
                (SELECT COUNT(*) FROM activity_log WHERE project_id = ?)
        """, (project_id, project_id, project_id, project_id))
        tasks, labels, comments, activity = cursor.fetchone()
        return {"tasks": tasks, "labels": labels, "comments": comments, "activity": activity}

    def delete_project_row(self, cursor: sqlite3.Cursor, project_id: str) -> int:
        cursor.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        return cursor.rowcount

    # Tasks

    def get_task_row(self, cursor: sqlite3.Cursor, task_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one(cursor, "SELECT * FROM tasks WHERE id = ?", (task_id,))

    def list_task_rows(
        self, cursor: sqlite3.Cursor, project_id: str,
        status: Optional[str] = None, priority: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Tasks of a project ordered by position, then creation time."""
        query = "SELECT * FROM tasks WHERE project_id = ?"
        params: List[Any] = [project_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        if priority is not None:
            query += " AND priority = ?"
            params.append(priority)
        query += " ORDER BY position ASC, created_at ASC, rowid ASC"
        return self.fetch_all(cursor, query, params)

    def insert_task(self, cursor: sqlite3.Cursor, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a task row from a dict of TASK_COLUMNS values."""
        unknown = set(fields) - set(TASK_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown task columns: {sorted(unknown)}")
        task_id = new_id()
        now = utc_now()
        columns = ["id", *fields.keys(), "created_at", "updated_at"]
        params = [task_id, *fields.values(), now, now]
        placeholders = ", ".join("?" for _ in columns)
        cursor.execute(f"INSERT INTO tasks ({', '.join(columns)}) VALUES ({placeholders})", params)
        return self.get_task_row(cursor, task_id)

    def update_task_row(self, cursor: sqlite3.Cursor, task_id: str, fields: Dict[str, Any]) -> int:
        return self._update_row(cursor, "tasks", TASK_COLUMNS, task_id, fields)

    def delete_task_row(self, cursor: sqlite3.Cursor, task_id: str) -> int:
        cursor.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return cursor.rowcount

    def search_task_rows(
        self, cursor: sqlite3.Cursor, query: str,
        project_id: Optional[str] = None, limit: int = 20,
    ) -> List[Dict[str, Any]]:
        """Case-insensitive title substring search, most recently updated first."""
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        sql = "SELECT * FROM tasks WHERE title LIKE ? ESCAPE '\\'"
        params: List[Any] = [f"%{escaped}%"]
        if project_id is not None:
            sql += " AND project_id = ?"
            params.append(project_id)
        sql += " ORDER BY updated_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return self.fetch_all(cursor, sql, params)

    # Labels

    def get_label_row(self, cursor: sqlite3.Cursor, label_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one(cursor, "SELECT * FROM labels WHERE id = ?", (label_id,))

    def list_label_rows(self, cursor: sqlite3.Cursor, project_id: str) -> List[Dict[str, Any]]:
        return self.fetch_all(
            cursor,
            "SELECT * FROM labels WHERE project_id = ? ORDER BY created_at ASC, rowid ASC",
            (project_id,),
        )

    def insert_label(self, cursor: sqlite3.Cursor, project_id: str, name: str, color: str) -> Dict[str, Any]:
        label_id = new_id()
        cursor.execute(
            "INSERT INTO labels (id, project_id, name, color, created_at) VALUES (?, ?, ?, ?, ?)",
            (label_id, project_id, name, color, utc_now()),
        )
        return self.get_label_row(cursor, label_id)

    def update_label_row(self, cursor: sqlite3.Cursor, label_id: str, fields: Dict[str, Any]) -> int:
        # labels carry no updated_at column
        return self._update_row(cursor, "labels", LABEL_COLUMNS, label_id, fields, touch=False)

    def delete_label_row(self, cursor: sqlite3.Cursor, label_id: str) -> int:
        cursor.execute("DELETE FROM labels WHERE id = ?", (label_id,))
        return cursor.rowcount

    def insert_task_label(self, cursor: sqlite3.Cursor, task_id: str, label_id: str) -> bool:
        """Insert a task-label pair. Returns False if the pair already existed."""
        cursor.execute(
            "INSERT OR IGNORE INTO task_labels (task_id, label_id) VALUES (?, ?)",
            (task_id, label_id),
        )
        return cursor.rowcount > 0

    def delete_task_label(self, cursor: sqlite3.Cursor, task_id: str, label_id: str) -> bool:
        """Delete a task-label pair. Returns False if the pair was absent."""
        cursor.execute(
            "DELETE FROM task_labels WHERE task_id = ? AND label_id = ?",
            (task_id, label_id),
        )
        return cursor.rowcount > 0

    # Comments

    def get_comment_row(self, cursor: sqlite3.Cursor, comment_id: str) -> Optional[Dict[str, Any]]:
        return self.fetch_one(cursor, "SELECT * FROM comments WHERE id = ?", (comment_id,))

    def list_comment_rows(self, cursor: sqlite3.Cursor, task_id: str) -> List[Dict[str, Any]]:
        """Comments on a task, newest first."""
        return self.fetch_all(
            cursor,
            "SELECT * FROM comments WHERE task_id = ? ORDER BY created_at DESC, rowid DESC",
            (task_id,),
        )

    def insert_comment(self, cursor: sqlite3.Cursor, task_id: str, content: str, author: str) -> Dict[str, Any]:
        comment_id = new_id()
        now = utc_now()
        cursor.execute(
            """
            INSERT INTO comments (id, task_id, content, author, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (comment_id, task_id, content, author, now, now),
        )
        return self.get_comment_row(cursor, comment_id)

    def delete_comment_row(self, cursor: sqlite3.Cursor, comment_id: str) -> int:
        cursor.execute("DELETE FROM comments WHERE id = ?", (comment_id,))
        return cursor.rowcount

    # Activity log

    def insert_activity(
        self, cursor: sqlite3.Cursor, action: str, project_id: Optional[str],
        task_id: Optional[str], details: Optional[str], actor: str,
    ) -> str:
        activity_id = new_id()
        cursor.execute(
            """
            INSERT INTO activity_log (id, task_id, project_id, action, details, actor, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (activity_id, task_id, project_id, action, details, actor, utc_now()),
        )
        return activity_id

    def list_activity_rows(
        self, cursor: sqlite3.Cursor, task_id: Optional[str] = None,
        project_id: Optional[str] = None, limit: int = 30,
    ) -> List[Dict[str, Any]]:
        """Activity entries newest first, optionally filtered by task or project."""
        query = "SELECT * FROM activity_log"
        params: List[Any] = []
        if task_id is not None:
            query += " WHERE task_id = ?"
            params.append(task_id)
        elif project_id is not None:
            query += " WHERE project_id = ?"
            params.append(project_id)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return self.fetch_all(cursor, query, params)
