"""
Position Allocator

Computes integer ranks of tasks within a (project, status) column. Every
mutation path that places a task in a column goes through this module.

Both operations read and write the column inside the caller's transaction.
Callers must hold a write transaction (``KanbanDatabase.transaction``) so the
max-read and the insert, or the shift and the set, execute as one unit.
Gaps left by deletes or cross-column moves are tolerated; readers sort by
position ascending with creation time as the secondary key.
"""

import logging
import sqlite3
from typing import Optional

logger = logging.getLogger(__name__)


class PositionAllocator:
    """Allocates append positions and opens slots for explicit reorders."""

    def next_position(self, cursor: sqlite3.Cursor, project_id: str, status: str) -> int:
        """
        Position one past the current maximum of the column, or 0 if empty.

        Args:
            cursor: Cursor inside an open write transaction
            project_id: Owning project of the column
            status: Status value identifying the column

        Returns:
            Next append position for the column
        """
        cursor.execute(
            """
            SELECT COALESCE(MAX(position), -1) + 1
            FROM tasks
            WHERE project_id = ? AND status = ?
            """,
            (project_id, status),
        )
        return cursor.fetchone()[0]

    def shift_from(
        self,
        cursor: sqlite3.Cursor,
        project_id: str,
        status: str,
        position: int,
        exclude_task_id: Optional[str] = None,
    ) -> int:
        """
        Shift every task at ``position`` or later in the column right by one.

        Opens a slot at ``position`` for a task being moved there. The moving
        task itself is excluded so a same-column reorder does not shift it.

        Returns:
            Number of tasks shifted
        """
        if position < 0:
            raise ValueError(f"Position must be non-negative, got {position}")

        query = """
            UPDATE tasks
            SET position = position + 1
            WHERE project_id = ? AND status = ? AND position >= ?
        """
        params = [project_id, status, position]
        if exclude_task_id is not None:
            query += " AND id != ?"
            params.append(exclude_task_id)

        cursor.execute(query, params)
        shifted = cursor.rowcount
        logger.debug(f"Shifted {shifted} tasks in column {project_id}/{status} from position {position}")
        return shifted
