"""
Activity Recorder

Appends immutable activity-log entries for task lifecycle and field-change
events. Recording is best-effort: each write runs inside a savepoint of the
caller's transaction, and a failed write is rolled back to that savepoint,
logged, and swallowed so the primary mutation still commits.
"""

import logging
import sqlite3
from typing import Optional

from .database import KanbanDatabase
from .models import ActivityAction, ActivityDetails, serialize_activity_details

logger = logging.getLogger(__name__)


class ActivityRecorder:
    """Writes typed activity payloads into the activity_log table."""

    def __init__(self, database: KanbanDatabase):
        self.db = database

    def record(
        self,
        cursor: sqlite3.Cursor,
        action: ActivityAction,
        project_id: Optional[str],
        task_id: Optional[str],
        details: ActivityDetails,
        actor: str,
    ) -> Optional[str]:
        """
        Append one activity entry inside the caller's open transaction.

        Args:
            cursor: Cursor inside an open write transaction
            action: Kind of event being recorded
            project_id: Project the event belongs to
            task_id: Task the event refers to, or None for deletions
            details: Typed payload model for the action kind
            actor: Who performed the change ("user", "mcp-agent", ...)

        Returns:
            ID of the new entry, or None if the write failed
        """
        try:
            cursor.execute("SAVEPOINT activity_record")
        except sqlite3.Error as e:
            logger.warning(f"Could not open savepoint for {action.value} activity: {e}")
            return None

        try:
            activity_id = self.db.insert_activity(
                cursor,
                action=action.value,
                project_id=project_id,
                task_id=task_id,
                details=serialize_activity_details(details),
                actor=actor,
            )
            cursor.execute("RELEASE SAVEPOINT activity_record")
            return activity_id
        except sqlite3.Error as e:
            cursor.execute("ROLLBACK TO SAVEPOINT activity_record")
            cursor.execute("RELEASE SAVEPOINT activity_record")
            logger.warning(
                f"Failed to record {action.value} activity for task {task_id} "
                f"in project {project_id}: {e}"
            )
            return None
