"""
Read-side composition for the kanban board.

Joins tasks with their labels, subtask counts and comment counts, and builds
the dashboard summary, analytics series and CSV export. Nothing here writes;
every function runs on a cursor supplied by the caller.
"""

import csv
import io
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .database import KanbanDatabase
from .models import ActivityAction, TaskPriority, TaskStatus, parse_activity_details

# Stay well below SQLite's host-parameter limit for IN (...) lists
_IN_CHUNK_SIZE = 500

CSV_HEADERS = [
    "ID",
    "Project",
    "Title",
    "Description",
    "Status",
    "Priority",
    "Assignee",
    "Due Date",
    "Created At",
    "Updated At",
]


def _chunks(values: Sequence[str], size: int = _IN_CHUNK_SIZE) -> Iterator[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


def enrich_tasks(
    db: KanbanDatabase, cursor: sqlite3.Cursor, tasks: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """
    Attach labels, subtask counts and comment counts to task rows.

    Uses one batched query per relation instead of one per task.

    Args:
        db: Database providing row helpers
        cursor: Open cursor
        tasks: Task rows as returned by the store

    Returns:
        New task dicts with ``labels``, ``subtask_count``,
        ``subtask_done_count`` and ``comment_count`` keys
    """
    if not tasks:
        return []

    task_ids = [task["id"] for task in tasks]
    labels: Dict[str, List[Dict[str, Any]]] = {task_id: [] for task_id in task_ids}
    subtasks: Dict[str, Dict[str, int]] = {}
    comments: Dict[str, int] = {}

    for chunk in _chunks(task_ids):
        placeholders = ", ".join("?" for _ in chunk)

        for row in db.fetch_all(cursor, f"""
            SELECT tl.task_id, l.id, l.project_id, l.name, l.color, l.created_at
            FROM task_labels tl
            JOIN labels l ON l.id = tl.label_id
            WHERE tl.task_id IN ({placeholders})
            ORDER BY l.name ASC
        """, chunk):
            task_id = row.pop("task_id")
            labels[task_id].append(row)

        for row in db.fetch_all(cursor, f"""
            SELECT parent_task_id,
                   COUNT(*) AS total,
                   SUM(CASE WHEN status = 'done' THEN 1 ELSE 0 END) AS done
            FROM tasks
            WHERE parent_task_id IN ({placeholders})
            GROUP BY parent_task_id
        """, chunk):
            subtasks[row["parent_task_id"]] = {"total": row["total"], "done": row["done"] or 0}

        for row in db.fetch_all(cursor, f"""
            SELECT task_id, COUNT(*) AS total
            FROM comments
            WHERE task_id IN ({placeholders})
            GROUP BY task_id
        """, chunk):
            comments[row["task_id"]] = row["total"]

    enriched = []
    for task in tasks:
        counts = subtasks.get(task["id"], {"total": 0, "done": 0})
        enriched.append({
            **task,
            "labels": labels[task["id"]],
            "subtask_count": counts["total"],
            "subtask_done_count": counts["done"],
            "comment_count": comments.get(task["id"], 0),
        })
    return enriched


def format_activity(row: Dict[str, Any]) -> Dict[str, Any]:
    """Return an activity row with its details parsed back into a dict."""
    return {**row, "details": parse_activity_details(row["action"], row.get("details"))}


def dashboard_summary(
    db: KanbanDatabase, cursor: sqlite3.Cursor, activity_limit: int = 20
) -> Dict[str, Any]:
    """
    Aggregate counts across all projects plus the recent activity feed.

    Every status and priority value is present in the count maps, zero when
    no task has it.
    """
    cursor.execute("SELECT COUNT(*) FROM projects")
    total_projects = cursor.fetchone()[0]

    cursor.execute("SELECT COUNT(*) FROM tasks")
    total_tasks = cursor.fetchone()[0]

    tasks_by_status = {status.value: 0 for status in TaskStatus}
    cursor.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status")
    for status, total in cursor.fetchall():
        tasks_by_status[status] = total

    tasks_by_priority = {priority.value: 0 for priority in TaskPriority}
    cursor.execute("SELECT priority, COUNT(*) FROM tasks GROUP BY priority")
    for priority, total in cursor.fetchall():
        tasks_by_priority[priority] = total

    recent = db.fetch_all(cursor, """
        SELECT a.*, t.title AS task_title, p.name AS project_name
        FROM activity_log a
        LEFT JOIN tasks t ON t.id = a.task_id
        LEFT JOIN projects p ON p.id = a.project_id
        ORDER BY a.created_at DESC, a.rowid DESC
        LIMIT ?
    """, (activity_limit,))

    return {
        "total_projects": total_projects,
        "total_tasks": total_tasks,
        "tasks_by_status": tasks_by_status,
        "tasks_by_priority": tasks_by_priority,
        "recent_activity": [format_activity(row) for row in recent],
    }


def analytics(
    db: KanbanDatabase,
    cursor: sqlite3.Cursor,
    project_id: Optional[str] = None,
    days: int = 14,
) -> Dict[str, Any]:
    """
    Trend and distribution data for the analytics view.

    Returns tasks created per day and tasks completed per day over the last
    ``days`` days, per-project totals, and the ten most recent transitions
    into ``done``.
    """
    since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat(
        timespec="milliseconds"
    ).replace("+00:00", "Z")

    # A status_changed row counts as a completion only when its target is done
    def done_filter(column: str) -> str:
        return f"CASE WHEN json_valid({column}) THEN json_extract({column}, '$.to') END = 'done'"

    created_query = """
        SELECT substr(created_at, 1, 10) AS date, COUNT(*) AS count
        FROM tasks
        WHERE created_at >= ?
    """
    created_params: List[Any] = [since]
    completed_query = f"""
        SELECT substr(created_at, 1, 10) AS date, COUNT(*) AS count
        FROM activity_log
        WHERE created_at >= ? AND action = ? AND {done_filter('details')}
    """
    completed_params: List[Any] = [since, ActivityAction.STATUS_CHANGED.value]
    per_project_query = """
        SELECT p.id AS project_id, p.name AS project_name,
               COUNT(t.id) AS total,
               COALESCE(SUM(CASE WHEN t.status = 'done' THEN 1 ELSE 0 END), 0) AS done,
               COALESCE(SUM(CASE WHEN t.status = 'in_progress' THEN 1 ELSE 0 END), 0) AS in_progress
        FROM projects p
        LEFT JOIN tasks t ON t.project_id = p.id
    """
    per_project_params: List[Any] = []
    completions_query = f"""
        SELECT a.*, t.title AS task_title
        FROM activity_log a
        LEFT JOIN tasks t ON t.id = a.task_id
        WHERE a.action = ? AND {done_filter('a.details')}
    """
    completions_params: List[Any] = [ActivityAction.STATUS_CHANGED.value]

    if project_id is not None:
        created_query += " AND project_id = ?"
        created_params.append(project_id)
        completed_query += " AND project_id = ?"
        completed_params.append(project_id)
        per_project_query += " WHERE p.id = ?"
        per_project_params.append(project_id)
        completions_query += " AND a.project_id = ?"
        completions_params.append(project_id)

    created_query += " GROUP BY date ORDER BY date ASC"
    completed_query += " GROUP BY date ORDER BY date ASC"
    per_project_query += " GROUP BY p.id ORDER BY p.created_at ASC, p.rowid ASC"
    completions_query += " ORDER BY a.created_at DESC, a.rowid DESC LIMIT 10"

    return {
        "days": days,
        "created_trend": db.fetch_all(cursor, created_query, created_params),
        "completed_trend": db.fetch_all(cursor, completed_query, completed_params),
        "tasks_per_project": db.fetch_all(cursor, per_project_query, per_project_params),
        "recent_completions": [
            format_activity(row)
            for row in db.fetch_all(cursor, completions_query, completions_params)
        ],
    }


def export_tasks_csv(
    db: KanbanDatabase, cursor: sqlite3.Cursor, project_id: Optional[str] = None
) -> str:
    """
    Render tasks as CSV text.

    A single project is exported in board order (position), all projects in
    creation order. Missing values render as empty cells.
    """
    query = """
        SELECT t.id, p.name AS project_name, t.title, t.description, t.status,
               t.priority, t.assignee, t.due_date, t.created_at, t.updated_at
        FROM tasks t
        LEFT JOIN projects p ON p.id = t.project_id
    """
    params: List[Any] = []
    if project_id is not None:
        query += " WHERE t.project_id = ? ORDER BY t.position ASC, t.created_at ASC, t.rowid ASC"
        params.append(project_id)
    else:
        query += " ORDER BY t.created_at ASC, t.rowid ASC"

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    cursor.execute(query, params)
    for row in cursor.fetchall():
        writer.writerow(["" if value is None else value for value in row])
    return buffer.getvalue()
