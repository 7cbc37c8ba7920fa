"""
Kanban Task/Project Service

Orchestrates every board operation: validate input, allocate a position when
a task enters a column, mutate the store, record activity, and return the
enriched entity. Both the HTTP API and the MCP tools call this layer; the
``actor`` argument attributes activity entries to the calling facade.

Each mutating operation runs in a single write transaction, so not-found
checks, position allocation and the write itself commit or roll back
together.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Union

from .activity import ActivityRecorder
from .database import KanbanDatabase
from .errors import NotFoundError, ValidationError
from .models import (
    DEFAULT_LABEL_COLOR,
    LABEL_COLOR_PATTERN,
    ActivityAction,
    PriorityChangedDetails,
    StatusChangedDetails,
    TaskCreatedDetails,
    TaskDeletedDetails,
    TaskPriority,
    TaskStatus,
    parse_priority,
    parse_status,
)
from .positions import PositionAllocator
from . import views

logger = logging.getLogger(__name__)

DEFAULT_TASK_TITLE = "Untitled Task"
DEFAULT_ACTOR = "user"
MAX_ACTIVITY_LIMIT = 200
MAX_SEARCH_LIMIT = 100

_COLOR_RE = re.compile(LABEL_COLOR_PATTERN)
_UPDATABLE_TASK_FIELDS = {
    "title", "description", "status", "priority", "assignee", "due_date", "parent_task_id",
}
_UPDATABLE_PROJECT_FIELDS = {"name", "description", "repo_url"}


def _require(value: Optional[str], field: str) -> str:
    """Reject missing or blank identifiers and required text fields."""
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", field=field)
    return value


def _validate_color(color: str) -> str:
    if not isinstance(color, str) or not _COLOR_RE.match(color):
        raise ValidationError(
            f"Invalid color '{color}'. Expected #RGB, #RRGGBB or #RRGGBBAA", field="color"
        )
    return color


def _validate_limit(limit: int, maximum: int, field: str = "limit") -> int:
    if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1 or limit > maximum:
        raise ValidationError(f"{field} must be between 1 and {maximum}", field=field)
    return limit


class KanbanService:
    """
    Task and project operations over a KanbanDatabase.

    Args:
        database: Entity store
        allocator: Position allocator (a default instance is created if omitted)
        recorder: Activity recorder (a default instance is created if omitted)
    """

    def __init__(
        self,
        database: KanbanDatabase,
        allocator: Optional[PositionAllocator] = None,
        recorder: Optional[ActivityRecorder] = None,
    ):
        self.db = database
        self.allocator = allocator or PositionAllocator()
        self.recorder = recorder or ActivityRecorder(database)

    # Internal loaders (must run on a cursor from an open transaction or read)

    def _load_project(self, cursor, project_id: str) -> Dict[str, Any]:
        project = self.db.get_project_row(cursor, project_id)
        if project is None:
            raise NotFoundError("project", project_id)
        return project

    def _load_task(self, cursor, task_id: str) -> Dict[str, Any]:
        task = self.db.get_task_row(cursor, task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def _load_label(self, cursor, label_id: str) -> Dict[str, Any]:
        label = self.db.get_label_row(cursor, label_id)
        if label is None:
            raise NotFoundError("label", label_id)
        return label

    def _check_parent(
        self, cursor, parent_task_id: str, project_id: str, task_id: Optional[str] = None
    ) -> None:
        """A parent must exist, belong to the same project, and not be the task itself."""
        if task_id is not None and parent_task_id == task_id:
            raise ValidationError("A task cannot be its own parent", field="parent_task_id")
        parent = self._load_task(cursor, parent_task_id)
        if parent["project_id"] != project_id:
            raise ValidationError(
                f"Parent task {parent_task_id} belongs to a different project",
                field="parent_task_id",
            )

    def _enriched_task(self, cursor, task: Dict[str, Any]) -> Dict[str, Any]:
        return views.enrich_tasks(self.db, cursor, [task])[0]

    # Projects

    def list_projects(self) -> List[Dict[str, Any]]:
        """All projects in creation order, each with ``task_count``."""
        with self.db.read() as cursor:
            return self.db.list_project_rows(cursor)

    def get_project(self, project_id: str) -> Dict[str, Any]:
        _require(project_id, "project_id")
        with self.db.read() as cursor:
            return self._load_project(cursor, project_id)

    def find_project_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        """Oldest project with exactly this name, or None."""
        with self.db.read() as cursor:
            row = self.db.get_project_by_name(cursor, name)
            return self._load_project(cursor, row["id"]) if row else None

    def create_project(
        self, name: str, description: Optional[str] = None, repo_url: Optional[str] = None
    ) -> Dict[str, Any]:
        _require(name, "name")
        with self.db.transaction() as cursor:
            project = self.db.insert_project(
                cursor, name=name.strip(), description=description, repo_url=repo_url
            )
        logger.info(f"Created project {project['id']} '{project['name']}'")
        return project

    def update_project(self, project_id: str, **fields: Any) -> Dict[str, Any]:
        """
        Apply a partial update to a project. ``updated_at`` is always refreshed.

        Args:
            project_id: Project to update
            **fields: Any of ``name``, ``description``, ``repo_url``
        """
        _require(project_id, "project_id")
        unknown = set(fields) - _UPDATABLE_PROJECT_FIELDS
        if unknown:
            raise ValidationError(f"Unknown project fields: {', '.join(sorted(unknown))}")
        if "name" in fields:
            fields["name"] = _require(fields["name"], "name").strip()

        with self.db.transaction() as cursor:
            self._load_project(cursor, project_id)
            self.db.update_project_row(cursor, project_id, fields)
            return self.db.get_project_row(cursor, project_id)

    def delete_project(self, project_id: str) -> Dict[str, Any]:
        """
        Delete a project and, by cascade, its tasks, labels, comments and activity.

        Deleting a missing project is a no-op reported as ``deleted: False``.
        """
        _require(project_id, "project_id")
        with self.db.transaction() as cursor:
            project = self.db.get_project_row(cursor, project_id)
            if project is None:
                return {"deleted": False, "project_id": project_id}
            cascaded = self.db.count_project_children(cursor, project_id)
            self.db.delete_project_row(cursor, project_id)

        logger.info(
            f"Deleted project {project_id} '{project['name']}' with "
            f"{cascaded['tasks']} tasks and {cascaded['labels']} labels"
        )
        return {
            "deleted": True,
            "project_id": project_id,
            "project_name": project["name"],
            "cascaded": cascaded,
        }

    # Tasks

    def list_tasks(
        self,
        project_id: str,
        status: Optional[Union[str, TaskStatus]] = None,
        priority: Optional[Union[str, TaskPriority]] = None,
    ) -> List[Dict[str, Any]]:
        """Enriched tasks of a project in board order, optionally filtered."""
        _require(project_id, "project_id")
        status_value = parse_status(status).value if status is not None else None
        priority_value = parse_priority(priority).value if priority is not None else None
        with self.db.read() as cursor:
            rows = self.db.list_task_rows(cursor, project_id, status_value, priority_value)
            return views.enrich_tasks(self.db, cursor, rows)

    def get_task(self, task_id: str, include_comments: bool = False) -> Dict[str, Any]:
        """Enriched task, optionally with its comments newest first."""
        _require(task_id, "task_id")
        with self.db.read() as cursor:
            task = self._enriched_task(cursor, self._load_task(cursor, task_id))
            if include_comments:
                task["comments"] = self.db.list_comment_rows(cursor, task_id)
            return task

    def create_task(
        self,
        project_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        status: Union[str, TaskStatus] = TaskStatus.BACKLOG,
        priority: Union[str, TaskPriority] = TaskPriority.MEDIUM,
        assignee: Optional[str] = None,
        due_date: Optional[str] = None,
        parent_task_id: Optional[str] = None,
        actor: str = DEFAULT_ACTOR,
    ) -> Dict[str, Any]:
        """
        Create a task at the end of its (project, status) column.

        Records a ``task_created`` activity entry.

        Returns:
            The created task enriched with empty labels and zero counts
        """
        _require(project_id, "project_id")
        status_value = parse_status(status).value
        priority_value = parse_priority(priority).value
        if title is None or not title.strip():
            title = DEFAULT_TASK_TITLE

        with self.db.transaction() as cursor:
            self._load_project(cursor, project_id)
            if parent_task_id:
                self._check_parent(cursor, parent_task_id, project_id)

            position = self.allocator.next_position(cursor, project_id, status_value)
            task = self.db.insert_task(cursor, {
                "project_id": project_id,
                "parent_task_id": parent_task_id or None,
                "title": title,
                "description": description if description is not None else "",
                "status": status_value,
                "priority": priority_value,
                "assignee": assignee,
                "due_date": due_date,
                "position": position,
            })
            self.recorder.record(
                cursor,
                ActivityAction.TASK_CREATED,
                project_id=project_id,
                task_id=task["id"],
                details=TaskCreatedDetails(title=title),
                actor=actor,
            )
            result = self._enriched_task(cursor, task)

        logger.info(f"Created task {task['id']} in {project_id}/{status_value} at position {position}")
        return result

    def update_task(self, task_id: str, actor: str = DEFAULT_ACTOR, **fields: Any) -> Dict[str, Any]:
        """
        Apply a partial update to a task.

        A status change appends the task to the end of the destination column
        and records ``status_changed``; a priority change records
        ``priority_changed``. Setting a field to its current value records
        nothing. Titles in activity payloads are the pre-update title.

        Args:
            task_id: Task to update
            actor: Attribution for activity entries
            **fields: Any of title, description, status, priority, assignee,
                due_date, parent_task_id

        Returns:
            The updated task, enriched
        """
        _require(task_id, "task_id")
        unknown = set(fields) - _UPDATABLE_TASK_FIELDS
        if unknown:
            raise ValidationError(f"Unknown task fields: {', '.join(sorted(unknown))}")
        if "title" in fields:
            fields["title"] = _require(fields["title"], "title")
        if fields.get("status") is not None:
            fields["status"] = parse_status(fields["status"]).value
        elif "status" in fields:
            raise ValidationError("status cannot be null", field="status")
        if fields.get("priority") is not None:
            fields["priority"] = parse_priority(fields["priority"]).value
        elif "priority" in fields:
            raise ValidationError("priority cannot be null", field="priority")

        with self.db.transaction() as cursor:
            existing = self._load_task(cursor, task_id)
            project_id = existing["project_id"]

            if fields.get("parent_task_id"):
                self._check_parent(cursor, fields["parent_task_id"], project_id, task_id)
            elif "parent_task_id" in fields:
                fields["parent_task_id"] = None

            status_changed = "status" in fields and fields["status"] != existing["status"]
            priority_changed = "priority" in fields and fields["priority"] != existing["priority"]

            if status_changed:
                fields["position"] = self.allocator.next_position(cursor, project_id, fields["status"])

            self.db.update_task_row(cursor, task_id, fields)

            if status_changed:
                self.recorder.record(
                    cursor,
                    ActivityAction.STATUS_CHANGED,
                    project_id=project_id,
                    task_id=task_id,
                    details=StatusChangedDetails(
                        from_=existing["status"], to=fields["status"], title=existing["title"]
                    ),
                    actor=actor,
                )
            if priority_changed:
                self.recorder.record(
                    cursor,
                    ActivityAction.PRIORITY_CHANGED,
                    project_id=project_id,
                    task_id=task_id,
                    details=PriorityChangedDetails(
                        from_=existing["priority"], to=fields["priority"], title=existing["title"]
                    ),
                    actor=actor,
                )

            result = self._enriched_task(cursor, self._load_task(cursor, task_id))

        if status_changed:
            logger.info(f"Task {task_id} moved {existing['status']} -> {fields['status']}")
        return result

    def delete_task(self, task_id: str, actor: str = DEFAULT_ACTOR) -> Dict[str, Any]:
        """
        Delete a task with its comments, label links and activity entries.

        The ``task_deleted`` entry is written first with a null task reference
        and the project preserved, so the cascade does not remove it. Deleting
        a missing task is a no-op that writes nothing.
        """
        _require(task_id, "task_id")
        with self.db.transaction() as cursor:
            existing = self.db.get_task_row(cursor, task_id)
            if existing is None:
                return {"deleted": False, "task_id": task_id}

            self.recorder.record(
                cursor,
                ActivityAction.TASK_DELETED,
                project_id=existing["project_id"],
                task_id=None,
                details=TaskDeletedDetails(title=existing["title"]),
                actor=actor,
            )
            self.db.delete_task_row(cursor, task_id)

        logger.info(f"Deleted task {task_id} from project {existing['project_id']}")
        return {"deleted": True, "task_id": task_id, "project_id": existing["project_id"]}

    def move_task(
        self,
        task_id: str,
        new_status: Union[str, TaskStatus],
        new_position: Optional[int] = None,
        actor: str = DEFAULT_ACTOR,
    ) -> Dict[str, Any]:
        """
        Move a task to a column, either appended or at an explicit index.

        With ``new_position`` omitted the task is appended to the end of the
        destination column. Otherwise every task in the destination column at
        ``new_position`` or later is shifted right by one and the task takes
        ``new_position``. The vacated column is not compacted.

        Returns:
            Dict with the moved ``task`` and the destination ``column`` as
            re-read after the move
        """
        _require(task_id, "task_id")
        status_value = parse_status(new_status, field="new_status").value
        if new_position is not None:
            if isinstance(new_position, bool) or not isinstance(new_position, int) or new_position < 0:
                raise ValidationError("new_position must be a non-negative integer", field="new_position")

        with self.db.transaction() as cursor:
            existing = self._load_task(cursor, task_id)
            project_id = existing["project_id"]

            if new_position is None:
                position = self.allocator.next_position(cursor, project_id, status_value)
            else:
                self.allocator.shift_from(
                    cursor, project_id, status_value, new_position, exclude_task_id=task_id
                )
                position = new_position

            self.db.update_task_row(cursor, task_id, {"status": status_value, "position": position})

            if status_value != existing["status"]:
                self.recorder.record(
                    cursor,
                    ActivityAction.STATUS_CHANGED,
                    project_id=project_id,
                    task_id=task_id,
                    details=StatusChangedDetails(
                        from_=existing["status"], to=status_value, title=existing["title"]
                    ),
                    actor=actor,
                )

            task = self._enriched_task(cursor, self._load_task(cursor, task_id))
            column = self.db.list_task_rows(cursor, project_id, status_value)

        logger.info(f"Moved task {task_id} to {project_id}/{status_value} at position {position}")
        return {"task": task, "column": column}

    def search_tasks(
        self, query: str, project_id: Optional[str] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Tasks whose title contains ``query`` (case-insensitive), newest-updated first."""
        _require(query, "query")
        _validate_limit(limit, MAX_SEARCH_LIMIT)
        with self.db.read() as cursor:
            rows = self.db.search_task_rows(cursor, query.strip(), project_id or None, limit)
            return views.enrich_tasks(self.db, cursor, rows)

    # Labels

    def list_labels(self, project_id: str) -> List[Dict[str, Any]]:
        _require(project_id, "project_id")
        with self.db.read() as cursor:
            return self.db.list_label_rows(cursor, project_id)

    def create_label(self, project_id: str, name: str, color: str = DEFAULT_LABEL_COLOR) -> Dict[str, Any]:
        _require(project_id, "project_id")
        _require(name, "name")
        _validate_color(color)
        with self.db.transaction() as cursor:
            self._load_project(cursor, project_id)
            return self.db.insert_label(cursor, project_id, name.strip(), color)

    def update_label(
        self, label_id: str, name: Optional[str] = None, color: Optional[str] = None
    ) -> Dict[str, Any]:
        _require(label_id, "label_id")
        fields: Dict[str, Any] = {}
        if name is not None:
            fields["name"] = _require(name, "name").strip()
        if color is not None:
            fields["color"] = _validate_color(color)

        with self.db.transaction() as cursor:
            self._load_label(cursor, label_id)
            if fields:
                self.db.update_label_row(cursor, label_id, fields)
            return self.db.get_label_row(cursor, label_id)

    def delete_label(self, label_id: str) -> Dict[str, Any]:
        """Delete a label and its task associations. Missing labels are a no-op."""
        _require(label_id, "label_id")
        with self.db.transaction() as cursor:
            deleted = self.db.delete_label_row(cursor, label_id) > 0
        return {"deleted": deleted, "label_id": label_id}

    def _check_label_pair(self, cursor, task_id: str, label_id: str) -> None:
        task = self._load_task(cursor, task_id)
        label = self._load_label(cursor, label_id)
        if task["project_id"] != label["project_id"]:
            raise ValidationError(
                f"Label {label_id} does not belong to the project of task {task_id}",
                field="label_id",
            )

    def assign_label(self, task_id: str, label_id: str) -> Dict[str, Any]:
        """
        Attach a label to a task.

        Assigning an existing pair is a no-op reported as ``created: False``.
        """
        _require(task_id, "task_id")
        _require(label_id, "label_id")
        with self.db.transaction() as cursor:
            self._check_label_pair(cursor, task_id, label_id)
            created = self.db.insert_task_label(cursor, task_id, label_id)
        return {"task_id": task_id, "label_id": label_id, "created": created}

    def unassign_label(self, task_id: str, label_id: str) -> Dict[str, Any]:
        """
        Detach a label from a task.

        Removing an absent pair is a no-op reported as ``removed: False``.
        """
        _require(task_id, "task_id")
        _require(label_id, "label_id")
        with self.db.transaction() as cursor:
            self._check_label_pair(cursor, task_id, label_id)
            removed = self.db.delete_task_label(cursor, task_id, label_id)
        return {"task_id": task_id, "label_id": label_id, "removed": removed}

    # Comments

    def list_comments(self, task_id: str) -> List[Dict[str, Any]]:
        _require(task_id, "task_id")
        with self.db.read() as cursor:
            return self.db.list_comment_rows(cursor, task_id)

    def add_comment(self, task_id: str, content: str, author: str = DEFAULT_ACTOR) -> Dict[str, Any]:
        _require(task_id, "task_id")
        _require(content, "content")
        with self.db.transaction() as cursor:
            self._load_task(cursor, task_id)
            return self.db.insert_comment(cursor, task_id, content, author or DEFAULT_ACTOR)

    def delete_comment(self, comment_id: str) -> Dict[str, Any]:
        _require(comment_id, "comment_id")
        with self.db.transaction() as cursor:
            deleted = self.db.delete_comment_row(cursor, comment_id) > 0
        return {"deleted": deleted, "comment_id": comment_id}

    # Activity and read-side views

    def list_activity(
        self, task_id: Optional[str] = None, project_id: Optional[str] = None, limit: int = 30
    ) -> List[Dict[str, Any]]:
        """
        Activity entries newest first with details parsed.

        Filters by task when ``task_id`` is given, else by project, else
        returns the global feed.
        """
        _validate_limit(limit, MAX_ACTIVITY_LIMIT)
        with self.db.read() as cursor:
            rows = self.db.list_activity_rows(cursor, task_id or None, project_id or None, limit)
        return [views.format_activity(row) for row in rows]

    def dashboard_summary(self, activity_limit: int = 20) -> Dict[str, Any]:
        _validate_limit(activity_limit, MAX_ACTIVITY_LIMIT, field="activity_limit")
        with self.db.read() as cursor:
            return views.dashboard_summary(self.db, cursor, activity_limit)

    def analytics(self, project_id: Optional[str] = None, days: int = 14) -> Dict[str, Any]:
        _validate_limit(days, 365, field="days")
        with self.db.read() as cursor:
            return views.analytics(self.db, cursor, project_id or None, days)

    def export_tasks_csv(self, project_id: Optional[str] = None) -> str:
        with self.db.read() as cursor:
            return views.export_tasks_csv(self.db, cursor, project_id or None)
