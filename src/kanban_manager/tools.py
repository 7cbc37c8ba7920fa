"""
MCP Tools Implementation for Kanban Manager

Provides Model Context Protocol (MCP) tools for AI agents to read and edit
the kanban board. Every tool delegates to KanbanService and returns a JSON
string; failures are reported in the response body instead of raised.

Key Features:
- BaseTool abstract class with service integration and JSON formatting
- Project, task, label, comment and activity tools mirroring the HTTP API
- Activity entries attributed to the "mcp-agent" actor
- Structured error codes (VALIDATION_ERROR, NOT_FOUND, STORAGE_ERROR)
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from .errors import KanbanError
from .models import DEFAULT_LABEL_COLOR
from .service import KanbanService

logger = logging.getLogger(__name__)

MCP_ACTOR = "mcp-agent"


class BaseTool(ABC):
    """
    Abstract base class for MCP tools with service integration.

    Provides common functionality for service access, parameter coercion and
    JSON response formatting. All MCP tools inherit from this base class so
    they share one response shape:

    - success: ``{"success": true, "message": ..., <data fields>}``
    - failure: ``{"success": false, "message": ..., "error_code": ...}``
    """

    def __init__(self, service: KanbanService, actor: str = MCP_ACTOR):
        """
        Initialize tool with its service dependency.

        Args:
            service: KanbanService instance for board operations
            actor: Name recorded on activity entries written by this tool
        """
        self.service = service
        self.actor = actor

    @abstractmethod
    async def apply(self, **kwargs) -> str:
        """
        Apply the tool operation with provided parameters.

        Returns:
            JSON string with operation results or error information
        """
        pass

    def _format_success_response(self, message: str, **kwargs) -> str:
        """
        Format successful operation response as JSON.

        Args:
            message: Success message for the operation
            **kwargs: Additional data fields to include in response

        Returns:
            JSON string with success response
        """
        response = {
            "success": True,
            "message": message,
            **kwargs
        }
        return json.dumps(response)

    def _format_error_response(self, message: str, **kwargs) -> str:
        """
        Format error response as JSON.

        Args:
            message: Error message explaining the failure
            **kwargs: Additional error context (e.g., error_code)

        Returns:
            JSON string with error response
        """
        response = {
            "success": False,
            "message": message,
            **kwargs
        }
        return json.dumps(response)

    def _format_exception(self, error: Exception, action: str) -> str:
        """
        Translate an exception into an error response.

        Service errors keep their message and code. Anything else is logged
        and reported with a generic message.
        """
        if isinstance(error, KanbanError):
            logger.info(f"Tool failed to {action}: {error.message}")
            return self._format_error_response(error.message, error_code=error.code)
        logger.error(f"Unexpected error while trying to {action}: {error}")
        return self._format_error_response(f"Failed to {action}", error_code="INTERNAL_ERROR")

    def _parse_boolean(self, value: Optional[Union[str, bool]], default: bool = False) -> bool:
        """
        Parse string boolean value to actual boolean.

        Accepts both string and boolean inputs, so "true"/"false", "1"/"0"
        and "yes"/"no" all work.
        """
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ('true', '1', 'yes', 'on')
        return bool(value)

    def _parse_optional_int(self, value: Optional[Union[str, int]], name: str) -> Optional[int]:
        """Parse an integer parameter that agents may send as a string."""
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            raise ValueError(f"{name} must be an integer")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{name} must be an integer")


# Projects


class ListProjectsTool(BaseTool):
    """MCP tool to list all projects with their task counts."""

    async def apply(self) -> str:
        try:
            projects = self.service.list_projects()
            logger.info(f"Retrieved {len(projects)} projects")
            return self._format_success_response(f"Found {len(projects)} projects", projects=projects)
        except Exception as e:
            return self._format_exception(e, "list projects")


class GetProjectTool(BaseTool):
    """MCP tool to fetch a project together with its labels and a per-status task breakdown."""

    async def apply(self, project_id: str) -> str:
        try:
            project = self.service.get_project(project_id)
            tasks = self.service.list_tasks(project_id)
            labels = self.service.list_labels(project_id)

            tasks_by_status: Dict[str, int] = {}
            for task in tasks:
                tasks_by_status[task["status"]] = tasks_by_status.get(task["status"], 0) + 1

            return self._format_success_response(
                f"Project '{project['name']}'",
                project={
                    **project,
                    "task_count": len(tasks),
                    "tasks_by_status": tasks_by_status,
                    "labels": labels,
                },
            )
        except Exception as e:
            return self._format_exception(e, "get project")


class CreateProjectTool(BaseTool):
    """MCP tool to create a new project."""

    async def apply(
        self, name: str, description: Optional[str] = None, repo_url: Optional[str] = None
    ) -> str:
        try:
            project = self.service.create_project(name, description=description, repo_url=repo_url)
            return self._format_success_response(
                f"Created project '{project['name']}'", project=project
            )
        except Exception as e:
            return self._format_exception(e, "create project")


class UpdateProjectTool(BaseTool):
    """MCP tool to rename or re-describe a project. Omitted fields are left unchanged."""

    async def apply(
        self,
        project_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        repo_url: Optional[str] = None,
    ) -> str:
        try:
            fields = {
                key: value
                for key, value in (("name", name), ("description", description), ("repo_url", repo_url))
                if value is not None
            }
            project = self.service.update_project(project_id, **fields)
            return self._format_success_response(
                f"Updated project '{project['name']}'", project=project
            )
        except Exception as e:
            return self._format_exception(e, "update project")


class DeleteProjectTool(BaseTool):
    """
    MCP tool to delete a project and everything it owns.

    Tasks, labels, comments and activity entries of the project are removed
    by cascade; the response reports how many of each were deleted.
    """

    async def apply(self, project_id: str) -> str:
        try:
            result = self.service.delete_project(project_id)
            if not result["deleted"]:
                return self._format_success_response(
                    f"Project {project_id} did not exist", **result
                )
            return self._format_success_response(
                f"Deleted project '{result['project_name']}'", **result
            )
        except Exception as e:
            return self._format_exception(e, "delete project")


# Tasks


class ListTasksTool(BaseTool):
    """
    MCP tool to list the tasks of a project in board order.

    Tasks come back enriched with labels, subtask counts and comment counts.
    Optional ``status`` and ``priority`` filters narrow the result.
    """

    async def apply(
        self, project_id: str, status: Optional[str] = None, priority: Optional[str] = None
    ) -> str:
        """
        List tasks of a project.

        Args:
            project_id: Project whose tasks to list
            status: Optional column filter (backlog, todo, in_progress, in_review, done)
            priority: Optional priority filter (critical, high, medium, low)

        Returns:
            JSON string with the task list or error response
        """
        try:
            tasks = self.service.list_tasks(project_id, status=status, priority=priority)
            logger.info(f"Retrieved {len(tasks)} tasks for project {project_id}")
            return self._format_success_response(f"Found {len(tasks)} tasks", tasks=tasks)
        except Exception as e:
            return self._format_exception(e, "list tasks")


class GetTaskTool(BaseTool):
    """MCP tool to fetch one task with labels, counts and, by default, its comments."""

    async def apply(self, task_id: str, include_comments: Optional[Union[str, bool]] = True) -> str:
        try:
            task = self.service.get_task(
                task_id, include_comments=self._parse_boolean(include_comments, default=True)
            )
            return self._format_success_response(f"Task '{task['title']}'", task=task)
        except Exception as e:
            return self._format_exception(e, "get task")


class CreateTaskTool(BaseTool):
    """
    MCP tool to create a task in a project.

    The task is appended to the end of its status column and a
    ``task_created`` activity entry is recorded.
    """

    async def apply(
        self,
        project_id: str,
        title: str,
        description: Optional[str] = None,
        status: str = "backlog",
        priority: str = "medium",
        assignee: Optional[str] = None,
        due_date: Optional[str] = None,
        parent_task_id: Optional[str] = None,
    ) -> str:
        """
        Create a new task.

        Args:
            project_id: Owning project
            title: Task title
            description: Optional description
            status: Initial column (default: backlog)
            priority: Priority (default: medium)
            assignee: Optional assignee name
            due_date: Optional due date (ISO 8601)
            parent_task_id: Optional parent task for subtasks

        Returns:
            JSON string with the created task or error response
        """
        try:
            task = self.service.create_task(
                project_id,
                title=title,
                description=description,
                status=status,
                priority=priority,
                assignee=assignee,
                due_date=due_date,
                parent_task_id=parent_task_id,
                actor=self.actor,
            )
            return self._format_success_response(f"Created task '{task['title']}'", task=task)
        except Exception as e:
            return self._format_exception(e, "create task")


class UpdateTaskTool(BaseTool):
    """
    MCP tool to update task fields.

    Only provided fields change. Changing ``status`` appends the task to the
    destination column; status and priority changes are recorded in the
    activity log.
    """

    async def apply(
        self,
        task_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        assignee: Optional[str] = None,
        due_date: Optional[str] = None,
        parent_task_id: Optional[str] = None,
    ) -> str:
        try:
            candidates = {
                "title": title,
                "description": description,
                "status": status,
                "priority": priority,
                "assignee": assignee,
                "due_date": due_date,
                "parent_task_id": parent_task_id,
            }
            fields = {key: value for key, value in candidates.items() if value is not None}
            if not fields:
                return self._format_error_response(
                    "No fields provided to update", error_code="VALIDATION_ERROR"
                )

            task = self.service.update_task(task_id, actor=self.actor, **fields)
            return self._format_success_response(
                f"Updated task '{task['title']}'",
                task=task,
                updated_fields=sorted(fields),
            )
        except Exception as e:
            return self._format_exception(e, "update task")


class DeleteTaskTool(BaseTool):
    """MCP tool to delete a task with its comments and label associations."""

    async def apply(self, task_id: str) -> str:
        try:
            result = self.service.delete_task(task_id, actor=self.actor)
            message = f"Deleted task {task_id}" if result["deleted"] else f"Task {task_id} did not exist"
            return self._format_success_response(message, **result)
        except Exception as e:
            return self._format_exception(e, "delete task")


class MoveTaskTool(BaseTool):
    """
    MCP tool to move a task to another column or reorder it within one.

    Without ``new_position`` the task is appended to the end of the target
    column. With it, tasks at that index or later shift down by one.
    """

    async def apply(
        self, task_id: str, new_status: str, new_position: Optional[Union[str, int]] = None
    ) -> str:
        try:
            try:
                position = self._parse_optional_int(new_position, "new_position")
            except ValueError as e:
                return self._format_error_response(str(e), error_code="VALIDATION_ERROR")

            result = self.service.move_task(task_id, new_status, position, actor=self.actor)
            task = result["task"]
            return self._format_success_response(
                f"Moved task '{task['title']}' to {task['status']} at position {task['position']}",
                task=task,
                column=result["column"],
            )
        except Exception as e:
            return self._format_exception(e, "move task")


class SearchTasksTool(BaseTool):
    """MCP tool to search task titles by keyword, optionally within one project."""

    async def apply(
        self, query: str, project_id: Optional[str] = None, limit: Optional[Union[str, int]] = 20
    ) -> str:
        try:
            try:
                parsed_limit = self._parse_optional_int(limit, "limit")
            except ValueError as e:
                return self._format_error_response(str(e), error_code="VALIDATION_ERROR")

            if parsed_limit is None:
                parsed_limit = 20

            tasks = self.service.search_tasks(query, project_id=project_id, limit=parsed_limit)
            return self._format_success_response(
                f"Found {len(tasks)} tasks matching '{query}'", tasks=tasks
            )
        except Exception as e:
            return self._format_exception(e, "search tasks")


# Labels


class ListLabelsTool(BaseTool):
    """MCP tool to list the labels defined in a project."""

    async def apply(self, project_id: str) -> str:
        try:
            labels = self.service.list_labels(project_id)
            return self._format_success_response(f"Found {len(labels)} labels", labels=labels)
        except Exception as e:
            return self._format_exception(e, "list labels")


class CreateLabelTool(BaseTool):
    """MCP tool to create a label in a project."""

    async def apply(self, project_id: str, name: str, color: str = DEFAULT_LABEL_COLOR) -> str:
        try:
            label = self.service.create_label(project_id, name, color=color)
            return self._format_success_response(f"Created label '{label['name']}'", label=label)
        except Exception as e:
            return self._format_exception(e, "create label")


class DeleteLabelTool(BaseTool):
    """MCP tool to delete a label and detach it from every task."""

    async def apply(self, label_id: str) -> str:
        try:
            result = self.service.delete_label(label_id)
            message = f"Deleted label {label_id}" if result["deleted"] else f"Label {label_id} did not exist"
            return self._format_success_response(message, **result)
        except Exception as e:
            return self._format_exception(e, "delete label")


class AssignLabelTool(BaseTool):
    """MCP tool to attach a label to a task. Re-assigning is a no-op."""

    async def apply(self, task_id: str, label_id: str) -> str:
        try:
            result = self.service.assign_label(task_id, label_id)
            message = "Label assigned" if result["created"] else "Label was already assigned"
            return self._format_success_response(message, **result)
        except Exception as e:
            return self._format_exception(e, "assign label")


class UnassignLabelTool(BaseTool):
    """MCP tool to detach a label from a task. Detaching an absent label is a no-op."""

    async def apply(self, task_id: str, label_id: str) -> str:
        try:
            result = self.service.unassign_label(task_id, label_id)
            message = "Label removed" if result["removed"] else "Label was not assigned"
            return self._format_success_response(message, **result)
        except Exception as e:
            return self._format_exception(e, "unassign label")


# Comments


class ListCommentsTool(BaseTool):
    """MCP tool to list comments on a task, newest first."""

    async def apply(self, task_id: str) -> str:
        try:
            comments = self.service.list_comments(task_id)
            return self._format_success_response(f"Found {len(comments)} comments", comments=comments)
        except Exception as e:
            return self._format_exception(e, "list comments")


class AddCommentTool(BaseTool):
    """MCP tool to add a comment to a task. The author defaults to the agent actor."""

    async def apply(self, task_id: str, content: str, author: Optional[str] = None) -> str:
        try:
            comment = self.service.add_comment(task_id, content, author=author or self.actor)
            return self._format_success_response("Comment added", comment=comment)
        except Exception as e:
            return self._format_exception(e, "add comment")


class DeleteCommentTool(BaseTool):
    async def apply(self, comment_id: str) -> str:
        try:
            result = self.service.delete_comment(comment_id)
            message = "Comment deleted" if result["deleted"] else f"Comment {comment_id} did not exist"
            return self._format_success_response(message, **result)
        except Exception as e:
            return self._format_exception(e, "delete comment")


# Activity, dashboard and export


class ListActivityTool(BaseTool):
    """
    MCP tool to read the activity log, newest first.

    Filters by task when ``task_id`` is given, otherwise by project when
    ``project_id`` is given, otherwise returns the global feed.
    """

    async def apply(
        self,
        task_id: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: Optional[Union[str, int]] = 30,
    ) -> str:
        try:
            try:
                parsed_limit = self._parse_optional_int(limit, "limit")
            except ValueError as e:
                return self._format_error_response(str(e), error_code="VALIDATION_ERROR")

            if parsed_limit is None:
                parsed_limit = 30

            activity = self.service.list_activity(
                task_id=task_id, project_id=project_id, limit=parsed_limit
            )
            return self._format_success_response(
                f"Found {len(activity)} activity entries", activity=activity
            )
        except Exception as e:
            return self._format_exception(e, "list activity")


class GetDashboardSummaryTool(BaseTool):
    """MCP tool returning board-wide counts by status and priority plus recent activity."""

    async def apply(self) -> str:
        try:
            summary = self.service.dashboard_summary()
            return self._format_success_response("Dashboard summary", summary=summary)
        except Exception as e:
            return self._format_exception(e, "get dashboard summary")


class ExportTasksTool(BaseTool):
    """MCP tool to export tasks as CSV text, for one project or all of them."""

    async def apply(self, project_id: Optional[str] = None) -> str:
        try:
            csv_text = self.service.export_tasks_csv(project_id=project_id)
            row_count = max(len(csv_text.splitlines()) - 1, 0)
            return self._format_success_response(
                f"Exported {row_count} tasks", format="csv", csv=csv_text
            )
        except Exception as e:
            return self._format_exception(e, "export tasks")


AVAILABLE_TOOLS = {
    "list_projects": ListProjectsTool,
    "get_project": GetProjectTool,
    "create_project": CreateProjectTool,
    "update_project": UpdateProjectTool,
    "delete_project": DeleteProjectTool,
    "list_tasks": ListTasksTool,
    "get_task": GetTaskTool,
    "create_task": CreateTaskTool,
    "update_task": UpdateTaskTool,
    "delete_task": DeleteTaskTool,
    "move_task": MoveTaskTool,
    "search_tasks": SearchTasksTool,
    "list_labels": ListLabelsTool,
    "create_label": CreateLabelTool,
    "delete_label": DeleteLabelTool,
    "assign_label": AssignLabelTool,
    "unassign_label": UnassignLabelTool,
    "list_comments": ListCommentsTool,
    "add_comment": AddCommentTool,
    "delete_comment": DeleteCommentTool,
    "list_activity": ListActivityTool,
    "get_dashboard_summary": GetDashboardSummaryTool,
    "export_tasks": ExportTasksTool,
}


def create_tool_instance(tool_name: str, service: KanbanService, actor: str = MCP_ACTOR) -> BaseTool:
    """
    Factory function to create tool instances with dependencies.

    Args:
        tool_name: Name of the tool to create
        service: KanbanService instance for board operations
        actor: Activity attribution for the tool

    Returns:
        Configured tool instance ready for use

    Raises:
        KeyError: If tool_name is not found in AVAILABLE_TOOLS
    """
    if tool_name not in AVAILABLE_TOOLS:
        raise KeyError(f"Unknown tool '{tool_name}'. Available tools: {list(AVAILABLE_TOOLS.keys())}")

    tool_class = AVAILABLE_TOOLS[tool_name]
    return tool_class(service, actor)
