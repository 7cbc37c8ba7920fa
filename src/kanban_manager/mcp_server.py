"""
FastMCP Server Implementation for Kanban Manager

Provides the FastMCP server wrapper that exposes the kanban board to AI
agents: every tool in ``tools.AVAILABLE_TOOLS`` plus read-only
``kanban://`` resources. Supports stdio, SSE and streamable HTTP transports.

Key Features:
- FastMCP server factory with dependency injection of KanbanService
- Tool registration with schemas generated from the wrapper signatures
- Resource registration for projects, project boards and single tasks
- Async and sync startup paths with transport-specific endpoint defaults
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import anyio
from fastmcp import FastMCP
from fastmcp.exceptions import ResourceError

from .errors import KanbanError
from .service import KanbanService
from .tools import AVAILABLE_TOOLS, MCP_ACTOR, create_tool_instance

logger = logging.getLogger(__name__)

SERVER_VERSION = "1.0.0"

RESOURCE_URIS = [
    "kanban://projects",
    "kanban://project/{project_id}",
    "kanban://project/{project_id}/tasks",
    "kanban://task/{task_id}",
]

SUPPORTED_TRANSPORTS = ("stdio", "sse", "http")


class KanbanMCPServer:
    """
    FastMCP server wrapper with lifecycle management, tool and resource registration.

    Holds the KanbanService shared with the HTTP API so both facades operate
    on the same database connection.
    """

    def __init__(
        self,
        service: KanbanService,
        server_name: str = "Kanban Manager MCP",
        server_version: str = SERVER_VERSION,
        actor: str = MCP_ACTOR,
    ):
        """
        Initialize MCP server with its service dependency.

        Args:
            service: KanbanService instance for board operations
            server_name: Name identifier for the MCP server
            server_version: Version string for server identification
            actor: Activity attribution for tool calls
        """
        self.service = service
        self.server_name = server_name
        self.server_version = server_version
        self.actor = actor
        self.mcp_server: Optional[FastMCP] = None

        self._server_instructions = (
            f"{server_name} gives AI agents read and write access to a kanban board. "
            "Projects own tasks and labels; tasks sit in status columns "
            "(backlog, todo, in_progress, in_review, done) ordered by position. "
            "Use move_task to change columns or reorder, and list_activity to review history."
        )

    def _tool(self, name: str):
        return create_tool_instance(name, self.service, self.actor)

    async def _create_server(self) -> FastMCP:
        """
        Create and configure the FastMCP server instance.

        Registers one wrapper function per tool; FastMCP derives each tool's
        input schema from the wrapper's type hints and docstring.

        Returns:
            Configured FastMCP server instance
        """
        try:
            mcp = FastMCP(
                name=self.server_name,
                version=self.server_version,
                instructions=self._server_instructions,
            )
            self._register_project_tools(mcp)
            self._register_task_tools(mcp)
            self._register_label_and_comment_tools(mcp)
            self._register_insight_tools(mcp)
            self._register_resources(mcp)

            logger.info(
                f"FastMCP server '{self.server_name}' created with {len(AVAILABLE_TOOLS)} tools "
                f"and {len(RESOURCE_URIS)} resources"
            )
            return mcp

        except Exception as e:
            logger.error(f"Failed to create FastMCP server: {e}")
            raise RuntimeError(f"MCP server creation failed: {e}") from e

    def _register_project_tools(self, mcp: FastMCP) -> None:
        list_projects_tool = self._tool("list_projects")
        get_project_tool = self._tool("get_project")
        create_project_tool = self._tool("create_project")
        update_project_tool = self._tool("update_project")
        delete_project_tool = self._tool("delete_project")

        @mcp.tool
        async def list_projects() -> str:
            """List all projects with their task counts."""
            return await list_projects_tool.apply()

        @mcp.tool
        async def get_project(project_id: str) -> str:
            """
            Get a project with its labels and task counts per status.

            Args:
                project_id: The project ID
            """
            return await get_project_tool.apply(project_id=project_id)

        @mcp.tool
        async def create_project(
            name: str, description: Optional[str] = None, repo_url: Optional[str] = None
        ) -> str:
            """
            Create a new project.

            Args:
                name: Project name
                description: Project description
                repo_url: Repository URL
            """
            return await create_project_tool.apply(name=name, description=description, repo_url=repo_url)

        @mcp.tool
        async def update_project(
            project_id: str,
            name: Optional[str] = None,
            description: Optional[str] = None,
            repo_url: Optional[str] = None,
        ) -> str:
            """
            Update a project's name, description or repository URL.

            Args:
                project_id: The project ID
                name: New project name
                description: New description
                repo_url: New repository URL
            """
            return await update_project_tool.apply(
                project_id=project_id, name=name, description=description, repo_url=repo_url
            )

        @mcp.tool
        async def delete_project(project_id: str) -> str:
            """
            Delete a project and all its tasks, labels, comments and activity.

            Args:
                project_id: The project ID to delete
            """
            return await delete_project_tool.apply(project_id=project_id)

    def _register_task_tools(self, mcp: FastMCP) -> None:
        list_tasks_tool = self._tool("list_tasks")
        get_task_tool = self._tool("get_task")
        create_task_tool = self._tool("create_task")
        update_task_tool = self._tool("update_task")
        delete_task_tool = self._tool("delete_task")
        move_task_tool = self._tool("move_task")
        search_tasks_tool = self._tool("search_tasks")

        @mcp.tool
        async def list_tasks(
            project_id: str, status: Optional[str] = None, priority: Optional[str] = None
        ) -> str:
            """
            List tasks of a project in board order, with labels and counts.

            Args:
                project_id: The project ID
                status: Filter by status (backlog, todo, in_progress, in_review, done)
                priority: Filter by priority (critical, high, medium, low)
            """
            return await list_tasks_tool.apply(project_id=project_id, status=status, priority=priority)

        @mcp.tool
        async def get_task(task_id: str, include_comments: bool = True) -> str:
            """
            Get a task with labels, subtask and comment counts, and comments.

            Args:
                task_id: The task ID
                include_comments: Whether to include the task's comments
            """
            return await get_task_tool.apply(task_id=task_id, include_comments=include_comments)

        @mcp.tool
        async def create_task(
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
            Create a task at the end of its status column.

            Args:
                project_id: The project ID
                title: Task title
                description: Task description
                status: Initial status (backlog, todo, in_progress, in_review, done)
                priority: Priority (critical, high, medium, low)
                assignee: Assignee name
                due_date: Due date (ISO 8601)
                parent_task_id: Parent task ID for subtasks
            """
            return await create_task_tool.apply(
                project_id=project_id,
                title=title,
                description=description,
                status=status,
                priority=priority,
                assignee=assignee,
                due_date=due_date,
                parent_task_id=parent_task_id,
            )

        @mcp.tool
        async def update_task(
            task_id: str,
            title: Optional[str] = None,
            description: Optional[str] = None,
            status: Optional[str] = None,
            priority: Optional[str] = None,
            assignee: Optional[str] = None,
            due_date: Optional[str] = None,
            parent_task_id: Optional[str] = None,
        ) -> str:
            """
            Update task fields. Only provided fields change.

            Changing status appends the task to the end of the new column.

            Args:
                task_id: The task ID
                title: New title
                description: New description
                status: New status
                priority: New priority
                assignee: New assignee
                due_date: New due date (ISO 8601)
                parent_task_id: New parent task ID
            """
            return await update_task_tool.apply(
                task_id=task_id,
                title=title,
                description=description,
                status=status,
                priority=priority,
                assignee=assignee,
                due_date=due_date,
                parent_task_id=parent_task_id,
            )

        @mcp.tool
        async def delete_task(task_id: str) -> str:
            """
            Delete a task with its comments and label associations.

            Args:
                task_id: The task ID to delete
            """
            return await delete_task_tool.apply(task_id=task_id)

        @mcp.tool
        async def move_task(task_id: str, new_status: str, new_position: Optional[int] = None) -> str:
            """
            Move a task to a status column, optionally at a specific index.

            Without new_position the task is appended to the end of the column.

            Args:
                task_id: The task ID
                new_status: Destination status column
                new_position: Zero-based target index within the column
            """
            return await move_task_tool.apply(task_id=task_id, new_status=new_status, new_position=new_position)

        @mcp.tool
        async def search_tasks(query: str, project_id: Optional[str] = None, limit: int = 20) -> str:
            """
            Search tasks by title keyword.

            Args:
                query: Search keyword
                project_id: Limit search to a specific project
                limit: Maximum number of results
            """
            return await search_tasks_tool.apply(query=query, project_id=project_id, limit=limit)

    def _register_label_and_comment_tools(self, mcp: FastMCP) -> None:
        list_labels_tool = self._tool("list_labels")
        create_label_tool = self._tool("create_label")
        delete_label_tool = self._tool("delete_label")
        assign_label_tool = self._tool("assign_label")
        unassign_label_tool = self._tool("unassign_label")
        list_comments_tool = self._tool("list_comments")
        add_comment_tool = self._tool("add_comment")
        delete_comment_tool = self._tool("delete_comment")

        @mcp.tool
        async def list_labels(project_id: str) -> str:
            """
            List labels defined in a project.

            Args:
                project_id: The project ID
            """
            return await list_labels_tool.apply(project_id=project_id)

        @mcp.tool
        async def create_label(project_id: str, name: str, color: str = "#6366f1") -> str:
            """
            Create a label in a project.

            Args:
                project_id: The project ID
                name: Label name
                color: Hex color (#RGB, #RRGGBB or #RRGGBBAA)
            """
            return await create_label_tool.apply(project_id=project_id, name=name, color=color)

        @mcp.tool
        async def delete_label(label_id: str) -> str:
            """
            Delete a label and remove it from all tasks.

            Args:
                label_id: The label ID
            """
            return await delete_label_tool.apply(label_id=label_id)

        @mcp.tool
        async def assign_label(task_id: str, label_id: str) -> str:
            """
            Attach a label to a task. Assigning twice is a no-op.

            Args:
                task_id: The task ID
                label_id: The label ID
            """
            return await assign_label_tool.apply(task_id=task_id, label_id=label_id)

        @mcp.tool
        async def unassign_label(task_id: str, label_id: str) -> str:
            """
            Detach a label from a task.

            Args:
                task_id: The task ID
                label_id: The label ID
            """
            return await unassign_label_tool.apply(task_id=task_id, label_id=label_id)

        @mcp.tool
        async def list_comments(task_id: str) -> str:
            """
            List comments on a task, newest first.

            Args:
                task_id: The task ID
            """
            return await list_comments_tool.apply(task_id=task_id)

        @mcp.tool
        async def add_comment(task_id: str, content: str, author: Optional[str] = None) -> str:
            """
            Add a comment to a task.

            Args:
                task_id: The task ID
                content: Comment text
                author: Comment author (defaults to mcp-agent)
            """
            return await add_comment_tool.apply(task_id=task_id, content=content, author=author)

        @mcp.tool
        async def delete_comment(comment_id: str) -> str:
            """
            Delete a comment.

            Args:
                comment_id: The comment ID
            """
            return await delete_comment_tool.apply(comment_id=comment_id)

    def _register_insight_tools(self, mcp: FastMCP) -> None:
        list_activity_tool = self._tool("list_activity")
        dashboard_tool = self._tool("get_dashboard_summary")
        export_tool = self._tool("export_tasks")

        @mcp.tool
        async def list_activity(
            task_id: Optional[str] = None, project_id: Optional[str] = None, limit: int = 30
        ) -> str:
            """
            Get recent activity, newest first, for a task, a project or everything.

            Args:
                task_id: Filter by task ID
                project_id: Filter by project ID
                limit: Maximum number of entries
            """
            return await list_activity_tool.apply(task_id=task_id, project_id=project_id, limit=limit)

        @mcp.tool
        async def get_dashboard_summary() -> str:
            """Get task counts by status and priority across all projects, plus recent activity."""
            return await dashboard_tool.apply()

        @mcp.tool
        async def export_tasks(project_id: Optional[str] = None) -> str:
            """
            Export tasks as CSV text.

            Args:
                project_id: Export only this project's tasks
            """
            return await export_tool.apply(project_id=project_id)

    def _register_resources(self, mcp: FastMCP) -> None:
        service = self.service

        def _read(fn, *args, **kwargs) -> str:
            try:
                return json.dumps(fn(*args, **kwargs))
            except KanbanError as e:
                raise ResourceError(e.message) from e

        @mcp.resource("kanban://projects", name="All Projects", mime_type="application/json")
        def projects_resource() -> str:
            """All projects with task counts."""
            return _read(service.list_projects)

        @mcp.resource("kanban://project/{project_id}", name="Project", mime_type="application/json")
        def project_resource(project_id: str) -> str:
            """A single project with its labels."""
            def load() -> Dict[str, Any]:
                project = service.get_project(project_id)
                return {**project, "labels": service.list_labels(project_id)}
            return _read(load)

        @mcp.resource(
            "kanban://project/{project_id}/tasks", name="Project Tasks", mime_type="application/json"
        )
        def project_tasks_resource(project_id: str) -> str:
            """All tasks of a project in board order."""
            def load() -> List[Dict[str, Any]]:
                service.get_project(project_id)
                return service.list_tasks(project_id)
            return _read(load)

        @mcp.resource("kanban://task/{task_id}", name="Task", mime_type="application/json")
        def task_resource(task_id: str) -> str:
            """A task with labels, counts and comments."""
            return _read(service.get_task, task_id, include_comments=True)

    async def start_server(
        self,
        transport: str = "stdio",
        host: str = "127.0.0.1",
        port: int = 8000,
        **kwargs
    ) -> None:
        """
        Start the FastMCP server with specified transport configuration.

        Args:
            transport: Transport mode ('stdio', 'sse', 'http')
            host: Host address for SSE/HTTP transports
            port: Port number for SSE/HTTP transports
            **kwargs: Additional transport-specific configuration
        """
        transport = transport.lower()
        if transport not in SUPPORTED_TRANSPORTS:
            raise ValueError(f"Unsupported transport mode: {transport}. Supported: stdio, sse, http")

        try:
            if not self.mcp_server:
                self.mcp_server = await self._create_server()

            logger.info(f"Starting FastMCP server with {transport} transport")

            if transport == "stdio":
                await self.mcp_server.run_async(transport="stdio")
            else:
                kwargs.setdefault("path", "/sse" if transport == "sse" else "/mcp")
                await self.mcp_server.run_async(transport=transport, host=host, port=port, **kwargs)

        except Exception as e:
            logger.error(f"Failed to start FastMCP server with {transport} transport: {e}")
            raise RuntimeError(f"MCP server startup failed: {e}") from e

    def start_server_sync(self, transport: str = "stdio", host: str = "127.0.0.1", port: int = 8000, **kwargs):
        """
        Start MCP server synchronously.

        Creates the FastMCP server and lets it run its own event loop.
        """
        transport = transport.lower()
        if transport not in SUPPORTED_TRANSPORTS:
            raise ValueError(f"Unsupported transport mode: {transport}")

        if not self.mcp_server:
            self.mcp_server = anyio.run(self._create_server)

        if transport == "stdio":
            self.mcp_server.run()
        else:
            kwargs.setdefault("path", "/sse" if transport == "sse" else "/mcp")
            self.mcp_server.run(transport=transport, host=host, port=port, **kwargs)

    @asynccontextmanager
    async def lifecycle_manager(self):
        """Async context manager creating the server on entry and logging its lifecycle."""
        try:
            if not self.mcp_server:
                self.mcp_server = await self._create_server()

            logger.info(f"FastMCP server lifecycle started for '{self.server_name}'")
            yield self.mcp_server

        except Exception as e:
            logger.error(f"FastMCP server lifecycle error: {e}")
            raise
        finally:
            logger.info(f"FastMCP server lifecycle ended for '{self.server_name}'")

    def get_server_info(self) -> Dict[str, Any]:
        """
        Get server configuration and status information.

        Returns:
            Dictionary with name, version, instructions, registered tools and
            resources, and whether the server has been created
        """
        return {
            "name": self.server_name,
            "version": self.server_version,
            "instructions": self._server_instructions,
            "registered_tools": list(AVAILABLE_TOOLS.keys()),
            "registered_resources": list(RESOURCE_URIS),
            "server_created": self.mcp_server is not None,
        }


def create_mcp_server(
    service: KanbanService,
    server_name: str = "Kanban Manager MCP",
    server_version: str = SERVER_VERSION,
) -> KanbanMCPServer:
    """
    Factory function to create a configured KanbanMCPServer instance.

    Args:
        service: KanbanService instance for board operations
        server_name: Name identifier for the MCP server
        server_version: Version string for server identification

    Returns:
        Configured KanbanMCPServer ready for startup
    """
    return KanbanMCPServer(
        service=service,
        server_name=server_name,
        server_version=server_version,
    )
