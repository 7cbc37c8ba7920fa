"""
Tests for the FastMCP server wrapper.

Tools and resources are exercised through an in-memory fastmcp Client, so
schemas generated from the wrapper signatures are checked as well as the
JSON payloads they return.
"""

import json

import pytest
from fastmcp import Client, FastMCP

from kanban_manager.mcp_server import (
    RESOURCE_URIS,
    KanbanMCPServer,
    create_mcp_server,
)
from kanban_manager.tools import AVAILABLE_TOOLS


@pytest.fixture
def mcp_server(service):
    return create_mcp_server(service)


class TestServerSetup:

    def test_factory_defaults(self, mcp_server, service):
        assert isinstance(mcp_server, KanbanMCPServer)
        assert mcp_server.service is service
        assert mcp_server.actor == "mcp-agent"

        info = mcp_server.get_server_info()
        assert info["name"] == "Kanban Manager MCP"
        assert info["version"] == "1.0.0"
        assert set(info["registered_tools"]) == set(AVAILABLE_TOOLS)
        assert info["registered_resources"] == RESOURCE_URIS
        assert info["server_created"] is False

    def test_custom_name(self, service):
        server = create_mcp_server(service, server_name="Board Agent", server_version="2.0.0")
        info = server.get_server_info()
        assert (info["name"], info["version"]) == ("Board Agent", "2.0.0")
        assert "Board Agent" in info["instructions"]

    @pytest.mark.asyncio
    async def test_create_server(self, mcp_server):
        mcp = await mcp_server._create_server()
        assert isinstance(mcp, FastMCP)
        assert mcp.name == "Kanban Manager MCP"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("transport", ["websocket", "grpc", ""])
    async def test_unsupported_transport(self, mcp_server, transport):
        with pytest.raises(ValueError, match="Unsupported transport"):
            await mcp_server.start_server(transport=transport)

    def test_unsupported_transport_sync(self, mcp_server):
        with pytest.raises(ValueError):
            mcp_server.start_server_sync(transport="websocket")

    @pytest.mark.asyncio
    async def test_lifecycle_manager(self, mcp_server):
        async with mcp_server.lifecycle_manager() as mcp:
            assert isinstance(mcp, FastMCP)
            assert mcp_server.get_server_info()["server_created"] is True


class TestToolsOverProtocol:

    @pytest.mark.asyncio
    async def test_list_tools(self, mcp_server):
        mcp = await mcp_server._create_server()

        async with Client(mcp) as client:
            tools = await client.list_tools()

        assert {tool.name for tool in tools} == set(AVAILABLE_TOOLS)
        move = next(tool for tool in tools if tool.name == "move_task")
        assert set(move.inputSchema["required"]) == {"task_id", "new_status"}

    @pytest.mark.asyncio
    async def test_create_and_move_task(self, mcp_server, service, project):
        mcp = await mcp_server._create_server()

        async with Client(mcp) as client:
            created = await client.call_tool(
                "create_task", {"project_id": project["id"], "title": "From agent", "status": "todo"}
            )
            task = json.loads(created.content[0].text)["task"]

            moved = await client.call_tool(
                "move_task", {"task_id": task["id"], "new_status": "in_progress"}
            )
            payload = json.loads(moved.content[0].text)

        assert payload["success"] is True
        assert payload["task"]["status"] == "in_progress"
        actions = [(e["action"], e["actor"]) for e in service.list_activity(task_id=task["id"])]
        assert actions == [("status_changed", "mcp-agent"), ("task_created", "mcp-agent")]

    @pytest.mark.asyncio
    async def test_error_envelope(self, mcp_server):
        mcp = await mcp_server._create_server()

        async with Client(mcp) as client:
            result = await client.call_tool("get_task", {"task_id": "missing"})

        assert json.loads(result.content[0].text) == {
            "success": False, "message": "Task missing not found", "error_code": "NOT_FOUND",
        }


class TestResources:

    @pytest.mark.asyncio
    async def test_projects_resource(self, mcp_server, project):
        mcp = await mcp_server._create_server()

        async with Client(mcp) as client:
            contents = await client.read_resource("kanban://projects")

        projects = json.loads(contents[0].text)
        assert [(p["id"], p["task_count"]) for p in projects] == [(project["id"], 0)]

    @pytest.mark.asyncio
    async def test_project_and_task_resources(self, mcp_server, service, project):
        label = service.create_label(project["id"], "bug")
        task = service.create_task(project["id"], "x")
        service.add_comment(task["id"], "note")
        mcp = await mcp_server._create_server()

        async with Client(mcp) as client:
            board = json.loads((await client.read_resource(f"kanban://project/{project['id']}"))[0].text)
            tasks = json.loads((await client.read_resource(f"kanban://project/{project['id']}/tasks"))[0].text)
            detail = json.loads((await client.read_resource(f"kanban://task/{task['id']}"))[0].text)

        assert [l["id"] for l in board["labels"]] == [label["id"]]
        assert [t["id"] for t in tasks] == [task["id"]]
        assert [c["content"] for c in detail["comments"]] == ["note"]

    @pytest.mark.asyncio
    async def test_missing_task_resource(self, mcp_server):
        mcp = await mcp_server._create_server()

        async with Client(mcp) as client:
            with pytest.raises(Exception, match="not found"):
                await client.read_resource("kanban://task/missing")
