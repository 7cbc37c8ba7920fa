"""
Test Suite for the Kanban Manager HTTP API

Exercises every route through FastAPI's TestClient against a temporary
database, including status-code mapping for service errors and request
validation.
"""

from unittest.mock import patch

from fastapi.testclient import TestClient

from kanban_manager import api
from kanban_manager.errors import StorageError


def _create_project(client, name="Board"):
    response = client.post("/api/projects", json={"name": name})
    assert response.status_code == 201
    return response.json()


def _create_task(client, project_id, **fields):
    response = client.post("/api/tasks", json={"project_id": project_id, **fields})
    assert response.status_code == 201
    return response.json()


class TestHealth:

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database_connected"] is True
        assert body["timestamp"].endswith("Z")

    def test_degraded_when_database_closed(self, client, database):
        database.close()
        body = client.get("/healthz").json()
        assert body["status"] == "degraded"
        assert body["database_connected"] is False

    def test_service_unavailable_without_database(self):
        api.configure_service(None)
        response = TestClient(api.app).get("/healthz")
        assert response.status_code == 503
        assert response.json()["detail"] == "Database not available"

    def test_lifespan_opens_database_from_environment(self, db_path, monkeypatch):
        monkeypatch.setenv("DATABASE_PATH", db_path)
        api.configure_service(None)

        with TestClient(api.app) as test_client:
            assert test_client.get("/healthz").json()["database_connected"] is True
            assert api.service_instance is not None

        assert api.service_instance is None


class TestProjectRoutes:

    def test_crud(self, client):
        project = _create_project(client, "Website")
        assert project["name"] == "Website"

        listed = client.get("/api/projects").json()
        assert [(p["name"], p["task_count"]) for p in listed] == [("Website", 0)]

        patched = client.patch(f"/api/projects/{project['id']}", json={"description": "Marketing"})
        assert patched.status_code == 200
        assert patched.json()["description"] == "Marketing"
        assert patched.json()["name"] == "Website"

        fetched = client.get(f"/api/projects/{project['id']}")
        assert fetched.json()["description"] == "Marketing"

        deleted = client.delete(f"/api/projects/{project['id']}")
        assert deleted.json()["success"] is True
        assert deleted.json()["deleted"] is True

        assert client.get(f"/api/projects/{project['id']}").status_code == 404

    def test_missing_project_404(self, client):
        response = client.get("/api/projects/missing")
        assert response.status_code == 404
        assert response.json() == {"detail": "Project missing not found", "code": "NOT_FOUND"}

    def test_empty_name_rejected_by_request_model(self, client):
        assert client.post("/api/projects", json={"name": ""}).status_code == 422

    def test_delete_missing_is_success(self, client):
        response = client.delete("/api/projects/missing")
        assert response.status_code == 200
        assert response.json()["deleted"] is False


class TestTaskRoutes:

    def test_create_defaults(self, client):
        project = _create_project(client)
        task = _create_task(client, project["id"])

        assert task["title"] == "Untitled Task"
        assert task["status"] == "backlog"
        assert task["priority"] == "medium"
        assert task["position"] == 0
        assert task["labels"] == []

    def test_list_requires_project_id(self, client):
        response = client.get("/api/tasks")
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_list_with_filters(self, client):
        project = _create_project(client)
        _create_task(client, project["id"], title="a", status="todo")
        _create_task(client, project["id"], title="b", status="todo", priority="high")
        _create_task(client, project["id"], title="c")

        todo = client.get("/api/tasks", params={"project_id": project["id"], "status": "todo"}).json()
        high = client.get("/api/tasks", params={"project_id": project["id"], "priority": "high"}).json()

        assert [t["title"] for t in todo] == ["a", "b"]
        assert [t["title"] for t in high] == ["b"]

    def test_invalid_status_filter_422(self, client):
        project = _create_project(client)
        response = client.get("/api/tasks", params={"project_id": project["id"], "status": "archived"})
        assert response.status_code == 422

    def test_create_in_unknown_project_404(self, client):
        response = client.post("/api/tasks", json={"project_id": "missing", "title": "x"})
        assert response.status_code == 404

    def test_get_with_comments(self, client, service):
        project = _create_project(client)
        task = _create_task(client, project["id"], title="x")
        service.add_comment(task["id"], "hi")

        plain = client.get(f"/api/tasks/{task['id']}").json()
        detailed = client.get(f"/api/tasks/{task['id']}", params={"include_comments": "true"}).json()

        assert "comments" not in plain
        assert plain["comment_count"] == 1
        assert [c["content"] for c in detailed["comments"]] == ["hi"]

    def test_patch_status_records_user_activity(self, client, service):
        project = _create_project(client)
        task = _create_task(client, project["id"], title="x")

        response = client.patch(f"/api/tasks/{task['id']}", json={"status": "done"})

        assert response.status_code == 200
        assert response.json()["status"] == "done"
        change = service.list_activity(task_id=task["id"])[0]
        assert change["action"] == "status_changed"
        assert change["actor"] == "user"

    def test_patch_null_status_400(self, client):
        project = _create_project(client)
        task = _create_task(client, project["id"], title="x")

        response = client.patch(f"/api/tasks/{task['id']}", json={"status": None})
        assert response.status_code == 400

    def test_patch_missing_task_404(self, client):
        assert client.patch("/api/tasks/missing", json={"title": "x"}).status_code == 404

    def test_delete_is_idempotent(self, client):
        project = _create_project(client)
        task = _create_task(client, project["id"], title="x")

        first = client.delete(f"/api/tasks/{task['id']}")
        second = client.delete(f"/api/tasks/{task['id']}")

        assert first.json() == {"success": True, "deleted": True, "task_id": task["id"], "project_id": project["id"]}
        assert second.status_code == 200
        assert second.json()["deleted"] is False

    def test_reorder(self, client):
        project = _create_project(client)
        a = _create_task(client, project["id"], title="a", status="todo")
        b = _create_task(client, project["id"], title="b", status="todo")
        c = _create_task(client, project["id"], title="c")

        response = client.post(
            "/api/tasks/reorder",
            json={"task_id": c["id"], "new_status": "todo", "new_position": 1},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["task"]["position"] == 1
        assert [t["id"] for t in body["column"]] == [a["id"], c["id"], b["id"]]

    def test_reorder_rejects_negative_position(self, client):
        project = _create_project(client)
        task = _create_task(client, project["id"], title="x")

        response = client.post(
            "/api/tasks/reorder",
            json={"task_id": task["id"], "new_status": "todo", "new_position": -1},
        )
        assert response.status_code == 422

    def test_search_not_captured_by_task_route(self, client):
        project = _create_project(client)
        _create_task(client, project["id"], title="Deploy pipeline")

        response = client.get("/api/tasks/search", params={"q": "pipe"})

        assert response.status_code == 200
        assert [t["title"] for t in response.json()] == ["Deploy pipeline"]

    def test_search_requires_query(self, client):
        assert client.get("/api/tasks/search").status_code == 400


class TestLabelAndCommentRoutes:

    def test_label_routes(self, client):
        project = _create_project(client)
        task = _create_task(client, project["id"], title="x")

        label = client.post("/api/labels", json={"project_id": project["id"], "name": "bug"})
        assert label.status_code == 201
        label_id = label.json()["id"]
        assert label.json()["color"] == "#6366f1"

        patched = client.patch(f"/api/labels/{label_id}", json={"color": "#123456"})
        assert patched.json()["color"] == "#123456"

        first = client.post("/api/task-labels", json={"task_id": task["id"], "label_id": label_id})
        again = client.post("/api/task-labels", json={"task_id": task["id"], "label_id": label_id})
        assert (first.status_code, again.status_code) == (201, 200)
        assert again.json()["created"] is False

        removed = client.delete("/api/task-labels", params={"task_id": task["id"], "label_id": label_id})
        assert removed.json()["removed"] is True

        assert [l["name"] for l in client.get("/api/labels", params={"project_id": project["id"]}).json()] == ["bug"]
        assert client.delete(f"/api/labels/{label_id}").json()["deleted"] is True

    def test_bad_label_color_422(self, client):
        project = _create_project(client)
        response = client.post("/api/labels", json={"project_id": project["id"], "name": "x", "color": "red"})
        assert response.status_code == 422

    def test_cross_project_label_400(self, client):
        project = _create_project(client, "A")
        other = _create_project(client, "B")
        task = _create_task(client, project["id"], title="x")
        label = client.post("/api/labels", json={"project_id": other["id"], "name": "foreign"}).json()

        response = client.post("/api/task-labels", json={"task_id": task["id"], "label_id": label["id"]})
        assert response.status_code == 400

    def test_comment_routes(self, client):
        project = _create_project(client)
        task = _create_task(client, project["id"], title="x")

        created = client.post("/api/comments", json={"task_id": task["id"], "content": "first"})
        assert created.status_code == 201
        assert created.json()["author"] == "user"

        listed = client.get("/api/comments", params={"task_id": task["id"]}).json()
        assert [c["content"] for c in listed] == ["first"]

        deleted = client.delete(f"/api/comments/{created.json()['id']}")
        assert deleted.json() == {"success": True, "deleted": True, "comment_id": created.json()["id"]}

    def test_comment_on_missing_task_404(self, client):
        response = client.post("/api/comments", json={"task_id": "missing", "content": "x"})
        assert response.status_code == 404


class TestInsightRoutes:

    def test_activity_feed(self, client):
        project = _create_project(client)
        task = _create_task(client, project["id"], title="x")
        client.post("/api/tasks/reorder", json={"task_id": task["id"], "new_status": "done"})

        feed = client.get("/api/activity", params={"project_id": project["id"], "limit": 1}).json()
        assert feed[0]["action"] == "status_changed"
        assert feed[0]["details"] == {"from": "backlog", "to": "done", "title": "x"}

        assert client.get("/api/activity", params={"limit": 500}).status_code == 422

    def test_dashboard_and_analytics(self, client):
        project = _create_project(client)
        _create_task(client, project["id"], title="x", priority="critical")

        dashboard = client.get("/api/dashboard").json()
        assert dashboard["total_tasks"] == 1
        assert dashboard["tasks_by_priority"]["critical"] == 1

        analytics = client.get("/api/analytics", params={"days": 7}).json()
        assert analytics["days"] == 7
        assert analytics["tasks_per_project"][0]["total"] == 1

    def test_export_csv_attachment(self, client):
        project = _create_project(client)
        _create_task(client, project["id"], title="Exported")

        response = client.get("/api/export", params={"project_id": project["id"]})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        disposition = response.headers["content-disposition"]
        assert disposition.startswith('attachment; filename="kanban-export-')
        assert disposition.endswith('.csv"')
        assert "Exported" in response.text


class TestErrorMapping:

    def test_storage_error_500(self, client, service):
        with patch.object(service, "list_projects", side_effect=StorageError()):
            response = client.get("/api/projects")

        assert response.status_code == 500
        assert response.json() == {"detail": "Storage operation failed", "code": "STORAGE_ERROR"}
