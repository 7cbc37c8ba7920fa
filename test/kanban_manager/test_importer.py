"""
Tests for the YAML board importer.

Covers first import, re-import matching (projects by name, tasks by parent
and title), per-item error collection, and file handling.
"""

import pytest
import yaml

from kanban_manager.importer import import_board, import_board_from_file


@pytest.fixture
def board_data():
    return {
        "projects": [
            {
                "name": "Website",
                "description": "Marketing site",
                "repo_url": "https://example.com/site.git",
                "labels": [
                    {"name": "bug", "color": "#ef4444"},
                    {"name": "ui"},
                ],
                "tasks": [
                    {
                        "title": "Fix header",
                        "status": "todo",
                        "priority": "high",
                        "labels": ["bug", "ui"],
                        "comments": ["Seen on mobile", {"content": "Repro attached", "author": "alice"}],
                        "subtasks": [
                            {"title": "Check Safari"},
                            {"title": "Check Firefox", "status": "done"},
                        ],
                    },
                    {"title": "Write copy", "assignee": "bob"},
                ],
            }
        ]
    }


class TestImportBoard:

    def test_first_import(self, service, board_data):
        stats = import_board(service, board_data)

        assert stats == {
            "projects_created": 1,
            "projects_reused": 0,
            "labels_created": 2,
            "tasks_created": 4,
            "tasks_updated": 0,
            "comments_created": 2,
            "errors": [],
        }

        (project,) = service.list_projects()
        assert project["repo_url"] == "https://example.com/site.git"

        labels = {l["name"]: l for l in service.list_labels(project["id"])}
        assert labels["bug"]["color"] == "#ef4444"
        assert labels["ui"]["color"] == "#6366f1"

        tasks = {t["title"]: t for t in service.list_tasks(project["id"])}
        header = tasks["Fix header"]
        assert (header["status"], header["priority"]) == ("todo", "high")
        assert sorted(l["name"] for l in header["labels"]) == ["bug", "ui"]
        assert header["comment_count"] == 2
        assert header["subtask_count"] == 2
        assert header["subtask_done_count"] == 1
        assert tasks["Check Safari"]["parent_task_id"] == header["id"]
        assert tasks["Write copy"]["assignee"] == "bob"

        authors = sorted(c["author"] for c in service.list_comments(header["id"]))
        assert authors == ["alice", "user"]

    def test_import_goes_through_service(self, service, board_data):
        import_board(service, board_data)
        project = service.list_projects()[0]

        backlog = service.list_tasks(project["id"], status="backlog")
        assert [t["position"] for t in backlog] == list(range(len(backlog)))

        entries = service.list_activity(project_id=project["id"], limit=50)
        assert {e["action"] for e in entries} == {"task_created"}
        assert {e["actor"] for e in entries} == {"import"}
        assert len(entries) == 4

    def test_reimport_updates_instead_of_duplicating(self, service, board_data):
        import_board(service, board_data)

        board_data["projects"][0]["tasks"][0]["priority"] = "critical"
        board_data["projects"][0]["tasks"].append({"title": "New task"})
        stats = import_board(service, board_data)

        assert stats["projects_created"] == 0
        assert stats["projects_reused"] == 1
        assert stats["labels_created"] == 0
        assert stats["tasks_created"] == 1
        assert stats["tasks_updated"] == 4
        assert stats["comments_created"] == 0

        project = service.list_projects()[0]
        tasks = service.list_tasks(project["id"])
        assert len(tasks) == 5
        header = next(t for t in tasks if t["title"] == "Fix header")
        assert header["priority"] == "critical"
        assert header["comment_count"] == 2
        assert len(header["labels"]) == 2

    def test_reimport_matches_oldest_project_by_name(self, service, board_data):
        import_board(service, board_data)
        service.create_project("Website", "Created later by hand")

        stats = import_board(service, board_data)

        assert stats["projects_reused"] == 1
        assert stats["tasks_created"] == 0
        later = [p for p in service.list_projects() if p["description"] == "Created later by hand"]
        assert service.list_tasks(later[0]["id"]) == []

    def test_unquoted_dates_stored_as_iso_strings(self, service):
        data = yaml.safe_load(
            "projects:\n"
            "  - name: Dated\n"
            "    tasks:\n"
            "      - title: Ship\n"
            "        due_date: 2025-01-15\n"
        )

        import_board(service, data)
        import_board(service, data)

        project = service.list_projects()[0]
        (task,) = service.list_tasks(project["id"])
        assert task["due_date"] == "2025-01-15"

    def test_item_errors_are_collected(self, service):
        data = {
            "projects": [
                {"description": "no name"},
                {
                    "name": "Board",
                    "labels": [{"name": "bad", "color": "red"}],
                    "tasks": [
                        {"title": "Bad status", "status": "archived"},
                        {"description": "no title"},
                        {"title": "Unknown label", "labels": ["missing"]},
                        {"title": "Good"},
                    ],
                },
            ]
        }

        stats = import_board(service, data)

        assert stats["projects_created"] == 1
        assert stats["tasks_created"] == 2
        assert len(stats["errors"]) == 5
        assert any("Unknown label 'missing'" in e for e in stats["errors"])
        assert any("Bad status" in e for e in stats["errors"])

    def test_empty_document(self, service):
        stats = import_board(service, {})
        assert stats["projects_created"] == 0
        assert stats["errors"] == []

    @pytest.mark.parametrize("data", [
        {"projects": {"name": "not a list"}},
        {"projects": [{"name": "Board", "tasks": "not a list"}]},
    ])
    def test_structural_errors_raise(self, service, data):
        with pytest.raises(ValueError, match="must be a list"):
            import_board(service, data)

    def test_non_dict_document(self, service):
        with pytest.raises(ValueError):
            import_board(service, ["projects"])


class TestImportFromFile:

    def test_import_from_file(self, service, board_data, tmp_path):
        path = tmp_path / "board.yaml"
        path.write_text(yaml.dump(board_data), encoding="utf-8")

        stats = import_board_from_file(service, str(path))
        assert stats["tasks_created"] == 4

    def test_file_not_found(self, service):
        with pytest.raises(FileNotFoundError):
            import_board_from_file(service, "/nonexistent/board.yaml")

    def test_invalid_yaml(self, service, tmp_path):
        path = tmp_path / "invalid.yaml"
        path.write_text("projects: [unclosed", encoding="utf-8")

        with pytest.raises(ValueError, match="Invalid YAML"):
            import_board_from_file(service, str(path))

    def test_root_must_be_mapping(self, service, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text(yaml.dump(["a", "b"]), encoding="utf-8")

        with pytest.raises(ValueError, match="dictionary"):
            import_board_from_file(service, str(path))
