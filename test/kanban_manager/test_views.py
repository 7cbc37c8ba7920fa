"""Tests for read-side views: dashboard summary, analytics and CSV export."""

import csv
import io
from datetime import datetime, timezone

from kanban_manager import views
from kanban_manager.views import CSV_HEADERS, _chunks


def _today():
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class TestEnrichment:

    def test_chunks_split_large_id_lists(self):
        ids = [str(i) for i in range(1201)]
        chunks = list(_chunks(ids))
        assert [len(c) for c in chunks] == [500, 500, 201]

    def test_empty_input(self, database):
        with database.read() as cursor:
            assert views.enrich_tasks(database, cursor, []) == []

    def test_labels_sorted_by_name(self, service, project):
        task = service.create_task(project["id"], "x")
        for name in ("zeta", "alpha"):
            label = service.create_label(project["id"], name)
            service.assign_label(task["id"], label["id"])

        labels = service.get_task(task["id"])["labels"]
        assert [l["name"] for l in labels] == ["alpha", "zeta"]
        assert set(labels[0]) == {"id", "project_id", "name", "color", "created_at"}


class TestDashboardSummary:

    def test_empty_board_is_zero_filled(self, service):
        summary = service.dashboard_summary()

        assert summary["total_projects"] == 0
        assert summary["total_tasks"] == 0
        assert summary["tasks_by_status"] == {
            "backlog": 0, "todo": 0, "in_progress": 0, "in_review": 0, "done": 0,
        }
        assert summary["tasks_by_priority"] == {"critical": 0, "high": 0, "medium": 0, "low": 0}
        assert summary["recent_activity"] == []

    def test_counts_and_recent_activity(self, service, project):
        service.create_task(project["id"], "a", priority="high")
        task = service.create_task(project["id"], "b", status="done")
        service.create_project("Second")

        summary = service.dashboard_summary(activity_limit=1)

        assert summary["total_projects"] == 2
        assert summary["total_tasks"] == 2
        assert summary["tasks_by_status"]["backlog"] == 1
        assert summary["tasks_by_status"]["done"] == 1
        assert summary["tasks_by_priority"]["high"] == 1
        assert summary["tasks_by_priority"]["medium"] == 1

        (latest,) = summary["recent_activity"]
        assert latest["task_id"] == task["id"]
        assert latest["task_title"] == "b"
        assert latest["project_name"] == "Test Project"
        assert latest["details"] == {"title": "b"}

    def test_deleted_task_keeps_project_name(self, service, project):
        task = service.create_task(project["id"], "gone")
        service.delete_task(task["id"])

        latest = service.dashboard_summary()["recent_activity"][0]
        assert latest["action"] == "task_deleted"
        assert latest["task_title"] is None
        assert latest["project_name"] == "Test Project"


class TestAnalytics:

    def test_trends_and_completions(self, service, project):
        done_task = service.create_task(project["id"], "finish me")
        service.create_task(project["id"], "in flight", status="in_progress")
        service.move_task(done_task["id"], "done")
        service.update_task(done_task["id"], status="todo")

        data = service.analytics()

        assert data["days"] == 14
        assert data["created_trend"] == [{"date": _today(), "count": 2}]
        assert data["completed_trend"] == [{"date": _today(), "count": 1}]
        assert data["tasks_per_project"] == [{
            "project_id": project["id"],
            "project_name": "Test Project",
            "total": 2,
            "done": 0,
            "in_progress": 1,
        }]
        (completion,) = data["recent_completions"]
        assert completion["task_title"] == "finish me"
        assert completion["details"]["to"] == "done"

    def test_project_filter(self, service, project):
        other = service.create_project("Other")
        service.create_task(other["id"], "elsewhere")

        data = service.analytics(project_id=project["id"])

        assert data["created_trend"] == []
        assert [p["project_name"] for p in data["tasks_per_project"]] == ["Test Project"]

    def test_malformed_details_are_ignored(self, service, database, project):
        with database.transaction() as cursor:
            database.insert_activity(cursor, "status_changed", project["id"], None, "not json", "user")

        data = service.analytics()
        assert data["completed_trend"] == []
        assert data["recent_completions"] == []


class TestExport:

    def _rows(self, text):
        return list(csv.reader(io.StringIO(text)))

    def test_header_only_when_empty(self, service):
        assert self._rows(service.export_tasks_csv()) == [CSV_HEADERS]

    def test_project_export_in_board_order(self, service, project):
        first = service.create_task(project["id"], "first", description='He said "hi", then left')
        second = service.create_task(project["id"], "second", assignee="alice")
        service.move_task(second["id"], "backlog", 0)

        rows = self._rows(service.export_tasks_csv(project_id=project["id"]))

        assert rows[0] == CSV_HEADERS
        assert [r[0] for r in rows[1:]] == [second["id"], first["id"]]
        assert rows[2][1] == "Test Project"
        assert rows[2][3] == 'He said "hi", then left'
        assert rows[1][6] == "alice"
        assert rows[2][6] == ""

    def test_global_export_in_creation_order(self, service, project):
        other = service.create_project("Other")
        a = service.create_task(other["id"], "a")
        b = service.create_task(project["id"], "b")

        rows = self._rows(service.export_tasks_csv())
        assert [r[0] for r in rows[1:]] == [a["id"], b["id"]]
