"""
YAML Board Importer

Seeds or refreshes kanban boards from a YAML document. Everything goes
through KanbanService, so imported tasks get positions and task_created
activity exactly like tasks created interactively.

Document shape::

    projects:
      - name: Website
        description: Marketing site
        repo_url: https://example.com/site.git
        labels:
          - {name: bug, color: "#ef4444"}
        tasks:
          - title: Fix header
            status: todo
            priority: high
            labels: [bug]
            comments: ["Seen on mobile", {content: "Repro attached", author: alice}]
            subtasks:
              - title: Check Safari

Projects are matched by name and reused. Within a project, labels are
matched by name and tasks by (parent, title); matched tasks have their
provided fields updated, new ones are created.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import KanbanError
from .service import KanbanService

logger = logging.getLogger(__name__)

IMPORT_ACTOR = "import"
_TASK_FIELDS = ("description", "status", "priority", "assignee", "due_date")


def _field_value(value: Any) -> Any:
    # YAML parses unquoted dates and timestamps into date/datetime objects
    if isinstance(value, date):
        return value.isoformat()
    return value


def _as_list(value: Any, name: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"YAML '{name}' must be a list")
    return value


def import_board(service: KanbanService, yaml_data: Dict[str, Any], actor: str = IMPORT_ACTOR) -> Dict[str, Any]:
    """
    Import projects, labels, tasks and comments from parsed YAML.

    Individual item failures are collected in ``errors`` and do not stop
    the import.

    Args:
        service: KanbanService used for every write
        yaml_data: Parsed YAML document
        actor: Attribution for activity entries

    Returns:
        Dict with import statistics and collected errors

    Raises:
        ValueError: For malformed document structure
    """
    if not isinstance(yaml_data, dict):
        raise ValueError("YAML document must be a dictionary")

    stats: Dict[str, Any] = {
        "projects_created": 0,
        "projects_reused": 0,
        "labels_created": 0,
        "tasks_created": 0,
        "tasks_updated": 0,
        "comments_created": 0,
        "errors": [],
    }

    for project_data in _as_list(yaml_data.get("projects"), "projects"):
        if not isinstance(project_data, dict) or not project_data.get("name"):
            stats["errors"].append("Skipped project entry without a name")
            continue
        try:
            _import_project(service, project_data, stats, actor)
        except KanbanError as e:
            stats["errors"].append(f"Failed to import project '{project_data['name']}': {e.message}")

    logger.info(
        f"Import finished: {stats['projects_created']} projects created, "
        f"{stats['tasks_created']} tasks created, {stats['tasks_updated']} tasks updated, "
        f"{len(stats['errors'])} errors"
    )
    return stats


def _import_project(
    service: KanbanService, project_data: Dict[str, Any], stats: Dict[str, Any], actor: str
) -> None:
    name = str(project_data["name"]).strip()
    existing = service.find_project_by_name(name)
    if existing is None:
        project = service.create_project(
            name, description=project_data.get("description"), repo_url=project_data.get("repo_url")
        )
        stats["projects_created"] += 1
    else:
        project = existing
        stats["projects_reused"] += 1

    project_id = project["id"]

    labels_by_name = {label["name"]: label for label in service.list_labels(project_id)}
    for label_data in _as_list(project_data.get("labels"), "labels"):
        try:
            if not isinstance(label_data, dict) or not label_data.get("name"):
                raise ValueError("label entry must be a mapping with a name")
            label_name = str(label_data["name"]).strip()
            if label_name in labels_by_name:
                continue
            kwargs = {"color": label_data["color"]} if label_data.get("color") else {}
            labels_by_name[label_name] = service.create_label(project_id, label_name, **kwargs)
            stats["labels_created"] += 1
        except (KanbanError, ValueError) as e:
            stats["errors"].append(f"Failed to import label in project '{name}': {e}")

    existing_tasks = {
        (task["parent_task_id"], task["title"]): task for task in service.list_tasks(project_id)
    }
    for task_data in _as_list(project_data.get("tasks"), "tasks"):
        _import_task(service, project_id, task_data, None, labels_by_name, existing_tasks, stats, actor)


def _import_task(
    service: KanbanService,
    project_id: str,
    task_data: Any,
    parent_task_id: Optional[str],
    labels_by_name: Dict[str, Dict[str, Any]],
    existing_tasks: Dict[Tuple[Optional[str], str], Dict[str, Any]],
    stats: Dict[str, Any],
    actor: str,
) -> None:
    if not isinstance(task_data, dict) or not task_data.get("title"):
        stats["errors"].append("Skipped task entry without a title")
        return

    title = str(task_data["title"])
    try:
        fields = {
            key: _field_value(task_data[key]) for key in _TASK_FIELDS if task_data.get(key) is not None
        }
        existing = existing_tasks.get((parent_task_id, title))
        if existing is None:
            task = service.create_task(
                project_id, title=title, parent_task_id=parent_task_id, actor=actor, **fields
            )
            stats["tasks_created"] += 1
            _import_comments(service, task["id"], task_data.get("comments"), stats)
        else:
            task = service.update_task(existing["id"], actor=actor, **fields) if fields else existing
            stats["tasks_updated"] += 1
        existing_tasks[(parent_task_id, title)] = task

        for label_name in _as_list(task_data.get("labels"), "labels"):
            label = labels_by_name.get(str(label_name))
            if label is None:
                stats["errors"].append(f"Unknown label '{label_name}' on task '{title}'")
                continue
            service.assign_label(task["id"], label["id"])

    except (KanbanError, ValueError) as e:
        stats["errors"].append(f"Failed to import task '{title}': {e}")
        return

    subtasks = task_data.get("subtasks")
    if subtasks is not None and not isinstance(subtasks, list):
        stats["errors"].append(f"Subtasks of task '{title}' must be a list")
        return
    for subtask_data in subtasks or []:
        _import_task(
            service, project_id, subtask_data, task["id"], labels_by_name, existing_tasks, stats, actor
        )


def _import_comments(service: KanbanService, task_id: str, comments: Any, stats: Dict[str, Any]) -> None:
    for comment in _as_list(comments, "comments"):
        if isinstance(comment, str):
            content, author = comment, "user"
        elif isinstance(comment, dict) and comment.get("content"):
            content, author = comment["content"], comment.get("author") or "user"
        else:
            stats["errors"].append(f"Skipped malformed comment on task {task_id}")
            continue
        service.add_comment(task_id, str(content), author=str(author))
        stats["comments_created"] += 1


def import_board_from_file(service: KanbanService, yaml_file_path: str, actor: str = IMPORT_ACTOR) -> Dict[str, Any]:
    """
    Import boards from a YAML file.

    Args:
        service: KanbanService used for every write
        yaml_file_path: Path to YAML file

    Returns:
        Dict with import results

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: For invalid YAML or a malformed document
    """
    try:
        with open(yaml_file_path, 'r', encoding='utf-8') as f:
            yaml_data = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"YAML file not found: {yaml_file_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format: {str(e)}")

    if not isinstance(yaml_data, dict):
        raise ValueError("YAML file must contain a dictionary at root level")

    return import_board(service, yaml_data, actor=actor)
