"""
FastAPI Backend for Kanban Manager

Provides REST endpoints over KanbanService for projects, tasks, labels,
comments, activity, dashboard analytics and CSV export. Service errors are
mapped to HTTP status codes by exception handlers; activity written through
this API is attributed to the "user" actor.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .database import KanbanDatabase, utc_now
from .errors import KanbanError, NotFoundError, StorageError, ValidationError
from .models import (
    CommentCreate,
    HealthResponse,
    LabelAssignment,
    LabelCreate,
    LabelUpdate,
    ProjectCreate,
    ProjectUpdate,
    TaskCreate,
    TaskPriority,
    TaskReorder,
    TaskStatus,
    TaskUpdate,
)
from .service import KanbanService

logger = logging.getLogger(__name__)

API_ACTOR = "user"
DEFAULT_DB_PATH = "kanban.db"

# Service shared by all requests; set by the lifespan or by configure_service()
service_instance: Optional[KanbanService] = None
_owns_database = False

ERROR_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    StorageError: 500,
}


def configure_service(service: Optional[KanbanService]) -> None:
    """
    Install an externally created service, e.g. one shared with the MCP server.

    When a service is configured the lifespan neither opens nor closes a
    database of its own.
    """
    global service_instance
    service_instance = service


def get_service() -> KanbanService:
    """
    FastAPI dependency to provide the service instance.

    Raises:
        HTTPException: 503 if the service has not been initialized
    """
    if service_instance is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return service_instance


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context manager for startup/shutdown operations.

    Opens the database named by ``DATABASE_PATH`` unless a service was
    configured beforehand, and closes it again on shutdown.
    """
    global service_instance, _owns_database

    if service_instance is None:
        db_path = os.getenv("DATABASE_PATH", DEFAULT_DB_PATH)
        try:
            service_instance = KanbanService(KanbanDatabase(db_path))
            _owns_database = True
            logger.info(f"Database initialized: {db_path}")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    logger.info("Kanban Manager API starting up...")

    yield

    if _owns_database and service_instance is not None:
        service_instance.db.close()
        service_instance = None
        _owns_database = False
        logger.info("Database connection closed")


app = FastAPI(
    title="Kanban Manager API",
    description="REST API for a personal kanban board shared with AI agents",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(KanbanError)
async def kanban_exception_handler(request: Request, exc: KanbanError):
    """Map service errors to HTTP status codes."""
    status_code = 500
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


@app.get("/healthz", response_model=HealthResponse)
async def health_check(service: KanbanService = Depends(get_service)):
    """Health check reporting database connectivity."""
    database_connected = service.db.is_connected()
    if not database_connected:
        logger.error("Database health check failed")

    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        database_connected=database_connected,
        timestamp=utc_now(),
    )


# Projects

@app.get("/api/projects")
async def list_projects(service: KanbanService = Depends(get_service)) -> List[Dict[str, Any]]:
    return service.list_projects()


@app.post("/api/projects", status_code=201)
async def create_project(payload: ProjectCreate, service: KanbanService = Depends(get_service)):
    return service.create_project(payload.name, payload.description, payload.repo_url)


@app.get("/api/projects/{project_id}")
async def get_project(project_id: str, service: KanbanService = Depends(get_service)):
    return service.get_project(project_id)


@app.patch("/api/projects/{project_id}")
async def update_project(
    project_id: str, payload: ProjectUpdate, service: KanbanService = Depends(get_service)
):
    return service.update_project(project_id, **payload.model_dump(exclude_unset=True))


@app.delete("/api/projects/{project_id}")
async def delete_project(project_id: str, service: KanbanService = Depends(get_service)):
    """Delete a project; its tasks, labels, comments and activity go with it."""
    return {"success": True, **service.delete_project(project_id)}


# Tasks

@app.get("/api/tasks")
async def list_tasks(
    project_id: Optional[str] = None,
    status: Optional[TaskStatus] = None,
    priority: Optional[TaskPriority] = None,
    service: KanbanService = Depends(get_service),
):
    """List enriched tasks of a project in board order. ``project_id`` is required."""
    return service.list_tasks(project_id, status=status, priority=priority)


@app.post("/api/tasks", status_code=201)
async def create_task(payload: TaskCreate, service: KanbanService = Depends(get_service)):
    return service.create_task(actor=API_ACTOR, **payload.model_dump(mode="json"))


# Registered before /api/tasks/{task_id} so "search" is not taken as an ID
@app.get("/api/tasks/search")
async def search_tasks(
    q: Optional[str] = None,
    project_id: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    service: KanbanService = Depends(get_service),
):
    return service.search_tasks(q, project_id=project_id, limit=limit)


@app.post("/api/tasks/reorder")
async def reorder_task(payload: TaskReorder, service: KanbanService = Depends(get_service)):
    """
    Move a task to a column, appended or at an explicit position.

    Returns the moved task and the destination column as re-read after the move.
    """
    result = service.move_task(
        payload.task_id, payload.new_status, payload.new_position, actor=API_ACTOR
    )
    return {"success": True, **result}


@app.get("/api/tasks/{task_id}")
async def get_task(
    task_id: str,
    include_comments: bool = False,
    service: KanbanService = Depends(get_service),
):
    return service.get_task(task_id, include_comments=include_comments)


@app.patch("/api/tasks/{task_id}")
async def update_task(
    task_id: str, payload: TaskUpdate, service: KanbanService = Depends(get_service)
):
    fields = payload.model_dump(exclude_unset=True, mode="json")
    return service.update_task(task_id, actor=API_ACTOR, **fields)


@app.delete("/api/tasks/{task_id}")
async def delete_task(task_id: str, service: KanbanService = Depends(get_service)):
    return {"success": True, **service.delete_task(task_id, actor=API_ACTOR)}


# Labels

@app.get("/api/labels")
async def list_labels(project_id: Optional[str] = None, service: KanbanService = Depends(get_service)):
    return service.list_labels(project_id)


@app.post("/api/labels", status_code=201)
async def create_label(payload: LabelCreate, service: KanbanService = Depends(get_service)):
    return service.create_label(payload.project_id, payload.name, payload.color)


@app.patch("/api/labels/{label_id}")
async def update_label(label_id: str, payload: LabelUpdate, service: KanbanService = Depends(get_service)):
    return service.update_label(label_id, **payload.model_dump(exclude_unset=True))


@app.delete("/api/labels/{label_id}")
async def delete_label(label_id: str, service: KanbanService = Depends(get_service)):
    return {"success": True, **service.delete_label(label_id)}


@app.post("/api/task-labels", status_code=201)
async def assign_label(
    payload: LabelAssignment, response: Response, service: KanbanService = Depends(get_service)
):
    """Attach a label to a task. Returns 200 instead of 201 if it was already attached."""
    result = service.assign_label(payload.task_id, payload.label_id)
    if not result["created"]:
        response.status_code = 200
    return {"success": True, **result}


@app.delete("/api/task-labels")
async def unassign_label(
    task_id: Optional[str] = None,
    label_id: Optional[str] = None,
    service: KanbanService = Depends(get_service),
):
    return {"success": True, **service.unassign_label(task_id, label_id)}


# Comments

@app.get("/api/comments")
async def list_comments(task_id: Optional[str] = None, service: KanbanService = Depends(get_service)):
    return service.list_comments(task_id)


@app.post("/api/comments", status_code=201)
async def add_comment(payload: CommentCreate, service: KanbanService = Depends(get_service)):
    return service.add_comment(payload.task_id, payload.content, payload.author)


@app.delete("/api/comments/{comment_id}")
async def delete_comment(comment_id: str, service: KanbanService = Depends(get_service)):
    return {"success": True, **service.delete_comment(comment_id)}


# Activity, dashboard, analytics and export

@app.get("/api/activity")
async def list_activity(
    task_id: Optional[str] = None,
    project_id: Optional[str] = None,
    limit: int = Query(30, ge=1, le=200),
    service: KanbanService = Depends(get_service),
):
    return service.list_activity(task_id=task_id, project_id=project_id, limit=limit)


@app.get("/api/dashboard")
async def dashboard_summary(service: KanbanService = Depends(get_service)):
    return service.dashboard_summary()


@app.get("/api/analytics")
async def analytics(
    project_id: Optional[str] = None,
    days: int = Query(14, ge=1, le=365),
    service: KanbanService = Depends(get_service),
):
    return service.analytics(project_id=project_id, days=days)


@app.get("/api/export")
async def export_tasks(project_id: Optional[str] = None, service: KanbanService = Depends(get_service)):
    """Download tasks as a CSV attachment."""
    csv_text = service.export_tasks_csv(project_id=project_id)
    filename = f"kanban-export-{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.csv"
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
