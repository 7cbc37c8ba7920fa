"""
Shared fixtures for Kanban Manager tests.

Every test gets an isolated temporary SQLite database in WAL mode. The
``client`` fixture points the FastAPI app at the same service the test
seeds, so HTTP and service-level assertions see the same rows.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

project_root = Path(__file__).parent.parent.parent / "src"
sys.path.insert(0, str(project_root))

from kanban_manager import api
from kanban_manager.database import KanbanDatabase
from kanban_manager.service import KanbanService


def _unlink_database_files(db_path: str) -> None:
    for suffix in ("", "-wal", "-shm"):
        Path(db_path + suffix).unlink(missing_ok=True)


@pytest.fixture
def db_path():
    """Path of a fresh temporary database file, removed with its WAL files afterwards."""
    temp_file = tempfile.NamedTemporaryFile(delete=False, suffix='.db', prefix='test_kanban_')
    temp_file.close()
    yield temp_file.name
    _unlink_database_files(temp_file.name)


@pytest.fixture
def database(db_path):
    db = KanbanDatabase(db_path)
    yield db
    db.close()


@pytest.fixture
def service(database):
    return KanbanService(database)


@pytest.fixture
def project(service):
    return service.create_project("Test Project", "Project used by the test suite")


@pytest.fixture
def client(service):
    """TestClient bound to the test service; the app opens no database of its own."""
    api.configure_service(service)
    api.app.dependency_overrides[api.get_service] = lambda: service
    with TestClient(api.app) as test_client:
        yield test_client
    api.app.dependency_overrides.clear()
    api.configure_service(None)


@pytest.fixture
def clean_environment():
    """Restore DATABASE_PATH after tests that let the CLI export it."""
    saved = os.environ.get("DATABASE_PATH")
    yield
    if saved is None:
        os.environ.pop("DATABASE_PATH", None)
    else:
        os.environ["DATABASE_PATH"] = saved
