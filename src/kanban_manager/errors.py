"""
Kanban Manager exceptions.

Structured error taxonomy shared by the service layer and both external
facades (HTTP API and MCP tools). Each error carries a stable ``code`` so the
facades can translate failures without string matching.
"""

from typing import Optional


class KanbanError(Exception):
    """Base exception for kanban service errors."""

    def __init__(self, message: str, code: str = "KANBAN_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(KanbanError):
    """A required identifier or field is missing or malformed.

    Raised before any mutation is attempted.
    """

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message, code="VALIDATION_ERROR")


class NotFoundError(KanbanError):
    """A referenced project, task, label or comment does not resolve."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity.capitalize()} {entity_id} not found",
            code="NOT_FOUND",
        )


class StorageError(KanbanError):
    """Underlying persistence failure of any kind.

    The message is generic; the underlying cause is chained via
    ``__cause__`` and logged by the store.
    """

    def __init__(self, message: str = "Storage operation failed"):
        super().__init__(message, code="STORAGE_ERROR")
