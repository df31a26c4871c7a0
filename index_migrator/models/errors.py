from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    DEFINITIONAL = "definitional"
    TRANSIENT = "transient"
    TASK = "task"
    CLEANUP = "cleanup"
    PRECONDITION = "precondition"


class MigrationError(Exception):
    category: ErrorCategory = ErrorCategory.DEFINITIONAL


class GenerationAlreadyExists(MigrationError):
    def __init__(self, name: str):
        super().__init__(f"Index generation '{name}' already exists; delete it or choose a new suffix")
        self.name = name


class TypeConflict(MigrationError):
    def __init__(self, field: str, existing_type: Optional[str], requested_type: Optional[str]):
        super().__init__(f"Field '{field}' is mapped as '{existing_type}' and cannot be changed to "
                         f"'{requested_type}' in place; a full regeneration is required")
        self.field = field
        self.existing_type = existing_type
        self.requested_type = requested_type


class EngineRejected(MigrationError):
    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(f"Search engine rejected the request: {message}")
        self.status_code = status_code
        self.payload = payload


class EngineUnavailable(MigrationError):
    category = ErrorCategory.TRANSIENT

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(f"Search engine unavailable: {message}")
        self.status_code = status_code


class TaskFailed(MigrationError):
    category = ErrorCategory.TASK

    def __init__(self, task_id: Optional[str], message: str, payload: Any = None):
        super().__init__(f"Task {task_id} failed: {message}")
        self.task_id = task_id
        self.payload = payload


class GenerationNotFound(MigrationError):
    category = ErrorCategory.PRECONDITION

    def __init__(self, name: str):
        super().__init__(f"Index generation '{name}' does not exist")
        self.name = name


class GenerationInUse(MigrationError):
    category = ErrorCategory.PRECONDITION

    def __init__(self, name: str, aliases):
        super().__init__(f"Index generation '{name}' is still live behind alias(es) {sorted(aliases)}")
        self.name = name
        self.aliases = aliases


class CutoverPreconditionFailed(MigrationError):
    category = ErrorCategory.PRECONDITION


class RollbackUnavailable(MigrationError):
    category = ErrorCategory.PRECONDITION


class NotAGeneration(MigrationError):
    category = ErrorCategory.PRECONDITION

    def __init__(self, name: str, targets):
        super().__init__(f"'{name}' is an alias for {sorted(targets)}, not an index generation")
        self.name = name
        self.targets = targets
