from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer

# Key under the mapping `_meta` where a generation records the task that populated it
RECORD_META_KEY = "index_migrator"


class TaskStatus(str, Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"
    UNKNOWN = "Unknown"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMED_OUT)


class TaskKind(str, Enum):
    BULK_COPY = "bulk_copy"
    BACKFILL = "backfill"


class TaskProgress(BaseModel):
    total: Optional[int] = None
    processed: int = 0
    fraction: Optional[float] = None

    @property
    def indeterminate(self) -> bool:
        return self.fraction is None

    def __str__(self):
        if self.indeterminate:
            return f"in progress ({self.processed} processed)"
        return f"{self.fraction * 100:.1f}% ({self.processed}/{self.total})"


class TaskOutcome(BaseModel):
    task_id: Optional[str]
    status: TaskStatus
    progress: TaskProgress = Field(default_factory=TaskProgress)
    failures: List[Any] = Field(default_factory=list)
    error: Optional[Any] = None
    message: str = ""
    requires_verification: bool = False
    polls: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED


class MigrationTask(BaseModel):
    """
    One asynchronous engine-side operation. Tasks created in synchronous mode, or for work that turned out to be
    unnecessary, have no task_id and are terminal from the start.
    """
    task_id: Optional[str]
    kind: TaskKind
    generation: str
    source_generation: Optional[str] = None
    field: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: TaskStatus = TaskStatus.RUNNING
    total_estimate: Optional[int] = None
    processed_count: int = 0
    failures: List[Any] = Field(default_factory=list)
    noop: bool = False

    @field_serializer("started_at")
    def serialize_started_at(self, dt: datetime) -> str:
        return dt.isoformat()

    def apply(self, outcome: TaskOutcome) -> None:
        self.status = outcome.status
        if outcome.progress.total is not None:
            self.total_estimate = outcome.progress.total
        self.processed_count = max(self.processed_count, outcome.progress.processed)
        self.failures = list(outcome.failures)

    def as_record(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "kind": self.kind.value,
            "source_generation": self.source_generation,
            "started_at": self.started_at.isoformat(),
        }

    @classmethod
    def from_record(cls, generation: str, record: Dict[str, Any]) -> "MigrationTask":
        fields: Dict[str, Any] = {
            "task_id": record.get("task_id"),
            "kind": TaskKind(record.get("kind", TaskKind.BULK_COPY.value)),
            "generation": generation,
            "source_generation": record.get("source_generation"),
            "status": TaskStatus(record.get("status", TaskStatus.UNKNOWN.value)),
        }
        if record.get("started_at"):
            fields["started_at"] = record["started_at"]
        return cls(**fields)
