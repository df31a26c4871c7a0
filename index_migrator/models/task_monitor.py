"""
Polling of long-running engine tasks (reindex, update-by-query) until they reach a terminal state.

A monitored task moves SUBMITTED -> POLLING -> {COMPLETED | FAILED | TIMED_OUT}. POLLING is re-entered after
every poll that reports a non-terminal status. Polls that return nothing usable (the engine's task registry
often lags behind submission) or that fail at the transport level are retried up to `max_empty_responses`
consecutive times before the task is reported as FAILED.

Timing out or being cancelled only stops the monitoring: the engine task is never cancelled from here, and the
outcome says so explicitly so the caller can verify it out of band.
"""
from dataclasses import dataclass, field
from enum import Enum
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from index_migrator.models.errors import EngineUnavailable
from index_migrator.models.search_engine import SearchEngine
from index_migrator.models.task import MigrationTask, TaskOutcome, TaskProgress, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_MAX_EMPTY_RESPONSES = 30

# Counters that together describe how many documents a reindex/update-by-query has worked through
PROCESSED_COUNTERS = ("created", "updated", "deleted", "noops", "version_conflicts")


class MonitorState(str, Enum):
    SUBMITTED = "Submitted"
    POLLING = "Polling"
    COMPLETED = "Completed"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"
    CANCELLED = "Cancelled"


@dataclass
class TaskSnapshot:
    completed: bool
    total: Optional[int]
    processed: int
    error: Optional[Any] = None
    failures: List[Any] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.error is not None or bool(self.failures)


def response_failures(response: Dict) -> List[Any]:
    """Per-document failures of a finished task, plus one entry when the engine stopped it part way."""
    failures = list(response.get("failures") or [])
    if response.get("timed_out"):
        failures.append({"reason": "the engine reported timed_out"})
    return failures


def parse_task_response(body: Optional[Dict]) -> Optional[TaskSnapshot]:
    """Interpret a GET _tasks/<id> body, returning None when it carries no usable status."""
    if not body or not isinstance(body, dict):
        return None
    task = body.get("task")
    if not isinstance(task, dict) and "completed" not in body:
        return None
    task = task if isinstance(task, dict) else {}
    status = task.get("status") or {}
    response = body.get("response") or {}

    completed = bool(body.get("completed"))
    error = body.get("error")
    # Some engine versions report a state string on the status instead of the top-level completed flag
    state = status.get("state")
    if state == "SUCCESS":
        completed = True
    elif state == "FAILED":
        completed = True
        error = error or status.get("error") or "task reported state FAILED"

    failures = response_failures(response)
    if response.get("canceled"):
        error = error or f"task was cancelled: {response['canceled']}"

    counters = response if completed and response else status
    total = counters.get("total", status.get("total"))
    processed = sum(int(counters.get(name) or 0) for name in PROCESSED_COUNTERS)
    return TaskSnapshot(completed=completed, total=None if total is None else int(total), processed=processed,
                        error=error, failures=failures)


def parse_completed_response(response: Dict) -> TaskSnapshot:
    """Interpret the body of a reindex/update-by-query that ran with wait_for_completion=true."""
    failures = response_failures(response)
    processed = sum(int(response.get(name) or 0) for name in PROCESSED_COUNTERS)
    total = response.get("total")
    return TaskSnapshot(completed=True, total=None if total is None else int(total), processed=processed,
                        failures=failures)


class ProgressTracker:
    """Keeps reported progress monotonically non-decreasing across polls."""

    def __init__(self) -> None:
        self.total: Optional[int] = None
        self.processed = 0
        self.fraction: Optional[float] = None

    def update(self, snapshot: TaskSnapshot) -> TaskProgress:
        self.processed = max(self.processed, snapshot.processed)
        if snapshot.total is not None:
            self.total = snapshot.total
            if snapshot.total > 0:
                fraction = min(self.processed / snapshot.total, 1.0)
            else:
                fraction = 1.0 if snapshot.completed else 0.0
            self.fraction = fraction if self.fraction is None else max(self.fraction, fraction)
        return self.current()

    def current(self) -> TaskProgress:
        return TaskProgress(total=self.total, processed=self.processed, fraction=self.fraction)


class TaskMonitor:
    def __init__(self, engine: SearchEngine, poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
                 max_empty_responses: int = DEFAULT_MAX_EMPTY_RESPONSES,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.engine = engine
        self.poll_interval = poll_interval
        self.max_empty_responses = max_empty_responses
        self._clock = clock
        self._sleep = sleep

    def poll_once(self, task_id: str) -> Optional[TaskSnapshot]:
        try:
            return parse_task_response(self.engine.get_task(task_id))
        except EngineUnavailable as e:
            logger.warning(f"Unable to poll task {task_id}: {e}")
            return None

    def check(self, task_id: str) -> TaskOutcome:
        """A single poll, without waiting. Status is Unknown when the engine gives no usable answer."""
        snapshot = self.poll_once(task_id)
        if snapshot is None:
            return TaskOutcome(task_id=task_id, status=TaskStatus.UNKNOWN, polls=1,
                               message=f"No status available for task {task_id}", requires_verification=True)
        progress = ProgressTracker().update(snapshot)
        if not snapshot.completed:
            return TaskOutcome(task_id=task_id, status=TaskStatus.RUNNING, progress=progress, polls=1)
        return self._terminal_outcome(task_id, snapshot, progress, polls=1)

    def wait_for(self, task_id: str, timeout: float, poll_interval: Optional[float] = None,
                 cancel_event: Optional[threading.Event] = None,
                 on_progress: Optional[Callable[[TaskProgress], None]] = None) -> TaskOutcome:
        if timeout is None or timeout <= 0:
            raise ValueError("An explicit, positive timeout is required to wait for a task")
        interval = self.poll_interval if poll_interval is None else poll_interval
        deadline = self._clock() + timeout
        tracker = ProgressTracker()
        state = MonitorState.SUBMITTED
        consecutive_empty = 0
        polls = 0
        logger.info(f"Monitoring task {task_id} (timeout {timeout}s, poll interval {interval}s)")

        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Monitoring of task {task_id} was cancelled; the task was left running")
                logger.debug(f"Task {task_id}: {state.value} -> {MonitorState.CANCELLED.value}")
                return TaskOutcome(task_id=task_id, status=TaskStatus.UNKNOWN, progress=tracker.current(),
                                   polls=polls, requires_verification=True,
                                   message=f"Monitoring cancelled; task {task_id} was not cancelled on the engine "
                                           f"and must be verified out of band (GET _tasks/{task_id})")
            if self._clock() >= deadline:
                logger.error(f"Task {task_id} did not finish within {timeout}s; it may still be running")
                logger.debug(f"Task {task_id}: {state.value} -> {MonitorState.TIMED_OUT.value}")
                return TaskOutcome(task_id=task_id, status=TaskStatus.TIMED_OUT, progress=tracker.current(),
                                   polls=polls, requires_verification=True,
                                   message=f"Task {task_id} did not finish within {timeout}s. It was left running "
                                           f"and must be verified out of band (GET _tasks/{task_id})")

            polls += 1
            snapshot = self.poll_once(task_id)
            if snapshot is None:
                consecutive_empty += 1
                if consecutive_empty > self.max_empty_responses:
                    logger.error(f"No usable status for task {task_id} after {consecutive_empty} attempts")
                    logger.debug(f"Task {task_id}: {state.value} -> {MonitorState.FAILED.value}")
                    return TaskOutcome(task_id=task_id, status=TaskStatus.FAILED, progress=tracker.current(),
                                       polls=polls, requires_verification=True,
                                       message=f"Task status unavailable after {consecutive_empty} consecutive "
                                               f"attempts; the task may have failed to start")
                logger.warning(f"Task {task_id} not ready yet "
                               f"(attempt {consecutive_empty}/{self.max_empty_responses}), waiting...")
            else:
                consecutive_empty = 0
                if state != MonitorState.POLLING:
                    logger.debug(f"Task {task_id}: {state.value} -> {MonitorState.POLLING.value}")
                    state = MonitorState.POLLING
                progress = tracker.update(snapshot)
                if on_progress is not None:
                    on_progress(progress)
                if snapshot.completed:
                    outcome = self._terminal_outcome(task_id, snapshot, progress, polls)
                    logger.debug(f"Task {task_id}: {state.value} -> {outcome.status.value}")
                    return outcome

            remaining = deadline - self._clock()
            self._wait(min(interval, max(remaining, 0)), cancel_event)

    def track(self, task: MigrationTask, timeout: float, **kwargs) -> TaskOutcome:
        """Wait for a driver-submitted task and apply the outcome to it."""
        if task.task_id is None or task.status.terminal:
            return TaskOutcome(task_id=task.task_id, status=task.status, failures=task.failures,
                               progress=TaskProgress(total=task.total_estimate, processed=task.processed_count,
                                                     fraction=1.0 if task.status == TaskStatus.COMPLETED else None))
        outcome = self.wait_for(task.task_id, timeout, **kwargs)
        task.apply(outcome)
        return outcome

    def _wait(self, seconds: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None:
            cancel_event.wait(seconds)
        else:
            self._sleep(seconds)

    @staticmethod
    def _terminal_outcome(task_id: str, snapshot: TaskSnapshot, progress: TaskProgress, polls: int) -> TaskOutcome:
        if snapshot.failed:
            logger.error(f"Task {task_id} failed: error={snapshot.error} failures={snapshot.failures[:5]}")
            return TaskOutcome(task_id=task_id, status=TaskStatus.FAILED, progress=progress, polls=polls,
                               failures=snapshot.failures, error=snapshot.error,
                               message=f"Task {task_id} failed; a partial copy is not resumable and must be "
                                       f"resubmitted into a clean generation")
        logger.info(f"Task {task_id} completed: {progress}")
        return TaskOutcome(task_id=task_id, status=TaskStatus.COMPLETED, progress=progress, polls=polls,
                           message=f"Task {task_id} completed")
