import logging
from typing import Any, Callable, Dict, List, Optional

from index_migrator.middleware.error_handler import handle_errors
from index_migrator.middleware.json_support import support_json_return
from index_migrator.models.cutover import CutoverResult
from index_migrator.models.lazy_backfill import BackfillScope
from index_migrator.models.orchestrator import MigrationReport, SchemaMigrator
from index_migrator.models.planner import FieldRequest, MigrationPlan, Strategy
from index_migrator.models.task import MigrationTask, TaskOutcome, TaskProgress, TaskStatus

logger = logging.getLogger(__name__)

# A task that is still running after a --no-wait submission is not a failure
ACCEPTABLE_STATUSES = (TaskStatus.COMPLETED, TaskStatus.RUNNING)


@support_json_return()
@handle_errors("migration")
def plan(migrator: SchemaMigrator, logical_name: str, fields: List[FieldRequest],
         target_mapping: Optional[Dict[str, Any]] = None, strategy: Optional[Strategy] = None) -> MigrationPlan:
    logger.info(f"Planning migration of {logical_name} with {len(fields)} field(s)")
    return migrator.plan(logical_name, fields, target_mapping=target_mapping, strategy_override=strategy)


@support_json_return()
@handle_errors("migration", succeeded=lambda report: report.outcome in ACCEPTABLE_STATUSES)
def run(migrator: SchemaMigrator, logical_name: str, fields: List[FieldRequest],
        target_mapping: Optional[Dict[str, Any]] = None, strategy: Optional[Strategy] = None, wait: bool = True,
        cutover: bool = True, timeout: Optional[float] = None, poll_interval: Optional[float] = None,
        on_progress: Optional[Callable[[TaskProgress], None]] = None) -> MigrationReport:
    logger.info(f"Running migration of {logical_name} with {wait=} {cutover=}")
    return migrator.migrate_schema(logical_name, fields, target_mapping=target_mapping, strategy_override=strategy,
                                   wait=wait, cutover=cutover, timeout=timeout, poll_interval=poll_interval,
                                   on_progress=on_progress)


@support_json_return()
@handle_errors("backfill", succeeded=lambda task: task.status in ACCEPTABLE_STATUSES)
def backfill(migrator: SchemaMigrator, generation: str, field_name: str, field_type: str, default_value: Any,
             scope: BackfillScope = BackfillScope.MISSING_ONLY, wait: bool = True, timeout: Optional[float] = None,
             poll_interval: Optional[float] = None,
             on_progress: Optional[Callable[[TaskProgress], None]] = None) -> MigrationTask:
    logger.info(f"Backfilling {field_name} on {generation} with {scope=}")
    return migrator.backfill(generation, field_name, field_type, default_value, scope=scope, wait=wait,
                             timeout=timeout, poll_interval=poll_interval, on_progress=on_progress)


@support_json_return()
@handle_errors("task", succeeded=lambda outcome: outcome.succeeded)
def await_task(migrator: SchemaMigrator, task_id: str, timeout: float, poll_interval: Optional[float] = None,
               generation: Optional[str] = None,
               on_progress: Optional[Callable[[TaskProgress], None]] = None) -> TaskOutcome:
    logger.info(f"Awaiting task {task_id} for up to {timeout}s")
    return migrator.await_migration(task_id, timeout, poll_interval=poll_interval, generation=generation,
                                    on_progress=on_progress)


@support_json_return()
@handle_errors("cutover")
def cutover(migrator: SchemaMigrator, logical_name: str, candidate: str,
            previous: Optional[str] = None) -> CutoverResult:
    logger.info(f"Cutting {logical_name} over to {candidate}")
    return migrator.cutover(logical_name, candidate, previous=previous)


@support_json_return()
@handle_errors("rollback")
def rollback(migrator: SchemaMigrator, logical_name: str, previous: str) -> CutoverResult:
    logger.info(f"Rolling {logical_name} back to {previous}")
    return migrator.rollback(logical_name, previous)
