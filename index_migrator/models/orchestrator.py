import contextlib
import logging
import threading
from typing import Any, Callable, ContextManager, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from index_migrator.models.bulk_copy import BulkCopyDriver
from index_migrator.models.cutover import CutoverCoordinator, CutoverResult
from index_migrator.models.document_source import DocumentSource, LoadReport, SourceLoader
from index_migrator.models.errors import CutoverPreconditionFailed, GenerationNotFound
from index_migrator.models.generation import IndexGenerationManager
from index_migrator.models.lazy_backfill import BackfillScope, LazyBackfillDriver
from index_migrator.models.migration_settings import MigrationSettings
from index_migrator.models.planner import (FieldRequest, MappingDiffPlanner, MigrationPlan, Strategy,
                                           next_generation_name, split_generation_name)
from index_migrator.models.search_engine import SearchEngine
from index_migrator.models.task import MigrationTask, TaskKind, TaskOutcome, TaskProgress, TaskStatus
from index_migrator.models.task_monitor import TaskMonitor

logger = logging.getLogger(__name__)

Lease = Callable[[str], ContextManager]
ProgressCallback = Callable[[TaskProgress], None]


class MigrationReport(BaseModel):
    logical_name: str
    strategy: Strategy
    source_generation: str
    dest_generation: Optional[str] = None
    tasks: List[MigrationTask] = Field(default_factory=list)
    outcome: TaskStatus = TaskStatus.RUNNING
    requires_verification: bool = False
    documents_before: Optional[int] = None
    documents_after: Optional[int] = None
    # Lazy backfills only: documents still lacking each backfilled field once the tasks finished
    missing_after: Dict[str, int] = Field(default_factory=dict)
    live_generation: Optional[str] = None
    cutover: Optional[CutoverResult] = None
    messages: List[str] = Field(default_factory=list)

    @property
    def task_ids(self) -> List[str]:
        return [t.task_id for t in self.tasks if t.task_id]

    @property
    def succeeded(self) -> bool:
        return self.outcome == TaskStatus.COMPLETED

    def display(self) -> str:
        lines = [f"Strategy: {self.strategy.value}",
                 f"Source generation: {self.source_generation}"]
        if self.dest_generation:
            lines.append(f"Destination generation: {self.dest_generation}")
        if self.task_ids:
            lines.append(f"Tasks: {', '.join(self.task_ids)}")
        lines.append(f"Outcome: {self.outcome.value}")
        lines.append(f"Documents before: {self.documents_before}, after: {self.documents_after}")
        for field_name, missing in self.missing_after.items():
            lines.append(f"Documents still missing {field_name}: {missing}")
        lines.extend(self.messages)
        if self.cutover:
            lines.append(self.cutover.display())
        lines.append(f"Live generation for {self.logical_name}: {self.live_generation or 'UNRESOLVED'}")
        return "\n".join(lines)


class SchemaMigrator:
    """
    Runs schema migrations against the generations behind a logical index name.

    Only one migration per logical name may be in flight at a time. This class does not coordinate concurrent
    callers on its own: pass a `lease` factory (for example a lock held in an external store) and every
    mutating operation runs inside `lease(logical_name)`. Without a lease, running two migrations of the same
    logical name concurrently is undefined behaviour; they may race on the destination name and on the alias.

    Writes that reach the live generation while a full regeneration copies it are not carried over by the copy.
    Callers that cannot pause writes around cutover must supply a dual-write bridge of their own.
    """

    def __init__(self, engine: SearchEngine, settings: Optional[MigrationSettings] = None,
                 lease: Optional[Lease] = None, monitor: Optional[TaskMonitor] = None) -> None:
        self.engine = engine
        self.settings = settings or MigrationSettings()
        self.lease = lease or (lambda logical_name: contextlib.nullcontext())
        self.generations = IndexGenerationManager(engine, index_settings=self.settings.index_settings)
        self.planner = MappingDiffPlanner()
        self.copier = BulkCopyDriver(engine, batch_size=self.settings.batch_size,
                                     requests_per_second=self.settings.requests_per_second,
                                     slices=self.settings.slices)
        self.backfiller = LazyBackfillDriver(engine, batch_size=self.settings.batch_size)
        self.monitor = monitor or TaskMonitor(engine, poll_interval=self.settings.poll_interval_seconds,
                                              max_empty_responses=self.settings.max_empty_responses)
        self.coordinator = CutoverCoordinator(engine, self.generations, self.monitor, self.copier,
                                              strategy=self.settings.cutover_strategy,
                                              replace_concrete_index=self.settings.replace_concrete_index,
                                              retire_old_generation=self.settings.retire_old_generation,
                                              copy_timeout=self.settings.timeout_seconds)

    def current_generation(self, logical_name: str) -> str:
        live = self.generations.resolve(logical_name)
        if not live:
            raise GenerationNotFound(logical_name)
        if len(live) > 1:
            raise CutoverPreconditionFailed(f"'{logical_name}' resolves to several generations {live}; "
                                            f"point it at exactly one before migrating")
        return live[0]

    def plan(self, logical_name: str, requested_fields: Iterable[FieldRequest] = (),
             target_mapping: Optional[Dict[str, Any]] = None,
             strategy_override: Optional[Strategy] = None) -> MigrationPlan:
        source = self.current_generation(logical_name)
        existing = set(self.generations.list(logical_name))
        existing.update(self.generations.list(split_generation_name(source)[0]))
        return self.planner.plan(source, self.engine.get_mapping(source), requested_fields,
                                 target_mapping=target_mapping, strategy_override=strategy_override,
                                 existing_generations=existing)

    def migrate_schema(self, logical_name: str, requested_fields: Iterable[FieldRequest] = (),
                       target_mapping: Optional[Dict[str, Any]] = None, strategy_override: Optional[Strategy] = None,
                       wait: bool = True, cutover: bool = True, timeout: Optional[float] = None,
                       poll_interval: Optional[float] = None, cancel_event: Optional[threading.Event] = None,
                       on_progress: Optional[ProgressCallback] = None) -> MigrationReport:
        with self.lease(logical_name):
            plan = self.plan(logical_name, requested_fields, target_mapping, strategy_override)
            report = MigrationReport(logical_name=logical_name, strategy=plan.strategy,
                                     source_generation=plan.source_generation,
                                     dest_generation=plan.dest_generation,
                                     documents_before=self.engine.count(plan.source_generation))
            logger.info(f"Migrating {logical_name}:\n{plan.describe()}")
            wait_args = dict(timeout=timeout or self.settings.timeout_seconds, poll_interval=poll_interval,
                             cancel_event=cancel_event, on_progress=on_progress)
            if plan.is_noop:
                report.outcome = TaskStatus.COMPLETED
                report.documents_after = report.documents_before
                report.messages.append("The mapping already matches the request; nothing to migrate")
            elif plan.strategy == Strategy.LAZY_BACKFILL:
                self._run_lazy_backfill(plan, report, wait, wait_args)
            else:
                self._run_full_regeneration(plan, report, wait, cutover, wait_args)
            report.live_generation = self._live_generation(logical_name)
            return report

    def await_migration(self, task_id: str, timeout: float, poll_interval: Optional[float] = None,
                        generation: Optional[str] = None, cancel_event: Optional[threading.Event] = None,
                        on_progress: Optional[ProgressCallback] = None) -> TaskOutcome:
        outcome = self.monitor.wait_for(task_id, timeout, poll_interval=poll_interval, cancel_event=cancel_event,
                                        on_progress=on_progress)
        if generation is not None:
            with self.lease(split_generation_name(generation)[0]):
                recorded = self.generations.recorded_outcome(generation)
                if recorded is None or recorded.task_id != task_id:
                    recorded = MigrationTask(task_id=task_id, kind=TaskKind.BULK_COPY, generation=generation)
                recorded.apply(outcome)
                self.generations.record_outcome(generation, recorded)
        return outcome

    def backfill(self, generation: str, field_name: str, field_type: str | Dict[str, Any], default_value: Any,
                 scope: BackfillScope = BackfillScope.MISSING_ONLY, wait: bool = True,
                 timeout: Optional[float] = None, poll_interval: Optional[float] = None,
                 cancel_event: Optional[threading.Event] = None,
                 on_progress: Optional[ProgressCallback] = None) -> MigrationTask:
        with self.lease(split_generation_name(generation)[0]):
            task = self.backfiller.backfill(generation, field_name, field_type, default_value, scope=scope)
            if wait:
                self.monitor.track(task, timeout=timeout or self.settings.timeout_seconds,
                                   poll_interval=poll_interval, cancel_event=cancel_event, on_progress=on_progress)
            return task

    def cutover(self, logical_name: str, candidate: str, previous: Optional[str] = None) -> CutoverResult:
        with self.lease(logical_name):
            return self.coordinator.cutover(logical_name, candidate, old_generation=previous)

    def rollback(self, logical_name: str, previous: str) -> CutoverResult:
        with self.lease(logical_name):
            return self.coordinator.rollback(logical_name, previous)

    def rebuild_from_source(self, logical_name: str, source: DocumentSource, mapping: Dict[str, Any],
                            cutover: bool = True) -> MigrationReport:
        """Build a new generation straight from the system of record instead of copying the live one."""
        with self.lease(logical_name):
            live = self.generations.resolve(logical_name)
            base = live[0] if len(live) == 1 else logical_name
            existing = set(self.generations.list(logical_name))
            existing.update(self.generations.list(split_generation_name(base)[0]))
            dest = next_generation_name(base, existing)
            report = MigrationReport(logical_name=logical_name, strategy=Strategy.FULL_REGENERATION,
                                     source_generation=base, dest_generation=dest)
            if len(live) == 1:
                report.documents_before = self.engine.count(base)

            self.generations.create(dest, mapping)
            load: LoadReport = SourceLoader(self.engine, chunk_size=self.settings.batch_size).load(source, dest)
            task = MigrationTask(task_id=None, kind=TaskKind.BULK_COPY, generation=dest,
                                 status=TaskStatus.COMPLETED if load.succeeded else TaskStatus.FAILED,
                                 processed_count=load.indexed, failures=load.errors[:20])
            self.generations.record_outcome(dest, task)
            report.tasks.append(task)
            report.outcome = task.status
            report.documents_after = self.engine.count(dest)
            report.messages.append(load.display())
            if load.succeeded and cutover:
                report.cutover = self.coordinator.cutover(logical_name, dest,
                                                          old_generation=live[0] if len(live) == 1 else None)
            elif not load.succeeded:
                report.messages.append(f"{dest} was left in place for inspection and is not live")
            report.live_generation = self._live_generation(logical_name)
            return report

    def _run_lazy_backfill(self, plan: MigrationPlan, report: MigrationReport, wait: bool,
                           wait_args: Dict[str, Any]) -> None:
        generation = plan.source_generation
        backfilled = []
        report.outcome = TaskStatus.COMPLETED
        for change in plan.fields_to_add.values():
            if change.default is None:
                self.backfiller.ensure_field(generation, change.name, change.descriptor)
                report.messages.append(f"{change.name} was added to the mapping; existing documents were not "
                                       f"backfilled because no default was given")
                continue
            task = self.backfiller.backfill(generation, change.name, change.descriptor, change.default)
            report.tasks.append(task)
            backfilled.append(change.name)
            if not wait:
                if not task.status.terminal:
                    report.outcome = TaskStatus.RUNNING
                continue
            outcome = self.monitor.track(task, **wait_args)
            if not outcome.succeeded:
                report.outcome = outcome.status
                report.requires_verification = outcome.requires_verification
                report.messages.append(outcome.message)
                break
        if report.outcome == TaskStatus.RUNNING:
            report.messages.append(f"Backfill tasks are still running: {', '.join(report.task_ids)}")
        if report.outcome == TaskStatus.COMPLETED:
            report.missing_after = {name: self.backfiller.count_missing(generation, name) for name in backfilled}
        report.documents_after = self.engine.count(generation)

    def _run_full_regeneration(self, plan: MigrationPlan, report: MigrationReport, wait: bool, cutover: bool,
                               wait_args: Dict[str, Any]) -> None:
        dest = plan.dest_generation
        self.generations.create(dest, plan.target_mapping)
        task = self.copier.copy(plan.source_generation, dest, plan.transform_script)
        self.generations.record_outcome(dest, task)
        report.tasks.append(task)
        if not wait:
            report.outcome = task.status
            if task.task_id:
                report.messages.append(f"Copy into {dest} is running as task {task.task_id}; await it with "
                                       f"`migrate await {task.task_id} --generation {dest}` before cutting over")
            return

        outcome = self.monitor.track(task, **wait_args)
        self.generations.record_outcome(dest, task)
        report.outcome = outcome.status
        report.requires_verification = outcome.requires_verification
        if not outcome.succeeded:
            report.messages.append(outcome.message)
            report.messages.append(f"{dest} was left in place and is not live; delete it before resubmitting")
            return
        report.documents_after = self.engine.count(dest)
        if cutover:
            report.cutover = self.coordinator.cutover(report.logical_name, dest,
                                                      old_generation=plan.source_generation, outcome=outcome)
        else:
            report.messages.append(f"{dest} is ready; cut over with `migrate cutover {report.logical_name} {dest}`")

    def _live_generation(self, logical_name: str) -> Optional[str]:
        live = self.generations.resolve(logical_name)
        if len(live) != 1:
            logger.error(f"{logical_name} resolves to {live or 'nothing'}")
            return None
        return live[0]
