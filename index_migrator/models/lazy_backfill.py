"""
In-place addition of a field to an existing generation.

A backfill (1) makes sure the field is in the mapping with the requested type, (2) counts the documents that
still lack a value and stops there when none do, and (3) submits an update-by-query limited to those documents.
Limiting the update to documents without a value makes a crashed or repeated run safe to start again: documents
that already received the value are not touched a second time.
"""
from enum import Enum
import logging
from typing import Any, Dict, Optional

from index_migrator.models.errors import EngineRejected, TypeConflict
from index_migrator.models.field_mappings import descriptor_type, expand_field_type
from index_migrator.models.planner import mapping_properties
from index_migrator.models.search_engine import SearchEngine
from index_migrator.models.task import MigrationTask, TaskKind, TaskStatus
from index_migrator.models.task_monitor import parse_completed_response

logger = logging.getLogger(__name__)

MISSING_ONLY_SCRIPT = ("if (ctx._source[params.field] != null) { ctx.op = 'noop'; } "
                       "else { ctx._source[params.field] = params.value; }")
OVERWRITE_SCRIPT = "ctx._source[params.field] = params.value;"


class BackfillScope(str, Enum):
    MISSING_ONLY = "missing-only"
    ALL = "all"


def missing_field_query(field_name: str) -> Dict[str, Any]:
    return {"bool": {"must_not": {"exists": {"field": field_name}}}}


class LazyBackfillDriver:
    def __init__(self, engine: SearchEngine, batch_size: Optional[int] = None) -> None:
        self.engine = engine
        self.batch_size = batch_size

    def ensure_field(self, generation: str, field_name: str, descriptor: Dict[str, Any]) -> bool:
        """Add the field to the mapping if needed. Returns True when the mapping was changed."""
        existing = mapping_properties(self.engine.get_mapping(generation)).get(field_name)
        if existing is not None:
            if descriptor_type(existing) != descriptor_type(descriptor):
                raise TypeConflict(field_name, descriptor_type(existing), descriptor_type(descriptor))
            logger.info(f"Field {field_name} is already mapped as {descriptor_type(existing)} on {generation}")
            return False
        logger.info(f"Adding field {field_name} ({descriptor_type(descriptor)}) to the mapping of {generation}")
        self.engine.put_mapping(generation, {"properties": {field_name: descriptor}})
        return True

    def count_missing(self, generation: str, field_name: str) -> int:
        return self.engine.count(generation, missing_field_query(field_name))

    def backfill(self, generation: str, field_name: str, field_type: str | Dict[str, Any], default_value: Any,
                 scope: BackfillScope = BackfillScope.MISSING_ONLY,
                 wait_for_completion: bool = False) -> MigrationTask:
        if default_value is None:
            raise ValueError(f"A non-null default value is required to backfill '{field_name}'")
        scope = BackfillScope(scope)
        descriptor = expand_field_type(field_type)
        self.ensure_field(generation, field_name, descriptor)

        if scope == BackfillScope.MISSING_ONLY:
            missing = self.count_missing(generation, field_name)
            if missing == 0:
                logger.info(f"Every document in {generation} already has {field_name}; nothing to backfill")
                return MigrationTask(task_id=None, kind=TaskKind.BACKFILL, generation=generation, field=field_name,
                                     status=TaskStatus.COMPLETED, total_estimate=0, noop=True)
            logger.info(f"{missing} documents in {generation} are missing {field_name}")
            script_source, query = MISSING_ONLY_SCRIPT, missing_field_query(field_name)
        else:
            missing = None
            logger.warning(f"Overwriting {field_name} on every document in {generation}")
            script_source, query = OVERWRITE_SCRIPT, {"match_all": {}}

        script = {"lang": "painless", "source": script_source,
                  "params": {"field": field_name, "value": default_value}}
        response = self.engine.update_by_query(generation, script, query, wait_for_completion=wait_for_completion,
                                               conflicts="proceed", scroll_size=self.batch_size)
        if wait_for_completion:
            snapshot = parse_completed_response(response)
            if snapshot.failed:
                logger.error(f"Backfill of {field_name} on {generation} failed: {snapshot.failures[:5]}")
            return MigrationTask(task_id=None, kind=TaskKind.BACKFILL, generation=generation, field=field_name,
                                 status=TaskStatus.FAILED if snapshot.failed else TaskStatus.COMPLETED,
                                 total_estimate=snapshot.total, processed_count=snapshot.processed,
                                 failures=snapshot.failures)

        task_id = response.get("task")
        if not task_id:
            raise EngineRejected("update-by-query was accepted but returned no task handle", payload=response)
        logger.info(f"Backfill of {field_name} on {generation} running as task {task_id}")
        return MigrationTask(task_id=str(task_id), kind=TaskKind.BACKFILL, generation=generation, field=field_name,
                             total_estimate=missing)
