import logging
from typing import Any, Dict, Optional

from index_migrator.models.errors import EngineRejected, GenerationNotFound
from index_migrator.models.search_engine import SearchEngine
from index_migrator.models.task import MigrationTask, TaskKind, TaskStatus
from index_migrator.models.task_monitor import parse_completed_response

logger = logging.getLogger(__name__)


class BulkCopyDriver:
    """
    Copies one generation into another with the engine's reindex operation, optionally passing every document
    through a transform script on the way.

    Both generations must already exist: the destination is created beforehand with its explicit mapping, and
    a missing destination is refused rather than letting the engine create it with inferred types. A copy that
    fails part way is not resumable; it has to be resubmitted into a fresh destination.
    """

    def __init__(self, engine: SearchEngine, batch_size: Optional[int] = None,
                 requests_per_second: Optional[float] = None, slices: Optional[int | str] = None) -> None:
        self.engine = engine
        self.batch_size = batch_size
        self.requests_per_second = requests_per_second
        self.slices = slices

    def copy(self, source_generation: str, dest_generation: str, transform_script: Optional[Dict[str, Any]] = None,
             wait_for_completion: bool = False) -> MigrationTask:
        for name in (source_generation, dest_generation):
            if not self.engine.index_exists(name):
                raise GenerationNotFound(name)

        logger.info(f"Submitting copy {source_generation} -> {dest_generation} "
                    f"({'synchronous' if wait_for_completion else 'asynchronous'}, "
                    f"transform script: {'yes' if transform_script else 'no'})")
        response = self.engine.reindex(source_generation, dest_generation, script=transform_script,
                                       wait_for_completion=wait_for_completion, batch_size=self.batch_size,
                                       requests_per_second=self.requests_per_second, slices=self.slices)
        if wait_for_completion:
            snapshot = parse_completed_response(response)
            if snapshot.failed:
                logger.error(f"Copy {source_generation} -> {dest_generation} failed: {snapshot.failures[:5]}")
            else:
                logger.info(f"Copy {source_generation} -> {dest_generation} completed, "
                            f"{snapshot.processed} documents")
            return MigrationTask(task_id=None, kind=TaskKind.BULK_COPY, generation=dest_generation,
                                 source_generation=source_generation,
                                 status=TaskStatus.FAILED if snapshot.failed else TaskStatus.COMPLETED,
                                 total_estimate=snapshot.total, processed_count=snapshot.processed,
                                 failures=snapshot.failures)

        task_id = response.get("task")
        if not task_id:
            raise EngineRejected("reindex was accepted but returned no task handle", payload=response)
        logger.info(f"Copy {source_generation} -> {dest_generation} running as task {task_id}")
        return MigrationTask(task_id=str(task_id), kind=TaskKind.BULK_COPY, generation=dest_generation,
                             source_generation=source_generation)
