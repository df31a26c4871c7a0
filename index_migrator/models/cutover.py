"""
Switching which generation a logical name resolves to.

The alias strategy swaps the alias in one atomic `_aliases` call: the removal of every current target and the
addition of the new generation are submitted together, never as a read-modify-write sequence. The copy-back
strategy exists for deployments that address a concrete index by its logical name and cannot use an alias. It is
NOT atomic: the logical name is unavailable between deleting the old index and finishing the copy, and each step
is logged at WARNING so an operator can finish an interrupted sequence by hand.

Retiring the superseded generation is best-effort. A failure to delete it is recorded as a warning on the result
and never turns a successful cutover into a failed one.
"""
from enum import Enum
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from index_migrator.models.bulk_copy import BulkCopyDriver
from index_migrator.models.errors import (CutoverPreconditionFailed, GenerationNotFound, MigrationError,
                                          RollbackUnavailable, TaskFailed)
from index_migrator.models.generation import IndexGenerationManager
from index_migrator.models.search_engine import SearchEngine
from index_migrator.models.task import RECORD_META_KEY, TaskOutcome, TaskStatus
from index_migrator.models.task_monitor import TaskMonitor

logger = logging.getLogger(__name__)

COPY_BACK_STEPS = 5


class CutoverStrategy(str, Enum):
    ALIAS = "alias"
    COPY_BACK = "copy_back"


class CutoverResult(BaseModel):
    logical_name: str
    strategy: CutoverStrategy
    live_generation: Optional[str]
    previous_generations: List[str] = Field(default_factory=list)
    retired: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    def display(self) -> str:
        lines = [f"{self.logical_name} now resolves to {self.live_generation} ({self.strategy.value})"]
        if self.previous_generations:
            lines.append(f"Previously live: {', '.join(self.previous_generations)}")
        if self.retired:
            lines.append(f"Retired: {', '.join(self.retired)}")
        lines.extend(f"WARNING: {warning}" for warning in self.warnings)
        return "\n".join(lines)


class CutoverCoordinator:
    def __init__(self, engine: SearchEngine, generations: IndexGenerationManager, monitor: TaskMonitor,
                 copier: BulkCopyDriver, strategy: CutoverStrategy = CutoverStrategy.ALIAS,
                 replace_concrete_index: bool = False, retire_old_generation: bool = False,
                 copy_timeout: float = 3600) -> None:
        self.engine = engine
        self.generations = generations
        self.monitor = monitor
        self.copier = copier
        self.strategy = CutoverStrategy(strategy)
        self.replace_concrete_index = replace_concrete_index
        self.retire_old_generation = retire_old_generation
        self.copy_timeout = copy_timeout

    def check_ready(self, candidate: str, outcome: Optional[TaskOutcome] = None) -> TaskStatus:
        """
        Refuse to go live with a generation unless the migration that populated it is known to have completed.
        Without an explicit outcome the record stored on the generation is used; a record that is not yet settled
        (Running, TimedOut or Unknown) is refreshed with a single task poll.
        """
        if not self.generations.exists(candidate):
            raise GenerationNotFound(candidate)
        if outcome is not None:
            status = outcome.status
        else:
            recorded = self.generations.recorded_outcome(candidate)
            if recorded is None:
                raise CutoverPreconditionFailed(f"No migration outcome is recorded on {candidate}; "
                                                f"await the migration before cutting over")
            status = recorded.status
            if status not in (TaskStatus.COMPLETED, TaskStatus.FAILED) and recorded.task_id:
                refreshed = self.monitor.check(recorded.task_id)
                status = refreshed.status
                if status.terminal:
                    recorded.apply(refreshed)
                    self.generations.record_outcome(candidate, recorded)
        if status != TaskStatus.COMPLETED:
            raise CutoverPreconditionFailed(f"The last recorded migration outcome for {candidate} is {status.value}, "
                                            f"not Completed; cutover refused and aliases left unchanged")
        return status

    def cutover(self, logical_name: str, new_generation: str, old_generation: Optional[str] = None,
                outcome: Optional[TaskOutcome] = None) -> CutoverResult:
        self.check_ready(new_generation, outcome)
        if self.strategy == CutoverStrategy.ALIAS:
            return self._repoint(logical_name, new_generation, old_generation)
        return self._copy_back(logical_name, new_generation, old_generation)

    def rollback(self, logical_name: str, previous_generation: str) -> CutoverResult:
        if not self.engine.alias_exists(logical_name):
            raise RollbackUnavailable(f"'{logical_name}' is not an alias; only alias cutovers can be rolled back")
        if not self.generations.exists(previous_generation):
            raise RollbackUnavailable(f"Previous generation '{previous_generation}' no longer exists; "
                                      f"a rollback needs a retained generation")
        current = self.engine.get_alias_targets(logical_name)
        logger.info(f"Rolling {logical_name} back from {current} to {previous_generation}")
        self.engine.update_aliases(self._swap_actions(logical_name, current, previous_generation))
        live = self._verify(logical_name, previous_generation)
        return CutoverResult(logical_name=logical_name, strategy=CutoverStrategy.ALIAS, live_generation=live,
                             previous_generations=[t for t in current if t != previous_generation])

    def retire(self, name: str, result: CutoverResult) -> None:
        """Best-effort deletion of a superseded generation. Failures are recorded on the result."""
        try:
            self.generations.delete(name)
            result.retired.append(name)
        except MigrationError as e:
            logger.warning(f"Unable to retire generation {name}; it can be deleted later: {e}")
            result.warnings.append(f"Generation {name} was not deleted: {e}")

    def _repoint(self, logical_name: str, new_generation: str, old_generation: Optional[str]) -> CutoverResult:
        current = self.engine.get_alias_targets(logical_name)
        previous = [t for t in current if t != new_generation]
        if current:
            actions = self._swap_actions(logical_name, current, new_generation)
        elif self.engine.index_exists(logical_name):
            if not self.replace_concrete_index:
                raise CutoverPreconditionFailed(
                    f"'{logical_name}' is a concrete index, not an alias. Enable replace_concrete_index to replace it "
                    f"with an alias atomically (its data is dropped), or use the copy_back strategy")
            logger.warning(f"Replacing concrete index {logical_name} with an alias to {new_generation}")
            actions = [{"add": {"index": new_generation, "alias": logical_name}},
                       {"remove_index": {"index": logical_name}}]
        else:
            actions = [{"add": {"index": new_generation, "alias": logical_name}}]

        logger.info(f"Pointing {logical_name} at {new_generation} (was {current or 'unaliased'})")
        self.engine.update_aliases(actions)
        live = self._verify(logical_name, new_generation)
        result = CutoverResult(logical_name=logical_name, strategy=CutoverStrategy.ALIAS, live_generation=live,
                               previous_generations=previous)
        if self.retire_old_generation:
            for name in self._retirement_candidates(previous, old_generation, logical_name, new_generation):
                self.retire(name, result)
        return result

    def _copy_back(self, logical_name: str, new_generation: str, old_generation: Optional[str]) -> CutoverResult:
        if self.engine.alias_exists(logical_name):
            raise CutoverPreconditionFailed(f"'{logical_name}' is an alias; use the alias cutover strategy")
        mapping = self.engine.get_mapping(new_generation)
        meta = mapping.get("_meta")
        if isinstance(meta, dict):
            meta.pop(RECORD_META_KEY, None)
        resume = (f"{new_generation} holds the migrated documents. To finish by hand: create {logical_name} with "
                  f"the mapping of {new_generation}, reindex {new_generation} into it, then delete {new_generation}")
        result = CutoverResult(logical_name=logical_name, strategy=CutoverStrategy.COPY_BACK, live_generation=None)

        if self.generations.exists(logical_name):
            self._step(1, f"Deleting {logical_name}; searches against it fail until step 3 completes. {resume}")
            self.generations.delete(logical_name)
            result.previous_generations.append(logical_name)
        else:
            self._step(1, f"{logical_name} does not exist; nothing to delete")

        self._step(2, f"Creating {logical_name} with the mapping of {new_generation}. {resume}")
        self.generations.create(logical_name, mapping)

        self._step(3, f"Copying {new_generation} into {logical_name}. {resume}")
        task = self.copier.copy(new_generation, logical_name)
        outcome = self.monitor.track(task, timeout=self.copy_timeout)
        if not outcome.succeeded:
            raise TaskFailed(task.task_id, f"copy-back into {logical_name} ended {outcome.status.value}. {resume}",
                             payload=outcome.error or outcome.failures)
        result.live_generation = logical_name

        self._step(4, f"Deleting temporary generation {new_generation}")
        self.retire(new_generation, result)
        if old_generation and old_generation not in (logical_name, new_generation):
            self._step(5, f"Deleting superseded generation {old_generation}")
            self.retire(old_generation, result)
        else:
            self._step(5, "No separate superseded generation to delete")
        return result

    def _verify(self, logical_name: str, expected: str) -> Optional[str]:
        live = self.engine.get_alias_targets(logical_name)
        if live != [expected]:
            raise MigrationError(f"After the alias update {logical_name} resolves to {live or 'nothing'}, "
                                 f"expected {expected}")
        logger.info(f"{logical_name} now resolves to {expected}")
        return expected

    @staticmethod
    def _swap_actions(logical_name: str, current: List[str], new_generation: str) -> List[Dict]:
        actions = [{"remove": {"index": target, "alias": logical_name}}
                   for target in current if target != new_generation]
        actions.append({"add": {"index": new_generation, "alias": logical_name}})
        return actions

    @staticmethod
    def _retirement_candidates(previous: List[str], old_generation: Optional[str], logical_name: str,
                               new_generation: str) -> List[str]:
        names = list(previous)
        if old_generation and old_generation not in names:
            names.append(old_generation)
        return [n for n in names if n not in (logical_name, new_generation)]

    @staticmethod
    def _step(number: int, message: str) -> None:
        logger.warning(f"[copy-back {number}/{COPY_BACK_STEPS}] {message}")
