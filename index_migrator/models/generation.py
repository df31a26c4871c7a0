from datetime import datetime, timezone
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer

from index_migrator.models.errors import GenerationInUse, GenerationNotFound, NotAGeneration
from index_migrator.models.planner import split_generation_name
from index_migrator.models.search_engine import SearchEngine
from index_migrator.models.task import RECORD_META_KEY, MigrationTask

logger = logging.getLogger(__name__)


class IndexGeneration(BaseModel):
    name: str
    mapping: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    # Observed when described, never authoritative
    document_count: Optional[int] = None
    aliases: List[str] = Field(default_factory=list)
    recorded_task: Optional[Dict[str, Any]] = None

    @field_serializer("created_at")
    def serialize_created_at(self, dt: Optional[datetime]) -> str | None:
        if dt:
            return dt.isoformat()
        return None

    @property
    def live(self) -> bool:
        return bool(self.aliases)


class IndexGenerationManager:
    """
    Creates, inspects and deletes the physical index generations behind a logical name. Nothing else in the
    migrator creates or deletes an index.

    Generations are always created with an explicit mapping so that the first copied document can never define
    the schema through dynamic type inference.
    """

    def __init__(self, engine: SearchEngine, index_settings: Optional[Dict[str, Any]] = None) -> None:
        self.engine = engine
        self.index_settings = index_settings

    def create(self, name: str, mapping: Dict[str, Any]) -> IndexGeneration:
        logger.info(f"Creating index generation {name}")
        self.engine.create_index(name, mapping, settings=self.index_settings)
        return IndexGeneration(name=name, mapping=mapping, created_at=datetime.now(timezone.utc), document_count=0)

    def delete(self, name: str) -> bool:
        """
        Delete a generation. Deleting one that does not exist is not an error (returns False), so retries after a
        partial failure are safe. A generation that an alias still resolves to is never deleted.
        """
        alias_targets = self.engine.get_alias_targets(name)
        if alias_targets:
            raise NotAGeneration(name, alias_targets)
        aliases = self.engine.get_aliases_for_index(name)
        if aliases:
            raise GenerationInUse(name, aliases)
        deleted = self.engine.delete_index(name)
        if deleted:
            logger.info(f"Deleted index generation {name}")
        else:
            logger.info(f"Index generation {name} was already absent")
        return deleted

    def exists(self, name: str) -> bool:
        return self.engine.index_exists(name) and not self.engine.alias_exists(name)

    def is_alias(self, name: str) -> bool:
        return self.engine.alias_exists(name)

    def resolve(self, logical_name: str) -> List[str]:
        """The generation(s) a logical name currently reads from: alias targets, or the concrete index itself."""
        targets = self.engine.get_alias_targets(logical_name)
        if targets:
            return targets
        if self.engine.index_exists(logical_name):
            return [logical_name]
        return []

    def describe(self, name: str) -> IndexGeneration:
        alias_targets = self.engine.get_alias_targets(name)
        if alias_targets:
            raise NotAGeneration(name, alias_targets)
        if not self.engine.index_exists(name):
            raise GenerationNotFound(name)
        mapping = self.engine.get_mapping(name)
        return IndexGeneration(name=name,
                               mapping=mapping,
                               created_at=self.engine.get_index_creation_date(name),
                               document_count=self.engine.count(name),
                               aliases=self.engine.get_aliases_for_index(name),
                               recorded_task=self._record_from_mapping(mapping))

    def list(self, logical_name: str) -> List[str]:
        """Generations of a logical name (`<name>` and `<name>_vN`), oldest first."""
        pattern = re.compile(rf"^{re.escape(logical_name)}(_v\d+)?$")
        names = [n for n in self.engine.list_indices(f"{logical_name}*") if pattern.match(n)]
        return sorted(names, key=lambda n: split_generation_name(n)[1])

    def record_outcome(self, name: str, task: MigrationTask) -> None:
        """Store the populating task in the generation's mapping metadata so a later cutover can check it."""
        meta = dict(self.engine.get_mapping(name).get("_meta") or {})
        meta[RECORD_META_KEY] = task.as_record()
        self.engine.put_mapping(name, {"_meta": meta})
        logger.debug(f"Recorded task {task.task_id} ({task.status.value}) on {name}")

    def recorded_outcome(self, name: str) -> Optional[MigrationTask]:
        record = self._record_from_mapping(self.engine.get_mapping(name))
        if record is None:
            return None
        return MigrationTask.from_record(name, record)

    @staticmethod
    def _record_from_mapping(mapping: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        record = (mapping.get("_meta") or {}).get(RECORD_META_KEY)
        return record if isinstance(record, dict) else None
