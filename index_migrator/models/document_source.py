from abc import ABC, abstractmethod
import logging
from typing import Any, Dict, Iterable, Iterator, List, Tuple

from pydantic import BaseModel, Field

from index_migrator.models.errors import GenerationNotFound
from index_migrator.models.search_engine import SearchEngine

logger = logging.getLogger(__name__)


class DocumentSource(ABC):
    """
    The system of record that search documents are projected from. The migrator only ever reads from it.
    """

    @abstractmethod
    def iter_id_ranges(self, chunk_size: int) -> Iterator[Tuple[Any, Any]]:
        """Ordered, inclusive (start_id, end_id) ranges that together cover every record."""
        raise NotImplementedError

    @abstractmethod
    def fetch_batch(self, start_id: Any, end_id: Any) -> Iterable[Any]:
        raise NotImplementedError

    @abstractmethod
    def project(self, record: Any) -> Dict[str, Any]:
        """The searchable document for one record."""
        raise NotImplementedError

    def document_id(self, record: Any) -> str:
        return str(record["id"])


class LoadReport(BaseModel):
    generation: str
    batches: int = 0
    indexed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def display(self) -> str:
        return (f"Loaded {self.indexed} documents into {self.generation} in {self.batches} batches, "
                f"{len(self.errors)} errors")


class SourceLoader:
    """Writes projected documents from a DocumentSource into an existing generation, one bulk request per batch."""

    def __init__(self, engine: SearchEngine, chunk_size: int = 1000) -> None:
        self.engine = engine
        self.chunk_size = chunk_size

    def load(self, source: DocumentSource, generation: str, refresh: bool = True) -> LoadReport:
        if not self.engine.index_exists(generation):
            raise GenerationNotFound(generation)
        report = LoadReport(generation=generation)
        for start_id, end_id in source.iter_id_ranges(self.chunk_size):
            operations = []
            for record in source.fetch_batch(start_id, end_id):
                operations.append({"index": {"_index": generation, "_id": source.document_id(record)}})
                operations.append(source.project(record))
            if not operations:
                logger.debug(f"No records between {start_id} and {end_id}")
                continue
            response = self.engine.bulk(operations)
            report.batches += 1
            batch_errors = 0
            for item in response.get("items", []):
                action = next(iter(item.values()))
                if action.get("error"):
                    batch_errors += 1
                    report.errors.append({"id": action.get("_id"), "error": action["error"]})
                else:
                    report.indexed += 1
            if batch_errors:
                logger.warning(f"Batch {start_id}-{end_id} into {generation}: {batch_errors} documents failed")
            else:
                logger.info(f"Batch {start_id}-{end_id} into {generation}: {len(operations) // 2} documents")
        if refresh:
            self.engine.refresh(generation)
        logger.info(report.display())
        return report
