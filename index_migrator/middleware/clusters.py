from dataclasses import dataclass
import logging
from typing import Optional

from index_migrator.models.errors import MigrationError
from index_migrator.models.search_engine import SearchEngine

logger = logging.getLogger(__name__)


@dataclass
class ConnectionResult:
    endpoint: str
    connection_message: str
    connection_established: bool
    cluster_version: Optional[str]
    distribution: Optional[str] = None

    def display(self) -> str:
        lines = [f"Endpoint: {self.endpoint}", self.connection_message]
        if self.connection_established:
            lines.append(f"Version: {self.distribution or 'elasticsearch'} {self.cluster_version}")
        return "\n".join(lines)


def connection_check(engine: SearchEngine) -> ConnectionResult:
    endpoint = engine.cluster.endpoint
    try:
        details = engine.info()
    except MigrationError as e:
        logger.debug(f"Unable to access cluster {endpoint}: {e}")
        return ConnectionResult(endpoint=endpoint,
                                connection_message=f"Unable to connect to cluster with error: {e}",
                                connection_established=False,
                                cluster_version=None)
    version = details.get("version", {})
    return ConnectionResult(endpoint=endpoint,
                            connection_message="Successfully connected!",
                            connection_established=True,
                            cluster_version=version.get("number"),
                            distribution=version.get("distribution"))
