import logging
from pathlib import Path
from typing import Dict, Optional, Union

import yaml
from cerberus import Validator

from index_migrator.models.client_options import ClientOptions
from index_migrator.models.cluster import Cluster
from index_migrator.models.migration_settings import MigrationSettings
from index_migrator.models.orchestrator import SchemaMigrator
from index_migrator.models.search_engine import SearchEngine

logger = logging.getLogger(__name__)


SCHEMA = {
    "cluster": {"type": "dict", "required": True},
    "migration": {"type": "dict", "required": False, "nullable": True},
    "client_options": {"type": "dict", "required": False},
}


class Environment:
    cluster: Cluster
    migration: MigrationSettings
    client_options: Optional[ClientOptions] = None
    config: Dict

    def __init__(self, config: Optional[Dict] = None, config_file: Optional[Union[str, Path]] = None):
        """
        Initialize the environment either from a configuration file or a direct configuration object.

        :param config: Direct configuration object (overrides config_file).
        :param config_file: Path to the YAML config file.
        """
        if isinstance(config, Dict):
            self.config = config
            logger.info("Using provided config")
        elif config_file:
            logger.info(f"Loading config file: {config_file}")
            with open(config_file) as f:
                self.config = yaml.safe_load(f)
        else:
            raise ValueError("Either config or config_file must be provided.")

        v = Validator(SCHEMA)
        if not isinstance(self.config, Dict) or not v.validate(self.config):
            errors = v.errors if isinstance(self.config, Dict) else "config must be a mapping"
            logger.error(f"Config file validation errors: {errors}")
            raise ValueError("Invalid config file", errors)

        if 'client_options' in self.config:
            self.client_options = ClientOptions(self.config["client_options"])

        self.cluster = Cluster(config=self.config["cluster"], client_options=self.client_options)
        logger.info(f"Cluster initialized: {self.cluster.endpoint}")

        self.migration = MigrationSettings(self.config.get("migration"))
        self._migrator: Optional[SchemaMigrator] = None

    @property
    def engine(self) -> SearchEngine:
        return self.migrator.engine

    @property
    def migrator(self) -> SchemaMigrator:
        if self._migrator is None:
            self._migrator = SchemaMigrator(SearchEngine(self.cluster), self.migration)
        return self._migrator
