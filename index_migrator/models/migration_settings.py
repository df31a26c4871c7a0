from typing import Any, Dict, Optional
import logging

from cerberus import Validator

from index_migrator.models.cutover import CutoverStrategy
from index_migrator.models.task_monitor import DEFAULT_MAX_EMPTY_RESPONSES, DEFAULT_POLL_INTERVAL_SECONDS

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_BATCH_SIZE = 1000

SCHEMA = {
    "migration": {
        "type": "dict",
        "nullable": True,
        "schema": {
            "poll_interval_seconds": {"type": "number", "min": 1, "required": False},
            "timeout_seconds": {"type": "number", "min": 1, "required": False},
            "max_empty_responses": {"type": "integer", "min": 0, "required": False},
            "cutover_strategy": {"type": "string", "allowed": [s.value for s in CutoverStrategy], "required": False},
            "retire_old_generation": {"type": "boolean", "required": False},
            "replace_concrete_index": {"type": "boolean", "required": False},
            "batch_size": {"type": "integer", "min": 1, "required": False},
            # -1 disables throttling on the engine side
            "requests_per_second": {"type": "number", "required": False},
            "slices": {"type": ["integer", "string"], "required": False},
            "index_settings": {"type": "dict", "required": False},
        },
    }
}


class MigrationSettings:
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_empty_responses: int = DEFAULT_MAX_EMPTY_RESPONSES
    cutover_strategy: CutoverStrategy = CutoverStrategy.ALIAS
    retire_old_generation: bool = False
    replace_concrete_index: bool = False
    batch_size: int = DEFAULT_BATCH_SIZE
    requests_per_second: Optional[float] = None
    slices: Optional[int | str] = None
    index_settings: Optional[Dict[str, Any]] = None

    def __init__(self, config: Optional[Dict] = None) -> None:
        config = config or {}
        v = Validator(SCHEMA)
        if not v.validate({'migration': config}):
            raise ValueError("Invalid config file for migration", v.errors)

        self.poll_interval_seconds = config.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)
        self.timeout_seconds = config.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)
        self.max_empty_responses = config.get("max_empty_responses", DEFAULT_MAX_EMPTY_RESPONSES)
        self.cutover_strategy = CutoverStrategy(config.get("cutover_strategy", CutoverStrategy.ALIAS.value))
        self.retire_old_generation = config.get("retire_old_generation", False)
        self.replace_concrete_index = config.get("replace_concrete_index", False)
        self.batch_size = config.get("batch_size", DEFAULT_BATCH_SIZE)
        self.requests_per_second = config.get("requests_per_second")
        self.slices = config.get("slices")
        self.index_settings = config.get("index_settings")
        logger.debug(f"Migration settings: {self.__dict__}")
