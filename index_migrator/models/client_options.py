from typing import Dict, Optional
import logging
from cerberus import Validator

logger = logging.getLogger(__name__)

SCHEMA = {
    "client_options": {
        "type": "dict",
        "schema": {
            "user_agent_extra": {"type": "string", "required": False},
            "request_timeout_seconds": {"type": "number", "min": 1, "required": False},
        },
    }
}


class ClientOptions:
    """
    Transport settings shared by every request the migrator sends: an extra User-Agent token (also passed to boto3
    clients) and the timeout for individual synchronous engine calls. Waiting on long-running tasks is governed by
    the migration timeout instead.
    """

    user_agent_extra: Optional[str] = None
    request_timeout_seconds: Optional[float] = None

    def __init__(self, config: Dict) -> None:
        logger.debug(f"Client options: {config}")
        v = Validator(SCHEMA)
        if not v.validate({'client_options': config}):
            raise ValueError("Invalid config file for client options", v.errors)

        self.user_agent_extra = config.get("user_agent_extra")
        self.request_timeout_seconds = config.get("request_timeout_seconds")
