import logging
from typing import Dict

from index_migrator.middleware.error_handler import handle_errors
from index_migrator.middleware.json_support import support_json_return
from index_migrator.models.generation import IndexGeneration, IndexGenerationManager

logger = logging.getLogger(__name__)


@support_json_return()
@handle_errors("generations")
def list_generations(generations: IndexGenerationManager, logical_name: str) -> Dict:
    live = generations.resolve(logical_name)
    return {
        "logical_name": logical_name,
        "live_generation": live[0] if len(live) == 1 else None,
        "generations": [{"name": name, "aliases": generations.engine.get_aliases_for_index(name)}
                        for name in generations.list(logical_name)],
    }


@support_json_return()
@handle_errors("generation")
def describe(generations: IndexGenerationManager, name: str) -> IndexGeneration:
    return generations.describe(name)


@support_json_return()
@handle_errors("generation")
def delete(generations: IndexGenerationManager, name: str) -> str:
    logger.info(f"Deleting generation {name}")
    if generations.delete(name):
        return f"Deleted generation {name}"
    return f"Generation {name} did not exist; nothing to delete"
