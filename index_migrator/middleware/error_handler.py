import logging
from typing import Any, Callable, Tuple

from index_migrator.models.errors import MigrationError
from index_migrator.models.utils import ExitCode

logger = logging.getLogger(__name__)


def handle_errors(operation: str,
                  succeeded: Callable[[Any], bool] = lambda result: True
                  ) -> Callable[[Callable[..., Any]], Callable[..., Tuple[ExitCode, Any]]]:
    """
    Turn a model call into an (ExitCode, value) pair. Exceptions become a failure with a one-line message;
    results that `succeeded` rejects (for example a migration whose task failed) are returned with a failure code.
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Tuple[ExitCode, Any]]:
        def wrapper(*args, **kwargs) -> Tuple[ExitCode, Any]:
            try:
                result = func(*args, **kwargs)
            except MigrationError as e:
                logger.error(f"Failed to {func.__name__} {operation} ({e.category.value} error): {e}")
                return ExitCode.FAILURE, f"Failure on {func.__name__} for {operation}: {type(e).__name__} {e}"
            except Exception as e:
                logger.error(f"Failed to {func.__name__} {operation}: {e}")
                return ExitCode.FAILURE, f"Failure on {func.__name__} for {operation}: {type(e).__name__} {e}"
            return (ExitCode.SUCCESS if succeeded(result) else ExitCode.FAILURE), result
        return wrapper
    return decorator
