import json
from typing import Any, Callable, Tuple

from pydantic import BaseModel
import yaml

from index_migrator.models.utils import ExitCode


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def support_json_return() -> Callable[[Callable[..., Tuple[ExitCode, Any]]], Callable[..., Tuple[ExitCode, str]]]:
    """
    Render the value of an (ExitCode, value) pair: JSON when as_json is set, otherwise the value's own display()
    text if it has one, plain strings as they are, and YAML for everything else.
    """
    def decorator(func: Callable[..., Tuple[ExitCode, Any]]) -> Callable[..., Tuple[ExitCode, str]]:
        def wrapper(*args, as_json=False, **kwargs) -> Tuple[ExitCode, str]:
            exit_code, value = func(*args, **kwargs)
            if as_json:
                return exit_code, json.dumps(_plain(value))
            if isinstance(value, str):
                return exit_code, value
            if hasattr(value, "display"):
                return exit_code, value.display()
            return exit_code, yaml.safe_dump(_plain(value), sort_keys=False)
        return wrapper
    return decorator
