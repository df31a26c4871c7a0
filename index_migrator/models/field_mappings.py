"""Mapping descriptors and default values for the field types the migrator knows how to add."""
import copy
from typing import Any, Dict, Optional

DATE_FORMAT = "strict_date_optional_time||epoch_millis"

FIELD_TYPE_SHORTHANDS: Dict[str, Dict[str, Any]] = {
    "text": {
        "type": "text",
        "analyzer": "standard",
        "fields": {"keyword": {"type": "keyword", "ignore_above": 256}},
    },
    "keyword": {"type": "keyword"},
    "integer": {"type": "integer"},
    "long": {"type": "long"},
    "float": {"type": "float"},
    "double": {"type": "double"},
    "boolean": {"type": "boolean"},
    "date": {"type": "date", "format": DATE_FORMAT},
}

SUGGESTED_DEFAULTS_BY_NAME: Dict[str, Any] = {
    "misc": "others",
    "category": "general",
    "status": "draft",
    "priority": "medium",
    "rating": 0,
    "is_active": True,
    "tags": [],
}

# No fallback for `date`; a date backfill always needs an explicit default
SUGGESTED_DEFAULTS_BY_TYPE: Dict[str, Any] = {
    "text": "",
    "keyword": "",
    "integer": 0,
    "long": 0,
    "float": 0.0,
    "double": 0.0,
    "boolean": False,
}


class UnknownFieldType(ValueError):
    def __init__(self, field_type: str):
        super().__init__(f"Unknown field type '{field_type}'. Supported shorthands are: "
                         f"{', '.join(sorted(FIELD_TYPE_SHORTHANDS))}, or pass a full mapping descriptor")
        self.field_type = field_type


class NoDefaultAvailable(ValueError):
    def __init__(self, field_name: str, field_type: Optional[str]):
        super().__init__(f"No default value can be suggested for field '{field_name}' of type '{field_type}'; "
                         f"an explicit default is required")
        self.field_name = field_name
        self.field_type = field_type


def expand_field_type(descriptor: str | Dict[str, Any]) -> Dict[str, Any]:
    """Turn a shorthand ("keyword", "date", ...) into a full descriptor. Dict descriptors pass through."""
    if isinstance(descriptor, dict):
        if "type" not in descriptor and "properties" not in descriptor:
            raise ValueError(f"Mapping descriptor {descriptor} has neither a 'type' nor 'properties'")
        return copy.deepcopy(descriptor)
    if descriptor not in FIELD_TYPE_SHORTHANDS:
        raise UnknownFieldType(descriptor)
    return copy.deepcopy(FIELD_TYPE_SHORTHANDS[descriptor])


def descriptor_type(descriptor: Optional[Dict[str, Any]]) -> Optional[str]:
    if descriptor is None:
        return None
    if "type" in descriptor:
        return descriptor["type"]
    # Fields with sub-properties and no explicit type are objects
    return "object" if "properties" in descriptor else None


def descriptor_analyzer(descriptor: Optional[Dict[str, Any]]) -> Optional[str]:
    """The analyzer a text field indexes with; the engine uses `standard` when none is named."""
    if descriptor_type(descriptor) != "text":
        return None
    return descriptor.get("analyzer", "standard")


def suggest_default(field_name: str, field_type: Optional[str]) -> Any:
    if field_name in SUGGESTED_DEFAULTS_BY_NAME:
        return copy.deepcopy(SUGGESTED_DEFAULTS_BY_NAME[field_name])
    if field_type in SUGGESTED_DEFAULTS_BY_TYPE:
        return SUGGESTED_DEFAULTS_BY_TYPE[field_type]
    raise NoDefaultAvailable(field_name, field_type)
