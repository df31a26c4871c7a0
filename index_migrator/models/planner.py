"""
Strategy selection for a schema change.

Purely additive changes (new top-level fields) can be applied in place with a lazy backfill. Anything that touches
an existing field (a new type, analyzer or sub-field layout) or removes one cannot be applied to postings that
already exist, so it needs a full regeneration into a new index generation. Planning reads nothing and writes
nothing: the caller passes in the current mapping and the names already taken.
"""
import copy
from enum import Enum
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from index_migrator.models.errors import TypeConflict
from index_migrator.models.field_mappings import descriptor_analyzer, descriptor_type, expand_field_type
from index_migrator.models.task import RECORD_META_KEY

logger = logging.getLogger(__name__)

GENERATION_SUFFIX = re.compile(r"^(?P<base>.+)_v(?P<number>\d+)$")

FULL_REGENERATION_SCRIPT = (
    "for (entry in params.defaults.entrySet()) {"
    " if (ctx._source[entry.getKey()] == null) { ctx._source[entry.getKey()] = entry.getValue(); } "
    "} "
    "for (field in params.removed) { ctx._source.remove(field); }"
)


class Strategy(str, Enum):
    FULL_REGENERATION = "FullRegeneration"
    LAZY_BACKFILL = "LazyBackfill"


class FieldChangeKind(str, Enum):
    ADD = "add"
    RETYPE = "retype"
    REMOVE = "remove"
    UNCHANGED = "unchanged"


class FieldRequest(BaseModel):
    """A requested field. `descriptor` may be a type shorthand; a default of None means "no backfill"."""
    name: str
    descriptor: Optional[str | Dict[str, Any]] = None
    default: Any = None
    remove: bool = False

    @model_validator(mode="after")
    def check_descriptor(self):
        if not self.remove and self.descriptor is None:
            raise ValueError(f"Field '{self.name}' needs a type unless it is being removed")
        return self


class FieldChange(BaseModel):
    name: str
    kind: FieldChangeKind
    descriptor: Optional[Dict[str, Any]] = None
    previous: Optional[Dict[str, Any]] = None
    default: Any = None

    @property
    def field_type(self) -> Optional[str]:
        return descriptor_type(self.descriptor)

    def __str__(self):
        if self.kind == FieldChangeKind.RETYPE:
            return f"~ {self.name}: {descriptor_type(self.previous)} -> {self.field_type}"
        if self.kind == FieldChangeKind.REMOVE:
            return f"- {self.name}"
        suffix = "" if self.default is None else f" (default {self.default!r})"
        marker = "+" if self.kind == FieldChangeKind.ADD else "="
        return f"{marker} {self.name}: {self.field_type}{suffix}"


class MigrationPlan(BaseModel):
    strategy: Strategy
    source_generation: str
    dest_generation: Optional[str] = None
    changes: List[FieldChange] = Field(default_factory=list)
    target_mapping: Dict[str, Any] = Field(default_factory=dict)
    transform_script: Optional[Dict[str, Any]] = None
    reasons: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_strategy_shape(self):
        if self.strategy == Strategy.FULL_REGENERATION and not self.dest_generation:
            raise ValueError("A full regeneration plan needs a destination generation")
        if self.strategy == Strategy.LAZY_BACKFILL and (self.dest_generation or self.transform_script):
            raise ValueError("A lazy backfill plan has no destination generation or transform script")
        return self

    @property
    def fields_to_add(self) -> Dict[str, FieldChange]:
        return {c.name: c for c in self.changes if c.kind in (FieldChangeKind.ADD, FieldChangeKind.RETYPE)}

    @property
    def removed_fields(self) -> List[str]:
        return [c.name for c in self.changes if c.kind == FieldChangeKind.REMOVE]

    @property
    def is_noop(self) -> bool:
        return self.strategy == Strategy.LAZY_BACKFILL and not self.fields_to_add

    def describe(self) -> str:
        lines = [f"Strategy: {self.strategy.value}",
                 f"Source generation: {self.source_generation}"]
        if self.dest_generation:
            lines.append(f"Destination generation: {self.dest_generation}")
        lines.append("Field changes:" if self.changes else "Field changes: none")
        lines.extend(f"  {change}" for change in self.changes)
        if self.reasons:
            lines.append("Reasons:")
            lines.extend(f"  - {reason}" for reason in self.reasons)
        return "\n".join(lines)

    def display(self) -> str:
        return self.describe()


def split_generation_name(name: str) -> Tuple[str, int]:
    """'posts_v3' -> ('posts', 3). A bare logical name counts as generation 1."""
    match = GENERATION_SUFFIX.match(name)
    if match:
        return match.group("base"), int(match.group("number"))
    return name, 1


def next_generation_name(source_generation: str, existing: Iterable[str] = ()) -> str:
    base, number = split_generation_name(source_generation)
    taken = set(existing)
    candidate = f"{base}_v{number + 1}"
    while candidate in taken:
        number += 1
        candidate = f"{base}_v{number + 1}"
    return candidate


def mapping_properties(mapping: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return dict((mapping or {}).get("properties", {}))


def same_indexing(existing: Optional[Dict[str, Any]], requested: Optional[Dict[str, Any]]) -> bool:
    return (descriptor_type(existing) == descriptor_type(requested)
            and descriptor_analyzer(existing) == descriptor_analyzer(requested))


def retype_reason(change: FieldChange) -> str:
    previous_type = descriptor_type(change.previous)
    if previous_type != change.field_type:
        return (f"'{change.name}' changes from {previous_type} to {change.field_type} "
                f"and existing postings cannot be retyped in place")
    previous_analyzer = descriptor_analyzer(change.previous)
    analyzer = descriptor_analyzer(change.descriptor)
    if previous_analyzer != analyzer:
        return (f"'{change.name}' changes analyzer from {previous_analyzer} to {analyzer} "
                f"and existing postings cannot be re-analyzed in place")
    return (f"'{change.name}' keeps type {change.field_type} but its sub-fields or parameters differ, "
            f"which existing documents cannot pick up in place")


def build_transform_script(defaults: Dict[str, Any], removed: List[str]) -> Optional[Dict[str, Any]]:
    if not defaults and not removed:
        return None
    return {
        "lang": "painless",
        "source": FULL_REGENERATION_SCRIPT,
        "params": {"defaults": defaults, "removed": removed},
    }


class MappingDiffPlanner:
    def diff(self, current_mapping: Dict[str, Any], target_mapping: Dict[str, Any]) -> List[FieldRequest]:
        """Field requests that would turn the current top-level properties into the target ones."""
        current = mapping_properties(current_mapping)
        target = mapping_properties(target_mapping)
        requests = [FieldRequest(name=name, descriptor=descriptor)
                    for name, descriptor in target.items() if current.get(name) != descriptor]
        requests.extend(FieldRequest(name=name, remove=True) for name in current if name not in target)
        return requests

    def plan(self, source_generation: str, current_mapping: Dict[str, Any],
             requested_fields: Iterable[FieldRequest] = (), target_mapping: Optional[Dict[str, Any]] = None,
             strategy_override: Optional[Strategy] = None, existing_generations: Iterable[str] = ()) -> MigrationPlan:
        requests: Dict[str, FieldRequest] = {}
        if target_mapping is not None:
            for request in self.diff(current_mapping, target_mapping):
                requests[request.name] = request
        for request in requested_fields:
            requests[request.name] = request

        current = mapping_properties(current_mapping)
        changes = [self._classify(request, current.get(request.name)) for request in requests.values()]
        reasons = []
        non_additive = [c for c in changes if c.kind in (FieldChangeKind.RETYPE, FieldChangeKind.REMOVE)]
        for change in non_additive:
            if change.kind == FieldChangeKind.RETYPE:
                reasons.append(retype_reason(change))
            else:
                reasons.append(f"'{change.name}' is removed, which requires rewriting every document")

        if strategy_override == Strategy.LAZY_BACKFILL and non_additive:
            offending = non_additive[0]
            raise TypeConflict(offending.name, descriptor_type(offending.previous),
                               offending.field_type if offending.kind == FieldChangeKind.RETYPE else "<removed>")
        if strategy_override == Strategy.FULL_REGENERATION:
            strategy = Strategy.FULL_REGENERATION
            reasons.append("a full rebuild was explicitly requested")
        elif non_additive:
            strategy = Strategy.FULL_REGENERATION
        else:
            strategy = Strategy.LAZY_BACKFILL
            reasons.append("all changes are additive and can be backfilled in place")

        if strategy == Strategy.LAZY_BACKFILL:
            plan = MigrationPlan(strategy=strategy, source_generation=source_generation, changes=changes,
                                 target_mapping=self._apply(current_mapping, changes), reasons=reasons)
        else:
            base_mapping = target_mapping if target_mapping is not None else current_mapping
            defaults = {c.name: c.default for c in changes
                        if c.kind in (FieldChangeKind.ADD, FieldChangeKind.RETYPE) and c.default is not None}
            removed = [c.name for c in changes if c.kind == FieldChangeKind.REMOVE]
            plan = MigrationPlan(strategy=strategy, source_generation=source_generation,
                                 dest_generation=next_generation_name(source_generation, existing_generations),
                                 changes=changes, target_mapping=self._apply(base_mapping, changes),
                                 transform_script=build_transform_script(defaults, removed), reasons=reasons)
        logger.debug(f"Planned migration of {source_generation}:\n{plan.describe()}")
        return plan

    @staticmethod
    def _classify(request: FieldRequest, existing: Optional[Dict[str, Any]]) -> FieldChange:
        if request.remove:
            kind = FieldChangeKind.REMOVE if existing is not None else FieldChangeKind.UNCHANGED
            return FieldChange(name=request.name, kind=kind, previous=existing)
        descriptor = expand_field_type(request.descriptor)
        if existing is None:
            kind = FieldChangeKind.ADD
        elif existing == descriptor:
            kind = FieldChangeKind.UNCHANGED
        elif isinstance(request.descriptor, str) and same_indexing(existing, descriptor):
            # A bare type shorthand is already satisfied by a field indexed with that type and analyzer
            kind = FieldChangeKind.UNCHANGED
        else:
            kind = FieldChangeKind.RETYPE
        return FieldChange(name=request.name, kind=kind, descriptor=descriptor, previous=existing,
                           default=request.default)

    @staticmethod
    def _apply(mapping: Dict[str, Any], changes: List[FieldChange]) -> Dict[str, Any]:
        result = copy.deepcopy(mapping or {})
        meta = result.get("_meta")
        if isinstance(meta, dict):
            # A migration record belongs to the generation it was written on, not to its successor
            meta.pop(RECORD_META_KEY, None)
            if not meta:
                result.pop("_meta")
        properties = result.setdefault("properties", {})
        for change in changes:
            if change.kind == FieldChangeKind.REMOVE:
                properties.pop(change.name, None)
            elif change.kind in (FieldChangeKind.ADD, FieldChangeKind.RETYPE):
                properties[change.name] = change.descriptor
        return result
