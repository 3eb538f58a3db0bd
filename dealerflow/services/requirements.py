"""
Requirement types — the declarative building blocks of a stage's Definition of Done.

Every requirement is a frozen dataclass with a human-readable ``label`` (what a
rejected advance reports back to the UI) and ``is_satisfied(snapshot)``, a pure
check against the record's key/value facts.

Variants:
    FieldPresent(field)              — fact exists and is not blank
    FieldEquals(field, value)        — fact equals an expected value
    FieldAtLeast(field, minimum)     — numeric fact reaches a minimum
    CustomPredicate(predicate_id)    — registered python check

Usage:
    from dealerflow.services.requirements import register_predicate

    @register_predicate("contact_channel_present")
    def _contact_channel(snapshot):
        return bool(snapshot.get("email") or snapshot.get("phone"))
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Union

from dealerflow.core.exceptions import CatalogDefinitionError

logger = logging.getLogger(__name__)

Snapshot = Mapping[str, Any]
Predicate = Callable[[Snapshot], bool]

# predicate_id -> check
_PREDICATES: dict[str, Predicate] = {}


def register_predicate(predicate_id: str):
    """Decorator to register a custom DoD check."""
    def decorator(fn: Predicate) -> Predicate:
        _PREDICATES[predicate_id] = fn
        return fn
    return decorator


def get_predicate(predicate_id: str) -> Predicate | None:
    return _PREDICATES.get(predicate_id)


def predicate_ids() -> list[str]:
    return sorted(_PREDICATES)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return not value
    return False


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ═════════════════════════════════════════════════════════════════════════════
# Variants
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FieldPresent:
    field: str
    name: str | None = None

    kind = "field_present"

    @property
    def label(self) -> str:
        return self.name or f"{self.field} provided"

    def is_satisfied(self, snapshot: Snapshot) -> bool:
        return not _is_blank(snapshot.get(self.field))

    def to_dict(self) -> dict:
        return {"type": self.kind, "name": self.label, "field": self.field}


@dataclass(frozen=True)
class FieldEquals:
    field: str
    value: Any
    name: str | None = None

    kind = "field_equals"

    @property
    def label(self) -> str:
        return self.name or f"{self.field} is {self.value!r}"

    def is_satisfied(self, snapshot: Snapshot) -> bool:
        if self.field not in snapshot:
            return False
        return snapshot[self.field] == self.value

    def to_dict(self) -> dict:
        return {"type": self.kind, "name": self.label, "field": self.field, "value": self.value}


@dataclass(frozen=True)
class FieldAtLeast:
    field: str
    minimum: float
    name: str | None = None

    kind = "field_at_least"

    @property
    def label(self) -> str:
        return self.name or f"{self.field} at least {self.minimum:g}"

    def is_satisfied(self, snapshot: Snapshot) -> bool:
        number = _as_number(snapshot.get(self.field))
        return number is not None and number >= self.minimum

    def to_dict(self) -> dict:
        return {"type": self.kind, "name": self.label, "field": self.field, "minimum": self.minimum}


@dataclass(frozen=True)
class CustomPredicate:
    predicate_id: str
    name: str | None = None

    kind = "custom"

    @property
    def label(self) -> str:
        return self.name or self.predicate_id

    def is_satisfied(self, snapshot: Snapshot) -> bool:
        check = get_predicate(self.predicate_id)
        if check is None:
            logger.warning("Unknown DoD predicate '%s' — treated as unmet", self.predicate_id)
            return False
        try:
            return bool(check(snapshot))
        except Exception:
            logger.exception("DoD predicate '%s' raised — treated as unmet", self.predicate_id)
            return False

    def to_dict(self) -> dict:
        return {"type": self.kind, "name": self.label, "predicate": self.predicate_id}


Requirement = Union[FieldPresent, FieldEquals, FieldAtLeast, CustomPredicate]


def requirement_from_dict(data: Mapping[str, Any]) -> Requirement:
    """Build a requirement from its catalog JSON form."""
    kind = data.get("type")
    name = data.get("name")
    try:
        if kind == FieldPresent.kind:
            return FieldPresent(data["field"], name)
        if kind == FieldEquals.kind:
            return FieldEquals(data["field"], data["value"], name)
        if kind == FieldAtLeast.kind:
            return FieldAtLeast(data["field"], float(data["minimum"]), name)
        if kind == CustomPredicate.kind:
            return CustomPredicate(data["predicate"], name)
    except KeyError as exc:
        raise CatalogDefinitionError(f"Requirement {name or kind!r} is missing key {exc}") from exc
    raise CatalogDefinitionError(f"Unknown requirement type: {kind!r}")


# ═════════════════════════════════════════════════════════════════════════════
# Built-in predicates
# ═════════════════════════════════════════════════════════════════════════════

@register_predicate("contact_channel_present")
def _contact_channel_present(snapshot: Snapshot) -> bool:
    """Customer must have either email or phone."""
    return not _is_blank(snapshot.get("email")) or not _is_blank(snapshot.get("phone"))


@register_predicate("all_signatures_collected")
def _all_signatures_collected(snapshot: Snapshot) -> bool:
    required = _as_number(snapshot.get("signatures_required"))
    collected = _as_number(snapshot.get("signatures_collected"))
    if required is None or collected is None:
        return False
    return collected >= required > 0


@register_predicate("kit_complete")
def _kit_complete(snapshot: Snapshot) -> bool:
    ordered = _as_number(snapshot.get("items_ordered"))
    kitted = _as_number(snapshot.get("items_kitted"))
    if ordered is None or kitted is None:
        return False
    return kitted >= ordered > 0


@register_predicate("meter_readings_captured")
def _meter_readings_captured(snapshot: Snapshot) -> bool:
    """Start and end meter readings recorded, end not below start."""
    start = _as_number(snapshot.get("meter_reading_start"))
    end = _as_number(snapshot.get("meter_reading_end"))
    return start is not None and end is not None and end >= start
