# Overview: Category-archetype validation of batch physical attributes.

"""
Attribute Schema Validator (authoritative)

- Every category is bound once, at configuration time, to an Archetype.
  Validation dispatches on that enum, never on the category's free-text name.
- Each archetype has a typed attribute struct. The stored attribute_data blob
  is converted to and from the struct only here, at the validator boundary.
- Keys the struct does not know are kept in `extras` so the blob stays open.
- Pure: no database or app access. Create, update, split, transfer and bulk
  paths all call validate_attributes() and get the same answer.

Numeric means int, float or Decimal. Bools and numeric strings are rejected.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Any, ClassVar, Mapping

from .errors import InvalidAttributeError, InvalidRequestError


GAUGE_MIN_MM = Decimal("0.10")
GAUGE_MAX_MM = Decimal("1.00")


class Archetype(str, enum.Enum):
    ALUMINIUM = "ALUMINIUM"
    STONE_TILE = "STONE_TILE"
    ACCESSORIES = "ACCESSORIES"
    GENERIC = "GENERIC"


# Used only when binding a category; first match wins
_NAME_HINTS = (
    (("aluminium", "aluminum"), Archetype.ALUMINIUM),
    (("stone", "tile"), Archetype.STONE_TILE),
    (("accessor",), Archetype.ACCESSORIES),
)


def archetype_for_category_name(name: str | None) -> Archetype:
    """Suggest an archetype from a category name (case-insensitive substring)."""
    lowered = (name or "").lower()
    for hints, archetype in _NAME_HINTS:
        if any(hint in lowered for hint in hints):
            return archetype
    return Archetype.GENERIC


def coerce_archetype(value: Any) -> Archetype:
    if isinstance(value, Archetype):
        return value
    if value is None:
        return Archetype.GENERIC
    try:
        return Archetype(str(value).strip().upper())
    except ValueError:
        allowed = ", ".join(a.value for a in Archetype)
        raise InvalidRequestError("archetype", f"must be one of: {allowed}")


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, Decimal):
        return value.is_finite()
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    return False


def _as_decimal(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _json_number(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def _positive_number(attrs: Mapping[str, Any], key: str, archetype: Archetype) -> Any:
    value = attrs.get(key)
    if value is None:
        raise InvalidAttributeError(key, "is required", archetype.value)
    if not _is_number(value):
        raise InvalidAttributeError(key, "must be a number", archetype.value)
    if _as_decimal(value) <= 0:
        raise InvalidAttributeError(key, "must be greater than 0", archetype.value)
    return value


def _optional_positive_number(attrs: Mapping[str, Any], key: str, archetype: Archetype) -> Any:
    if attrs.get(key) is None:
        return None
    return _positive_number(attrs, key, archetype)


def _text(attrs: Mapping[str, Any], key: str, archetype: Archetype) -> str:
    value = attrs.get(key)
    if value is None:
        raise InvalidAttributeError(key, "is required", archetype.value)
    if not isinstance(value, str) or not value.strip():
        raise InvalidAttributeError(key, "must be a non-empty string", archetype.value)
    return value


def _gauge(attrs: Mapping[str, Any], archetype: Archetype, *, required: bool, accepts_gauge: bool) -> Any:
    value = attrs.get("gauge_mm")
    if value is None:
        if required and accepts_gauge:
            raise InvalidAttributeError("gauge_mm", "is required", archetype.value)
        return None
    if not accepts_gauge:
        raise InvalidAttributeError("gauge_mm", "category does not accept a gauge attribute", archetype.value)
    if not _is_number(value):
        raise InvalidAttributeError("gauge_mm", "must be a number", archetype.value)
    if not (GAUGE_MIN_MM <= _as_decimal(value) <= GAUGE_MAX_MM):
        raise InvalidAttributeError(
            "gauge_mm",
            f"must be between {GAUGE_MIN_MM} and {GAUGE_MAX_MM} mm",
            archetype.value,
        )
    return value


class BatchAttributes:
    """Common behaviour of the per-archetype attribute structs."""

    archetype: ClassVar[Archetype]

    def to_mapping(self) -> dict:
        data = dict(self.extras)
        for f in fields(self):
            if f.name == "extras":
                continue
            value = getattr(self, f.name)
            if value is not None:
                data[f.name] = _json_number(value)
        return data

    @classmethod
    def _extras(cls, attrs: Mapping[str, Any]) -> dict:
        known = {f.name for f in fields(cls)}
        return {k: _json_number(v) for k, v in attrs.items() if k not in known}


@dataclass(frozen=True)
class AluminiumAttributes(BatchAttributes):
    weight_kg: Any
    gauge_mm: Any
    embossment: str
    color_code: str
    coil_number: str
    extras: dict = field(default_factory=dict)

    archetype: ClassVar[Archetype] = Archetype.ALUMINIUM

    @classmethod
    def from_mapping(cls, attrs: Mapping[str, Any], *, accepts_gauge: bool) -> "AluminiumAttributes":
        a = cls.archetype
        return cls(
            weight_kg=_positive_number(attrs, "weight_kg", a),
            gauge_mm=_gauge(attrs, a, required=True, accepts_gauge=accepts_gauge),
            embossment=_text(attrs, "embossment", a),
            color_code=_text(attrs, "color_code", a),
            coil_number=_text(attrs, "coil_number", a),
            extras=cls._extras(attrs),
        )


@dataclass(frozen=True)
class StoneTileAttributes(BatchAttributes):
    design_pattern: str
    pcs_per_pallet: Any
    sqm_coverage: Any
    pallet_number: str
    gauge_mm: Any = None
    extras: dict = field(default_factory=dict)

    archetype: ClassVar[Archetype] = Archetype.STONE_TILE

    @classmethod
    def from_mapping(cls, attrs: Mapping[str, Any], *, accepts_gauge: bool) -> "StoneTileAttributes":
        a = cls.archetype
        return cls(
            design_pattern=_text(attrs, "design_pattern", a),
            pcs_per_pallet=_positive_number(attrs, "pcs_per_pallet", a),
            sqm_coverage=_positive_number(attrs, "sqm_coverage", a),
            pallet_number=_text(attrs, "pallet_number", a),
            gauge_mm=_gauge(attrs, a, required=False, accepts_gauge=accepts_gauge),
            extras=cls._extras(attrs),
        )


@dataclass(frozen=True)
class AccessoryAttributes(BatchAttributes):
    packet_size: Any = None
    pcs_count: Any = None
    gauge_mm: Any = None
    extras: dict = field(default_factory=dict)

    archetype: ClassVar[Archetype] = Archetype.ACCESSORIES

    @classmethod
    def from_mapping(cls, attrs: Mapping[str, Any], *, accepts_gauge: bool) -> "AccessoryAttributes":
        a = cls.archetype
        if attrs.get("packet_size") is None and attrs.get("pcs_count") is None:
            raise InvalidAttributeError("packet_size", "either packet_size or pcs_count is required", a.value)
        return cls(
            packet_size=_optional_positive_number(attrs, "packet_size", a),
            pcs_count=_optional_positive_number(attrs, "pcs_count", a),
            gauge_mm=_gauge(attrs, a, required=False, accepts_gauge=accepts_gauge),
            extras=cls._extras(attrs),
        )


@dataclass(frozen=True)
class GenericAttributes(BatchAttributes):
    gauge_mm: Any = None
    extras: dict = field(default_factory=dict)

    archetype: ClassVar[Archetype] = Archetype.GENERIC

    @classmethod
    def from_mapping(cls, attrs: Mapping[str, Any], *, accepts_gauge: bool) -> "GenericAttributes":
        return cls(
            gauge_mm=_gauge(attrs, cls.archetype, required=False, accepts_gauge=accepts_gauge),
            extras=cls._extras(attrs),
        )


ATTRIBUTE_STRUCTS: dict[Archetype, type] = {
    Archetype.ALUMINIUM: AluminiumAttributes,
    Archetype.STONE_TILE: StoneTileAttributes,
    Archetype.ACCESSORIES: AccessoryAttributes,
    Archetype.GENERIC: GenericAttributes,
}


def validate_attributes(
    archetype: Archetype | str | None,
    attribute_map: Mapping[str, Any] | None,
    *,
    accepts_gauge: bool | None = None,
) -> BatchAttributes:
    """
    Validate an attribute map against an archetype and return the typed struct.

    accepts_gauge is the injected category setting; when None it defaults to
    "aluminium only".

    Raises:
        InvalidAttributeError: on the first failing field
    """
    archetype = coerce_archetype(archetype)
    if attribute_map is None:
        attribute_map = {}
    if not isinstance(attribute_map, Mapping):
        raise InvalidAttributeError("attribute_data", "must be an object", archetype.value)
    for key in attribute_map:
        if not isinstance(key, str):
            raise InvalidAttributeError(str(key), "attribute names must be strings", archetype.value)
    if accepts_gauge is None:
        accepts_gauge = archetype is Archetype.ALUMINIUM

    struct = ATTRIBUTE_STRUCTS[archetype]
    return struct.from_mapping(attribute_map, accepts_gauge=accepts_gauge)
