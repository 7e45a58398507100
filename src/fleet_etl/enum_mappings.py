"""fleet_etl.enum_mappings

Category / type mapping tables for vehicle CSV ingestion.

Source exports carry free-text labels ("BackhoeLoader", "Attachment", ...)
that must land in the registry's closed enumerations.  The tables live in an
immutable EnumMappings value injected into the normalizer, so tests and
operators can substitute their own without touching module state.

Usage:
    from pathlib import Path
    from fleet_etl.enum_mappings import load_enum_mappings

    mappings = load_enum_mappings(Path("config/enum_mappings/vehicle.yml"))
    category, mapped = mappings.map_category("Trailer")
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from fleet_etl.normalize import label_key, trim

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VALID_CATEGORIES = frozenset({
    "TractorHead",
    "Trailer",
    "DieselTanker",
    "BackhoLoader",
    "LightDutyTruck",
    "MiniVan",
    "MiniVanFifteenSeater",
    "CraneMountedTruck",
    "BoomTruck",
    "Pickup",
    "Forklift",
    "RoughTerrainCrane",
    "SkidLoader",
    "SUV",
    "OneCarCarrier",
})

VALID_VEHICLE_TYPES = frozenset({"Vehicle", "Attachment", "Equipment"})

REQUIRED_YAML_KEYS = frozenset({
    "categories",
    "types",
    "default_category",
    "default_type",
})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MappingValidationError(ValueError):
    """Raised when a YAML mapping file fails schema validation."""


class UnmappedEnumValueError(ValueError):
    """Raised in strict mode when a source label has no mapping."""


# ---------------------------------------------------------------------------
# EnumMappings
# ---------------------------------------------------------------------------

def _freeze(labels: Mapping[str, str]) -> Mapping[str, str]:
    return MappingProxyType({label_key(k): v for k, v in labels.items() if label_key(k)})


@dataclass(frozen=True)
class EnumMappings:
    """Label → canonical value tables plus fallback policy.

    Keys are stored through label_key, so lookups ignore case and whitespace.
    """

    categories: Mapping[str, str]
    types: Mapping[str, str]
    default_category: str = "TractorHead"
    default_type: str = "Vehicle"
    strict: bool = False
    source_hash: str | None = field(default=None, compare=False)

    @classmethod
    def build(
        cls,
        categories: Mapping[str, str],
        types: Mapping[str, str],
        default_category: str = "TractorHead",
        default_type: str = "Vehicle",
        strict: bool = False,
        source_hash: str | None = None,
    ) -> EnumMappings:
        return cls(
            categories=_freeze(categories),
            types=_freeze(types),
            default_category=default_category,
            default_type=default_type,
            strict=strict,
            source_hash=source_hash,
        )

    def with_strict(self, strict: bool) -> EnumMappings:
        return replace(self, strict=strict)

    def map_category(self, label: str | None) -> tuple[str, bool]:
        """Return (category, mapped).  mapped is False when the default was used."""
        return self._lookup(self.categories, label, self.default_category, "category")

    def map_type(self, label: str | None) -> tuple[str, bool]:
        """Return (vehicle_type, mapped).  mapped is False when the default was used."""
        return self._lookup(self.types, label, self.default_type, "type")

    def _lookup(
        self,
        table: Mapping[str, str],
        label: str | None,
        default: str,
        kind: str,
    ) -> tuple[str, bool]:
        key = label_key(label)
        if key is not None and key in table:
            return table[key], True
        # A blank label is not "unmapped"; it simply takes the default.
        if key is not None and self.strict:
            raise UnmappedEnumValueError(f"unmapped_{kind}: {trim(label)!r}")
        return default, key is None


DEFAULT_CATEGORY_LABELS: dict[str, str] = {
    "TractorHead": "TractorHead",
    "Trailer": "Trailer",
    "DieselTanker": "DieselTanker",
    "BackhoeLoader": "BackhoLoader",
    "BackhoLoader": "BackhoLoader",
    "LightDutyTruck": "LightDutyTruck",
    "MiniVan": "MiniVan",
    "MiniVanFifteenSeater": "MiniVanFifteenSeater",
    "CraneMountedTruck": "CraneMountedTruck",
    "BoomTruck": "BoomTruck",
    "Pickup": "Pickup",
    "Forklift": "Forklift",
    "RoughTerrainCrane": "RoughTerrainCrane",
    "SkidLoader": "SkidLoader",
    "SUV": "SUV",
    "OneCarCarrier": "OneCarCarrier",
}

DEFAULT_TYPE_LABELS: dict[str, str] = {
    "Vehicle": "Vehicle",
    "Attachment": "Attachment",
    "Equipment": "Equipment",
}

DEFAULT_ENUM_MAPPINGS = EnumMappings.build(DEFAULT_CATEGORY_LABELS, DEFAULT_TYPE_LABELS)


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_enum_mappings(yaml_path: Path, strict: bool | None = None) -> EnumMappings:
    """Load, validate, and return EnumMappings from a YAML file.

    Args:
        yaml_path: Path to the YAML mapping file.
        strict: Overrides the file's ``strict`` key when not None.

    Raises:
        MappingValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_enum_mappings(data)
    return EnumMappings.build(
        categories={str(k): str(v) for k, v in data["categories"].items()},
        types={str(k): str(v) for k, v in data["types"].items()},
        default_category=str(data["default_category"]),
        default_type=str(data["default_type"]),
        strict=bool(data.get("strict", False)) if strict is None else strict,
        source_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


def validate_enum_mappings(data: dict[str, Any]) -> None:
    """Raise MappingValidationError if data does not match the required schema."""
    if not isinstance(data, dict):
        raise MappingValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise MappingValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    for section, valid in (("categories", VALID_CATEGORIES), ("types", VALID_VEHICLE_TYPES)):
        table = data.get(section)
        if not isinstance(table, dict) or not table:
            raise MappingValidationError(f"'{section}' must be a non-empty mapping.")
        for label, target in table.items():
            if not label_key(str(label)):
                raise MappingValidationError(f"'{section}' contains a blank label.")
            if target not in valid:
                raise MappingValidationError(
                    f"'{section}' label '{label}' maps to unknown value '{target}'. "
                    f"Must be one of {sorted(valid)}."
                )

    if data["default_category"] not in VALID_CATEGORIES:
        raise MappingValidationError(
            f"Invalid default_category '{data['default_category']}'."
        )
    if data["default_type"] not in VALID_VEHICLE_TYPES:
        raise MappingValidationError(
            f"Invalid default_type '{data['default_type']}'."
        )
    if "strict" in data and not isinstance(data["strict"], bool):
        raise MappingValidationError("'strict' must be a boolean.")
