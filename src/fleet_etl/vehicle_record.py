"""fleet_etl.vehicle_record

Row → VehicleRecord projection for the fleet-management vehicle export.

normalize_vehicle_row never touches the database.  It either returns a typed
VehicleRecord or a SkipRow explaining why the row cannot be imported; in
strict mapping mode an unknown category/type label raises
UnmappedEnumValueError, which the import loop records as a row-level error.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from fleet_etl.enum_mappings import DEFAULT_ENUM_MAPPINGS, EnumMappings
from fleet_etl.normalize import (
    normalize_tractor_category,
    normalize_trailer_category,
    parse_bool,
    parse_year,
    trim,
)

# Fixed column names of the fleet-management export.
SOURCE_HEADERS = (
    "manufacturer",
    "name",
    "capacity",
    "category",
    "tractor category",
    "trailer category",
    "model",
    "plate_number",
    "asset",
    "door_no",
    "chassis_no",
    "sequence_no",
    "Local Agent",
    "type",
    "built_in_trailer",
    "built_in_reefer",
)

UNNAMED_VEHICLE = "Unnamed Vehicle"

SKIP_NO_NATURAL_KEY = "no_natural_key"


@dataclass(frozen=True)
class SkipRow:
    """Signal that a source row is intentionally not imported."""

    reason: str


@dataclass
class VehicleRecord:
    """Normalized vehicle attributes, keyed by registry column name."""

    asset: str | None
    door_no: str | None
    name: str
    category: str
    vehicle_type: str
    plate_number: str | None = None
    chassis_no: str | None = None
    sequence_no: str | None = None
    make: str | None = None
    model: str | None = None
    manufacturing_year: int | None = None
    capacity: str | None = None
    tractor_category: str | None = None
    trailer_category: str | None = None
    agent: str | None = None
    built_in_trailer: bool = False
    built_in_reefer: bool = False
    warnings: list[str] = field(default_factory=list, compare=False)

    def to_columns(self) -> dict[str, Any]:
        """Return every registry attribute column (natural keys included)."""
        cols = asdict(self)
        cols.pop("warnings")
        return cols

    @property
    def identifier(self) -> str:
        return self.asset or self.door_no or self.name


def row_identifier(row: dict[str, str], line_no: int | None = None) -> str:
    """Best-effort identifier for logs and error lists: asset, door number, line."""
    ident = trim(row.get("asset")) or trim(row.get("door_no"))
    if ident:
        return ident
    return f"line {line_no}" if line_no is not None else "UNKNOWN"


def normalize_vehicle_row(
    row: dict[str, str],
    mappings: EnumMappings = DEFAULT_ENUM_MAPPINGS,
) -> VehicleRecord | SkipRow:
    """Project one header-normalized CSV row onto a VehicleRecord.

    Raises:
        UnmappedEnumValueError: strict mappings and an unknown category/type.
    """
    asset = trim(row.get("asset"))
    door_no = trim(row.get("door_no"))
    if asset is None and door_no is None:
        return SkipRow(SKIP_NO_NATURAL_KEY)

    warnings: list[str] = []

    category_label = row.get("category")
    category, mapped = mappings.map_category(category_label)
    if not mapped:
        warnings.append(
            f"unmapped category {trim(category_label)!r} → {category}"
        )

    type_label = row.get("type")
    vehicle_type, mapped = mappings.map_type(type_label)
    if not mapped:
        warnings.append(
            f"unmapped type {trim(type_label)!r} → {vehicle_type}"
        )

    model_raw = row.get("model")

    return VehicleRecord(
        asset=asset,
        door_no=door_no,
        name=trim(row.get("name")) or UNNAMED_VEHICLE,
        category=category,
        vehicle_type=vehicle_type,
        plate_number=trim(row.get("plate_number")),
        chassis_no=trim(row.get("chassis_no")),
        sequence_no=trim(row.get("sequence_no")),
        make=trim(row.get("manufacturer")),
        model=trim(model_raw),
        manufacturing_year=parse_year(model_raw),
        capacity=trim(row.get("capacity")),
        tractor_category=normalize_tractor_category(row.get("tractor category")),
        trailer_category=normalize_trailer_category(row.get("trailer category")),
        agent=trim(row.get("Local Agent")),
        built_in_trailer=parse_bool(row.get("built_in_trailer")),
        built_in_reefer=parse_bool(row.get("built_in_reefer")),
        warnings=warnings,
    )
