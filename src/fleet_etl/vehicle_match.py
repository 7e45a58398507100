"""fleet_etl.vehicle_match

Match a normalized VehicleRecord to at most one registry entry.

Key order (first match wins):
  1. asset present            → exact asset lookup
  2. asset absent, door_no    → exact door_no lookup
  3. asset missed, door_no    → door_no lookup as a fallback; asset tags get
                                re-issued between exports while door numbers
                                stay put
  4. nothing                  → None (caller creates)

Lookups span every company.  When several entries share a key the
earliest-created one is returned, which is also the one the prune pass keeps.
"""

from __future__ import annotations

from dataclasses import dataclass

import psycopg

from fleet_etl.registry import find_vehicle_by_asset, find_vehicle_by_door_no
from fleet_etl.vehicle_record import VehicleRecord

MATCHED_ON_ASSET = "asset"
MATCHED_ON_DOOR_NO = "door_no"
MATCHED_ON_DOOR_NO_FALLBACK = "door_no_fallback"


@dataclass(frozen=True)
class VehicleMatch:
    vehicle_id: str
    matched_on: str


def resolve_vehicle(
    conn: psycopg.Connection,
    record: VehicleRecord,
) -> VehicleMatch | None:
    if record.asset:
        vehicle_id = find_vehicle_by_asset(conn, record.asset)
        if vehicle_id:
            return VehicleMatch(vehicle_id, MATCHED_ON_ASSET)
        if record.door_no:
            vehicle_id = find_vehicle_by_door_no(conn, record.door_no)
            if vehicle_id:
                return VehicleMatch(vehicle_id, MATCHED_ON_DOOR_NO_FALLBACK)
        return None

    if record.door_no:
        vehicle_id = find_vehicle_by_door_no(conn, record.door_no)
        if vehicle_id:
            return VehicleMatch(vehicle_id, MATCHED_ON_DOOR_NO)
    return None
