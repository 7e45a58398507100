"""fleet_etl.vehicle_upsert

Create-or-update of a single registry entry.

Update is a full replace of the attribute columns (a blank source field
clears the stored value).  id and company_id are carried over untouched, so
a re-export can never move a vehicle to another tenant.  Caller manages the
transaction/savepoint.
"""

from __future__ import annotations

from dataclasses import dataclass

import psycopg

from fleet_etl.registry import fetch_vehicle_attributes, insert_vehicle, update_vehicle
from fleet_etl.vehicle_match import VehicleMatch
from fleet_etl.vehicle_record import VehicleRecord

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_UNCHANGED = "unchanged"


@dataclass(frozen=True)
class UpsertResult:
    action: str
    vehicle_id: str


def upsert_vehicle(
    conn: psycopg.Connection,
    record: VehicleRecord,
    match: VehicleMatch | None,
    default_company_id: str,
) -> UpsertResult:
    attrs = record.to_columns()

    if match is None:
        vehicle_id = insert_vehicle(conn, default_company_id, attrs)
        return UpsertResult(ACTION_CREATED, vehicle_id)

    current = fetch_vehicle_attributes(conn, match.vehicle_id)
    if current is None:
        # Matched row vanished between lookup and write (concurrent delete).
        raise LookupError(f"vehicle {match.vehicle_id} no longer exists")
    if current == attrs:
        return UpsertResult(ACTION_UNCHANGED, match.vehicle_id)

    update_vehicle(conn, match.vehicle_id, attrs)
    return UpsertResult(ACTION_UPDATED, match.vehicle_id)
