"""fleet_etl.registry

psycopg data-access helpers for the vehicle registry.

Every helper takes an open connection and leaves transaction control to the
caller (the import loop wraps each row in a SAVEPOINT; the prune pass wraps
each delete).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

import psycopg
from psycopg import sql

# Registry attribute columns the import owns.  id, company_id and the
# lifecycle timestamps are never written from a source row.
VEHICLE_ATTRIBUTE_COLUMNS = (
    "asset",
    "door_no",
    "name",
    "category",
    "vehicle_type",
    "plate_number",
    "chassis_no",
    "sequence_no",
    "make",
    "model",
    "manufacturing_year",
    "capacity",
    "tractor_category",
    "trailer_category",
    "agent",
    "built_in_trailer",
    "built_in_reefer",
)

# (table, column) pairs holding a foreign reference to vehicle.id.
# A vehicle referenced from any of these is never deleted by the pipeline.
DEPENDENT_REFERENCES: tuple[tuple[str, str], ...] = (
    ("fleet_order", "vehicle_id"),
    ("fleet_order", "attachment_id"),
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class NoCompanyError(Exception):
    """Raised when no tenant is available to own newly created vehicles."""


# ---------------------------------------------------------------------------
# Row types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VehicleKeyRow:
    """Slim projection used by the prune pass and the matching audit."""

    vehicle_id: str
    asset: str | None
    door_no: str | None
    name: str
    plate_number: str | None
    created_at: datetime


# ---------------------------------------------------------------------------
# Tenant resolution
# ---------------------------------------------------------------------------

def resolve_default_company(
    conn: psycopg.Connection,
    company_id: str | None = None,
) -> str:
    """Return the tenant that owns vehicles created by this run.

    An explicit company_id must exist.  Without one, the earliest-created
    company is used.
    """
    if company_id:
        row = conn.execute(
            "SELECT id FROM company WHERE id::text = %s",
            (company_id,),
        ).fetchone()
        if not row:
            raise NoCompanyError(f"company {company_id!r} does not exist")
        return str(row[0])

    row = conn.execute(
        "SELECT id FROM company ORDER BY created_at ASC, id ASC LIMIT 1"
    ).fetchone()
    if not row:
        raise NoCompanyError("no company found; create a company first")
    return str(row[0])


# ---------------------------------------------------------------------------
# Natural-key lookups
# ---------------------------------------------------------------------------

def find_vehicle_by_asset(conn: psycopg.Connection, asset: str) -> str | None:
    row = conn.execute(
        """
        SELECT id FROM vehicle
        WHERE asset = %s
        ORDER BY created_at ASC, id ASC
        LIMIT 1
        """,
        (asset,),
    ).fetchone()
    return str(row[0]) if row else None


def find_vehicle_by_door_no(conn: psycopg.Connection, door_no: str) -> str | None:
    row = conn.execute(
        """
        SELECT id FROM vehicle
        WHERE door_no = %s
        ORDER BY created_at ASC, id ASC
        LIMIT 1
        """,
        (door_no,),
    ).fetchone()
    return str(row[0]) if row else None


# ---------------------------------------------------------------------------
# Create / update / delete
# ---------------------------------------------------------------------------

def fetch_vehicle_attributes(
    conn: psycopg.Connection,
    vehicle_id: str,
) -> dict[str, Any] | None:
    query = sql.SQL("SELECT {cols} FROM vehicle WHERE id = %s").format(
        cols=sql.SQL(", ").join(sql.Identifier(c) for c in VEHICLE_ATTRIBUTE_COLUMNS),
    )
    row = conn.execute(query, (vehicle_id,)).fetchone()
    if row is None:
        return None
    return dict(zip(VEHICLE_ATTRIBUTE_COLUMNS, row))


def insert_vehicle(
    conn: psycopg.Connection,
    company_id: str,
    attrs: dict[str, Any],
) -> str:
    cols = ["company_id", *VEHICLE_ATTRIBUTE_COLUMNS]
    query = sql.SQL("INSERT INTO vehicle ({cols}) VALUES ({vals}) RETURNING id").format(
        cols=sql.SQL(", ").join(sql.Identifier(c) for c in cols),
        vals=sql.SQL(", ").join(sql.Placeholder() for _ in cols),
    )
    params = [company_id, *(attrs[c] for c in VEHICLE_ATTRIBUTE_COLUMNS)]
    row = conn.execute(query, params).fetchone()
    return str(row[0])


def update_vehicle(
    conn: psycopg.Connection,
    vehicle_id: str,
    attrs: dict[str, Any],
) -> None:
    """Overwrite every attribute column.  id and company_id are not in the SET list."""
    assignments = sql.SQL(", ").join(
        sql.SQL("{} = {}").format(sql.Identifier(c), sql.Placeholder())
        for c in VEHICLE_ATTRIBUTE_COLUMNS
    )
    query = sql.SQL(
        "UPDATE vehicle SET {assignments}, updated_at = clock_timestamp() WHERE id = %s"
    ).format(assignments=assignments)
    params = [*(attrs[c] for c in VEHICLE_ATTRIBUTE_COLUMNS), vehicle_id]
    conn.execute(query, params)


def delete_vehicle(conn: psycopg.Connection, vehicle_id: str) -> None:
    conn.execute("DELETE FROM vehicle WHERE id = %s", (vehicle_id,))


# ---------------------------------------------------------------------------
# Dependent references
# ---------------------------------------------------------------------------

def fetch_referenced_vehicle_ids(
    conn: psycopg.Connection,
    vehicle_ids: Iterable[str],
) -> set[str]:
    """Return the subset of vehicle_ids referenced by any dependent table.

    One query for the whole id set, regardless of how many are passed.
    """
    ids = sorted(set(vehicle_ids))
    if not ids:
        return set()
    parts = [
        sql.SQL("SELECT {col} FROM {table} WHERE {col} = ANY(%(ids)s::uuid[])").format(
            col=sql.Identifier(column),
            table=sql.Identifier(table),
        )
        for table, column in DEPENDENT_REFERENCES
    ]
    query = sql.SQL(" UNION ").join(parts)
    rows = conn.execute(query, {"ids": ids}).fetchall()
    return {str(r[0]) for r in rows}


# ---------------------------------------------------------------------------
# Bulk projections
# ---------------------------------------------------------------------------

def load_asset_vehicles(conn: psycopg.Connection) -> list[VehicleKeyRow]:
    """All vehicles with a non-blank asset, oldest first."""
    rows = conn.execute(
        """
        SELECT id, asset, door_no, name, plate_number, created_at
        FROM vehicle
        WHERE asset IS NOT NULL AND btrim(asset) <> ''
        ORDER BY created_at ASC, id ASC
        """
    ).fetchall()
    return [_key_row(r) for r in rows]


def load_registry_keys(conn: psycopg.Connection) -> list[VehicleKeyRow]:
    rows = conn.execute(
        """
        SELECT id, asset, door_no, name, plate_number, created_at
        FROM vehicle
        ORDER BY created_at ASC, id ASC
        """
    ).fetchall()
    return [_key_row(r) for r in rows]


def _key_row(r: tuple) -> VehicleKeyRow:
    return VehicleKeyRow(
        vehicle_id=str(r[0]),
        asset=r[1],
        door_no=r[2],
        name=r[3],
        plate_number=r[4],
        created_at=r[5],
    )
