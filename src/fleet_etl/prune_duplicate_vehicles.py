"""fleet_etl.prune_duplicate_vehicles

Duplicate detector + safe pruner for the vehicle registry.

Algorithm:
  1. Load every vehicle with a non-blank asset, oldest first.
  2. Group by trimmed asset; groups of size > 1 are duplicates.  The
     earliest-created member is the keeper, the rest are candidates.
  3. One batched dependent-reference query covers all candidate ids.
  4. A group with any referenced candidate is blocked as a whole: none of its
     candidates are deleted and the group is reported with the referenced ids.
  5. Otherwise each candidate is deleted under its own SAVEPOINT.  A foreign
     key violation at delete time (a reference created after step 3) rolls
     back that one delete and is counted as skipped.

Re-running with no intervening writes deletes nothing.

The window between step 3 and step 5 is not locked.  Pass serializable=True
to run the pass in a single SERIALIZABLE transaction instead; a concurrent
writer then makes the commit fail rather than slipping through.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import click
import psycopg
from psycopg import errors as pg_errors

from fleet_etl.registry import (
    VehicleKeyRow,
    delete_vehicle,
    fetch_referenced_vehicle_ids,
    load_asset_vehicles,
)
from fleet_etl.shared import (
    DEFAULT_REPORT_DIR,
    PruneCounters,
    build_prune_report,
    write_run_report,
)

log = logging.getLogger(__name__)

BLOCK_REASON_REFERENCED = "referenced_by_dependents"


@dataclass(frozen=True)
class DuplicateGroup:
    asset: str
    keeper: VehicleKeyRow
    candidates: tuple[VehicleKeyRow, ...]

    @property
    def candidate_ids(self) -> list[str]:
        return [c.vehicle_id for c in self.candidates]


# ---------------------------------------------------------------------------
# Detection (pure)
# ---------------------------------------------------------------------------

def find_duplicate_groups(rows: list[VehicleKeyRow]) -> list[DuplicateGroup]:
    """Group rows by trimmed asset and return groups with more than one member.

    Groups come back in order of first appearance; within a group members are
    ordered by (created_at, vehicle_id) so the keeper is the earliest.
    """
    groups: dict[str, list[VehicleKeyRow]] = {}
    for row in rows:
        asset = (row.asset or "").strip()
        if not asset:
            continue
        groups.setdefault(asset, []).append(row)

    duplicates: list[DuplicateGroup] = []
    for asset, members in groups.items():
        if len(members) < 2:
            continue
        ordered = sorted(members, key=lambda r: (r.created_at, r.vehicle_id))
        duplicates.append(DuplicateGroup(asset, ordered[0], tuple(ordered[1:])))
    return duplicates


# ---------------------------------------------------------------------------
# Pruning
# ---------------------------------------------------------------------------

def prune_duplicates(
    conn: psycopg.Connection,
    counters: PruneCounters | None = None,
) -> PruneCounters:
    """Run one prune pass on conn.  Caller commits or rolls back."""
    counters = counters or PruneCounters()

    rows = load_asset_vehicles(conn)
    counters.vehicles_scanned = len(rows)

    groups = find_duplicate_groups(rows)
    counters.duplicate_groups = len(groups)
    if not groups:
        log.info("No duplicate assets found among %d vehicles", len(rows))
        return counters

    all_candidate_ids = [vid for g in groups for vid in g.candidate_ids]
    referenced = fetch_referenced_vehicle_ids(conn, all_candidate_ids)
    if referenced:
        counters.warnings.append(
            f"{len(referenced)} duplicate vehicle(s) are referenced by dependents "
            "and will not be deleted"
        )

    for g_idx, group in enumerate(groups):
        group_refs = sorted(set(group.candidate_ids) & referenced)
        if group_refs:
            counters.skipped += len(group.candidates)
            counters.blocked_groups.append({
                "asset": group.asset,
                "reason": BLOCK_REASON_REFERENCED,
                "keeper_id": group.keeper.vehicle_id,
                "candidate_ids": group.candidate_ids,
                "referenced_ids": group_refs,
            })
            log.warning(
                "Skipping deletion for asset %s: %d candidate(s) referenced by dependents",
                group.asset, len(group_refs),
            )
            continue

        if _delete_candidates(conn, group, g_idx, counters):
            counters.kept += 1
            log.info(
                "Kept original %s - %s (id=%s, created=%s)",
                group.asset, group.keeper.name, group.keeper.vehicle_id,
                group.keeper.created_at.isoformat(),
            )

    return counters


def _delete_candidates(
    conn: psycopg.Connection,
    group: DuplicateGroup,
    g_idx: int,
    counters: PruneCounters,
) -> bool:
    """Delete a group's candidates.  Returns False if the group hit a hard error."""
    for c_idx, candidate in enumerate(group.candidates):
        sp_name = f"prune_{g_idx}_{c_idx}"
        conn.execute(f"SAVEPOINT {sp_name}")
        try:
            delete_vehicle(conn, candidate.vehicle_id)
            conn.execute(f"RELEASE SAVEPOINT {sp_name}")
        except pg_errors.ForeignKeyViolation as e:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            counters.skipped += 1
            counters.delete_conflicts.append({
                "asset": group.asset,
                "vehicle_id": candidate.vehicle_id,
                "error": str(e).strip(),
            })
            log.warning(
                "Cannot delete %s - %s (id=%s): referenced by other records",
                group.asset, candidate.name, candidate.vehicle_id,
            )
            continue
        except psycopg.Error as e:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            counters.errors.append((group.asset, str(e).strip()))
            log.error("Error pruning asset %s: %s", group.asset, e)
            return False
        counters.deleted += 1
        log.info(
            "Deleted duplicate %s - %s (id=%s, created=%s)",
            group.asset, candidate.name, candidate.vehicle_id,
            candidate.created_at.isoformat(),
        )
    return True


# ---------------------------------------------------------------------------
# Run driver
# ---------------------------------------------------------------------------

def _run_prune(
    run_id: str,
    started_at: str,
    db_dsn: str,
    counters: PruneCounters,
    dry_run: bool,
    serializable: bool = False,
    report_dir: Path = DEFAULT_REPORT_DIR,
) -> None:
    try:
        conn = psycopg.connect(db_dsn, autocommit=False)
    except psycopg.Error as e:
        click.echo(f"[{run_id}] FATAL: cannot connect to registry: {e}", err=True)
        sys.exit(1)

    try:
        if serializable:
            conn.isolation_level = psycopg.IsolationLevel.SERIALIZABLE
        prune_duplicates(conn, counters)
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
        else:
            conn.commit()
    except psycopg.Error as e:
        conn.rollback()
        click.echo(f"[{run_id}] FATAL: prune failed with DB error: {e}", err=True)
        sys.exit(1)
    finally:
        conn.close()

    click.echo(build_prune_report(counters, dry_run=dry_run))
    report_path = write_run_report(
        run_id, started_at, "prune", dry_run,
        {"serializable": serializable},
        counters,
        report_dir=report_dir,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
