"""fleet_etl.match_audit

Read-only matching diagnostics, run before a bulk import is trusted.

Compares the distinct asset tags in the source file with those in the
registry and flags registry entries without an asset, which the asset
lookup can never reach.  Source assets missing from the registry whose row
carries a door number that *is* in the registry are listed separately: the
resolver's door-number fallback will still update those instead of
creating new vehicles.
"""

from __future__ import annotations

import csv
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import click
import psycopg

from fleet_etl.normalize import trim
from fleet_etl.registry import VehicleKeyRow, load_registry_keys
from fleet_etl.shared import DEFAULT_REPORT_DIR, normalize_headers, write_run_report


@dataclass(frozen=True)
class SourceKey:
    asset: str | None
    door_no: str | None


@dataclass
class MatchAuditReport:
    source_rows: int = 0
    registry_rows: int = 0
    matched: list[str] = field(default_factory=list)
    source_only: list[str] = field(default_factory=list)
    registry_only: list[str] = field(default_factory=list)
    door_fallback_matches: list[str] = field(default_factory=list)
    null_key_entries: list[VehicleKeyRow] = field(default_factory=list)

    @property
    def source_key_count(self) -> int:
        return len(self.matched) + len(self.source_only)

    @property
    def registry_key_count(self) -> int:
        return len(self.matched) + len(self.registry_only)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_rows": self.source_rows,
            "registry_rows": self.registry_rows,
            "source_key_count": self.source_key_count,
            "registry_key_count": self.registry_key_count,
            "matched_count": len(self.matched),
            "source_only_count": len(self.source_only),
            "registry_only_count": len(self.registry_only),
            "door_fallback_match_count": len(self.door_fallback_matches),
            "null_key_entry_count": len(self.null_key_entries),
            "matched": self.matched,
            "source_only": self.source_only,
            "registry_only": self.registry_only,
            "door_fallback_matches": self.door_fallback_matches,
            "null_key_entries": [
                {
                    "vehicle_id": e.vehicle_id,
                    "name": e.name,
                    "plate_number": e.plate_number,
                    "door_no": e.door_no,
                }
                for e in self.null_key_entries
            ],
        }


def audit_matching(
    source_keys: Iterable[SourceKey],
    registry_keys: Iterable[VehicleKeyRow],
) -> MatchAuditReport:
    """Pure set comparison of source vs registry natural keys."""
    report = MatchAuditReport()

    source_assets: set[str] = set()
    door_by_source_asset: dict[str, set[str]] = {}
    for key in source_keys:
        report.source_rows += 1
        asset = trim(key.asset)
        if asset is None:
            continue
        source_assets.add(asset)
        door_no = trim(key.door_no)
        if door_no is not None:
            door_by_source_asset.setdefault(asset, set()).add(door_no)

    registry_assets: set[str] = set()
    registry_doors: set[str] = set()
    for entry in registry_keys:
        report.registry_rows += 1
        asset = trim(entry.asset)
        if asset is None:
            report.null_key_entries.append(entry)
        else:
            registry_assets.add(asset)
        door_no = trim(entry.door_no)
        if door_no is not None:
            registry_doors.add(door_no)

    report.matched = sorted(source_assets & registry_assets)
    report.source_only = sorted(source_assets - registry_assets)
    report.registry_only = sorted(registry_assets - source_assets)
    report.door_fallback_matches = [
        asset for asset in report.source_only
        if door_by_source_asset.get(asset, set()) & registry_doors
    ]
    return report


def build_audit_report(report: MatchAuditReport, sample: int = 10) -> str:
    lines = [
        "=== Matching Analysis ===",
        f"source rows                     : {report.source_rows}",
        f"registry rows                   : {report.registry_rows}",
        f"unique assets in source         : {report.source_key_count}",
        f"unique assets in registry       : {report.registry_key_count}",
        f"matching assets                 : {len(report.matched)}",
        f"source only (will be created)   : {len(report.source_only)}",
        f"  of which door_no fallback     : {len(report.door_fallback_matches)}",
        f"registry only (won't be updated): {len(report.registry_only)}",
    ]
    for title, items in (
        ("matching assets", report.matched),
        ("assets only in source", report.source_only),
        ("assets only in registry", report.registry_only),
    ):
        if items:
            lines += ["", f"First {min(sample, len(items))} {title}:"]
            lines += [f"  - {a}" for a in items[:sample]]
    if report.null_key_entries:
        lines += [
            "",
            f"WARNING: {len(report.null_key_entries)} registry vehicle(s) have no asset "
            "(unreachable by asset matching)",
        ]
        lines += [
            f"  - id={e.vehicle_id} name={e.name} plate={e.plate_number or 'N/A'} "
            f"door={e.door_no or 'N/A'}"
            for e in report.null_key_entries[:sample]
        ]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Run driver
# ---------------------------------------------------------------------------

def read_source_keys(csv_path: Path) -> list[SourceKey]:
    keys: list[SourceKey] = []
    with csv_path.open(encoding="utf-8-sig", newline="") as fh:
        for raw_row in csv.DictReader(fh):
            row = normalize_headers(raw_row)
            if not any(v.strip() for v in row.values()):
                continue
            keys.append(SourceKey(row.get("asset"), row.get("door_no")))
    return keys


def run_match_audit(conn: psycopg.Connection, source_keys: list[SourceKey]) -> MatchAuditReport:
    return audit_matching(source_keys, load_registry_keys(conn))


def _run_audit(
    run_id: str,
    started_at: str,
    db_dsn: str,
    csv_path: str,
    report_dir: Path = DEFAULT_REPORT_DIR,
) -> MatchAuditReport:
    try:
        source_keys = read_source_keys(Path(csv_path))
    except OSError as e:
        click.echo(f"[{run_id}] FATAL: cannot read source file: {e}", err=True)
        sys.exit(1)

    try:
        with psycopg.connect(db_dsn, autocommit=True) as conn:
            report = run_match_audit(conn, source_keys)
    except psycopg.Error as e:
        click.echo(f"[{run_id}] FATAL: audit failed with DB error: {e}", err=True)
        sys.exit(1)

    click.echo(build_audit_report(report))
    report_path = write_run_report(
        run_id, started_at, "audit", False,
        {"csv_path": csv_path},
        report,
        report_dir=report_dir,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    return report
