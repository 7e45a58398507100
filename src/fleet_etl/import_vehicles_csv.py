"""fleet_etl.import_vehicles_csv

Unified CLI entrypoint for fleet registry reconciliation.

Modes (--mode):
  import  — reconcile a fleet-management vehicle CSV into the registry (default)
  prune   — delete duplicate-asset vehicles that nothing references
  audit   — compare CSV asset tags with the registry, read-only

Usage (import):
    python -m fleet_etl.import_vehicles_csv \\
        --mode import \\
        --db-dsn "$FLEET_DB_DSN" \\
        --csv-path "imports/vehicles.csv" \\
        --default-company-id "3f0c6c1e-..." \\
        --audit-first

Usage (prune):
    python -m fleet_etl.import_vehicles_csv --mode prune --db-dsn "$FLEET_DB_DSN" --dry-run

Row processing is strictly sequential on one connection so each row sees the
vehicles created by the rows before it.  Each row runs under its own
SAVEPOINT: a failing row is rolled back, recorded, and the run continues.
"""

from __future__ import annotations

import csv
import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click
import psycopg

from fleet_etl.enum_mappings import (
    DEFAULT_ENUM_MAPPINGS,
    EnumMappings,
    MappingValidationError,
    UnmappedEnumValueError,
    load_enum_mappings,
)
from fleet_etl.match_audit import (
    SourceKey,
    _run_audit,
    build_audit_report,
    run_match_audit,
)
from fleet_etl.prune_duplicate_vehicles import _run_prune
from fleet_etl.registry import NoCompanyError, resolve_default_company
from fleet_etl.shared import (
    DEFAULT_REPORT_DIR,
    ImportCounters,
    PruneCounters,
    RejectWriter,
    build_import_report,
    normalize_headers,
    write_run_report,
)
from fleet_etl.vehicle_match import (
    MATCHED_ON_ASSET,
    MATCHED_ON_DOOR_NO,
    MATCHED_ON_DOOR_NO_FALLBACK,
    resolve_vehicle,
)
from fleet_etl.vehicle_record import (
    SOURCE_HEADERS,
    SkipRow,
    normalize_vehicle_row,
    row_identifier,
)
from fleet_etl.vehicle_upsert import (
    ACTION_CREATED,
    ACTION_UNCHANGED,
    ACTION_UPDATED,
    upsert_vehicle,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Source file
# ---------------------------------------------------------------------------

def _read_source_rows(
    csv_path: Path,
    counters: ImportCounters,
) -> list[tuple[int, dict[str, str]]]:
    """Pre-scan the CSV into (line_no, row) pairs.  Blank lines are dropped.

    Missing expected columns are a warning only; their values read as empty.
    Raises OSError when the file cannot be read.
    """
    rows: list[tuple[int, dict[str, str]]] = []
    with csv_path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        headers = {h.strip() for h in (reader.fieldnames or []) if h}
        missing = [h for h in SOURCE_HEADERS if h not in headers]
        if missing:
            counters.warnings.append(f"missing expected columns: {missing}")

        for raw_row in reader:
            row = normalize_headers(raw_row)
            if not any(v.strip() for v in row.values()):
                continue
            counters.rows_read += 1
            rows.append((reader.line_num, row))
    return rows


# ---------------------------------------------------------------------------
# Per-row processing
# ---------------------------------------------------------------------------

_MATCH_COUNTER = {
    MATCHED_ON_ASSET: "matched_by_asset",
    MATCHED_ON_DOOR_NO: "matched_by_door_no",
    MATCHED_ON_DOOR_NO_FALLBACK: "matched_by_door_no_fallback",
}


def _process_row(
    conn: psycopg.Connection,
    row: dict[str, str],
    line_no: int,
    mappings: EnumMappings,
    default_company_id: str,
    counters: ImportCounters,
) -> None:
    """Normalize → resolve → upsert one row.  Caller manages the savepoint."""
    result = normalize_vehicle_row(row, mappings)
    if isinstance(result, SkipRow):
        counters.skipped_no_key += 1
        log.debug("line %d skipped (%s): %s", line_no, result.reason, row.get("name"))
        return

    record = result
    match = resolve_vehicle(conn, record)
    outcome = upsert_vehicle(conn, record, match, default_company_id)

    if match is not None:
        attr = _MATCH_COUNTER[match.matched_on]
        setattr(counters, attr, getattr(counters, attr) + 1)
    if record.warnings:
        counters.unmapped_enum_values += len(record.warnings)
        counters.warnings.extend(f"{record.identifier}: {w}" for w in record.warnings)

    if outcome.action == ACTION_CREATED:
        counters.created += 1
        log.info("+ Created vehicle %s - %s (id=%s)", record.identifier, record.name, outcome.vehicle_id)
    elif outcome.action == ACTION_UPDATED:
        counters.updated += 1
        log.info(
            "Updated vehicle %s - %s (id=%s, matched on %s)",
            record.identifier, record.name, outcome.vehicle_id, match.matched_on,
        )
    elif outcome.action == ACTION_UNCHANGED:
        counters.skipped_unchanged += 1
        log.debug("line %d unchanged: %s (id=%s)", line_no, record.identifier, outcome.vehicle_id)


def _process_rows(
    conn: psycopg.Connection,
    rows: list[tuple[int, dict[str, str]]],
    mappings: EnumMappings,
    default_company_id: str,
    counters: ImportCounters,
    rejects: RejectWriter,
) -> None:
    for idx, (line_no, row) in enumerate(rows):
        sp_name = f"row_{idx}"
        conn.execute(f"SAVEPOINT {sp_name}")
        try:
            _process_row(conn, row, line_no, mappings, default_company_id, counters)
            conn.execute(f"RELEASE SAVEPOINT {sp_name}")
        except UnmappedEnumValueError as e:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            _record_row_error(row, line_no, str(e), counters, rejects)
        except psycopg.Error as e:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            _record_row_error(row, line_no, f"db_error: {str(e).strip()}", counters, rejects)
        except LookupError as e:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            _record_row_error(row, line_no, f"lookup_error: {e}", counters, rejects)
        except Exception as e:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            _record_row_error(row, line_no, f"row_error: {type(e).__name__}: {e}", counters, rejects)


def _record_row_error(
    row: dict[str, str],
    line_no: int,
    message: str,
    counters: ImportCounters,
    rejects: RejectWriter,
) -> None:
    ident = row_identifier(row, line_no)
    counters.record_error(ident, message)
    rejects.write(row, message)
    log.warning("Error processing vehicle %s (line %d): %s", ident, line_no, message)


# ---------------------------------------------------------------------------
# Run driver
# ---------------------------------------------------------------------------

def _run_vehicle_import(
    run_id: str,
    started_at: str,
    db_dsn: str,
    counters: ImportCounters,
    rejects: RejectWriter,
    csv_path: str,
    mappings: EnumMappings = DEFAULT_ENUM_MAPPINGS,
    default_company_id: str | None = None,
    audit_first: bool = False,
    dry_run: bool = False,
    report_dir: Path = DEFAULT_REPORT_DIR,
) -> None:
    # Pre-scan
    csv_file = Path(csv_path)
    try:
        rows = _read_source_rows(csv_file, counters)
    except OSError as e:
        click.echo(f"[{run_id}] FATAL: cannot read source file: {e}", err=True)
        sys.exit(1)

    click.echo(f"[{run_id}] Pre-scan: {counters.rows_read} rows read from {csv_file.name}")

    # DB phase
    try:
        conn = psycopg.connect(db_dsn, autocommit=False)
    except psycopg.Error as e:
        click.echo(f"[{run_id}] FATAL: cannot connect to registry: {e}", err=True)
        sys.exit(1)

    try:
        company_id = resolve_default_company(conn, default_company_id)
        click.echo(f"[{run_id}] New vehicles will be owned by company {company_id}")

        if audit_first:
            audit = run_match_audit(
                conn, [SourceKey(r.get("asset"), r.get("door_no")) for _, r in rows]
            )
            click.echo(build_audit_report(audit))

        _process_rows(conn, rows, mappings, company_id, counters, rejects)

        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
        else:
            conn.commit()
    except NoCompanyError as e:
        conn.rollback()
        click.echo(f"[{run_id}] FATAL: {e}", err=True)
        sys.exit(1)
    except psycopg.Error as e:
        conn.rollback()
        click.echo(f"[{run_id}] FATAL: run failed with DB error: {e}", err=True)
        sys.exit(1)
    finally:
        conn.close()
        rejects.close()

    click.echo(build_import_report(counters, dry_run=dry_run))
    report_path = write_run_report(
        run_id, started_at, "import", dry_run,
        {
            "csv_path": csv_path,
            "default_company_id": company_id,
            "mapping_hash": mappings.source_hash,
            "strict_enums": mappings.strict,
        },
        counters,
        report_dir=report_dir,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


def _load_mappings(mapping_file: str | None, strict_enums: bool, run_id: str) -> EnumMappings:
    if not mapping_file:
        return DEFAULT_ENUM_MAPPINGS.with_strict(strict_enums)
    try:
        return load_enum_mappings(Path(mapping_file), strict=True if strict_enums else None)
    except (OSError, MappingValidationError) as e:
        click.echo(f"[{run_id}] FATAL: invalid mapping file {mapping_file}: {e}", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="import",
    type=click.Choice(["import", "prune", "audit"]),
    show_default=True,
    help="Pipeline mode",
)
@click.option("--db-dsn", required=True, envvar="FLEET_DB_DSN", help="PostgreSQL DSN")
# import / audit flags
@click.option("--csv-path", default=None, type=click.Path(), help="[import|audit] Vehicle export CSV")
@click.option(
    "--default-company-id",
    default=None,
    help="[import] Company owning newly created vehicles (default: earliest company)",
)
@click.option(
    "--mapping-file",
    default=None,
    type=click.Path(),
    help="[import] YAML category/type mapping file (default: built-in tables)",
)
@click.option(
    "--strict-enums/--lenient-enums",
    default=False,
    show_default=True,
    help="[import] Treat unmapped category/type labels as row errors instead of defaulting",
)
@click.option(
    "--audit-first/--no-audit-first",
    default=False,
    show_default=True,
    help="[import] Print the matching analysis before importing",
)
# prune flags
@click.option(
    "--serializable/--no-serializable",
    default=False,
    show_default=True,
    help="[prune] Run the reference check and deletes in one SERIALIZABLE transaction",
)
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/vehicle_import_rejects.csv",
    show_default=True,
)
@click.option(
    "--report-dir",
    default=str(DEFAULT_REPORT_DIR),
    type=click.Path(),
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    csv_path: str | None,
    default_company_id: str | None,
    mapping_file: str | None,
    strict_enums: bool,
    audit_first: bool,
    serializable: bool,
    dry_run: bool,
    rejects_path: str,
    report_dir: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Fleet registry reconciliation CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode in ("import", "audit") and not csv_path:
        click.echo(f"[{run_id}] ERROR: --csv-path is required for --mode {mode}", err=True)
        sys.exit(1)

    if mode == "import":
        mappings = _load_mappings(mapping_file, strict_enums, run_id)
        _run_vehicle_import(
            run_id, started_at, db_dsn,
            ImportCounters(),
            RejectWriter(Path(rejects_path)),
            csv_path=csv_path,  # type: ignore[arg-type]
            mappings=mappings,
            default_company_id=default_company_id,
            audit_first=audit_first,
            dry_run=dry_run,
            report_dir=Path(report_dir),
        )
    elif mode == "prune":
        _run_prune(
            run_id, started_at, db_dsn,
            PruneCounters(),
            dry_run=dry_run,
            serializable=serializable,
            report_dir=Path(report_dir),
        )
    elif mode == "audit":
        _run_audit(
            run_id, started_at, db_dsn,
            csv_path=csv_path,  # type: ignore[arg-type]
            report_dir=Path(report_dir),
        )


if __name__ == "__main__":
    main()
