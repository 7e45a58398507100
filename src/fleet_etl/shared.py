"""fleet_etl.shared

Shared utilities used by the import, prune and audit modes.
Includes RejectWriter, run counters, header normalization, and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

DEFAULT_REPORT_DIR = Path("./artifacts/reports")


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

class _Counters(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


@dataclass
class ImportCounters:
    rows_read: int = 0
    created: int = 0
    updated: int = 0
    skipped_no_key: int = 0
    skipped_unchanged: int = 0
    errored: int = 0
    matched_by_asset: int = 0
    matched_by_door_no: int = 0
    matched_by_door_no_fallback: int = 0
    unmapped_enum_values: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.skipped_no_key + self.skipped_unchanged

    def record_error(self, identifier: str, message: str) -> None:
        self.errored += 1
        self.errors.append((identifier, message))

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "skipped_no_key": self.skipped_no_key,
            "skipped_unchanged": self.skipped_unchanged,
            "errored": self.errored,
            "matched_by_asset": self.matched_by_asset,
            "matched_by_door_no": self.matched_by_door_no,
            "matched_by_door_no_fallback": self.matched_by_door_no_fallback,
            "unmapped_enum_values": self.unmapped_enum_values,
            "errors": [
                {"row": ident, "error": msg} for ident, msg in self.errors
            ],
            "warnings": self.warnings[:50],
        }


@dataclass
class PruneCounters:
    vehicles_scanned: int = 0
    duplicate_groups: int = 0
    kept: int = 0
    deleted: int = 0
    skipped: int = 0
    blocked_groups: list[dict[str, Any]] = field(default_factory=list)
    delete_conflicts: list[dict[str, str]] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "vehicles_scanned": self.vehicles_scanned,
            "duplicate_groups": self.duplicate_groups,
            "kept": self.kept,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "blocked_groups": self.blocked_groups,
            "delete_conflicts": self.delete_conflicts,
            "errors": [
                {"asset": asset, "error": msg} for asset, msg in self.errors
            ],
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[str, str | None]) -> dict[str, str]:
    """Return a new dict with header keys whitespace-stripped.

    csv.DictReader yields None for short rows and a None key for long ones;
    both collapse to empty strings / are dropped.
    """
    return {
        k.strip(): (v if isinstance(v, str) else "")
        for k, v in raw.items()
        if k is not None
    }


# ---------------------------------------------------------------------------
# Report builders
# ---------------------------------------------------------------------------

def build_import_report(counters: ImportCounters, dry_run: bool, max_errors: int = 50) -> str:
    lines = [
        "=== Vehicle Import Summary ===",
        f"dry_run        : {dry_run}",
        f"rows_read      : {counters.rows_read}",
        f"created        : {counters.created}",
        f"updated        : {counters.updated}",
        f"skipped        : {counters.skipped}"
        f" (no_key={counters.skipped_no_key}, unchanged={counters.skipped_unchanged})",
        f"errors         : {counters.errored}",
        "",
        "--- Matching ---",
        f"by_asset            : {counters.matched_by_asset}",
        f"by_door_no          : {counters.matched_by_door_no}",
        f"by_door_no_fallback : {counters.matched_by_door_no_fallback}",
        f"unmapped_enum_values: {counters.unmapped_enum_values}",
    ]
    if counters.errors:
        lines += ["", f"--- Errors (first {max_errors}) ---"]
        lines += [f"  {ident}: {msg}" for ident, msg in counters.errors[:max_errors]]
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)


def build_prune_report(counters: PruneCounters, dry_run: bool) -> str:
    lines = [
        "=== Duplicate Vehicle Cleanup Summary ===",
        f"dry_run          : {dry_run}",
        f"vehicles_scanned : {counters.vehicles_scanned}",
        f"duplicate_groups : {counters.duplicate_groups}",
        f"kept (originals) : {counters.kept}",
        f"deleted          : {counters.deleted}",
        f"skipped          : {counters.skipped}",
        f"errors           : {len(counters.errors)}",
    ]
    if counters.blocked_groups:
        lines += ["", "--- Blocked groups (referenced by dependents) ---"]
        lines += [
            f"  {g['asset']}: {len(g['referenced_ids'])} referenced, "
            f"{len(g['candidate_ids'])} candidate(s) kept"
            for g in counters.blocked_groups
        ]
    if counters.delete_conflicts:
        lines += ["", "--- Delete conflicts ---"]
        lines += [
            f"  {c['asset']} ({c['vehicle_id']}): {c['error']}"
            for c in counters.delete_conflicts
        ]
    if counters.errors:
        lines += ["", "--- Errors ---"]
        lines += [f"  {asset}: {msg}" for asset, msg in counters.errors]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, Any],
    counters: _Counters,
    report_dir: Path = DEFAULT_REPORT_DIR,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
