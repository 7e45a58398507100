"""Integration tests for the read-only matching audit."""

from __future__ import annotations

import json

from fleet_etl.match_audit import SourceKey, _run_audit, run_match_audit


def _seed(conn) -> str:
    co = conn.execute("INSERT INTO company (name) VALUES ('Alpha') RETURNING id").fetchone()[0]
    for name, asset, door in [
        ("Truck 1", "A1", "D1"),
        ("Truck 2", "A2", None),
        ("Trailer", None, "D9"),
    ]:
        conn.execute(
            "INSERT INTO vehicle (company_id, name, asset, door_no) VALUES (%s, %s, %s, %s)",
            (co, name, asset, door),
        )
    conn.commit()
    return str(co)


class TestRunMatchAudit:
    def test_partitions_against_registry(self, db_conn):
        conn, _ = db_conn
        _seed(conn)
        report = run_match_audit(conn, [SourceKey("A1", None), SourceKey("A3", "D9")])
        assert report.matched == ["A1"]
        assert report.source_only == ["A3"]
        assert report.registry_only == ["A2"]
        assert report.door_fallback_matches == ["A3"]
        assert [e.name for e in report.null_key_entries] == ["Trailer"]

    def test_audit_writes_nothing(self, db_conn):
        conn, _ = db_conn
        _seed(conn)
        before = conn.execute("SELECT count(*), max(updated_at) FROM vehicle").fetchone()
        run_match_audit(conn, [SourceKey("A9", None)])
        conn.commit()
        after = conn.execute("SELECT count(*), max(updated_at) FROM vehicle").fetchone()
        assert before == after


class TestRunAuditDriver:
    def test_reads_csv_and_writes_report(self, db_conn, tmp_path, capsys):
        conn, dsn = db_conn
        _seed(conn)
        csv_path = tmp_path / "vehicles.csv"
        csv_path.write_text("asset,door_no,name\nA1,,Truck 1\nA5,,New\n", encoding="utf-8")

        report = _run_audit("audit-run", "2025-01-01T00:00:00", dsn, str(csv_path), report_dir=tmp_path)

        assert report.matched == ["A1"]
        assert report.source_only == ["A5"]
        assert "WARNING: 1 registry vehicle(s) have no asset" in capsys.readouterr().out
        data = json.loads((tmp_path / "audit-run.json").read_text())
        assert data["mode"] == "audit"
        assert data["counters"]["matched_count"] == 1
