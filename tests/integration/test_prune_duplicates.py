"""Integration tests for prune_duplicate_vehicles against the registry schema."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from fleet_etl.prune_duplicate_vehicles import (
    BLOCK_REASON_REFERENCED,
    _run_prune,
    prune_duplicates,
)
from fleet_etl.registry import fetch_referenced_vehicle_ids
from fleet_etl.shared import PruneCounters

T0 = datetime(2025, 1, 1, 8, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _seed_company(conn, name: str = "Alpha") -> str:
    row = conn.execute(
        "INSERT INTO company (name) VALUES (%s) RETURNING id", (name,)
    ).fetchone()
    conn.commit()
    return str(row[0])


def _seed_vehicle(conn, company_id: str, asset: str | None, minutes: int, name: str | None = None) -> str:
    row = conn.execute(
        """
        INSERT INTO vehicle (company_id, name, asset, created_at)
        VALUES (%s, %s, %s, %s)
        RETURNING id
        """,
        (company_id, name or f"Vehicle {asset}", asset, T0 + timedelta(minutes=minutes)),
    ).fetchone()
    conn.commit()
    return str(row[0])


def _seed_order(conn, company_id: str, vehicle_id=None, attachment_id=None) -> str:
    row = conn.execute(
        """
        INSERT INTO fleet_order (company_id, order_number, vehicle_id, attachment_id)
        VALUES (%s, %s, %s, %s)
        RETURNING id
        """,
        (company_id, "ORD-1", vehicle_id, attachment_id),
    ).fetchone()
    conn.commit()
    return str(row[0])


def _ids_for_asset(conn, asset: str) -> list[str]:
    rows = conn.execute(
        "SELECT id FROM vehicle WHERE asset = %s ORDER BY created_at", (asset,)
    ).fetchall()
    conn.commit()
    return [str(r[0]) for r in rows]


# ---------------------------------------------------------------------------
# Test: reference check
# ---------------------------------------------------------------------------

class TestReferencedIds:
    def test_both_reference_columns_checked(self, db_conn):
        conn, _ = db_conn
        co = _seed_company(conn)
        v1 = _seed_vehicle(conn, co, "X1", 0)
        v2 = _seed_vehicle(conn, co, "X2", 1)
        v3 = _seed_vehicle(conn, co, "X3", 2)
        _seed_order(conn, co, vehicle_id=v1)
        _seed_order(conn, co, attachment_id=v2)
        assert fetch_referenced_vehicle_ids(conn, [v1, v2, v3]) == {v1, v2}

    def test_empty_input(self, db_conn):
        conn, _ = db_conn
        assert fetch_referenced_vehicle_ids(conn, []) == set()


# ---------------------------------------------------------------------------
# Test: prune pass
# ---------------------------------------------------------------------------

class TestPruneDuplicates:
    def test_keeps_earliest_and_deletes_rest(self, db_conn):
        conn, _ = db_conn
        co = _seed_company(conn)
        t1 = _seed_vehicle(conn, co, "X9", 10)
        _seed_vehicle(conn, co, "X9", 20)
        _seed_vehicle(conn, co, "X9", 30)
        _seed_vehicle(conn, co, "SOLO", 40)

        ctrs = prune_duplicates(conn)
        conn.commit()

        assert ctrs.vehicles_scanned == 4
        assert (ctrs.duplicate_groups, ctrs.kept, ctrs.deleted, ctrs.skipped) == (1, 1, 2, 0)
        assert _ids_for_asset(conn, "X9") == [t1]
        assert len(_ids_for_asset(conn, "SOLO")) == 1

    def test_referenced_candidate_blocks_whole_group(self, db_conn):
        conn, _ = db_conn
        co = _seed_company(conn)
        t1 = _seed_vehicle(conn, co, "X9", 10)
        t2 = _seed_vehicle(conn, co, "X9", 20)
        t3 = _seed_vehicle(conn, co, "X9", 30)
        _seed_order(conn, co, vehicle_id=t2)

        ctrs = prune_duplicates(conn)
        conn.commit()

        assert ctrs.deleted == 0
        assert ctrs.skipped == 2
        assert ctrs.kept == 0
        assert _ids_for_asset(conn, "X9") == [t1, t2, t3]
        [blocked] = ctrs.blocked_groups
        assert blocked["asset"] == "X9"
        assert blocked["reason"] == BLOCK_REASON_REFERENCED
        assert blocked["keeper_id"] == t1
        assert blocked["candidate_ids"] == [t2, t3]
        assert blocked["referenced_ids"] == [t2]

    def test_blocked_group_does_not_stop_others(self, db_conn):
        conn, _ = db_conn
        co = _seed_company(conn)
        _seed_vehicle(conn, co, "A", 0)
        a2 = _seed_vehicle(conn, co, "A", 1)
        b1 = _seed_vehicle(conn, co, "B", 2)
        _seed_vehicle(conn, co, "B", 3)
        _seed_order(conn, co, attachment_id=a2)

        ctrs = prune_duplicates(conn)
        conn.commit()

        assert (ctrs.duplicate_groups, ctrs.kept, ctrs.deleted, ctrs.skipped) == (2, 1, 1, 1)
        assert _ids_for_asset(conn, "B") == [b1]
        assert len(_ids_for_asset(conn, "A")) == 2

    def test_keeper_reference_does_not_block(self, db_conn):
        conn, _ = db_conn
        co = _seed_company(conn)
        t1 = _seed_vehicle(conn, co, "X9", 0)
        _seed_vehicle(conn, co, "X9", 1)
        _seed_order(conn, co, vehicle_id=t1)

        ctrs = prune_duplicates(conn)
        conn.commit()

        assert ctrs.deleted == 1
        assert _ids_for_asset(conn, "X9") == [t1]

    def test_second_pass_is_noop(self, db_conn):
        conn, _ = db_conn
        co = _seed_company(conn)
        _seed_vehicle(conn, co, "X9", 0)
        _seed_vehicle(conn, co, "X9", 1)
        prune_duplicates(conn)
        conn.commit()

        again = prune_duplicates(conn)
        conn.commit()
        assert (again.duplicate_groups, again.deleted, again.skipped) == (0, 0, 0)

    def test_blank_and_null_assets_never_grouped(self, db_conn):
        conn, _ = db_conn
        co = _seed_company(conn)
        _seed_vehicle(conn, co, None, 0, name="n1")
        _seed_vehicle(conn, co, None, 1, name="n2")
        _seed_vehicle(conn, co, "  ", 2, name="b1")
        _seed_vehicle(conn, co, "  ", 3, name="b2")

        ctrs = prune_duplicates(conn)
        conn.commit()

        assert ctrs.vehicles_scanned == 0
        assert ctrs.duplicate_groups == 0
        n = conn.execute("SELECT count(*) FROM vehicle").fetchone()[0]
        conn.commit()
        assert n == 4


# ---------------------------------------------------------------------------
# Test: delete-time failures
# ---------------------------------------------------------------------------

class TestDeleteTimeFailures:
    def test_reference_added_after_check_is_skipped(self, db_conn, tmp_path, monkeypatch):
        conn, dsn = db_conn
        co = _seed_company(conn)
        t1 = _seed_vehicle(conn, co, "X9", 10)
        t2 = _seed_vehicle(conn, co, "X9", 20)
        _seed_vehicle(conn, co, "X9", 30)
        _seed_order(conn, co, vehicle_id=t2)

        from fleet_etl import prune_duplicate_vehicles

        # reference check sees nothing, as if the order arrived after it ran
        monkeypatch.setattr(prune_duplicate_vehicles, "fetch_referenced_vehicle_ids", lambda conn, ids: set())

        ctrs = PruneCounters()
        _run_prune("prune-run", "2025-01-01T00:00:00", dsn, ctrs, dry_run=False, report_dir=tmp_path)

        assert ctrs.blocked_groups == []
        assert (ctrs.deleted, ctrs.skipped, ctrs.kept) == (1, 1, 1)
        [conflict] = ctrs.delete_conflicts
        assert conflict["asset"] == "X9"
        assert conflict["vehicle_id"] == t2
        assert "foreign key" in conflict["error"]
        assert ctrs.errors == []
        assert _ids_for_asset(conn, "X9") == [t1, t2]
        assert (tmp_path / "prune-run.json").exists()

    def test_other_db_error_stops_only_that_group(self, db_conn):
        conn, _ = db_conn
        co = _seed_company(conn)
        conn.execute(
            """
            CREATE FUNCTION refuse_locked_delete() RETURNS trigger LANGUAGE plpgsql AS $$
            BEGIN
                IF OLD.name = 'LOCKED' THEN
                    RAISE EXCEPTION 'vehicle is locked';
                END IF;
                RETURN OLD;
            END
            $$
            """
        )
        conn.execute(
            "CREATE TRIGGER vehicle_refuse_locked BEFORE DELETE ON vehicle "
            "FOR EACH ROW EXECUTE FUNCTION refuse_locked_delete()"
        )
        conn.commit()
        a1 = _seed_vehicle(conn, co, "A", 0)
        a2 = _seed_vehicle(conn, co, "A", 1, name="LOCKED")
        a3 = _seed_vehicle(conn, co, "A", 2)
        b1 = _seed_vehicle(conn, co, "B", 3)
        _seed_vehicle(conn, co, "B", 4)

        ctrs = prune_duplicates(conn)
        conn.commit()

        [(asset, message)] = ctrs.errors
        assert asset == "A"
        assert message.startswith("vehicle is locked")
        assert (ctrs.kept, ctrs.deleted) == (1, 1)
        assert _ids_for_asset(conn, "A") == [a1, a2, a3]
        assert _ids_for_asset(conn, "B") == [b1]


# ---------------------------------------------------------------------------
# Test: run driver
# ---------------------------------------------------------------------------

class TestRunPrune:
    def test_dry_run_deletes_nothing(self, db_conn, tmp_path):
        conn, dsn = db_conn
        co = _seed_company(conn)
        _seed_vehicle(conn, co, "X9", 0)
        _seed_vehicle(conn, co, "X9", 1)

        ctrs = PruneCounters()
        _run_prune("prune-run", "2025-01-01T00:00:00", dsn, ctrs, dry_run=True, report_dir=tmp_path)

        assert ctrs.deleted == 1
        assert len(_ids_for_asset(conn, "X9")) == 2

    def test_commit_and_report(self, db_conn, tmp_path, capsys):
        conn, dsn = db_conn
        co = _seed_company(conn)
        _seed_vehicle(conn, co, "X9", 0)
        _seed_vehicle(conn, co, "X9", 1)

        ctrs = PruneCounters()
        _run_prune(
            "prune-run", "2025-01-01T00:00:00", dsn, ctrs,
            dry_run=False, serializable=True, report_dir=tmp_path,
        )

        assert len(_ids_for_asset(conn, "X9")) == 1
        assert "=== Duplicate Vehicle Cleanup Summary ===" in capsys.readouterr().out
        report = json.loads((tmp_path / "prune-run.json").read_text())
        assert report["mode"] == "prune"
        assert report["serializable"] is True
        assert report["counters"]["deleted"] == 1

    def test_unreachable_database(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            _run_prune(
                "prune-run", "2025-01-01T00:00:00",
                "host=127.0.0.1 port=1 dbname=none connect_timeout=1",
                PruneCounters(), dry_run=False, report_dir=tmp_path,
            )
        assert exc.value.code == 1
