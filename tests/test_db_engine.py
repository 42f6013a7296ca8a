"""Tests for src/db/engine.py — PostgreSQL engine.

Requires a running PostgreSQL instance. Skipped if unavailable.
"""

import pytest

from src.core.config import DatabaseConfig
from src.core.exceptions import ConnectionError, DatabaseError
from src.db.engine import DatabaseEngine

from tests.conftest import requires_postgres


def _insert_agent(cur_or_engine, name):
    cur_or_engine.execute(
        "INSERT INTO agents (id, name, role) VALUES (gen_random_uuid(), %s, 'MID_DEV')", [name]
    )


@requires_postgres
class TestDatabaseEngine:
    def test_connect_and_query(self, db_engine):
        result = db_engine.fetch_one("SELECT 1 AS num")
        assert result["num"] == 1

    def test_schema_initialized(self, db_engine):
        tables = db_engine.fetch_all(
            """SELECT table_name FROM information_schema.tables
               WHERE table_schema = 'public'
               AND table_type = 'BASE TABLE'"""
        )
        table_names = {r["table_name"] for r in tables}
        expected = {
            "agents", "tasks", "trace_events", "ledger_blocks",
            "verified_statements", "rejected_verifications",
        }
        assert expected.issubset(table_names), f"Missing tables: {expected - table_names}"

    def test_schema_is_idempotent(self, db_engine):
        db_engine.initialize_schema()

    def test_execute_and_fetch(self, db_engine):
        _insert_agent(db_engine, "exec-worker")
        row = db_engine.fetch_one("SELECT * FROM agents WHERE name = %s", ["exec-worker"])
        assert row["status"] == "IDLE"
        assert row["fail_count"] == 0

    def test_fetch_all(self, db_engine):
        rows = db_engine.fetch_all("SELECT 1 AS a UNION SELECT 2 AS a ORDER BY a")
        assert [r["a"] for r in rows] == [1, 2]

    def test_fetch_one_no_results(self, db_engine):
        row = db_engine.fetch_one(
            "SELECT * FROM tasks WHERE id = '00000000-0000-0000-0000-000000000000'"
        )
        assert row is None

    def test_bad_query_raises_database_error(self, db_engine):
        with pytest.raises(DatabaseError, match="Query failed"):
            db_engine.fetch_all("SELECT * FROM no_such_table")

    def test_complexity_check_constraint(self, db_engine):
        with pytest.raises(DatabaseError):
            db_engine.execute(
                "INSERT INTO tasks (id, title, required_role, complexity_score) "
                "VALUES (gen_random_uuid(), 'bad', 'MID_DEV', 150)"
            )

    def test_transaction_commit(self, db_engine):
        with db_engine.transaction() as cur:
            _insert_agent(cur, "txn-worker")
        assert db_engine.fetch_one("SELECT * FROM agents WHERE name = 'txn-worker'") is not None

    def test_transaction_rollback(self, db_engine):
        with pytest.raises(RuntimeError):
            with db_engine.transaction() as cur:
                _insert_agent(cur, "rollback-worker")
                raise RuntimeError("Force rollback")
        assert db_engine.fetch_one("SELECT * FROM agents WHERE name = 'rollback-worker'") is None
        assert db_engine.conn.autocommit

    def test_close_and_reconnect(self, db_engine):
        db_engine.close()
        assert db_engine.fetch_one("SELECT 1 AS num")["num"] == 1


class TestConnectionFailure:
    def test_unreachable_server_raises_connection_error(self):
        engine = DatabaseEngine(DatabaseConfig(host="127.0.0.1", port=1, dbname="nowhere"))
        with pytest.raises(ConnectionError, match="Failed to connect"):
            engine.fetch_one("SELECT 1")
