import pytest

from autoscribe.db import _normalize_sql, connect_db, is_postgres_url


def test_sqlite_sql_is_untouched():
    sql = "INSERT OR IGNORE INTO t (a) VALUES (?)"
    assert _normalize_sql(sql, "sqlite") == sql


def test_postgres_placeholders_skip_string_literals():
    sql = "SELECT * FROM t WHERE a = ? AND b = '?' AND c = ?"
    assert _normalize_sql(sql, "postgres") == "SELECT * FROM t WHERE a = %s AND b = '?' AND c = %s"


def test_postgres_insert_or_ignore():
    sql = "INSERT OR IGNORE INTO schema_migrations (version) VALUES (?);"
    assert (
        _normalize_sql(sql, "postgres")
        == "INSERT INTO schema_migrations (version) VALUES (%s) ON CONFLICT DO NOTHING"
    )


def test_is_postgres_url():
    assert is_postgres_url("postgresql://user@db/autoscribe")
    assert is_postgres_url("postgres://db/autoscribe")
    assert not is_postgres_url("sqlite:///tmp/state.sqlite3")
    assert not is_postgres_url(None)


def test_transaction_rolls_back_on_error(tmp_path):
    conn = connect_db(str(tmp_path / "state.sqlite3"))
    with pytest.raises(RuntimeError):
        with conn.transaction():
            conn.execute(
                "INSERT INTO settings (key, value_json, updated_at) VALUES (?, ?, ?)",
                ("k", "1", "now"),
            )
            with conn.transaction():
                assert conn.in_transaction
            raise RuntimeError("boom")
    assert conn.execute("SELECT COUNT(*) FROM settings WHERE key = 'k'").fetchone()[0] == 0
    assert not conn.in_transaction
    conn.close()
