import pytest

from workforce_api.services import query_executor
from workforce_api.services.query_executor import (
    QueryValidationError,
    execute_query,
    extract_tables,
    validate_query,
)
from workforce_db.db_utils import QueryExecutionError, QueryTimeoutError, execute_query_safe


@pytest.mark.parametrize(
    "sql",
    [
        "DROP TABLE users",
        "SELECT * FROM users; DELETE FROM users",
        "UPDATE users SET role = 'admin'",
        "SELECT * FROM users -- sneaky",
        "SELECT /* hidden */ * FROM users",
    ],
)
def test_validate_rejects_writes_and_comments(sql):
    result = validate_query(sql)
    assert not result.valid
    assert result.error


def test_validate_requires_select():
    result = validate_query("EXPLAIN SELECT 1")
    assert not result.valid
    assert result.error == "Only SELECT queries are allowed"


def test_forbidden_keyword_matches_whole_words_only():
    result = validate_query("SELECT created_at, updated FROM projects")
    assert result.valid, result.error
    assert result.tables_accessed == ["projects"]


def test_validate_rejects_tables_outside_allow_list():
    result = validate_query("SELECT * FROM agent_audit_log")
    assert not result.valid
    assert "agent_audit_log" in result.error


def test_validate_sees_tables_joined_after_an_unaliased_table():
    result = validate_query("SELECT t.name FROM teams JOIN agent_audit_log ON 1=1")
    assert not result.valid
    assert "agent_audit_log" in result.error

    listed = validate_query("SELECT teams.name FROM teams, agent_audit_log")
    assert not listed.valid


def test_extract_tables_skips_cte_names():
    sql = (
        "WITH totals AS (SELECT user_id, SUM(total_duration) AS t FROM daily_usage GROUP BY user_id) "
        "SELECT u.name, totals.t FROM totals JOIN users u ON u.id = totals.user_id"
    )
    assert extract_tables(sql) == ["daily_usage", "users"]
    assert validate_query(sql).valid


def test_execute_query_returns_rows_and_tables(seeded):
    result = execute_query(
        "SELECT name FROM teams WHERE department = :dept ORDER BY name",
        {"dept": "Engineering"},
    )
    assert result.rows == [{"name": "Engineering Team 1"}]
    assert result.row_count == 1
    assert result.tables_accessed == ["teams"]
    assert result.execution_time_ms >= 0


def test_execute_query_caps_rows(seeded):
    result = execute_query("SELECT date FROM daily_usage ORDER BY date", max_rows=3)
    assert result.row_count == 3


def test_execute_query_raises_on_invalid_sql(seeded):
    with pytest.raises(QueryValidationError):
        execute_query("DELETE FROM teams")


def test_execute_query_wraps_database_errors(seeded):
    with pytest.raises(QueryExecutionError) as exc:
        execute_query("SELECT missing_column FROM teams")
    assert "Query execution failed" in str(exc.value)


def test_execute_query_maps_timeouts(monkeypatch, seeded):
    monkeypatch.setattr(query_executor, "execute_query_safe", lambda *a, **k: (None, "Query timeout"))
    with pytest.raises(QueryTimeoutError):
        execute_query("SELECT name FROM teams")


def test_execute_query_safe_appends_limit_and_converts_values(seeded):
    rows, err = execute_query_safe("SELECT date, productive_duration FROM daily_usage ORDER BY date", max_rows=2)
    assert err is None
    assert len(rows) == 2
    assert isinstance(rows[0]["date"], str)
