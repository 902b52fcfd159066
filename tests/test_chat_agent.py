import json

from sqlalchemy import select

from workforce_api.agents.chat import agent
from workforce_api.agents.chat.agent import calculate_confidence, classify_query_type, handle_chat_query
from workforce_api.agents.chat.parser import ParsedQuery
from workforce_api.services.query_executor import QueryResult
from workforce_db.db_utils import QueryExecutionError
from workforce_db.schema import agent_audit_log


def _audit_rows(engine):
    with engine.connect() as conn:
        return [dict(r._mapping) for r in conn.execute(select(agent_audit_log))]


def test_short_greeting_is_general_without_llm(fake_llm):
    fake = fake_llm()
    assert classify_query_type("hi!") == "general"
    assert classify_query_type("thank you") == "general"
    assert fake.calls == []


def test_classifier_defaults_to_data(fake_llm):
    fake_llm("maybe")
    assert classify_query_type("how are my numbers looking") == "data"
    fake_llm(RuntimeError("down"))
    assert classify_query_type("how are my numbers looking") == "data"
    fake_llm('"General".')
    assert classify_query_type("what can you do for me") == "general"


def test_confidence_scoring():
    rows = QueryResult(rows=[{"a": 1}], row_count=1, tables_accessed=[], execution_time_ms=1)
    empty = QueryResult(rows=[], row_count=0, tables_accessed=[], execution_time_ms=1)
    assert calculate_confidence(ParsedQuery(intent="summary", metrics=["total_hours"]), rows) == 1.0
    assert calculate_confidence(ParsedQuery(intent="unknown"), empty) == 0.5


def test_greeting_gets_general_answer(seeded, fake_llm, as_user, engine):
    fake = fake_llm("Hello! Ask me about productivity or hours worked.")
    response = handle_chat_query("hello", as_user("eng_employee"))

    assert response["isGeneralQuery"] is True
    assert response["confidence"] == 1.0
    assert response["explanation"]["sql"] == "N/A (general conversation)"
    assert response["answer"].startswith("Hello!")
    assert fake.calls[0]["temperature"] == 0.7

    audit = _audit_rows(engine)
    assert len(audit) == 1
    assert audit[0]["agent_type"] == "chat"
    assert audit[0]["success"] is True


def test_list_projects_end_to_end(seeded, fake_llm, as_user, engine):
    fake_llm("data")
    response = handle_chat_query("list all projects", as_user("eng_employee"))

    assert response["isGeneralQuery"] is False
    assert response["explanation"]["sql"] == "SELECT name, billable FROM projects WHERE 1=1 ORDER BY name"
    assert response["explanation"]["rowCount"] == 2
    assert response["explanation"]["tablesAccessed"] == ["projects"]
    assert "**Internal Training**" in response["answer"]
    assert response["confidence"] == 0.9

    audit = _audit_rows(engine)
    assert audit[0]["sql_generated"].startswith("SELECT name, billable FROM projects")
    assert audit[0]["data_accessed"] == ["projects"]


def test_generation_failure_uses_daily_summary(seeded, fake_llm, as_user):
    # classifier answers, the parser gets garbage, SQL generation and the explainer are unreachable
    fake = fake_llm("data", "no idea")
    response = handle_chat_query("how was my productivity recently", as_user("eng_employee"))

    assert len(fake.calls) == 4
    assert "FROM daily_usage" in response["explanation"]["sql"]
    assert response["explanation"]["rowCount"] == 7
    assert response["answer"].startswith("Found **7** results:")
    assert response["confidence"] == 0.7


def test_execution_failure_becomes_answer_and_audit(seeded, fake_llm, as_user, engine, monkeypatch):
    def _boom(*args, **kwargs):
        raise QueryExecutionError("Query execution failed: relation does not exist")

    monkeypatch.setattr(agent, "execute_query", _boom)
    fake_llm("data")
    response = handle_chat_query("list all teams", as_user("admin"))

    assert response["answer"] == "I couldn't process your query. Query execution failed: relation does not exist"
    assert response["confidence"] == 0.0
    assert response["explanation"]["rowCount"] == 0
    assert response["explanation"]["sql"].startswith("SELECT")

    audit = _audit_rows(engine)
    assert audit[0]["success"] is False
    assert audit[0]["error_message"].startswith("Query execution failed")


def test_uncovered_union_falls_back_to_own_summary(seeded, fake_llm, as_user):
    union = json.dumps({
        "sql": (
            "SELECT date, total_duration FROM daily_usage WHERE {RBAC_FILTER} "
            "UNION ALL SELECT date, total_duration FROM daily_usage"
        ),
        "params": [],
        "description": "Everyone's days",
    })
    fake_llm("data", "no idea", union)
    response = handle_chat_query("how was my productivity recently", as_user("eng_employee"))

    assert "UNION" not in response["explanation"]["sql"]
    assert "user_id = :rbac_user_id" in response["explanation"]["sql"]
    assert response["explanation"]["rowCount"] == 7
