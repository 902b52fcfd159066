import json
from datetime import date

from workforce_api.agents.chat.parser import ParsedQuery, parse_query

TODAY = date(2026, 10, 18)


def test_list_requests_skip_the_llm(fake_llm):
    fake = fake_llm()
    parsed = parse_query("list all projects", today=TODAY)
    assert parsed.intent == "list"
    assert parsed.entity == "projects"
    assert fake.calls == []


def test_list_with_metric_wording_goes_to_llm(fake_llm):
    reply = {
        "intent": "summary",
        "entity": "projects",
        "metrics": ["project_duration"],
        "filters": {"dateRange": {"start": "2026-10-05", "end": "2026-10-11"}},
    }
    fake = fake_llm(json.dumps(reply))
    parsed = parse_query("show total hours per project last week", today=TODAY)
    assert len(fake.calls) == 1
    assert parsed.intent == "summary"
    assert parsed.date_range == {"start": "2026-10-05", "end": "2026-10-11"}


def test_llm_answer_in_code_fence_with_history(fake_llm):
    reply = "```json\n" + json.dumps({
        "intent": "comparison",
        "entity": "teams",
        "metrics": ["productivity_rate"],
        "filters": {"teams": "Engineering"},
        "groupBy": ["team"],
        "orderBy": ["productivity_rate DESC"],
        "limit": "5",
    }) + "\n```"
    fake = fake_llm(reply)
    history = [
        {"role": "user", "content": "How did Engineering do last month?"},
        {"role": "assistant", "content": "Engineering averaged 71%."},
    ]
    parsed = parse_query("and compared to marketing?", history, today=TODAY)

    assert parsed.intent == "comparison"
    assert parsed.filters.teams == ["Engineering"]
    assert parsed.group_by == ["team"]
    assert parsed.order_by == "productivity_rate DESC"
    assert parsed.limit == 5
    # no dateRange in the answer: the local resolver fills the default window
    assert parsed.date_range == {"start": "2026-09-18", "end": "2026-10-18"}

    system_prompt = fake.calls[0]["messages"][0].content
    assert "Engineering averaged 71%." in system_prompt
    assert "Last week: 2026-10-05 to 2026-10-11" in system_prompt
    assert fake.calls[0]["temperature"] == 0


def test_invalid_date_range_is_replaced(fake_llm):
    fake_llm(json.dumps({"intent": "trend", "filters": {"dateRange": {"start": "last week", "end": "now"}}}))
    parsed = parse_query("productivity trend last week", today=TODAY)
    assert parsed.intent == "trend"
    assert parsed.date_range == {"start": "2026-10-05", "end": "2026-10-11"}


def test_unknown_values_are_normalised():
    parsed = ParsedQuery.model_validate({"intent": "forecast", "entity": "applications", "limit": -3})
    assert parsed.intent == "unknown"
    assert parsed.entity == "apps"
    assert parsed.limit is None


def test_unparseable_reply_degrades_to_unknown(fake_llm):
    fake_llm("I am not sure what you mean.")
    parsed = parse_query("productivity in Q3", today=TODAY)
    assert parsed.intent == "unknown"
    assert parsed.date_range == {"start": "2026-07-01", "end": "2026-09-30"}


def test_llm_failure_degrades_to_unknown(fake_llm):
    fake_llm(RuntimeError("connection refused"))
    parsed = parse_query("hours worked yesterday", today=TODAY)
    assert parsed.intent == "unknown"
    assert parsed.date_range == {"start": "2026-10-17", "end": "2026-10-17"}
