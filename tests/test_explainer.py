from workforce_api.agents.chat.explainer import (
    explain_results,
    extract_date_range,
    extract_key_metrics,
    format_number,
    format_simple_results,
)
from workforce_api.services.query_executor import QueryResult


def _result(rows):
    return QueryResult(rows=rows, row_count=len(rows), tables_accessed=["daily_usage"], execution_time_ms=3)


def test_format_number_units():
    assert format_number(1234.5, "total_hours") == "1,234.5 hours"
    assert format_number(78.456, "productivity_rate") == "78.46%"
    assert format_number(30, "avg_duration") == "30 minutes"
    assert format_number(12, "user_count") == "12"


def test_key_metrics_skip_text_and_bool_columns():
    rows = [
        {"name": "Ann", "hours": 4, "active": True},
        {"name": "Bob", "hours": 6, "active": False},
    ]
    assert extract_key_metrics(rows) == {"hours": {"total": 10.0, "average": 5.0, "max": 6.0, "min": 4.0}}


def test_extract_date_range_from_rows():
    rows = [{"date": "2026-10-07"}, {"date": "2026-10-01"}, {"date": "2026-10-03"}]
    assert extract_date_range(rows) == "2026-10-01 to 2026-10-07"
    assert extract_date_range([{"date": "2026-10-07"}]) == "2026-10-07"
    assert extract_date_range([{"name": "x"}]) is None


def test_empty_result_has_fixed_message():
    explained = explain_results("hours yesterday", "desc", _result([]))
    assert explained.answer.startswith('No data found for your query: "hours yesterday"')
    assert explained.total_records == 0


def test_single_metric_sentence():
    text = format_simple_results("What was the average productivity rate last week?", [{"avg_productivity_rate": 71.234}])
    assert text == "The avg productivity rate was **71.23%**."


def test_single_row_lists_every_column():
    text = format_simple_results("details for Ann", [{"name": "Ann", "total_hours": 40}])
    assert "**name**: **Ann**" in text
    assert "**total hours**: **40 hours**" in text


def test_small_result_is_formatted_without_llm(fake_llm):
    fake = fake_llm()
    rows = [{"team": f"Team {i}", "total_hours": 10 * i} for i in range(1, 4)]
    explained = explain_results("hours by team", "Hours per team", _result(rows))
    assert fake.calls == []
    assert explained.answer.startswith("Found **3** results:")
    assert "- **Team 2**: 20 hours" in explained.answer


def test_large_result_is_summarised_by_llm(fake_llm):
    fake = fake_llm("Productivity rose steadily over the week.")
    rows = [{"date": f"2026-10-{d:02d}", "productivity_rate": 60 + d} for d in range(1, 9)]
    explained = explain_results("productivity trend", "Daily productivity", _result(rows))

    assert explained.answer == "Productivity rose steadily over the week."
    assert explained.date_range == "2026-10-01 to 2026-10-08"
    assert explained.key_metrics["productivity_rate"]["max"] == 68.0
    prompt = fake.calls[0]["messages"][1].content
    assert "Total records: 8" in prompt
    assert fake.calls[0]["temperature"] == 0.3


def test_large_result_falls_back_when_llm_fails(fake_llm):
    fake_llm(RuntimeError("rate limited"))
    rows = [{"app_name": f"App {i}", "minutes": i} for i in range(1, 9)]
    explained = explain_results("top apps", "Apps", _result(rows))
    assert explained.answer.startswith("Found **8** results:")
    assert "... and **3** more results" in explained.answer
