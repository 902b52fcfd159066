"""
Query rows → natural-language answer.

Small result sets are formatted directly; larger ones are summarized by the
FAST model from a sample plus per-column aggregates.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd

from workforce_api.services import llm
from workforce_api.services.query_executor import QueryResult
from workforce_api.services.runtime import log_event

logger = logging.getLogger("chat.explainer")

SIMPLE_RESULT_LIMIT = 5
SAMPLE_ROWS = 10
DATE_COLUMNS = ("date", "created_at", "timestamp")

SYSTEM_PROMPT = """You explain query results for a workforce analytics platform in clear markdown.

- Be concise; answer the question first, then the notable patterns.
- Only describe what is in the data. If something is missing, say so.
- Format numbers with thousands separators and units (hours, %, minutes).
- Bold key numbers, use bullet points for lists and numbered lists for rankings.
- Mention the time period when it is known.
- Single metric questions get a direct sentence, e.g. "The average productivity rate last week was **78.5%**"."""


@dataclass
class ExplainedResponse:
    answer: str
    total_records: int
    date_range: Optional[str] = None
    key_metrics: Dict[str, Dict[str, float]] = field(default_factory=dict)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def format_number(value: float, key: str) -> str:
    key = key.lower()
    formatted = f"{round(float(value), 2):,.2f}".rstrip("0").rstrip(".")
    if "hour" in key:
        return f"{formatted} hours"
    if "rate" in key or "percent" in key or "productivity" in key:
        return f"{formatted}%"
    if "duration" in key or "minutes" in key:
        return f"{formatted} minutes"
    return formatted


def extract_key_metrics(rows: List[Dict[str, Any]]) -> Dict[str, Dict[str, float]]:
    """total/average/max/min for every fully numeric column."""
    if not rows:
        return {}
    df = pd.DataFrame(rows)
    metrics: Dict[str, Dict[str, float]] = {}
    for col in df.columns:
        if isinstance(rows[0].get(col), bool):
            continue
        raw = df[col].dropna()
        values = pd.to_numeric(raw, errors="coerce")
        if values.empty or values.isna().any():
            continue
        metrics[str(col)] = {
            "total": round(float(values.sum()), 2),
            "average": round(float(values.mean()), 2),
            "max": round(float(values.max()), 2),
            "min": round(float(values.min()), 2),
        }
    return metrics


def extract_date_range(rows: List[Dict[str, Any]]) -> Optional[str]:
    if not rows:
        return None
    df = pd.DataFrame(rows)
    for col in DATE_COLUMNS:
        if col not in df.columns:
            continue
        dates = pd.to_datetime(df[col], errors="coerce").dropna()
        if dates.empty:
            continue
        start = dates.min().strftime("%Y-%m-%d")
        end = dates.max().strftime("%Y-%m-%d")
        return start if start == end else f"{start} to {end}"
    return None


def natural_language_response(query: str, metric: str, value: str) -> str:
    lower = query.lower()
    metric_name = metric.replace("_", " ")
    if "how many" in lower and "total" in lower:
        return f"A total of **{value}** were recorded."
    if "how many" in lower:
        return f"**{value}** were found."
    if "how much" in lower or "what is the" in lower or "what was the" in lower:
        return f"The {metric_name} was **{value}**."
    return f"The {metric_name} is **{value}**."


def _display(value: Any, key: str) -> Any:
    return format_number(value, key) if _is_number(value) else value


def format_simple_results(user_query: str, rows: List[Dict[str, Any]]) -> str:
    lower = user_query.lower()
    single_metric = (
        "how many" in lower
        or "how much" in lower
        or "what is the" in lower
        or "what was the" in lower
        or (len(rows) == 1 and len(rows[0]) == 1)
    )

    if len(rows) == 1 and single_metric:
        key, value = next(iter(rows[0].items()))
        if _is_number(value):
            return natural_language_response(user_query, key, format_number(value, key))

    if len(rows) == 1:
        return "\n\n".join(
            f"**{key.replace('_', ' ')}**: **{_display(value, key)}**"
            for key, value in rows[0].items()
        )

    lines = [f"Found **{len(rows)}** results:\n"]
    for row in rows[:SIMPLE_RESULT_LIMIT]:
        items = list(row.items())
        main = _display(items[0][1], items[0][0]) if items else ""
        second = _display(items[1][1], items[1][0]) if len(items) > 1 else ""
        lines.append(f"- **{main}**: {second}" if len(items) > 1 else f"- **{main}**")
    if len(rows) > SIMPLE_RESULT_LIMIT:
        lines.append(f"\n... and **{len(rows) - SIMPLE_RESULT_LIMIT}** more results")
    return "\n".join(lines)


def explain_results(user_query: str, sql_description: str, result: QueryResult) -> ExplainedResponse:
    if result.row_count == 0:
        return ExplainedResponse(
            answer=(
                f'No data found for your query: "{user_query}". This could mean there\'s no '
                "activity recorded for the specified criteria or time period."
            ),
            total_records=0,
        )

    key_metrics = extract_key_metrics(result.rows)
    date_range = extract_date_range(result.rows)

    if result.row_count <= SIMPLE_RESULT_LIMIT:
        return ExplainedResponse(format_simple_results(user_query, result.rows), result.row_count, date_range, key_metrics)

    prompt = (
        f'User asked: "{user_query}"\n\n'
        f"Query description: {sql_description}\n\n"
        "Data summary:\n"
        f"- Total records: {result.row_count}\n"
        f"- Date range: {date_range or 'Not specified'}\n"
        f"- Sample data (first {SAMPLE_ROWS} rows): "
        f"{json.dumps(result.rows[:SAMPLE_ROWS], indent=2, default=str)}\n\n"
        f"Key metrics:\n{json.dumps(key_metrics, indent=2)}\n\n"
        "Answer the user's question from this data."
    )
    try:
        answer = llm.chat(
            [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
            model=llm.MODEL_FAST,
            temperature=0.3,
        )
    except llm.LLMError as exc:
        log_event(logger, logging.WARNING, "explain_llm_failed", error=str(exc)[:200])
        answer = format_simple_results(user_query, result.rows)

    return ExplainedResponse(answer, result.row_count, date_range, key_metrics)
