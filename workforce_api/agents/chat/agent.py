"""
Chat agent: question → (general reply | parse → SQL → validate → execute → explain).
"""
import logging
import time
from typing import Any, Dict, List, Optional

from workforce_api.agents.chat.explainer import explain_results
from workforce_api.agents.chat.parser import ParsedQuery, parse_query
from workforce_api.agents.chat.sql_generator import SQLGenerationError, generate_fallback_sql, generate_sql
from workforce_api.services import llm
from workforce_api.services.audit_logger import log_agent_action
from workforce_api.services.query_executor import QueryResult, execute_query, validate_query
from workforce_api.services.runtime import log_event
from workforce_api.services.security import CurrentUser

logger = logging.getLogger("chat.agent")

_SHORT_GENERAL = ("hi", "hello", "hey", "thanks", "thank you", "ok", "okay", "yes", "no", "bye")

CLASSIFIER_PROMPT = """You classify messages sent to a workforce analytics assistant.

Answer "data" when the message asks for workforce information: productivity, hours, time,
durations, work patterns, teams, users, projects, applications, lists ("list projects",
"show all teams"), trends, comparisons, totals, averages or any other metric.

Answer "general" for greetings, thanks, acknowledgements, small talk, questions about what
the assistant can do, requests for help or guidance, and short confirmations.

Use the conversation so far: a follow-up in a general exchange stays general.

Reply with exactly one lowercase word: data or general."""

GENERAL_PROMPT = """You are the assistant of a workforce intelligence platform.

Answer greetings and general questions politely, explain what can be asked and steer the
user toward workforce analytics questions, for example:
- productivity rates and trends
- hours worked by team or person
- application usage
- time spent on projects
- comparisons between teams or periods

Keep replies conversational and under 100 words. Politely redirect unrelated requests."""


def classify_query_type(query: str, history: Optional[List[Dict[str, str]]] = None) -> str:
    """'general' or 'data'."""
    lower = (query or "").lower().strip()
    words = lower.replace("!", " ").replace(".", " ").replace(",", " ").split()
    if len(words) <= 2 and (any(w in _SHORT_GENERAL for w in words) or lower in _SHORT_GENERAL):
        return "general"

    messages = [{"role": "system", "content": CLASSIFIER_PROMPT}]
    messages.extend({"role": m.get("role", "user"), "content": m.get("content", "")} for m in (history or [])[-4:])
    messages.append({"role": "user", "content": f'Classify this query: "{query}"'})
    try:
        reply = llm.chat(messages, model=llm.MODEL_FAST, temperature=0, max_tokens=10)
    except llm.LLMError as exc:
        log_event(logger, logging.WARNING, "classify_query_llm_failed", error=str(exc)[:200])
        return "data"

    label = (reply or "").strip().strip('".').lower()
    if label in ("data", "general"):
        return label
    log_event(logger, logging.WARNING, "classify_query_unexpected", reply=(reply or "")[:50])
    return "data"


def handle_general_query(query: str, history: Optional[List[Dict[str, str]]] = None) -> str:
    messages = [{"role": "system", "content": GENERAL_PROMPT}]
    messages.extend({"role": m.get("role", "user"), "content": m.get("content", "")} for m in (history or [])[-6:])
    messages.append({"role": "user", "content": query})
    return llm.chat(messages, model=llm.MODEL_FAST, temperature=0.7, max_tokens=500)


def calculate_confidence(parsed: ParsedQuery, result: QueryResult) -> float:
    confidence = 0.5
    if parsed.intent != "unknown":
        confidence += 0.2
    if result.row_count > 0:
        confidence += 0.2
    if parsed.metrics:
        confidence += 0.1
    return round(min(confidence, 1.0), 2)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def handle_chat_query(
    user_query: str,
    user: CurrentUser,
    conversation_history: Optional[List[Dict[str, str]]] = None,
    timeout_s: Optional[float] = None,
) -> Dict[str, Any]:
    started = time.perf_counter()
    history = conversation_history or []
    sql_generated = ""
    tables_accessed: List[str] = []

    try:
        if classify_query_type(user_query, history) == "general":
            reply = handle_general_query(user_query, history)
            log_agent_action(
                "chat",
                user.id,
                user_query,
                response=reply,
                data_accessed=[],
                execution_time_ms=_elapsed_ms(started),
                success=True,
            )
            return {
                "answer": reply,
                "explanation": {
                    "sql": "N/A (general conversation)",
                    "rowCount": 0,
                    "dateRange": "N/A",
                    "tablesAccessed": [],
                },
                "confidence": 1.0,
                "isGeneralQuery": True,
            }

        parsed = parse_query(user_query, history)
        try:
            generated = generate_sql(parsed, user)
        except SQLGenerationError as exc:
            log_event(logger, logging.WARNING, "chat_sql_fallback", error=str(exc)[:200])
            generated = generate_fallback_sql(parsed, user)
        sql_generated = generated.sql

        validation = validate_query(generated.sql)
        if not validation.valid:
            raise ValueError(f"Invalid SQL: {validation.error}")
        tables_accessed = validation.tables_accessed

        result = execute_query(generated.sql, generated.params, timeout_s=timeout_s)
        explained = explain_results(user_query, generated.description, result)

        log_agent_action(
            "chat",
            user.id,
            user_query,
            response=explained.answer,
            sql_generated=sql_generated,
            data_accessed=tables_accessed,
            execution_time_ms=_elapsed_ms(started),
            success=True,
        )
        log_event(
            logger,
            logging.INFO,
            "chat_ok",
            intent=parsed.intent,
            rows=result.row_count,
            elapsed_ms=_elapsed_ms(started),
        )
        return {
            "answer": explained.answer,
            "explanation": {
                "sql": generated.sql,
                "rowCount": result.row_count,
                "dateRange": explained.date_range or _requested_range(parsed),
                "tablesAccessed": tables_accessed,
            },
            "confidence": calculate_confidence(parsed, result),
            "isGeneralQuery": False,
        }
    except Exception as exc:
        # every failure becomes an answer for the user and an audit row
        error_message = str(exc) or exc.__class__.__name__
        log_event(logger, logging.ERROR, "chat_failed", error=error_message[:300], sql=sql_generated[:300])
        log_agent_action(
            "chat",
            user.id,
            user_query,
            sql_generated=sql_generated or None,
            data_accessed=tables_accessed,
            execution_time_ms=_elapsed_ms(started),
            success=False,
            error_message=error_message,
        )
        return {
            "answer": f"I couldn't process your query. {error_message}",
            "explanation": {
                "sql": sql_generated or "Not generated",
                "rowCount": 0,
                "dateRange": "N/A",
                "tablesAccessed": [],
            },
            "confidence": 0.0,
            "isGeneralQuery": False,
        }


def _requested_range(parsed: ParsedQuery) -> str:
    dr = parsed.date_range
    if not dr:
        return "Not specified"
    return dr["start"] if dr["start"] == dr["end"] else f"{dr['start']} to {dr['end']}"
