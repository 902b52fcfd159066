"""
Question → ParsedQuery.

Simple "list/show <entity>" requests are matched by keywords; everything else
goes through one low-temperature LLM call whose JSON answer is validated into
a ParsedQuery. Date ranges the model omits or garbles are resolved locally.
"""
import json
import logging
from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from workforce_api.agents.chat.date_ranges import date_context, extract_date_range, is_valid_date_range
from workforce_api.services import llm
from workforce_api.services.runtime import log_event

logger = logging.getLogger("chat.parser")

INTENTS = ("summary", "comparison", "trend", "drill_down", "list", "unknown")
ENTITIES = ("users", "teams", "projects", "apps", "daily_usage", "app_usage", "classification_rules")
HISTORY_WINDOW = 6

Intent = Literal["summary", "comparison", "trend", "drill_down", "list", "unknown"]
Entity = Literal["users", "teams", "projects", "apps", "daily_usage", "app_usage", "classification_rules"]


class DateRange(BaseModel):
    start: str
    end: str


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return []


class QueryFilters(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    teams: List[str] = Field(default_factory=list)
    users: List[str] = Field(default_factory=list)
    projects: List[str] = Field(default_factory=list)
    apps: List[str] = Field(default_factory=list)
    date_range: Optional[DateRange] = None
    productivity_rating: List[str] = Field(default_factory=list)

    @field_validator("teams", "users", "projects", "apps", "productivity_rating", mode="before")
    @classmethod
    def _listify(cls, value):
        return _as_list(value)

    @field_validator("date_range", mode="before")
    @classmethod
    def _drop_bad_range(cls, value):
        if isinstance(value, DateRange):
            value = value.model_dump()
        return value if is_valid_date_range(value) else None


class ParsedQuery(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    intent: Intent = "unknown"
    entity: Optional[Entity] = None
    metrics: List[str] = Field(default_factory=list)
    filters: QueryFilters = Field(default_factory=QueryFilters)
    group_by: List[str] = Field(default_factory=list)
    order_by: Optional[str] = None
    limit: Optional[int] = None

    @field_validator("intent", mode="before")
    @classmethod
    def _known_intent(cls, value):
        value = str(value or "").strip().lower()
        return value if value in INTENTS else "unknown"

    @field_validator("entity", mode="before")
    @classmethod
    def _known_entity(cls, value):
        value = str(value or "").strip().lower()
        if value in ("applications", "application", "app"):
            value = "apps"
        return value if value in ENTITIES else None

    @field_validator("metrics", "group_by", mode="before")
    @classmethod
    def _listify(cls, value):
        return _as_list(value)

    @field_validator("filters", mode="before")
    @classmethod
    def _filters_dict(cls, value):
        return value if isinstance(value, (dict, QueryFilters)) else {}

    @field_validator("order_by", mode="before")
    @classmethod
    def _order_text(cls, value):
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        return str(value) if value else None

    @field_validator("limit", mode="before")
    @classmethod
    def _positive_limit(cls, value):
        try:
            value = int(value)
        except (TypeError, ValueError):
            return None
        return value if value > 0 else None

    @property
    def date_range(self) -> Optional[Dict[str, str]]:
        dr = self.filters.date_range
        return {"start": dr.start, "end": dr.end} if dr else None

    def to_prompt_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True), indent=2)


# ── fast path ─────────────────────────────────────────────────────────────────

# wording that turns a listing into an aggregate/time question
_ANALYTIC_HINTS = (
    "productiv", "hour", "duration", "time spent", "usage", "idle", "total",
    "average", "trend", "compar", "top ", "most", "least", " per ", " by ",
    "last ", "this ", "yesterday", "today", "week", "month", "year", "quarter",
)


def _direct_entity(lower: str) -> Optional[str]:
    if "list" not in lower and "show" not in lower:
        return None
    if any(h in lower for h in _ANALYTIC_HINTS):
        return None
    if "project" in lower and "time" not in lower:
        return "projects"
    if "team" in lower and "member" not in lower:
        return "teams"
    if "user" in lower or "employee" in lower or "member" in lower:
        return "users"
    if "classification" in lower or "rule" in lower:
        return "classification_rules"
    if "app" in lower or "application" in lower:
        return "apps"
    return None


# ── LLM path ──────────────────────────────────────────────────────────────────

def build_system_prompt(ctx: Dict[str, str], history: Optional[List[Dict[str, str]]] = None) -> str:
    history_block = "(none)"
    if history:
        history_block = "\n".join(
            f"{m.get('role', 'user')}: {m.get('content', '')}" for m in history[-HISTORY_WINDOW:]
        )

    return f"""You parse questions about a workforce analytics database into JSON.

Metrics (all durations are minutes):
- total_duration, productive_duration, unproductive_duration, neutral_duration
- project_duration, non_project_duration, idle_duration
- productivity_rate = productive_duration / total_duration

Entities:
- users (employees), teams, projects (billable or not), apps (software applications)
- daily_usage (per-user daily totals), app_usage (per-app usage), classification_rules

Date reference, use these exact dates:
- Today: {ctx['today']}
- Yesterday: {ctx['yesterday']}
- This week: {ctx['this_week_start']} to {ctx['today']}
- Last week: {ctx['last_week_start']} to {ctx['last_week_end']}
- This month: {ctx['this_month_start']} to {ctx['today']}
- Last month: {ctx['last_month_start']} to {ctx['last_month_end']}
- Last 7 days: {ctx['last_7_days']} to {ctx['today']}
- Last 30 days: {ctx['last_30_days']} to {ctx['today']}

Earlier conversation (resolve follow-up references to dates, teams or people from it):
{history_block}

Reply with JSON only, no markdown:
{{
  "intent": "summary|comparison|trend|drill_down|list",
  "entity": "users|teams|projects|apps|daily_usage|app_usage|classification_rules",
  "metrics": ["metric names"],
  "filters": {{
    "teams": ["team names mentioned"],
    "users": ["person names mentioned"],
    "projects": ["project names mentioned"],
    "apps": ["app names mentioned"],
    "dateRange": {{"start": "YYYY-MM-DD", "end": "YYYY-MM-DD"}},
    "productivityRating": ["productive|neutral|unproductive"]
  }},
  "groupBy": ["fields"],
  "orderBy": "field",
  "limit": null
}}

Intents:
- summary: totals or averages
- comparison: compare groups or periods
- trend: change over time
- drill_down: detailed breakdown
- list: enumerate entities; always set "entity", leave metrics empty and omit dateRange unless asked

Dates:
- relative phrases ("last 7 days", "this month", "last quarter") become a dateRange using the reference above
- "from 2026-01-01 to 2026-01-31" keeps the exact dates
- a single day ("on 2026-01-15") uses the same start and end
- include dateRange whenever the question mentions time"""


def parse_query(
    user_query: str,
    conversation_history: Optional[List[Dict[str, str]]] = None,
    today: Optional[date] = None,
) -> ParsedQuery:
    lower = (user_query or "").lower()

    entity = _direct_entity(lower)
    if entity:
        log_event(logger, logging.INFO, "parse_direct", entity=entity)
        return ParsedQuery(intent="list", entity=entity)

    ctx = date_context(today)
    messages = [
        {"role": "system", "content": build_system_prompt(ctx, conversation_history)},
        {"role": "user", "content": f'Parse this query: "{user_query}"'},
    ]
    try:
        raw = llm.chat(messages, model=llm.MODEL_FAST, temperature=0)
    except llm.LLMError as exc:
        log_event(logger, logging.WARNING, "parse_llm_failed", error=str(exc)[:200])
        return _unknown(user_query, today)

    payload = llm.extract_json(raw)
    if payload is None:
        log_event(logger, logging.WARNING, "parse_invalid_json", raw=(raw or "")[:200])
        return _unknown(user_query, today)

    try:
        parsed = ParsedQuery.model_validate(payload)
    except ValidationError as exc:
        log_event(logger, logging.WARNING, "parse_invalid_shape", error=str(exc)[:200])
        return _unknown(user_query, today)

    if parsed.filters.date_range is None:
        parsed.filters.date_range = DateRange(**extract_date_range(user_query, today))

    log_event(
        logger,
        logging.INFO,
        "parse_llm",
        intent=parsed.intent,
        entity=parsed.entity,
        date_range=parsed.date_range,
    )
    return parsed


def _unknown(user_query: str, today: Optional[date]) -> ParsedQuery:
    return ParsedQuery(
        intent="unknown",
        filters=QueryFilters(date_range=DateRange(**extract_date_range(user_query, today))),
    )
