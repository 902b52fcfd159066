"""
ParsedQuery → parameterized SQL.

Listing requests use fixed templates. Aggregate, trend and comparison
questions are sent to the SMART model with the schema description; its SQL is
then repaired, RBAC-filtered and switched to named bind parameters.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from workforce_api.agents.chat.parser import ParsedQuery
from workforce_api.services import llm
from workforce_api.services.rbac import RBACFilter, build_rbac_filter, rbac_coverage_error, rbac_filter_for_sql
from workforce_api.services.runtime import log_event
from workforce_api.services.security import CurrentUser
from workforce_db.db_utils import get_engine
from workforce_db.schema import teams

logger = logging.getLogger("chat.sql_generator")

RBAC_PLACEHOLDER = "{RBAC_FILTER}"


class SQLGenerationError(Exception):
    """Raised when the model does not return usable SQL"""
    pass


@dataclass
class GeneratedSQL:
    sql: str
    params: Dict[str, Any] = field(default_factory=dict)
    description: str = ""


class _ModelAnswer(BaseModel):
    sql: str
    params: Union[List[Any], Dict[str, Any]] = []
    description: str = "Query generated"

    @field_validator("sql")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("empty sql")
        return value.strip().rstrip(";").strip()

    @field_validator("params", mode="before")
    @classmethod
    def _params_container(cls, value):
        return value if isinstance(value, (list, dict)) else []

    @field_validator("description", mode="before")
    @classmethod
    def _description_text(cls, value):
        return str(value) if value else "Query generated"


# ── team name resolution ──────────────────────────────────────────────────────

def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def find_best_team_matches(input_team: str, available_teams: List[str], limit: int = 3) -> List[str]:
    """Rank team names against a user-typed fragment; best first."""
    needle = (input_team or "").lower().strip()
    if not needle:
        return []
    scored = []
    for team in available_teams:
        hay = team.lower()
        score = 0
        if needle in hay:
            score += 100
            if hay.startswith(needle):
                score += 50
            if len(needle) >= 3:
                score += 25

        team_words = hay.split()
        word_hits = 0
        for word in needle.split():
            if len(word) < 3:
                continue
            if any(word in tw or tw in word for tw in team_words):
                word_hits += 1
        score += word_hits * 20

        distance = levenshtein_distance(needle, hay)
        if distance <= 2 and len(needle) > 3:
            score += (3 - distance) * 10

        if score > 0:
            scored.append((score, team))
    scored.sort(key=lambda item: -item[0])
    return [team for _, team in scored[:limit]]


def _available_teams() -> List[str]:
    with get_engine().connect() as conn:
        return [r[0] for r in conn.execute(select(teams.c.name).order_by(teams.c.name))]


def preprocess_team_names(parsed: ParsedQuery) -> ParsedQuery:
    """Replace team names in the filters with the closest existing team names."""
    if not parsed.filters.teams:
        return parsed
    try:
        available = _available_teams()
    except SQLAlchemyError:
        logger.warning("team_lookup_failed", exc_info=True)
        return parsed

    resolved = []
    for name in parsed.filters.teams:
        if name in available:
            resolved.append(name)
            continue
        matches = find_best_team_matches(name, available)
        if matches:
            resolved.append(matches[0])
        else:
            log_event(logger, logging.INFO, "team_unmatched", team=name)
            resolved.append(name)

    updated = parsed.model_copy(deep=True)
    updated.filters.teams = resolved
    return updated


# ── templates ─────────────────────────────────────────────────────────────────

_ENTITY_TEMPLATES = {
    "projects": (
        "SELECT name, billable FROM projects WHERE {rbac} ORDER BY name",
        "List all projects with their billable status",
    ),
    "teams": (
        "SELECT name, department FROM teams WHERE {rbac} ORDER BY department, name",
        "List all teams grouped by department",
    ),
    "users": (
        "SELECT name, email, role FROM users WHERE {rbac} ORDER BY role, name",
        "List users with their roles and email addresses",
    ),
    "classification_rules": (
        "SELECT app_name, classification, confidence FROM classification_rules WHERE {rbac} ORDER BY app_name",
        "List all app classification rules",
    ),
    "apps": (
        "SELECT DISTINCT app_name, category FROM app_usage WHERE {rbac} ORDER BY app_name",
        "List applications seen in usage data",
    ),
}
_ENTITY_TABLES = {"apps": "app_usage"}


def generate_entity_sql(parsed: ParsedQuery, user: CurrentUser) -> Optional[GeneratedSQL]:
    if parsed.intent != "list" or parsed.entity not in _ENTITY_TEMPLATES:
        return None
    template, description = _ENTITY_TEMPLATES[parsed.entity]
    rbac = build_rbac_filter(user, _ENTITY_TABLES.get(parsed.entity, parsed.entity))
    return GeneratedSQL(template.format(rbac=rbac.clause), dict(rbac.params), description)


# ── LLM path ──────────────────────────────────────────────────────────────────

SCHEMA_CONTEXT = """
Tables (PostgreSQL):

teams(id uuid pk, name varchar e.g. 'Engineering Team 1', department varchar
      one of Engineering/Marketing/Sales/Finance/HR, manager_id uuid -> users.id, created_at timestamp)
users(id uuid pk, email varchar unique, name varchar, role varchar 'admin'|'manager'|'employee',
      team_id uuid -> teams.id, created_at timestamp)
daily_usage(id uuid pk, user_id uuid -> users.id, date date, total_duration int,
      productive_duration int, unproductive_duration int, neutral_duration int,
      project_duration int, non_project_duration int, idle_duration int, created_at timestamp)
      one row per user per date
app_usage(id uuid pk, user_id uuid -> users.id, date date, app_name varchar e.g. 'VS Code',
      category varchar, duration int, productivity_rating varchar 'productive'|'neutral'|'unproductive')
projects(id uuid pk, name varchar, billable boolean, created_at timestamp)
project_time(id uuid pk, user_id uuid -> users.id, project_id uuid -> projects.id, date date, duration int)
classification_rules(id uuid pk, app_name varchar, team_id uuid null = global, role varchar null = any,
      classification varchar 'productive'|'neutral'|'unproductive', confidence numeric 0..1,
      reasoning text, approved_by uuid -> users.id)

Business rules:
- every duration column is stored in MINUTES; hours = SUM(x) / 60.0
- productivity rate = SUM(productive_duration) * 100.0 / NULLIF(SUM(total_duration), 0)
- wrap nullable aggregates in COALESCE, round decimals with ROUND(value::numeric, 2)
- team analytics: daily_usage JOIN users ON users.id = daily_usage.user_id JOIN teams ON teams.id = users.team_id
- project analytics: project_time JOIN projects ON projects.id = project_time.project_id
- app analytics: app_usage grouped by app_name
""".strip()

SYSTEM_PROMPT = f"""You write a single read-only PostgreSQL SELECT statement for a workforce analytics database.

{SCHEMA_CONTEXT}

Rules:
1. Start the WHERE clause with the literal placeholder {RBAC_PLACEHOLDER}; access control is substituted for it later.
2. Date filters use positional parameters: "date BETWEEN $1 AND $2" with $1 = start date, $2 = end date.
   Further literal values (team names, user names, app names) use $3, $4, ... in order.
3. By intent:
   - summary: aggregates (SUM, AVG, COUNT) over the date range
   - comparison: GROUP BY the compared dimension, ORDER BY the metric DESC
   - trend: GROUP BY date ORDER BY date DESC
   - drill_down: detailed breakdown with the requested filters
   - list: plain SELECT from one table
4. Match team, user, project and app names with ILIKE when they may be partial.
5. LIMIT to 100 rows unless the question asks for fewer; never more than 1000.
6. No semicolons, no comments, no data modification.
7. Read at most one of daily_usage, app_usage, project_time, and only once; no UNION, INTERSECT or EXCEPT.

Reply with JSON only: {{"sql": "...", "params": [...], "description": "one sentence"}}"""


def _rbac_qualified(clause: str) -> str:
    return f"({clause})" if " OR " in clause.upper() else clause


def _split_where_body(sql: str, where_end: int):
    """End index of the first WHERE body when its parentheses balance, else None."""
    terminator = re.compile(r"(?i)\b(GROUP\s+BY|ORDER\s+BY|HAVING|LIMIT|UNION|WINDOW)\b")
    depth = 0
    for i in range(where_end, len(sql)):
        ch = sql[i]
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                return i
        elif depth == 0 and terminator.match(sql, i):
            return i
    return len(sql) if depth == 0 else None


def splice_rbac(sql: str, rbac: RBACFilter) -> str:
    """Place the RBAC predicate into the statement."""
    clause = _rbac_qualified(rbac.clause)
    if RBAC_PLACEHOLDER in sql:
        return sql.replace(RBAC_PLACEHOLDER, clause)

    where = re.search(r"(?i)\bWHERE\s+", sql)
    if where:
        body_end = _split_where_body(sql, where.end())
        if body_end is None:
            return sql[:where.start()] + f"WHERE {clause} AND " + sql[where.end():]
        body = sql[where.end():body_end].rstrip()
        rest = sql[body_end:]
        return sql[:where.start()] + f"WHERE {clause} AND ({body})" + (" " + rest.lstrip() if rest.strip() else "")

    for point in (r"\bGROUP\s+BY\b", r"\bORDER\s+BY\b", r"\bLIMIT\b"):
        m = re.search(rf"(?i){point}", sql)
        if m:
            return sql[:m.start()] + f"WHERE {clause} " + sql[m.start():]
    return sql.rstrip() + f" WHERE {clause}"


def repair_sql(sql: str) -> str:
    """Fix fragments the model commonly gets wrong."""
    sql = re.sub(r"(?i)\bAND\s+AND\b", "AND", sql)
    sql = re.sub(r"(?i)\bWHERE\s+AND\b", "WHERE", sql)
    # integer / integer truncates on PostgreSQL
    sql = re.sub(
        r"(?i)SUM\((\w+(?:\.\w+)?)\)\s*/\s*NULLIF\(\s*SUM\((\w+(?:\.\w+)?)\)\s*,\s*0\s*\)",
        r"SUM(\1) * 1.0 / NULLIF(SUM(\2), 0)",
        sql,
    )
    sql = re.sub(r"(?i)::float\s*/", "::numeric /", sql)
    sql = re.sub(r"(?i)ROUND\(\s*\(([^()]+)\)\s*,\s*(\d+)\)", r"ROUND((\1), \2)", sql)
    # ROUND((expr, 2) with the inner paren never closed
    sql = re.sub(r"(?i)ROUND\(\s*\(([^()]+?)\s*,\s*(\d+)\)", r"ROUND((\1), \2)", sql)
    return sql


def to_named_params(sql: str, params: Union[List[Any], Dict[str, Any], None]):
    """$1/$1::date placeholders → :p1/CAST(:p1 AS date); list params → {"p1": ...}."""
    sql = re.sub(
        r"\$(\d+)::(\w+(?:\s*\(\s*\d+(?:\s*,\s*\d+)?\s*\))?)",
        lambda m: f"CAST(:p{m.group(1)} AS {m.group(2)})",
        sql,
    )
    sql = re.sub(r"\$(\d+)", r":p\1", sql)
    if isinstance(params, dict):
        named = {str(k).lstrip(":$"): v for k, v in params.items()}
        # {"1": x} style keys from the model
        return sql, {(f"p{k}" if k.isdigit() else k): v for k, v in named.items()}
    return sql, {f"p{i}": v for i, v in enumerate(params or [], 1)}


def _ask_model(parsed: ParsedQuery, user: CurrentUser) -> _ModelAnswer:
    prompt = (
        "Generate SQL for this parsed question:\n"
        f"{parsed.to_prompt_json()}\n\n"
        f"Requesting user role: {user.role}\n"
        f"Remember: WHERE {RBAC_PLACEHOLDER} AND ..., dates as $1/$2, durations in minutes."
    )
    try:
        raw = llm.chat(
            [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
            model=llm.MODEL_SMART,
            temperature=0,
        )
    except llm.LLMError as exc:
        raise SQLGenerationError(f"Failed to generate SQL query: {exc}") from exc

    payload = llm.extract_json(raw)
    if payload is None:
        log_event(logger, logging.WARNING, "sql_answer_not_json", raw=(raw or "")[:300])
        raise SQLGenerationError("Failed to generate SQL query")
    try:
        return _ModelAnswer.model_validate(payload)
    except ValidationError as exc:
        raise SQLGenerationError("Failed to generate SQL query") from exc


def generate_sql(parsed: ParsedQuery, user: CurrentUser) -> GeneratedSQL:
    direct = generate_entity_sql(parsed, user)
    if direct:
        log_event(logger, logging.INFO, "sql_template", entity=parsed.entity)
        return direct

    processed = preprocess_team_names(parsed)
    answer = _ask_model(processed, user)

    uncovered = rbac_coverage_error(user, answer.sql.replace(RBAC_PLACEHOLDER, "1=1"))
    if uncovered:
        log_event(logger, logging.WARNING, "sql_rbac_uncovered", reason=uncovered)
        raise SQLGenerationError(uncovered)
    rbac = rbac_filter_for_sql(user, answer.sql.replace(RBAC_PLACEHOLDER, "1=1"))
    sql = repair_sql(splice_rbac(answer.sql, rbac))

    positional = answer.params if isinstance(answer.params, list) else None
    if positional is not None and not positional and "$1" in sql and "$2" in sql and processed.date_range:
        positional = [processed.date_range["start"], processed.date_range["end"]]
    sql, params = to_named_params(sql, positional if positional is not None else answer.params)

    params.update(rbac.params)
    log_event(logger, logging.INFO, "sql_generated", intent=parsed.intent, params=sorted(params))
    return GeneratedSQL(sql, params, answer.description)


def generate_fallback_sql(parsed: ParsedQuery, user: CurrentUser) -> GeneratedSQL:
    """Daily productivity summary used when generation fails."""
    rbac = build_rbac_filter(user, "daily_usage")
    params: Dict[str, Any] = dict(rbac.params)
    date_filter = ""
    if parsed.date_range:
        date_filter = " AND date BETWEEN :start_date AND :end_date"
        params["start_date"] = parsed.date_range["start"]
        params["end_date"] = parsed.date_range["end"]

    sql = (
        "SELECT date, "
        "ROUND(SUM(total_duration) / 60.0, 2) AS total_hours, "
        "ROUND(SUM(productive_duration) / 60.0, 2) AS productive_hours, "
        "ROUND(AVG(productive_duration * 100.0 / NULLIF(total_duration, 0)), 2) AS avg_productivity_rate "
        f"FROM daily_usage WHERE {rbac.clause}{date_filter} "
        "GROUP BY date ORDER BY date DESC LIMIT 30"
    )
    return GeneratedSQL(sql, params, "Daily productivity summary")
