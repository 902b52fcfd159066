"""
Read-only guard and executor for generated analytics SQL.
"""
import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from workforce_api.services.rbac import table_references
from workforce_api.services.runtime import log_event
from workforce_db.db_utils import (
    TIMEOUT_ERROR,
    QueryExecutionError,
    QueryTimeoutError,
    execute_query_safe,
)

logger = logging.getLogger("query_executor")

CHAT_QUERY_TIMEOUT_S = max(1.0, float(os.getenv("CHAT_QUERY_TIMEOUT_S", "30")))
CHAT_MAX_ROWS = max(10, int(os.getenv("CHAT_MAX_ROWS", "1000")))

ALLOWED_TABLES = frozenset({
    "users",
    "teams",
    "daily_usage",
    "app_usage",
    "projects",
    "project_time",
    "classification_rules",
})

FORBIDDEN_KEYWORDS = (
    "drop", "delete", "truncate", "insert", "update",
    "alter", "create", "grant", "revoke",
)
DANGEROUS_PATTERNS = (
    (re.compile(r";\s*\w"), "multiple statements"),
    (re.compile(r"--"), "line comment"),
    (re.compile(r"/\*"), "block comment"),
)


class QueryValidationError(ValueError):
    """Raised when a statement fails the read-only guard"""
    pass


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    tables_accessed: List[str] = field(default_factory=list)


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]]
    row_count: int
    tables_accessed: List[str]
    execution_time_ms: int


def _cte_names(sql: str) -> set:
    if not re.match(r"(?is)^\s*WITH\b", sql or ""):
        return set()
    names = re.findall(r"(?i)(?:\bWITH\s+(?:RECURSIVE\s+)?|,\s*)([a-zA-Z_]\w*)\s+AS\s*\(", sql)
    return {n.lower() for n in names}


def extract_tables(sql: str) -> List[str]:
    """Tables read by the statement, in order of first appearance, CTE names excluded."""
    ctes = _cte_names(sql)
    tables: List[str] = []
    for ref in table_references(sql):
        name = ref["table"]
        if name in ctes or name in tables:
            continue
        tables.append(name)
    return tables


def validate_query(sql: str) -> ValidationResult:
    text = (sql or "").strip()
    if not text:
        return ValidationResult(False, "Empty query")

    low = text.lower()
    for kw in FORBIDDEN_KEYWORDS:
        if re.search(rf"\b{kw}\b", low):
            return ValidationResult(False, f"Query contains forbidden keyword: {kw.upper()}")
    for pattern, label in DANGEROUS_PATTERNS:
        if pattern.search(text):
            return ValidationResult(False, f"Query contains forbidden pattern: {label}")

    if not (low.startswith("select") or low.startswith("with")):
        return ValidationResult(False, "Only SELECT queries are allowed")

    tables = extract_tables(text)
    for table in tables:
        if table not in ALLOWED_TABLES:
            return ValidationResult(False, f"Access to table '{table}' is not allowed", tables)
    return ValidationResult(True, None, tables)


def execute_query(
    sql: str,
    params: Optional[Dict[str, Any]] = None,
    timeout_s: Optional[float] = None,
    max_rows: Optional[int] = None,
) -> QueryResult:
    """
    Validate then run `sql` with bind `params`.

    Raises QueryValidationError, QueryTimeoutError or QueryExecutionError.
    """
    validation = validate_query(sql)
    if not validation.valid:
        log_event(logger, logging.WARNING, "query_rejected", error=validation.error)
        raise QueryValidationError(f"Query validation failed: {validation.error}")

    timeout_s = CHAT_QUERY_TIMEOUT_S if timeout_s is None else timeout_s
    started = time.perf_counter()
    rows, err = execute_query_safe(
        sql,
        params=params,
        timeout_seconds=timeout_s,
        max_rows=max_rows or CHAT_MAX_ROWS,
    )
    elapsed_ms = int((time.perf_counter() - started) * 1000)

    if err == TIMEOUT_ERROR:
        raise QueryTimeoutError(TIMEOUT_ERROR)
    if err:
        log_event(logger, logging.ERROR, "query_failed", error=err[:300], elapsed_ms=elapsed_ms)
        raise QueryExecutionError(f"Query execution failed: {err}")

    log_event(
        logger,
        logging.INFO,
        "query_ok",
        rows=len(rows or []),
        tables=validation.tables_accessed,
        elapsed_ms=elapsed_ms,
    )
    return QueryResult(
        rows=rows or [],
        row_count=len(rows or []),
        tables_accessed=validation.tables_accessed,
        execution_time_ms=elapsed_ms,
    )
