"""Persistence of agent invocations for traceability."""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, insert, select
from sqlalchemy.exc import SQLAlchemyError

from workforce_api.services.runtime import log_event
from workforce_db.db_utils import get_engine, to_jsonable
from workforce_db.schema import agent_audit_log

logger = logging.getLogger("audit_logger")


def log_agent_action(
    agent_type: str,
    user_id: Optional[str],
    query_text: str,
    response: Optional[str] = None,
    sql_generated: Optional[str] = None,
    data_accessed: Optional[List[str]] = None,
    execution_time_ms: Optional[int] = None,
    success: bool = True,
    error_message: Optional[str] = None,
) -> Optional[str]:
    """Insert one audit row; returns its id, or None when the insert failed."""
    values = {
        "agent_type": agent_type,
        "user_id": user_id,
        "query": query_text,
        "response": response,
        "sql_generated": sql_generated,
        "data_accessed": list(data_accessed or []),
        "execution_time_ms": execution_time_ms,
        "success": bool(success),
        "error_message": error_message,
        "timestamp": datetime.now(),
    }
    try:
        with get_engine().begin() as conn:
            result = conn.execute(insert(agent_audit_log).values(**values))
            audit_id = result.inserted_primary_key[0]
    except SQLAlchemyError:
        # the agent answer still goes back to the caller
        logger.warning("audit_log_insert_failed agent_type=%s", agent_type, exc_info=True)
        return None
    log_event(
        logger,
        logging.DEBUG,
        "audit_logged",
        agent_type=agent_type,
        success=bool(success),
        execution_time_ms=execution_time_ms,
    )
    return audit_id


def _row_dict(row) -> Dict[str, Any]:
    return {k: to_jsonable(v) for k, v in row._mapping.items()}


def get_audit_logs(
    agent_type: Optional[str] = None,
    user_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    stmt = select(agent_audit_log)
    if agent_type:
        stmt = stmt.where(agent_audit_log.c.agent_type == agent_type)
    if user_id:
        stmt = stmt.where(agent_audit_log.c.user_id == user_id)
    if start_date:
        stmt = stmt.where(agent_audit_log.c.timestamp >= start_date)
    if end_date:
        stmt = stmt.where(agent_audit_log.c.timestamp <= end_date)
    stmt = (
        stmt.order_by(agent_audit_log.c.timestamp.desc())
        .limit(max(1, int(limit or 100)))
        .offset(max(0, int(offset or 0)))
    )
    with get_engine().connect() as conn:
        return [_row_dict(r) for r in conn.execute(stmt)]


def get_audit_summary(days: int = 7, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Per-agent totals and per-day request counts for the trailing window."""
    cutoff = (now or datetime.now()) - timedelta(days=days)
    log = agent_audit_log.c

    stats_stmt = (
        select(
            log.agent_type,
            func.count().label("total_requests"),
            func.sum(case((log.success.is_(True), 1), else_=0)).label("successful"),
            func.sum(case((log.success.is_(False), 1), else_=0)).label("failed"),
            func.avg(log.execution_time_ms).label("avg_execution_time_ms"),
            func.max(log.execution_time_ms).label("max_execution_time_ms"),
        )
        .where(log.timestamp > cutoff)
        .group_by(log.agent_type)
        .order_by(log.agent_type)
    )
    day = func.date(log.timestamp).label("date")
    daily_stmt = (
        select(day, log.agent_type, func.count().label("requests"))
        .where(log.timestamp > cutoff)
        .group_by(day, log.agent_type)
        .order_by(day.desc(), log.agent_type)
    )
    with get_engine().connect() as conn:
        summary = [_row_dict(r) for r in conn.execute(stats_stmt)]
        daily = [_row_dict(r) for r in conn.execute(daily_stmt)]
    return {"summary": summary, "dailyUsage": daily}
