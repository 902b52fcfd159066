from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from workforce_api.routes.deps import require_role
from workforce_api.services.audit_logger import get_audit_logs, get_audit_summary
from workforce_api.services.security import CurrentUser

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("")
def audit_logs(
    agent_type: Optional[str] = Query(None, alias="agentType"),
    user_id: Optional[str] = Query(None, alias="userId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(require_role("admin")),
):
    items = get_audit_logs(
        agent_type=agent_type,
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    return {"total": len(items), "items": items}


@router.get("/summary")
def audit_summary(
    days: int = Query(7, ge=1, le=90),
    user: CurrentUser = Depends(require_role("admin")),
):
    return get_audit_summary(days=days)
