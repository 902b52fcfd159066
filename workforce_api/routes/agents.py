"""Unified entry point: the message decides which agent answers."""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from workforce_api.agents.orchestrator import detect_and_route
from workforce_api.routes.chat import MAX_QUERY_CHARS
from workforce_api.routes.deps import get_current_user
from workforce_api.services.security import CurrentUser

router = APIRouter(prefix="/api/agents", tags=["agents"])


class RouteRequest(BaseModel):
    message: str = ""


@router.post("/route")
def route_message(req: RouteRequest, user: CurrentUser = Depends(get_current_user)):
    message = req.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required")
    if len(message) > MAX_QUERY_CHARS:
        raise HTTPException(status_code=400, detail=f"Message must be less than {MAX_QUERY_CHARS} characters")
    return detect_and_route(message, user)
