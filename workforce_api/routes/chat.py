"""Chat routes: natural-language questions against the analytics tables."""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from workforce_api.agents.chat.agent import handle_chat_query
from workforce_api.routes.deps import get_current_user
from workforce_api.services.runtime import agent_scope, log_event
from workforce_api.services.security import CurrentUser

router = APIRouter(prefix="/api/chat", tags=["chat"])
logger = logging.getLogger("chat_route")

MAX_QUERY_CHARS = 1000


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessage(BaseModel):
    role: str = "user"
    content: str = ""


class ChatContext(_CamelModel):
    conversation_history: List[ChatMessage] = Field(default_factory=list)


class ChatRequest(_CamelModel):
    query: Optional[str] = None
    context: Optional[ChatContext] = None


class ChatExplanation(_CamelModel):
    sql: str
    row_count: int
    date_range: Optional[str] = None
    tables_accessed: List[str] = Field(default_factory=list)


class ChatResponse(_CamelModel):
    answer: str
    explanation: ChatExplanation
    confidence: float
    is_general_query: bool = False


EXAMPLE_QUERIES: List[Dict[str, Any]] = [
    {
        "category": "Summary",
        "queries": [
            "What was the average productivity rate last week?",
            "Show me total hours worked this month",
            "How much idle time was recorded yesterday?",
        ],
    },
    {
        "category": "Comparison",
        "queries": [
            "Compare productive vs unproductive time for last week",
            "Which team had the highest productivity?",
            "Compare billable vs non-billable project time",
        ],
    },
    {
        "category": "Trends",
        "queries": [
            "Show productivity trends for the last 30 days",
            "How has idle time changed over the past month?",
            "What is the trend in project time allocation?",
        ],
    },
    {
        "category": "Drill-down",
        "queries": [
            "Which applications were used most yesterday?",
            "Top 10 users by productive hours this week",
            "Break down time by project for last month",
        ],
    },
]


@router.post("", response_model=ChatResponse, response_model_by_alias=True)
def chat(req: ChatRequest, user: CurrentUser = Depends(get_current_user)):
    if not req.query or not req.query.strip():
        raise HTTPException(status_code=400, detail="Query is required and must be a string")
    if len(req.query) > MAX_QUERY_CHARS:
        raise HTTPException(status_code=400, detail=f"Query must be less than {MAX_QUERY_CHARS} characters")

    history = [m.model_dump() for m in req.context.conversation_history] if req.context else []
    log_event(logger, logging.INFO, "chat_request", chars=len(req.query), history=len(history))
    with agent_scope("chat"):
        return handle_chat_query(req.query, user, conversation_history=history)


@router.get("/examples")
def examples(user: CurrentUser = Depends(get_current_user)):
    return {"examples": EXAMPLE_QUERIES}
