"""
Single entry point in front of the chat and classification agents.

`orchestrate` dispatches an explicit (agent, action) pair; `detect_and_route`
picks the agent from a free-text message for the unified chat box.
"""
import logging
import re
import time
from dataclasses import asdict, is_dataclass
from typing import Any, Dict, Optional

from workforce_api.agents.chat.agent import handle_chat_query
from workforce_api.agents.classification.service import (
    ClassificationSuggestion,
    approve_classification,
    classify_new_app,
    get_classification_rules,
    get_pending_classifications,
    reject_classification,
)
from workforce_api.services.runtime import agent_scope, log_event
from workforce_api.services.security import CurrentUser

logger = logging.getLogger("orchestrator")

_CLASSIFY_WORDS = ("classify", "categorize", "mark as productive", "mark as unproductive")
_QUOTED_APP_RE = re.compile(r"[\"']([^\"']+)[\"']")
_CLASSIFY_APP_RE = re.compile(r"classify\s+(\w+)", re.IGNORECASE)


def _chat(action: str, payload: Dict[str, Any], user: CurrentUser) -> Any:
    if action != "query":
        raise ValueError(f"Unknown chat action: {action}")
    options = payload.get("options") or {}
    return handle_chat_query(
        payload.get("query", ""),
        user,
        conversation_history=options.get("conversationHistory") or payload.get("conversationHistory"),
    )


def _classification(action: str, payload: Dict[str, Any], user: CurrentUser) -> Any:
    if action == "classify":
        return classify_new_app(payload.get("appName", ""), user)
    if action == "getPending":
        return get_pending_classifications(user, limit=payload.get("limit", 50), offset=payload.get("offset", 0))
    if action == "approve":
        options = payload.get("options") or {}
        approve_classification(
            payload.get("id", ""),
            user,
            override_classification=options.get("overrideClassification"),
            notes=options.get("notes"),
        )
        return {"message": "Classification approved"}
    if action == "reject":
        reject_classification(payload.get("id", ""), user, payload.get("reason", ""))
        return {"message": "Classification rejected"}
    if action == "getRules":
        return get_classification_rules(
            team_id=payload.get("teamId"),
            classification=payload.get("classification"),
            limit=payload.get("limit", 100),
            offset=payload.get("offset", 0),
        )
    raise ValueError(f"Unknown classification action: {action}")


_HANDLERS = {"chat": _chat, "classification": _classification}


def _serializable(data: Any) -> Any:
    if isinstance(data, ClassificationSuggestion):
        return data.to_dict()
    if is_dataclass(data):
        return asdict(data)
    return data


def orchestrate(
    agent_type: str,
    action: str,
    payload: Optional[Dict[str, Any]],
    user: CurrentUser,
) -> Dict[str, Any]:
    """Run one agent action; failures come back as ``success: False`` instead of raising."""
    started = time.perf_counter()
    try:
        handler = _HANDLERS.get(agent_type)
        if handler is None:
            raise ValueError(f"Unknown agent type: {agent_type}")
        with agent_scope(agent_type):
            data = _serializable(handler(action, payload or {}, user))
    except Exception as exc:
        elapsed = int((time.perf_counter() - started) * 1000)
        log_event(logger, logging.WARNING, "orchestrate_failed", agent=agent_type, action=action, error=str(exc)[:200])
        return {
            "success": False,
            "error": str(exc) or exc.__class__.__name__,
            "agentUsed": agent_type,
            "executionTimeMs": elapsed,
        }

    elapsed = int((time.perf_counter() - started) * 1000)
    log_event(logger, logging.INFO, "orchestrate_ok", agent=agent_type, action=action, elapsed_ms=elapsed)
    return {"success": True, "data": data, "agentUsed": agent_type, "executionTimeMs": elapsed}


def extract_app_name(message: str) -> Optional[str]:
    match = _QUOTED_APP_RE.search(message) or _CLASSIFY_APP_RE.search(message)
    return match.group(1).strip() if match else None


def detect_and_route(message: str, user: CurrentUser) -> Dict[str, Any]:
    lower = (message or "").lower()
    if any(word in lower for word in _CLASSIFY_WORDS):
        app_name = extract_app_name(message)
        if app_name:
            return orchestrate("classification", "classify", {"appName": app_name}, user)
    return orchestrate("chat", "query", {"query": message}, user)
