"""
Runtime utilities:
- one bounded worker pool for blocking LLM and database calls, with deadlines
- request/user/agent context carried into every structured log line
"""
from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from contextlib import contextmanager
from contextvars import ContextVar, copy_context
from typing import Any, Callable, Dict, Iterator, Optional

_LOGGER = logging.getLogger("runtime")

_REQUEST_ID: ContextVar[str] = ContextVar("request_id", default="-")
_USER_ID: ContextVar[str] = ContextVar("user_id", default="-")
_AGENT: ContextVar[str] = ContextVar("agent", default="-")

_POOL: Optional[ThreadPoolExecutor] = None
_POOL_LOCK = threading.Lock()
_IN_FLIGHT_LOCK = threading.Lock()
_IN_FLIGHT: set[Future] = set()
_AGENT_WORKERS = max(2, int(os.getenv("AGENT_MAX_WORKERS", "8")))


def set_request_id(request_id: Optional[str]) -> str:
    rid = (request_id or "").strip() or str(uuid.uuid4())
    _REQUEST_ID.set(rid)
    return rid


def set_user_id(user_id: Optional[str]) -> str:
    uid = (user_id or "").strip() or "-"
    _USER_ID.set(uid)
    return uid


@contextmanager
def agent_scope(agent_type: str) -> Iterator[str]:
    """Tag log lines emitted inside the block with the agent serving the request."""
    token = _AGENT.set(agent_type or "-")
    try:
        yield agent_type
    finally:
        _AGENT.reset(token)


def clear_context() -> None:
    for var in (_REQUEST_ID, _USER_ID, _AGENT):
        var.set("-")


def context_fields() -> Dict[str, str]:
    return {
        "request_id": _REQUEST_ID.get() or "-",
        "user_id": _USER_ID.get() or "-",
        "agent": _AGENT.get() or "-",
    }


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    if not logger.isEnabledFor(level):
        return
    payload: Dict[str, Any] = {"event": event, **context_fields()}
    payload.update(fields)
    logger.log(level, json.dumps(payload, default=str, ensure_ascii=True))


def _agent_pool() -> ThreadPoolExecutor:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            _POOL = ThreadPoolExecutor(max_workers=_AGENT_WORKERS, thread_name_prefix="agent-worker")
        return _POOL


def _untrack(fut: Future) -> None:
    with _IN_FLIGHT_LOCK:
        _IN_FLIGHT.discard(fut)


def run_with_timeout(fn: Callable[[], Any], timeout_s: float) -> Any:
    """Run fn on the agent pool; raises concurrent.futures.TimeoutError past timeout_s.

    The worker runs in a copy of the caller's context so its log lines keep
    the same request, user and agent ids.
    """
    future = _agent_pool().submit(copy_context().run, fn)
    with _IN_FLIGHT_LOCK:
        _IN_FLIGHT.add(future)
    future.add_done_callback(_untrack)
    try:
        return future.result(timeout=max(0.05, float(timeout_s)))
    except FuturesTimeoutError:
        # a running call cannot be interrupted; it finishes and is discarded
        future.cancel()
        raise


def shutdown_shared_executor(wait: bool = False) -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            return
        with _IN_FLIGHT_LOCK:
            in_flight = list(_IN_FLIGHT)
            _IN_FLIGHT.clear()
        for fut in in_flight:
            fut.cancel()
        _POOL.shutdown(wait=wait, cancel_futures=True)
        _POOL = None
    log_event(_LOGGER, logging.INFO, "agent_pool_shutdown", cancelled=len(in_flight))
