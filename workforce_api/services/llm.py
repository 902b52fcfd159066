"""
Chat-completion access for the agents.

Two model tiers are exposed: FAST for parsing, routing and short summaries,
SMART for SQL generation and app classification. Any OpenAI-compatible
endpoint works; the default base URL points at Groq.
"""
import json
import logging
import os
import re
import threading
import time
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Dict, List, Optional, Tuple

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from workforce_api.services.runtime import run_with_timeout, log_event

logger = logging.getLogger("llm")

MODEL_FAST = os.getenv("LLM_MODEL_FAST", "llama-3.1-8b-instant")
MODEL_SMART = os.getenv("LLM_MODEL_SMART", "llama-3.3-70b-versatile")
DEFAULT_TEMPERATURE = 0.1
DEFAULT_MAX_TOKENS = 2048
LLM_TIMEOUT_S = max(2.0, float(os.getenv("LLM_TIMEOUT_S", "30")))

_MODELS: Dict[Tuple[str, float, int], Any] = {}
_MODELS_LOCK = threading.Lock()


class LLMError(Exception):
    """Raised when the completion endpoint cannot produce an answer"""
    pass


class LLMTimeoutError(LLMError):
    pass


def _build_model(model: str, temperature: float, max_tokens: int) -> ChatOpenAI:
    api_key = os.getenv("GROQ_API_KEY") or os.getenv("LLM_API_KEY", "")
    if not api_key:
        raise LLMError("GROQ_API_KEY is not configured")
    return ChatOpenAI(
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        openai_api_key=api_key,
        openai_api_base=os.getenv("LLM_API_BASE", "https://api.groq.com/openai/v1"),
        max_retries=0,
    )


def get_model(model: str, temperature: float, max_tokens: int):
    key = (model, float(temperature), int(max_tokens))
    with _MODELS_LOCK:
        llm = _MODELS.get(key)
        if llm is None:
            llm = _build_model(model, temperature, max_tokens)
            _MODELS[key] = llm
        return llm


def reset_models() -> None:
    with _MODELS_LOCK:
        _MODELS.clear()


def _to_messages(messages: List[Dict[str, str]]) -> List[BaseMessage]:
    out: List[BaseMessage] = []
    for m in messages or []:
        role = (m.get("role") or "user").lower()
        content = str(m.get("content", ""))
        if role == "system":
            out.append(SystemMessage(content=content))
        elif role == "assistant":
            out.append(AIMessage(content=content))
        else:
            out.append(HumanMessage(content=content))
    return out


def chat(
    messages: List[Dict[str, str]],
    model: str = MODEL_FAST,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    timeout_s: Optional[float] = None,
) -> str:
    """Send role/content messages to the model and return the reply text."""
    llm = get_model(model, temperature, max_tokens)
    lc_messages = _to_messages(messages)
    timeout_s = LLM_TIMEOUT_S if timeout_s is None else timeout_s
    started = time.perf_counter()

    def _invoke():
        resp = llm.invoke(lc_messages)
        return resp.content if hasattr(resp, "content") else str(resp)

    try:
        out = run_with_timeout(_invoke, timeout_s=max(0.1, float(timeout_s)))
    except FuturesTimeoutError as exc:
        log_event(
            logger,
            logging.WARNING,
            "llm_call_timeout",
            model=model,
            timeout_s=float(timeout_s),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        raise LLMTimeoutError(f"llm_timeout_{timeout_s}s") from exc
    except LLMError:
        raise
    except Exception as exc:
        log_event(logger, logging.ERROR, "llm_call_failed", model=model, error=str(exc)[:300])
        raise LLMError(str(exc)) from exc

    log_event(
        logger,
        logging.INFO,
        "llm_call_ok",
        model=model,
        temperature=temperature,
        elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        prompt_chars=sum(len(m.get("content", "")) for m in messages or []),
    )
    return out or ""


def strip_fence(text: str) -> str:
    raw = (text or "").strip()
    m = re.search(r"```(?:json|sql)?\s*(.*?)```", raw, flags=re.IGNORECASE | re.DOTALL)
    return m.group(1).strip() if m else raw


def extract_json(text: str) -> Optional[Dict[str, Any]]:
    """Pull the first JSON object out of a model reply, tolerating fences and chatter."""
    raw = strip_fence(text)
    try:
        obj = json.loads(raw)
        return obj if isinstance(obj, dict) else None
    except ValueError:
        pass
    i = raw.find("{")
    j = raw.rfind("}")
    if i != -1 and j != -1 and j > i:
        try:
            obj = json.loads(raw[i:j + 1])
            return obj if isinstance(obj, dict) else None
        except ValueError:
            return None
    return None
