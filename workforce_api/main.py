"""
FastAPI backend for the workforce intelligence agents.
Run with: uvicorn workforce_api.main:app --reload --port 3000
"""
import os
import uuid
import logging
from datetime import datetime
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent / ".env")

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from workforce_api.routes.agents import router as agents_router
from workforce_api.routes.audit import router as audit_router
from workforce_api.routes.auth import router as auth_router
from workforce_api.routes.chat import router as chat_router
from workforce_api.routes.classifications import router as classifications_router
from workforce_api.services.runtime import set_request_id, clear_context, log_event, shutdown_shared_executor
from workforce_db.db_utils import dispose_engine, get_engine
from workforce_db.schema import create_all

app = FastAPI(title="Workforce Intelligence Platform - AI Agent API", version="1.0.0")
logger = logging.getLogger("workforce_api")

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.on_event("startup")
def create_tables():
    """Create missing tables on boot when DB_CREATE_TABLES is set (local dev, demos)."""
    if os.getenv("DB_CREATE_TABLES", "false").lower() in {"1", "true", "yes", "on"}:
        create_all(get_engine())


@app.on_event("shutdown")
def shutdown_workers():
    shutdown_shared_executor(wait=False)
    dispose_engine()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id") or str(uuid.uuid4()))
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed request_id=%s path=%s", request_id, request.url.path)
        raise
    finally:
        clear_context()
    response.headers["x-request-id"] = request_id
    return response


def _cors_origins():
    raw = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")
    return [o.strip() for o in raw.split(",") if o.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── error bodies: {"error": ..., "details"?: ...} ────────────────────────────

@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict):
        body = exc.detail
    elif exc.status_code == 404 and exc.detail == "Not Found":
        body = {"error": "Not found"}
    else:
        body = {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    log_event(logger, logging.ERROR, "unhandled_error", path=request.url.path, error=str(exc)[:300])
    body = {"error": "Internal server error"}
    if os.getenv("APP_ENV", "production").lower() == "development":
        body["details"] = str(exc)
    return JSONResponse(status_code=500, content=body)


app.include_router(auth_router)
app.include_router(chat_router)
app.include_router(agents_router)
app.include_router(classifications_router)
app.include_router(audit_router)


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": datetime.now().isoformat()}


@app.get("/")
def index():
    return {
        "name": app.title,
        "version": app.version,
        "endpoints": {
            "auth": {
                "POST /api/auth/login": "Authenticate and get JWT token",
                "GET /api/auth/me": "Get current user info",
                "GET /api/auth/users": "List sample users",
            },
            "chat": {
                "POST /api/chat": "Send a natural language query",
                "GET /api/chat/examples": "Get example queries",
            },
            "agents": {
                "POST /api/agents/route": "Route a message to the chat or classification agent",
            },
            "classifications": {
                "POST /api/classifications/classify": "Classify a new application",
                "GET /api/classifications/pending": "Get pending classifications",
                "POST /api/classifications/{id}/approve": "Approve a classification",
                "POST /api/classifications/{id}/reject": "Reject a classification",
                "GET /api/classifications/rules": "Get classification rules",
                "GET /api/classifications/unclassified": "Get unclassified apps",
                "GET /api/classifications/low-confidence": "Get low-confidence rules",
                "GET /api/classifications/overrides": "Get frequently overridden apps",
                "POST /api/classifications/batch": "Batch classify apps",
                "GET /api/classifications/stats": "Get classification statistics",
            },
            "audit": {
                "GET /api/audit": "Get audit logs (admin only)",
                "GET /api/audit/summary": "Get audit summary (admin only)",
            },
        },
        "authentication": "Use Bearer token in Authorization header",
    }
