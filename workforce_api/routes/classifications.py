"""Classification routes: suggest, review and inspect app productivity labels."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError

from workforce_api.agents.classification.analyzer import get_low_confidence_apps, get_unclassified_apps
from workforce_api.agents.classification.feedback import get_feedback_stats, get_frequently_overridden_apps
from workforce_api.agents.classification.service import (
    ClassificationAccessError,
    ClassificationAlreadyReviewedError,
    ClassificationNotFoundError,
    approve_classification,
    classify_new_app,
    classify_unclassified_apps,
    get_classification_rules,
    get_pending_classifications,
    reject_classification,
)
from workforce_api.routes.deps import get_current_user, require_role
from workforce_api.services import llm
from workforce_api.services.runtime import agent_scope, log_event
from workforce_api.services.security import CurrentUser
from workforce_db.schema import PRODUCTIVITY_LABELS

router = APIRouter(prefix="/api/classifications", tags=["classifications"])
logger = logging.getLogger("classifications_route")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ClassifyRequest(_CamelModel):
    app_name: Optional[str] = None


class ApproveRequest(_CamelModel):
    override_classification: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("override_classification", mode="before")
    @classmethod
    def _known_label(cls, value):
        # unknown labels approve the suggestion unchanged
        return value if value in PRODUCTIVITY_LABELS else None

    @field_validator("notes", mode="before")
    @classmethod
    def _first_note(cls, value):
        if isinstance(value, list):
            return str(value[0]) if value else None
        return value


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class BatchRequest(BaseModel):
    limit: int = 10


def _review_error(exc: Exception, action: str) -> HTTPException:
    if isinstance(exc, ClassificationNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ClassificationAccessError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ClassificationAlreadyReviewedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    log_event(logger, logging.ERROR, f"{action}_failed", error=str(exc)[:300])
    return HTTPException(
        status_code=500,
        detail={"error": f"Failed to {action} classification", "details": str(exc)},
    )


@router.post("/classify")
def classify(req: ClassifyRequest, user: CurrentUser = Depends(get_current_user)):
    if not req.app_name or not req.app_name.strip():
        raise HTTPException(status_code=400, detail="appName is required")
    try:
        with agent_scope("classification"):
            return classify_new_app(req.app_name, user).to_dict()
    except llm.LLMError as exc:
        raise HTTPException(
            status_code=503,
            detail={"error": "Failed to classify application", "details": str(exc)},
        )
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to classify application", "details": str(exc)},
        )


@router.get("/pending")
def pending(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(require_role("admin", "manager")),
):
    items = get_pending_classifications(user, limit=limit, offset=offset)
    return {"total": len(items), "items": items}


@router.post("/{pending_id}/approve")
def approve(
    pending_id: str,
    req: Optional[ApproveRequest] = None,
    user: CurrentUser = Depends(require_role("admin", "manager")),
):
    req = req or ApproveRequest()
    try:
        approve_classification(
            pending_id,
            user,
            override_classification=req.override_classification,
            notes=req.notes,
        )
    except (LookupError, PermissionError, ValueError, SQLAlchemyError) as exc:
        raise _review_error(exc, "approve")
    return {"message": "Classification approved successfully"}


@router.post("/{pending_id}/reject")
def reject(
    pending_id: str,
    req: RejectRequest,
    user: CurrentUser = Depends(require_role("admin", "manager")),
):
    if not req.reason or not req.reason.strip():
        raise HTTPException(status_code=400, detail="Rejection reason is required")
    try:
        reject_classification(pending_id, user, req.reason.strip())
    except (LookupError, PermissionError, ValueError, SQLAlchemyError) as exc:
        raise _review_error(exc, "reject")
    return {"message": "Classification rejected successfully"}


@router.get("/rules")
def rules(
    team_id: Optional[str] = Query(None, alias="teamId"),
    classification: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
):
    if classification and classification not in PRODUCTIVITY_LABELS:
        raise HTTPException(status_code=400, detail=f"Unknown classification: {classification}")
    items = get_classification_rules(team_id=team_id, classification=classification, limit=limit, offset=offset)
    return {"total": len(items), "items": items}


@router.get("/unclassified")
def unclassified(user: CurrentUser = Depends(get_current_user)):
    items = get_unclassified_apps()
    return {"total": len(items), "items": items}


@router.get("/low-confidence")
def low_confidence(
    threshold: float = Query(0.7, ge=0, le=1),
    user: CurrentUser = Depends(require_role("admin", "manager")),
):
    items = get_low_confidence_apps(threshold)
    return {"total": len(items), "items": items}


@router.get("/overrides")
def overrides(
    min_overrides: int = Query(3, ge=1, alias="minOverrides"),
    user: CurrentUser = Depends(require_role("admin", "manager")),
):
    items = get_frequently_overridden_apps(min_overrides)
    return {"total": len(items), "items": items}


@router.post("/batch")
def batch(req: Optional[BatchRequest] = None, user: CurrentUser = Depends(require_role("admin"))):
    limit = max(1, (req or BatchRequest()).limit)
    items = [s.to_dict() for s in classify_unclassified_apps(user, limit)]
    return {"processed": len(items), "items": items}


@router.get("/stats")
def stats(user: CurrentUser = Depends(get_current_user)):
    return get_feedback_stats()
