"""
Classification workflow: suggest a label for an app, then either store it as a
rule (confident enough) or queue it for a manager to approve or reject.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from workforce_api.agents.classification.analyzer import analyze_app_usage, get_unclassified_apps
from workforce_api.agents.classification.classifier import classify_app
from workforce_api.agents.classification.feedback import get_adjusted_confidence_thresholds, record_feedback
from workforce_api.services import llm
from workforce_api.services.audit_logger import log_agent_action
from workforce_api.services.runtime import log_event
from workforce_api.services.security import CurrentUser
from workforce_db.db_utils import get_engine, to_jsonable
from workforce_db.schema import PRODUCTIVITY_LABELS, classification_rules, pending_classifications

logger = logging.getLogger("classification.service")

REVIEWER_ROLES = ("admin", "manager")


class ClassificationNotFoundError(LookupError):
    pass


class ClassificationAlreadyReviewedError(ValueError):
    pass


class ClassificationAccessError(PermissionError):
    pass


@dataclass
class ClassificationSuggestion:
    id: str
    app_name: str
    suggested_classification: str
    confidence: float
    reasoning: str
    factors: List[str] = field(default_factory=list)
    requires_approval: bool = False
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "appName": self.app_name,
            "suggestedClassification": self.suggested_classification,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "factors": list(self.factors),
            "requiresApproval": self.requires_approval,
            "createdAt": to_jsonable(self.created_at),
        }


def _row_dict(row) -> Dict[str, Any]:
    return {k: to_jsonable(v) for k, v in row._mapping.items()}


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _same_app(column, app_name: str):
    return func.lower(column) == app_name.strip().lower()


def _same_team(column, team_id: Optional[str]):
    return column.is_(None) if team_id is None else column == team_id


# ── suggestion ────────────────────────────────────────────────────────────────

def _known_answer(app_name: str, team_id: Optional[str]) -> Optional[ClassificationSuggestion]:
    """An existing rule or an open review for the same app and team."""
    rule_stmt = select(classification_rules).where(_same_app(classification_rules.c.app_name, app_name)).limit(1)
    pending_stmt = (
        select(pending_classifications)
        .where(_same_app(pending_classifications.c.app_name, app_name))
        .where(_same_team(pending_classifications.c.team_id, team_id))
        .where(pending_classifications.c.status == "pending")
        .limit(1)
    )
    with get_engine().connect() as conn:
        rule = conn.execute(rule_stmt).first()
        pending = None if rule is not None else conn.execute(pending_stmt).first()

    if rule is not None:
        return ClassificationSuggestion(
            id=rule.id,
            app_name=rule.app_name,
            suggested_classification=rule.classification,
            confidence=float(rule.confidence),
            reasoning=rule.reasoning or "Existing classification rule",
            factors=["existing_rule"],
            requires_approval=False,
            created_at=rule.created_at,
        )
    if pending is not None:
        return ClassificationSuggestion(
            id=pending.id,
            app_name=pending.app_name,
            suggested_classification=pending.suggested_classification,
            confidence=float(pending.confidence),
            reasoning=pending.reasoning or "",
            factors=["pending_review"],
            requires_approval=True,
            created_at=pending.created_at,
        )
    return None


def classify_new_app(app_name: str, user: CurrentUser) -> ClassificationSuggestion:
    """
    Suggest a label for ``app_name``.

    Below the auto-approve threshold the suggestion is queued for review on
    the user's team; at or above it becomes a global rule straight away.
    Raises llm.LLMError / SQLAlchemyError after auditing the failure.
    """
    started = time.perf_counter()
    app_name = (app_name or "").strip()
    query_text = f"Classify app: {app_name}"

    try:
        known = _known_answer(app_name, user.team_id)
        if known is not None:
            log_event(logger, logging.INFO, "classify_known", app=app_name, source=known.factors[0])
            return known

        analysis = analyze_app_usage(app_name)
        result = classify_app(analysis)
        thresholds = get_adjusted_confidence_thresholds()
        requires_approval = result.confidence < thresholds["autoApprove"]
        created_at = datetime.now()

        with get_engine().begin() as conn:
            if requires_approval:
                new_id = conn.execute(
                    pending_classifications.insert().values(
                        app_name=app_name,
                        team_id=user.team_id,
                        suggested_classification=result.classification,
                        confidence=result.confidence,
                        reasoning=result.reasoning,
                        status="pending",
                        created_at=created_at,
                    )
                ).inserted_primary_key[0]
            else:
                new_id = conn.execute(
                    classification_rules.insert().values(
                        app_name=app_name,
                        classification=result.classification,
                        confidence=result.confidence,
                        reasoning=result.reasoning,
                        created_at=created_at,
                    )
                ).inserted_primary_key[0]
    except (llm.LLMError, SQLAlchemyError) as exc:
        log_event(logger, logging.ERROR, "classify_failed", app=app_name, error=str(exc)[:300])
        log_agent_action(
            "classification",
            user.id,
            query_text,
            execution_time_ms=_elapsed_ms(started),
            success=False,
            error_message=str(exc) or exc.__class__.__name__,
        )
        raise

    verb = "Suggested" if requires_approval else "Auto-approved"
    log_agent_action(
        "classification",
        user.id,
        query_text,
        response=f"{verb}: {result.classification} (confidence: {result.confidence})",
        execution_time_ms=_elapsed_ms(started),
        success=True,
    )
    log_event(
        logger,
        logging.INFO,
        "classify_new_app",
        app=app_name,
        classification=result.classification,
        confidence=result.confidence,
        requires_approval=requires_approval,
        auto_approve_at=thresholds["autoApprove"],
    )
    return ClassificationSuggestion(
        id=new_id,
        app_name=app_name,
        suggested_classification=result.classification,
        confidence=result.confidence,
        reasoning=result.reasoning,
        factors=result.factors,
        requires_approval=requires_approval,
        created_at=created_at,
    )


# ── review queue ──────────────────────────────────────────────────────────────

def get_pending_classifications(user: CurrentUser, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    """Open reviews: admins see all, managers their team, employees nothing."""
    if user.role not in REVIEWER_ROLES:
        return []
    stmt = select(pending_classifications).where(pending_classifications.c.status == "pending")
    if user.role == "manager":
        stmt = stmt.where(pending_classifications.c.team_id == user.team_id)
    stmt = (
        stmt.order_by(pending_classifications.c.created_at.desc())
        .limit(max(1, int(limit)))
        .offset(max(0, int(offset)))
    )
    with get_engine().connect() as conn:
        return [_row_dict(r) for r in conn.execute(stmt)]


def _open_review(conn, pending_id: str, user: CurrentUser):
    record = conn.execute(
        select(pending_classifications).where(pending_classifications.c.id == pending_id)
    ).first()
    if record is None:
        raise ClassificationNotFoundError("Pending classification not found")
    if user.role not in REVIEWER_ROLES or (user.role == "manager" and record.team_id != user.team_id):
        raise ClassificationAccessError("Insufficient permissions")
    if record.status != "pending":
        raise ClassificationAlreadyReviewedError(f"Classification already {record.status}")
    return record


def _upsert_rule(conn, app_name: str, team_id: Optional[str], values: Dict[str, Any]) -> str:
    # unique(app_name, team_id, role) treats NULLs as distinct, so match them explicitly
    existing = conn.execute(
        select(classification_rules.c.id)
        .where(classification_rules.c.app_name == app_name)
        .where(_same_team(classification_rules.c.team_id, team_id))
        .where(classification_rules.c.role.is_(None))
    ).scalar()
    if existing is not None:
        conn.execute(classification_rules.update().where(classification_rules.c.id == existing).values(**values))
        return existing
    return conn.execute(
        classification_rules.insert().values(app_name=app_name, team_id=team_id, **values)
    ).inserted_primary_key[0]


def approve_classification(
    pending_id: str,
    user: CurrentUser,
    override_classification: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    if override_classification is not None and override_classification not in PRODUCTIVITY_LABELS:
        raise ValueError(f"Invalid classification: {override_classification}")

    with get_engine().begin() as conn:
        record = _open_review(conn, pending_id, user)
        final = override_classification or record.suggested_classification
        if override_classification:
            confidence = 1.0
            reasoning = f"Overridden by {user.name}: {notes or 'No notes'}"
        else:
            confidence = float(record.confidence)
            reasoning = record.reasoning

        rule_id = _upsert_rule(
            conn,
            record.app_name,
            record.team_id,
            {"classification": final, "confidence": confidence, "reasoning": reasoning, "approved_by": user.id},
        )
        conn.execute(
            pending_classifications.update()
            .where(pending_classifications.c.id == pending_id)
            .values(status="approved", reviewed_by=user.id, reviewed_at=datetime.now(), review_notes=notes)
        )
        overridden = bool(override_classification) and override_classification != record.suggested_classification
        if overridden:
            record_feedback(rule_id, record.suggested_classification, override_classification, user.id, notes, conn=conn)

    log_agent_action(
        "classification",
        user.id,
        f"Approve classification: {record.app_name}",
        response=f"Approved as: {final}",
        success=True,
    )
    log_event(logger, logging.INFO, "classification_approved", pending_id=pending_id, rule_id=rule_id, overridden=overridden)
    return {"ruleId": rule_id, "appName": record.app_name, "classification": final}


def reject_classification(pending_id: str, user: CurrentUser, reason: str) -> Dict[str, Any]:
    if not (reason or "").strip():
        raise ValueError("Rejection reason is required")

    with get_engine().begin() as conn:
        record = _open_review(conn, pending_id, user)
        conn.execute(
            pending_classifications.update()
            .where(pending_classifications.c.id == pending_id)
            .values(status="rejected", reviewed_by=user.id, reviewed_at=datetime.now(), review_notes=reason)
        )

    log_agent_action(
        "classification",
        user.id,
        f"Reject classification: {record.app_name}",
        response=f"Rejected: {reason}",
        success=True,
    )
    log_event(logger, logging.INFO, "classification_rejected", pending_id=pending_id)
    return {"appName": record.app_name}


# ── rules ─────────────────────────────────────────────────────────────────────

def get_classification_rules(
    team_id: Optional[str] = None,
    classification: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    """Rules ordered by app name; a team filter also includes global rules."""
    stmt = select(classification_rules)
    if team_id:
        stmt = stmt.where(or_(classification_rules.c.team_id == team_id, classification_rules.c.team_id.is_(None)))
    if classification:
        stmt = stmt.where(classification_rules.c.classification == classification)
    stmt = (
        stmt.order_by(classification_rules.c.app_name)
        .limit(max(1, int(limit or 100)))
        .offset(max(0, int(offset or 0)))
    )
    with get_engine().connect() as conn:
        return [_row_dict(r) for r in conn.execute(stmt)]


def classify_unclassified_apps(user: CurrentUser, limit: int = 10) -> List[ClassificationSuggestion]:
    suggestions = []
    for app_name in get_unclassified_apps()[: max(0, int(limit))]:
        try:
            suggestions.append(classify_new_app(app_name, user))
        except (llm.LLMError, SQLAlchemyError) as exc:
            log_event(logger, logging.WARNING, "batch_classify_skipped", app=app_name, error=str(exc)[:200])
    return suggestions
