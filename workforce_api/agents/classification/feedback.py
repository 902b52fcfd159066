"""Reviewer corrections and the auto-approval thresholds derived from them."""
import logging
from typing import Any, Dict, List, Optional

import pandas as pd
from sqlalchemy import case, func, select

from workforce_api.services.runtime import log_event
from workforce_db.db_utils import get_engine
from workforce_db.schema import PRODUCTIVITY_LABELS, classification_feedback, classification_rules, pending_classifications

logger = logging.getLogger("classification.feedback")

AUTO_APPROVE_THRESHOLD = 0.9
REVIEW_THRESHOLD = 0.7
MIN_DECISIONS_FOR_ADJUSTMENT = 50
OVERRIDE_CONFIDENCE_DECAY = 0.9


def record_feedback(
    rule_id: str,
    original_classification: str,
    corrected_classification: str,
    corrected_by: str,
    reason: Optional[str] = None,
    conn=None,
) -> str:
    """Store the correction and relabel the rule with slightly lower confidence.

    Runs on the caller's connection when one is given so it shares its transaction.
    """
    if conn is None:
        with get_engine().begin() as own:
            return record_feedback(rule_id, original_classification, corrected_classification, corrected_by, reason, own)

    feedback_id = conn.execute(
        classification_feedback.insert().values(
            rule_id=rule_id,
            original_classification=original_classification,
            corrected_classification=corrected_classification,
            corrected_by=corrected_by,
            reason=reason,
        )
    ).inserted_primary_key[0]
    conn.execute(
        classification_rules.update()
        .where(classification_rules.c.id == rule_id)
        .values(
            classification=corrected_classification,
            confidence=classification_rules.c.confidence * OVERRIDE_CONFIDENCE_DECAY,
        )
    )
    log_event(
        logger,
        logging.INFO,
        "feedback_recorded",
        rule_id=rule_id,
        original=original_classification,
        corrected=corrected_classification,
    )
    return feedback_id


def get_feedback_stats() -> Dict[str, Any]:
    status_stmt = (
        select(pending_classifications.c.status, func.count().label("n"))
        .where(pending_classifications.c.status != "pending")
        .group_by(pending_classifications.c.status)
    )
    accuracy_stmt = select(
        classification_feedback.c.original_classification,
        func.count().label("total"),
        func.sum(
            case(
                (
                    classification_feedback.c.original_classification
                    == classification_feedback.c.corrected_classification,
                    1,
                ),
                else_=0,
            )
        ).label("correct"),
    ).group_by(classification_feedback.c.original_classification)

    with get_engine().connect() as conn:
        by_status = {r.status: int(r.n) for r in conn.execute(status_stmt)}
        total_overrides = conn.execute(select(func.count()).select_from(classification_feedback)).scalar_one()
        accuracy_rows = conn.execute(accuracy_stmt).all()

    accuracy = {label: 1.0 for label in PRODUCTIVITY_LABELS}
    for row in accuracy_rows:
        if row.total:
            accuracy[row.original_classification] = int(row.correct or 0) / int(row.total)

    approvals = by_status.get("approved", 0)
    rejections = by_status.get("rejected", 0)
    decided = approvals + rejections
    return {
        "totalApprovals": approvals,
        "totalRejections": rejections,
        "totalOverrides": int(total_overrides or 0),
        "approvalRate": approvals / decided if decided else 0.0,
        "classificationAccuracy": accuracy,
    }


def get_adjusted_confidence_thresholds(stats: Optional[Dict[str, Any]] = None) -> Dict[str, float]:
    stats = stats if stats is not None else get_feedback_stats()
    auto_approve = AUTO_APPROVE_THRESHOLD
    if stats["totalApprovals"] + stats["totalRejections"] >= MIN_DECISIONS_FOR_ADJUSTMENT:
        if stats["approvalRate"] > 0.95:
            auto_approve = 0.85
        elif stats["approvalRate"] < 0.8:
            auto_approve = 0.95
    return {"autoApprove": auto_approve, "requireReview": REVIEW_THRESHOLD}


def get_frequently_overridden_apps(min_overrides: int = 3) -> List[Dict[str, Any]]:
    """Apps whose rules reviewers keep correcting, most corrected first."""
    stmt = select(
        classification_rules.c.app_name,
        classification_rules.c.classification.label("last_classification"),
        classification_feedback.c.id.label("feedback_id"),
        classification_feedback.c.corrected_classification,
    ).select_from(
        classification_feedback.join(
            classification_rules, classification_feedback.c.rule_id == classification_rules.c.id
        )
    )
    with get_engine().connect() as conn:
        df = pd.DataFrame([dict(r) for r in conn.execute(stmt).mappings()])
    if df.empty:
        return []

    grouped = df.groupby(["app_name", "last_classification"]).agg(
        override_count=("feedback_id", "count"),
        most_common_correction=("corrected_classification", lambda s: s.mode().sort_values().iloc[0]),
    )
    grouped = grouped[grouped["override_count"] >= min_overrides].sort_values(
        "override_count", ascending=False, kind="stable"
    )
    return [
        {
            "appName": app_name,
            "overrideCount": int(row.override_count),
            "lastClassification": last_classification,
            "mostCommonCorrection": row.most_common_correction,
        }
        for (app_name, last_classification), row in grouped.iterrows()
    ]
