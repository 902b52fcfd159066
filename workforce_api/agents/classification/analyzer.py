"""Usage statistics for an application name, fed to the classifier prompt."""
from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy import distinct, func, literal, select

from workforce_db.db_utils import get_engine
from workforce_db.schema import app_usage, classification_rules, teams, users


@dataclass
class AppAnalysis:
    app_name: str
    total_usage_minutes: int = 0
    total_sessions: int = 0
    unique_users: int = 0
    avg_duration_per_session: float = 0.0
    team_distribution: Dict[str, int] = field(default_factory=dict)
    role_distribution: Dict[str, int] = field(default_factory=dict)
    existing_similar_apps: List[Dict[str, Any]] = field(default_factory=list)


def analyze_app_usage(app_name: str) -> AppAnalysis:
    same_app = func.lower(app_usage.c.app_name) == app_name.lower()

    stats_stmt = select(
        func.count().label("total_sessions"),
        func.coalesce(func.sum(app_usage.c.duration), 0).label("total_minutes"),
        func.count(distinct(app_usage.c.user_id)).label("unique_users"),
        func.coalesce(func.avg(app_usage.c.duration), 0).label("avg_duration"),
    ).where(same_app)

    session_count = func.count().label("usage_count")
    team_stmt = (
        select(teams.c.name, session_count)
        .select_from(app_usage.join(users, app_usage.c.user_id == users.c.id).join(teams, users.c.team_id == teams.c.id))
        .where(same_app)
        .group_by(teams.c.name)
        .order_by(session_count.desc())
    )
    role_stmt = (
        select(users.c.role, session_count)
        .select_from(app_usage.join(users, app_usage.c.user_id == users.c.id))
        .where(same_app)
        .group_by(users.c.role)
        .order_by(session_count.desc())
    )

    # neighbours share the first word of the name ("Google Docs" ~ "Google Sheets")
    first_word = (app_name.split() or [app_name])[0].lower()
    rule_name = func.lower(classification_rules.c.app_name)
    similar_stmt = (
        select(classification_rules.c.app_name, classification_rules.c.classification)
        .where(rule_name.contains(first_word, autoescape=True) | literal(first_word).contains(rule_name))
        .limit(5)
    )

    with get_engine().connect() as conn:
        stats = conn.execute(stats_stmt).one()
        team_rows = conn.execute(team_stmt).all()
        role_rows = conn.execute(role_stmt).all()
        similar_rows = conn.execute(similar_stmt).all()

    return AppAnalysis(
        app_name=app_name,
        total_usage_minutes=int(stats.total_minutes or 0),
        total_sessions=int(stats.total_sessions or 0),
        unique_users=int(stats.unique_users or 0),
        avg_duration_per_session=float(stats.avg_duration or 0),
        team_distribution={r[0]: int(r[1]) for r in team_rows},
        role_distribution={r[0]: int(r[1]) for r in role_rows},
        existing_similar_apps=[
            {"name": r[0], "classification": r[1], "similarity": 0.5} for r in similar_rows
        ],
    )


def get_unclassified_apps() -> List[str]:
    """App names seen in usage data with no rule of any scope."""
    stmt = (
        select(app_usage.c.app_name)
        .distinct()
        .select_from(
            app_usage.outerjoin(
                classification_rules,
                func.lower(app_usage.c.app_name) == func.lower(classification_rules.c.app_name),
            )
        )
        .where(classification_rules.c.id.is_(None))
        .order_by(app_usage.c.app_name)
    )
    with get_engine().connect() as conn:
        return [r[0] for r in conn.execute(stmt)]


def get_low_confidence_apps(threshold: float = 0.7) -> List[Dict[str, Any]]:
    stmt = (
        select(classification_rules.c.app_name, classification_rules.c.classification, classification_rules.c.confidence)
        .where(classification_rules.c.confidence < threshold)
        .order_by(classification_rules.c.confidence.asc())
    )
    with get_engine().connect() as conn:
        return [
            {"appName": r.app_name, "classification": r.classification, "confidence": float(r.confidence)}
            for r in conn.execute(stmt)
        ]
