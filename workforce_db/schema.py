"""
Relational schema for the workforce analytics store.

Declared with SQLAlchemy Core so the same tables can be created on
PostgreSQL (production) and SQLite (tests, local tooling).
"""
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

ROLES = ("admin", "manager", "employee")
PRODUCTIVITY_LABELS = ("productive", "neutral", "unproductive")
REVIEW_STATUSES = ("pending", "approved", "rejected")
AGENT_TYPES = ("chat", "classification")


def _uuid() -> str:
    return str(uuid.uuid4())


def _in(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# teams.manager_id is a soft reference: users.team_id already points the
# other way and a cyclic FK cannot be created on SQLite.
teams = Table(
    "teams",
    metadata,
    Column("id", String(36), primary_key=True, default=_uuid),
    Column("name", String(255), nullable=False),
    Column("department", String(100)),
    Column("manager_id", String(36)),
    Column("created_at", DateTime, default=datetime.now),
)

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True, default=_uuid),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("name", String(255), nullable=False),
    Column("role", String(20), nullable=False),
    Column("team_id", String(36), ForeignKey("teams.id")),
    Column("created_at", DateTime, default=datetime.now),
    CheckConstraint(_in("role", ROLES), name="ck_users_role"),
)

daily_usage = Table(
    "daily_usage",
    metadata,
    Column("id", String(36), primary_key=True, default=_uuid),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("date", Date, nullable=False),
    Column("total_duration", Integer, default=0),
    Column("productive_duration", Integer, default=0),
    Column("unproductive_duration", Integer, default=0),
    Column("neutral_duration", Integer, default=0),
    Column("project_duration", Integer, default=0),
    Column("non_project_duration", Integer, default=0),
    Column("idle_duration", Integer, default=0),
    Column("created_at", DateTime, default=datetime.now),
    UniqueConstraint("user_id", "date", name="uq_daily_usage_user_date"),
    Index("ix_daily_usage_date", "date"),
)

app_usage = Table(
    "app_usage",
    metadata,
    Column("id", String(36), primary_key=True, default=_uuid),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("date", Date, nullable=False),
    Column("app_name", String(255), nullable=False),
    Column("category", String(100)),
    Column("duration", Integer, default=0),
    Column("productivity_rating", String(20)),
    Column("created_at", DateTime, default=datetime.now),
    CheckConstraint(
        "productivity_rating IS NULL OR " + _in("productivity_rating", PRODUCTIVITY_LABELS),
        name="ck_app_usage_rating",
    ),
    Index("ix_app_usage_app_name", "app_name"),
    Index("ix_app_usage_user_date", "user_id", "date"),
)

projects = Table(
    "projects",
    metadata,
    Column("id", String(36), primary_key=True, default=_uuid),
    Column("name", String(255), nullable=False),
    Column("billable", Boolean, default=False),
    Column("created_at", DateTime, default=datetime.now),
)

project_time = Table(
    "project_time",
    metadata,
    Column("id", String(36), primary_key=True, default=_uuid),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("project_id", String(36), ForeignKey("projects.id"), nullable=False),
    Column("date", Date, nullable=False),
    Column("duration", Integer, default=0),
    Column("created_at", DateTime, default=datetime.now),
)

classification_rules = Table(
    "classification_rules",
    metadata,
    Column("id", String(36), primary_key=True, default=_uuid),
    Column("app_name", String(255), nullable=False),
    Column("team_id", String(36), ForeignKey("teams.id")),
    Column("role", String(20)),
    Column("classification", String(20), nullable=False),
    Column("confidence", Float, nullable=False, default=0.0),
    Column("reasoning", Text),
    Column("approved_by", String(36), ForeignKey("users.id")),
    Column("created_at", DateTime, default=datetime.now),
    UniqueConstraint("app_name", "team_id", "role", name="uq_rules_app_team_role"),
    CheckConstraint(_in("classification", PRODUCTIVITY_LABELS), name="ck_rules_classification"),
    CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_rules_confidence"),
)

pending_classifications = Table(
    "pending_classifications",
    metadata,
    Column("id", String(36), primary_key=True, default=_uuid),
    Column("app_name", String(255), nullable=False),
    Column("team_id", String(36), ForeignKey("teams.id")),
    Column("suggested_classification", String(20), nullable=False),
    Column("confidence", Float, nullable=False, default=0.0),
    Column("reasoning", Text),
    Column("status", String(20), nullable=False, default="pending"),
    Column("reviewed_by", String(36), ForeignKey("users.id")),
    Column("review_notes", Text),
    Column("created_at", DateTime, default=datetime.now),
    Column("reviewed_at", DateTime),
    CheckConstraint(_in("status", REVIEW_STATUSES), name="ck_pending_status"),
    CheckConstraint(
        _in("suggested_classification", PRODUCTIVITY_LABELS), name="ck_pending_classification"
    ),
)

classification_feedback = Table(
    "classification_feedback",
    metadata,
    Column("id", String(36), primary_key=True, default=_uuid),
    Column("rule_id", String(36), ForeignKey("classification_rules.id")),
    Column("original_classification", String(20), nullable=False),
    Column("corrected_classification", String(20), nullable=False),
    Column("corrected_by", String(36), ForeignKey("users.id")),
    Column("reason", Text),
    Column("created_at", DateTime, default=datetime.now),
)

agent_audit_log = Table(
    "agent_audit_log",
    metadata,
    Column("id", String(36), primary_key=True, default=_uuid),
    Column("agent_type", String(50), nullable=False),
    Column("user_id", String(36), ForeignKey("users.id")),
    Column("query", Text),
    Column("response", Text),
    Column("sql_generated", Text),
    Column("data_accessed", JSON),
    Column("execution_time_ms", Integer),
    Column("success", Boolean, nullable=False, default=True),
    Column("error_message", Text),
    Column("timestamp", DateTime, default=datetime.now),
    CheckConstraint(_in("agent_type", AGENT_TYPES), name="ck_audit_agent_type"),
    Index("ix_audit_timestamp", "timestamp"),
)


def create_all(engine) -> None:
    metadata.create_all(engine)


def drop_all(engine) -> None:
    metadata.drop_all(engine)
