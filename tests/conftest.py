import sys
from datetime import date, datetime, timedelta
from pathlib import Path

import bcrypt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from workforce_api.services import llm
from workforce_api.services.security import CurrentUser, create_access_token
from workforce_db import db_utils
from workforce_db.schema import (
    app_usage,
    classification_rules,
    create_all,
    daily_usage,
    project_time,
    projects,
    teams,
    users,
)

PASSWORD = "password123"
# cheap rounds: hashing is not what these tests exercise
PASSWORD_HASH = bcrypt.hashpw(PASSWORD.encode("utf-8"), bcrypt.gensalt(rounds=4)).decode("utf-8")
TODAY = date.today()


class _Resp:
    def __init__(self, content: str):
        self.content = content


class FakeLLM:
    """Scripted stand-in for the chat model: replies are consumed in call order."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def get_model(self, model, temperature, max_tokens):
        return _BoundModel(self, model, temperature)


class _BoundModel:
    def __init__(self, owner: FakeLLM, model: str, temperature: float):
        self.owner = owner
        self.model = model
        self.temperature = temperature

    def invoke(self, messages):
        self.owner.calls.append(
            {"model": self.model, "temperature": self.temperature, "messages": messages}
        )
        if not self.owner.replies:
            raise RuntimeError("unexpected LLM call")
        reply = self.owner.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return _Resp(reply)


@pytest.fixture
def fake_llm(monkeypatch):
    def _install(*replies) -> FakeLLM:
        fake = FakeLLM(*replies)
        monkeypatch.setattr(llm, "get_model", fake.get_model)
        return fake

    # no network by default: any unscripted call fails like an unreachable endpoint
    _install()
    return _install


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_all(eng)
    db_utils.set_engine(eng)
    yield eng
    db_utils.set_engine(None)
    eng.dispose()


def _user(conn, email, name, role, team_id):
    return conn.execute(
        users.insert().values(email=email, password_hash=PASSWORD_HASH, name=name, role=role, team_id=team_id)
    ).inserted_primary_key[0]


@pytest.fixture
def seeded(engine, fake_llm):
    """Two teams, one admin, a manager and an employee per team, a week of usage."""
    ids = {}
    with engine.begin() as conn:
        ids["eng"] = conn.execute(teams.insert().values(name="Engineering Team 1", department="Engineering")).inserted_primary_key[0]
        ids["mkt"] = conn.execute(teams.insert().values(name="Marketing Team 1", department="Marketing")).inserted_primary_key[0]

        ids["admin"] = _user(conn, "admin.user.1@company.com", "Admin User 1", "admin", ids["eng"])
        ids["eng_manager"] = _user(conn, "manager.1@company.com", "Manager 1", "manager", ids["eng"])
        ids["eng_employee"] = _user(conn, "employee.1@company.com", "Employee 1", "employee", ids["eng"])
        ids["mkt_manager"] = _user(conn, "manager.2@company.com", "Manager 2", "manager", ids["mkt"])
        ids["mkt_employee"] = _user(conn, "employee.2@company.com", "Employee 2", "employee", ids["mkt"])

        ids["website"] = conn.execute(projects.insert().values(name="Website Redesign", billable=True)).inserted_primary_key[0]
        ids["training"] = conn.execute(projects.insert().values(name="Internal Training", billable=False)).inserted_primary_key[0]

        for offset in range(1, 8):
            day = TODAY - timedelta(days=offset)
            for key, productive in (("eng_employee", 300), ("mkt_employee", 200)):
                conn.execute(
                    daily_usage.insert().values(
                        user_id=ids[key],
                        date=day,
                        total_duration=480,
                        productive_duration=productive,
                        unproductive_duration=60,
                        neutral_duration=480 - productive - 60,
                        project_duration=productive // 2,
                        non_project_duration=productive - productive // 2,
                        idle_duration=30,
                    )
                )
            conn.execute(app_usage.insert().values(
                user_id=ids["eng_employee"], date=day, app_name="VS Code",
                category="Development", duration=120, productivity_rating="productive",
            ))
            conn.execute(app_usage.insert().values(
                user_id=ids["mkt_employee"], date=day, app_name="Mystery App",
                category=None, duration=45, productivity_rating=None,
            ))
            conn.execute(project_time.insert().values(
                user_id=ids["eng_employee"], project_id=ids["website"], date=day, duration=150,
            ))

        ids["vscode_rule"] = conn.execute(classification_rules.insert().values(
            app_name="VS Code", classification="productive", confidence=0.95,
            reasoning="Development tool", created_at=datetime.now(),
        )).inserted_primary_key[0]
        ids["netflix_rule"] = conn.execute(classification_rules.insert().values(
            app_name="Netflix", classification="unproductive", confidence=0.6,
            reasoning="Entertainment", created_at=datetime.now(),
        )).inserted_primary_key[0]
    return ids


def current_user(engine, user_id) -> CurrentUser:
    with engine.connect() as conn:
        row = conn.execute(users.select().where(users.c.id == user_id)).first()
    return CurrentUser.from_row(row._mapping)


@pytest.fixture
def as_user(engine, seeded):
    def _get(key: str) -> CurrentUser:
        return current_user(engine, seeded[key])

    return _get


@pytest.fixture
def auth_headers(as_user):
    def _headers(key: str):
        return {"Authorization": f"Bearer {create_access_token(as_user(key))}"}

    return _headers
