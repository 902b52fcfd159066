"""
Populate the database with demo teams, users, usage and project time.

    python -m workforce_db.seed --days 90 --employees 60 --reset

Every seeded user shares the password ``password123``.
"""
import argparse
import logging
import random
from datetime import date, timedelta
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv
from sqlalchemy.engine import Engine

from workforce_api.services.security import hash_password
from workforce_db.db_utils import get_engine
from workforce_db.schema import (
    app_usage,
    create_all,
    daily_usage,
    drop_all,
    project_time,
    projects,
    teams,
    users,
)

logger = logging.getLogger("seed")

DEMO_PASSWORD = "password123"
DEPARTMENTS = ["Engineering", "Marketing", "Sales", "Finance", "HR"]
TEAMS_PER_DEPARTMENT = 2

APPS = {
    "productive": [
        ("VS Code", "Development"), ("IntelliJ IDEA", "Development"), ("GitHub", "Development"),
        ("Jira", "Project Management"), ("Confluence", "Documentation"), ("Notion", "Documentation"),
        ("Figma", "Design"), ("Slack", "Communication"), ("Microsoft Teams", "Communication"),
        ("Zoom", "Communication"), ("Google Docs", "Productivity"), ("Google Sheets", "Productivity"),
        ("Salesforce", "CRM"), ("HubSpot", "CRM"), ("Tableau", "Analytics"), ("Power BI", "Analytics"),
        ("Terminal", "Development"), ("Postman", "Development"), ("AWS Console", "Cloud"),
        ("Linear", "Project Management"),
    ],
    "neutral": [
        ("Google Chrome", "Browser"), ("Safari", "Browser"), ("Firefox", "Browser"),
        ("Microsoft Edge", "Browser"), ("Finder", "System"), ("File Explorer", "System"),
        ("Calendar", "Productivity"), ("Mail", "Communication"), ("Notes", "Productivity"),
        ("Calculator", "Utility"), ("Preview", "Utility"), ("Spotify", "Music"), ("Apple Music", "Music"),
    ],
    "unproductive": [
        ("YouTube", "Entertainment"), ("Netflix", "Entertainment"), ("Twitter/X", "Social Media"),
        ("Facebook", "Social Media"), ("Instagram", "Social Media"), ("Reddit", "Social Media"),
        ("TikTok", "Social Media"), ("Discord", "Gaming"), ("Steam", "Gaming"), ("Twitch", "Entertainment"),
        ("Amazon Shopping", "Shopping"), ("eBay", "Shopping"),
    ],
}

PROJECTS = [
    ("Website Redesign", True), ("Mobile App v2", True), ("API Integration", True),
    ("Customer Portal", True), ("Data Pipeline", True), ("Marketing Campaign Q1", True),
    ("Sales Dashboard", True), ("CRM Migration", True), ("Internal Training", False),
    ("Documentation Update", False), ("Code Refactoring", False), ("Security Audit", True),
    ("Performance Optimization", True), ("Team Meetings", False), ("Onboarding", False),
    ("R&D Exploration", False), ("Client Support", True), ("Bug Fixes", True),
    ("Feature Development", True), ("Infrastructure Setup", True),
]

BATCH_SIZE = 1000


def email_for(name: str) -> str:
    return ".".join(name.lower().split()) + "@company.com"


def _insert_batched(conn, table, rows: List[Dict]) -> int:
    for i in range(0, len(rows), BATCH_SIZE):
        conn.execute(table.insert(), rows[i:i + BATCH_SIZE])
    return len(rows)


def _days(start: date, end: date):
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def seed_teams(conn) -> List[str]:
    team_ids = []
    for dept in DEPARTMENTS:
        for i in range(1, TEAMS_PER_DEPARTMENT + 1):
            team_ids.append(
                conn.execute(teams.insert().values(name=f"{dept} Team {i}", department=dept)).inserted_primary_key[0]
            )
    return team_ids


def seed_users(conn, team_ids: List[str], rng: random.Random, admins: int, employees: int) -> List[Dict]:
    password_hash = hash_password(DEMO_PASSWORD)
    created = []

    def _add(name: str, role: str, team_id: str) -> str:
        user_id = conn.execute(
            users.insert().values(
                email=email_for(name), password_hash=password_hash, name=name, role=role, team_id=team_id
            )
        ).inserted_primary_key[0]
        created.append({"id": user_id, "role": role, "team_id": team_id, "name": name})
        return user_id

    for i in range(1, admins + 1):
        _add(f"Admin User {i}", "admin", rng.choice(team_ids))

    manager_no = 1
    for team_id in team_ids:
        for slot in range(2):
            manager_id = _add(f"Manager {manager_no}", "manager", team_id)
            if slot == 0:
                conn.execute(teams.update().where(teams.c.id == team_id).values(manager_id=manager_id))
            manager_no += 1

    for i in range(1, employees + 1):
        _add(f"Employee {i}", "employee", team_ids[(i - 1) % len(team_ids)])
    return created


def seed_projects(conn) -> List[str]:
    return [
        conn.execute(projects.insert().values(name=name, billable=billable)).inserted_primary_key[0]
        for name, billable in PROJECTS
    ]


def seed_daily_usage(conn, people: List[Dict], start: date, end: date, rng: random.Random) -> int:
    rows = []
    for person in people:
        base_productivity = 0.5 + rng.random() * 0.3
        works_weekends = rng.random() < 0.1
        for day in _days(start, end):
            weekend = day.weekday() >= 5
            if weekend and not works_weekends and rng.random() < 0.95:
                continue
            total = rng.randint(60, 180) if weekend else rng.randint(360, 600)
            productive = round(total * (base_productivity + (rng.random() - 0.5) * 0.2))
            unproductive = round(total * rng.random() * 0.15)
            project = round(productive * (0.6 + rng.random() * 0.3))
            rows.append({
                "user_id": person["id"],
                "date": day,
                "total_duration": total,
                "productive_duration": productive,
                "unproductive_duration": unproductive,
                "neutral_duration": total - productive - unproductive,
                "project_duration": project,
                "non_project_duration": productive - project,
                "idle_duration": rng.randint(10, 60),
            })
    return _insert_batched(conn, daily_usage, rows)


def seed_app_usage(conn, people: List[Dict], start: date, end: date, rng: random.Random) -> int:
    catalogue = [
        (name, category, rating) for rating, apps in APPS.items() for name, category in apps
    ]
    rows = []
    for person in people:
        favourites = rng.sample(catalogue, rng.randint(8, 15))
        for day in _days(start, end):
            if day.weekday() >= 5 and rng.random() < 0.9:
                continue
            for name, category, rating in rng.sample(favourites, rng.randint(5, min(12, len(favourites)))):
                rows.append({
                    "user_id": person["id"],
                    "date": day,
                    "app_name": name,
                    "category": category,
                    "duration": rng.randint(5, 120),
                    "productivity_rating": rating,
                })
    return _insert_batched(conn, app_usage, rows)


def seed_project_time(conn, people: List[Dict], project_ids: List[str], start: date, end: date, rng: random.Random) -> int:
    rows = []
    for person in people:
        assigned = rng.sample(project_ids, rng.randint(2, 5))
        for day in _days(start, end):
            if day.weekday() >= 5:
                continue
            for project_id in rng.sample(assigned, rng.randint(1, min(3, len(assigned)))):
                rows.append({
                    "user_id": person["id"],
                    "project_id": project_id,
                    "date": day,
                    "duration": rng.randint(30, 240),
                })
    return _insert_batched(conn, project_time, rows)


def seed(engine: Engine, days: int = 180, admins: int = 5, employees: int = 175, seed_value: int = 42, reset: bool = False) -> Dict[str, int]:
    rng = random.Random(seed_value)
    if reset:
        drop_all(engine)
    create_all(engine)

    end = date.today()
    start = end - timedelta(days=days)
    with engine.begin() as conn:
        team_ids = seed_teams(conn)
        people = seed_users(conn, team_ids, rng, admins, employees)
        project_ids = seed_projects(conn)
        counts = {
            "teams": len(team_ids),
            "users": len(people),
            "projects": len(project_ids),
            "daily_usage": seed_daily_usage(conn, people, start, end, rng),
            "app_usage": seed_app_usage(conn, people, start, end, rng),
            "project_time": seed_project_time(conn, people, project_ids, start, end, rng),
        }
    logger.info("seed_complete %s", counts)
    return counts


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Seed the workforce database with demo data.")
    parser.add_argument("--days", type=int, default=180, help="days of history to generate")
    parser.add_argument("--admins", type=int, default=5)
    parser.add_argument("--employees", type=int, default=175)
    parser.add_argument("--seed", type=int, default=42, help="random seed")
    parser.add_argument("--reset", action="store_true", help="drop and recreate all tables first")
    args = parser.parse_args(argv)

    load_dotenv(Path(__file__).parent.parent / ".env")
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    counts = seed(get_engine(), args.days, args.admins, args.employees, args.seed, args.reset)
    for table, n in counts.items():
        print(f"  {table:<14} {n}")
    print(f"\nPassword for all users: {DEMO_PASSWORD}")
    print(f"  admin:    {email_for('Admin User 1')}")
    print(f"  manager:  {email_for('Manager 1')}")
    print(f"  employee: {email_for('Employee 1')}")


if __name__ == "__main__":
    main()
