"""Token issuance/verification and password hashing."""
import os
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
import jwt

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-in-production")
JWT_ALGORITHM = "HS256"
JWT_EXPIRES_HOURS = max(1, int(os.getenv("JWT_EXPIRES_HOURS", "24")))


@dataclass
class CurrentUser:
    id: str
    email: str
    name: str
    role: str
    team_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CurrentUser":
        return cls(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            role=row["role"],
            team_id=str(row["team_id"]) if row.get("team_id") else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def create_access_token(user: CurrentUser, expires_hours: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "id": user.id,
        "email": user.email,
        "role": user.role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=expires_hours or JWT_EXPIRES_HOURS)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Raises jwt.InvalidTokenError (incl. ExpiredSignatureError) on bad tokens."""
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
