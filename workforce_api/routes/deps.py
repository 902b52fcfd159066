"""Auth dependencies: bearer JWT → CurrentUser, plus role gates."""
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException
from sqlalchemy import select

from workforce_api.services.runtime import set_user_id
from workforce_api.services.security import CurrentUser, decode_access_token
from workforce_db.db_utils import get_engine
from workforce_db.schema import users


def get_current_user(authorization: Optional[str] = Header(None)) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="No token provided")
    try:
        claims = decode_access_token(authorization[7:].strip())
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    stmt = select(users.c.id, users.c.email, users.c.name, users.c.role, users.c.team_id).where(
        users.c.id == claims.get("id")
    )
    with get_engine().connect() as conn:
        row = conn.execute(stmt).first()
    if row is None:
        raise HTTPException(status_code=401, detail="User not found")

    user = CurrentUser.from_row(row._mapping)
    set_user_id(user.id)
    return user


def require_role(*roles: str):
    def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return _check
