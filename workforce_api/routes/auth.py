from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select

from workforce_api.routes.deps import get_current_user
from workforce_api.services.security import CurrentUser, create_access_token, verify_password
from workforce_db.db_utils import get_engine
from workforce_db.schema import teams, users

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class UserInfo(BaseModel):
    id: str
    email: str
    name: str
    role: str
    team_id: Optional[str] = None


class LoginResponse(BaseModel):
    token: str
    user: UserInfo


class MeResponse(UserInfo):
    team_name: Optional[str] = None


class SampleUser(BaseModel):
    id: str
    email: str
    name: str
    role: str
    team_name: Optional[str] = None


class SampleUsersResponse(BaseModel):
    message: str
    users: List[SampleUser]


@router.post("/login", response_model=LoginResponse)
def login(req: LoginRequest):
    if not req.email or not req.password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    stmt = select(users).where(users.c.email == req.email.strip())
    with get_engine().connect() as conn:
        row = conn.execute(stmt).first()
    if row is None or not verify_password(req.password, row.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    user = CurrentUser.from_row(row._mapping)
    return LoginResponse(token=create_access_token(user), user=UserInfo(**user.to_dict()))


@router.get("/me", response_model=MeResponse)
def me(user: CurrentUser = Depends(get_current_user)):
    stmt = select(teams.c.name).where(teams.c.id == user.team_id)
    with get_engine().connect() as conn:
        team_name = conn.execute(stmt).scalar() if user.team_id else None
    return MeResponse(**user.to_dict(), team_name=team_name)


@router.get("/users", response_model=SampleUsersResponse)
def sample_users(user: CurrentUser = Depends(get_current_user)):
    stmt = (
        select(users.c.id, users.c.email, users.c.name, users.c.role, teams.c.name.label("team_name"))
        .select_from(users.outerjoin(teams, users.c.team_id == teams.c.id))
        .order_by(users.c.role, users.c.name)
        .limit(20)
    )
    with get_engine().connect() as conn:
        rows = [SampleUser(**r._mapping) for r in conn.execute(stmt)]
    return SampleUsersResponse(message='Sample users (password is "password123" for all)', users=rows)
