from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel

from ..settings import settings

router = APIRouter(prefix="/auth", tags=["auth"])

# Env-based credentials (static token, no JWT); real sessions live elsewhere


class LoginBody(BaseModel):
    username: str
    password: str


@router.post("/login")
def login(body: LoginBody):
    if body.username == settings.admin_username and body.password == settings.admin_password:
        return {"token": settings.admin_token}
    raise HTTPException(status_code=401, detail="invalid credentials")


@router.get("/me")
def me(token: str):
    if token == settings.admin_token:
        return {"ok": True}
    raise HTTPException(status_code=401, detail="invalid token")


def require_admin(
    x_admin_token: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
) -> None:
    """Dependency for back-office routes: X-Admin-Token or `Authorization: Bearer <token>`."""
    token = x_admin_token
    if not token and authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    if token != settings.admin_token:
        raise HTTPException(status_code=401, detail="admin token required")
