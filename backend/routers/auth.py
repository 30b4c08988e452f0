import time
import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import Principal, issue_session_token, require_principal, require_session
from database.db import create_tables, get_user, verify_user_credentials

router = APIRouter()


class LoginIn(BaseModel):
    username: str
    password: str


def _issue_token(payload: LoginIn) -> dict:
    username = payload.username.strip()
    password = payload.password.strip()

    if not username:
        raise HTTPException(status_code=400, detail="Username is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        user = verify_user_credentials(username, password)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup/lifespan skipped).
        try:
            create_tables()
            user = verify_user_credentials(username, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    token, claims = issue_session_token(str(user["id"]), role=user["role"])
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "user_id": user["id"],
        "username": user["username"],
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.post("/auth/login")
def login(payload: LoginIn):
    return _issue_token(payload)


@router.get("/auth/me")
def auth_me(
    principal: Principal = Depends(require_principal),
    session: dict = Depends(require_session),
):
    user = get_user(principal["user_id"])
    return {
        "user_id": principal["user_id"],
        "username": user["username"] if user else None,
        "full_name": user["full_name"] if user else None,
        "role": principal["role"],
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
