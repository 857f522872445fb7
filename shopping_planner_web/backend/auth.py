"""
Authentication helpers for the shopping planner.
Uses Supabase Auth (email/password). JWT tokens are validated server-side.
"""

import logging
import os
from pathlib import Path
from typing import Optional, Tuple

import httpx
import jwt
from dotenv import load_dotenv
from fastapi import Request
from fastapi.responses import RedirectResponse

load_dotenv(Path(__file__).resolve().parent.parent.parent / ".env", override=True)

logger = logging.getLogger(__name__)

SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_KEY = os.environ.get("SUPABASE_KEY", "")
SUPABASE_JWT_SECRET = os.environ.get("SUPABASE_JWT_SECRET", "")


class LoginError(Exception):
    """Supabase rejected the credentials; the message is shown on the login page."""


def _auth_headers() -> dict:
    return {"apikey": SUPABASE_KEY, "Content-Type": "application/json"}


async def sign_in(email: str, password: str) -> Tuple[str, dict]:
    """Password grant against Supabase Auth. Returns (access_token, user)."""
    async with httpx.AsyncClient() as client:
        resp = await client.post(
            f"{SUPABASE_URL}/auth/v1/token?grant_type=password",
            headers=_auth_headers(),
            json={"email": email, "password": password},
        )
    if resp.status_code != 200:
        body = resp.json()
        raise LoginError(body.get("error_description") or body.get("msg") or "Login failed")

    data = resp.json()
    return data["access_token"], {"id": data["user"]["id"], "email": data["user"]["email"]}


def get_current_user(request: Request) -> Optional[dict]:
    """
    Extract and validate the Supabase JWT from the session cookie.
    Returns user dict {id, email} or None if not authenticated.
    """
    token = request.session.get("access_token")
    if not token:
        return None

    if not SUPABASE_JWT_SECRET:
        # Starlette signs the session cookie with SESSION_SECRET, so the stored user is trusted.
        user = request.session.get("user")
        return user if user else None

    try:
        payload = jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            audience="authenticated",
        )
        return {"id": payload["sub"], "email": payload.get("email", "")}
    except jwt.ExpiredSignatureError:
        request.session.clear()
        return None
    except jwt.InvalidTokenError as e:
        logger.warning("Rejected session token: %s", e)
        return None


def login_redirect() -> RedirectResponse:
    return RedirectResponse(url="/login", status_code=303)
