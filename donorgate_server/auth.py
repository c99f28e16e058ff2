# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Authentication: password hashing, signed session cookies, session token and CSRF checks."""

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, Request, Response
from jose import JWTError, jwt
from passlib.context import CryptContext

from donorgate_server.config import Settings
from donorgate_server.errors import Forbidden, Unauthorized

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

DONOR_COOKIE = "donor_token"
ADMIN_COOKIE = "admin_token"
CSRF_COOKIE = "csrf_token"
SESSION_TOKEN_HEADER = "X-Session-Token"
CSRF_HEADER = "X-CSRF-Token"

MIN_DONOR_PASSWORD_LENGTH = 8


def hash_password(password: str) -> str:
    """Hash a password for storage."""
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str | None) -> bool:
    """Verify a password against its hash."""
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


async def hash_password_async(password: str) -> str:
    """bcrypt on a worker thread so the event loop keeps serving."""
    return await asyncio.to_thread(hash_password, password)


async def verify_password_async(plain: str, hashed: str | None) -> bool:
    return await asyncio.to_thread(verify_password, plain, hashed)


def create_access_token(settings: Settings, data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Create a signed JWT."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.session_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.session_secret, algorithm=settings.jwt_algorithm)


def decode_token(settings: Settings, token: str) -> dict[str, Any] | None:
    """Decode and validate a JWT."""
    try:
        return jwt.decode(token, settings.session_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def _settings(request: Request) -> Settings:
    return request.app.state.container.settings


def _set_cookie(response: Response, settings: Settings, name: str, value: str, httponly: bool = True) -> None:
    response.set_cookie(
        name,
        value,
        max_age=settings.session_expire_minutes * 60,
        httponly=httponly,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


# Donor sessions


@dataclass
class DonorSession:
    donor_id: int
    session_token: str


def start_donor_session(response: Response, settings: Settings, donor_id: int) -> str:
    """Set the donor cookie with a fresh session token and return the token."""
    session_token = secrets.token_urlsafe(24)
    token = create_access_token(settings, {"sub": str(donor_id), "role": "donor", "stk": session_token})
    _set_cookie(response, settings, DONOR_COOKIE, token)
    return session_token


def end_donor_session(response: Response) -> None:
    response.delete_cookie(DONOR_COOKIE)


async def get_donor_session(request: Request) -> DonorSession:
    """Donor identity from the session cookie. Raises Unauthorized."""
    token = request.cookies.get(DONOR_COOKIE)
    if not token:
        raise Unauthorized("Not authenticated")
    payload = decode_token(_settings(request), token)
    if not payload or payload.get("role") != "donor" or not payload.get("sub"):
        raise Unauthorized("Invalid or expired session")
    return DonorSession(donor_id=int(payload["sub"]), session_token=payload.get("stk") or "")


async def require_donor_session_token(
    request: Request, session: DonorSession = Depends(get_donor_session)
) -> DonorSession:
    """Mutations must echo the session token in X-Session-Token."""
    presented = request.headers.get(SESSION_TOKEN_HEADER) or ""
    if not presented or not secrets.compare_digest(presented.encode(), session.session_token.encode()):
        raise Forbidden("Missing or invalid session token")
    return session


# Admin sessions


def start_admin_session(response: Response, settings: Settings, username: str) -> str:
    """Set the admin cookie plus a readable CSRF cookie. Returns the CSRF token."""
    csrf_token = secrets.token_urlsafe(24)
    token = create_access_token(settings, {"sub": username, "role": "admin"})
    _set_cookie(response, settings, ADMIN_COOKIE, token)
    _set_cookie(response, settings, CSRF_COOKIE, csrf_token, httponly=False)
    return csrf_token


def end_admin_session(response: Response) -> None:
    response.delete_cookie(ADMIN_COOKIE)
    response.delete_cookie(CSRF_COOKIE)


async def get_admin(request: Request) -> str:
    """Admin username from the admin cookie. Raises Unauthorized."""
    token = request.cookies.get(ADMIN_COOKIE)
    if not token:
        raise Unauthorized("Not authenticated")
    payload = decode_token(_settings(request), token)
    if not payload or payload.get("role") != "admin" or not payload.get("sub"):
        raise Unauthorized("Invalid or expired session")
    return str(payload["sub"])


async def require_admin_csrf(request: Request, username: str = Depends(get_admin)) -> str:
    """Double-submit check: the CSRF cookie must match the X-CSRF-Token header."""
    cookie = request.cookies.get(CSRF_COOKIE) or ""
    header = request.headers.get(CSRF_HEADER) or ""
    if not cookie or not header or not secrets.compare_digest(cookie.encode(), header.encode()):
        raise Forbidden("CSRF token missing or invalid")
    return username
