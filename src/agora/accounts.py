"""User registration and login.

Both return an opaque session token (see agora.auth) together with the
public user record.
"""

from __future__ import annotations

import sqlite3

from . import db
from .auth import SESSION_TTL_SECONDS, generate_secret, hash_password, hash_secret, verify_password
from .errors import Conflict, InvalidInput, Unauthenticated

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 8


def _public_user(user: dict) -> dict:
    return {"id": user["id"], "email": user["email"], "username": user["username"]}


def issue_session(user_id: str) -> str:
    """Create a session and return its bearer token."""
    token = generate_secret()
    db.create_session(user_id, hash_secret(token), db.now_s() + SESSION_TTL_SECONDS)
    return token


def register(email: str, username: str, password: str) -> dict:
    email = (email or "").strip()
    username = (username or "").strip()

    if not email or "@" not in email:
        raise InvalidInput("Invalid email")
    if len(username) < MIN_USERNAME_LENGTH:
        raise InvalidInput("Username must be at least 3 characters")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise InvalidInput("Password must be at least 8 characters")

    if db.get_user_by_email(email) is not None:
        raise Conflict("Email already registered")

    try:
        user = db.create_user(email, username, hash_password(password))
    except sqlite3.IntegrityError as e:
        # Lost a race with a concurrent registration
        raise Conflict("Email already registered") from e

    return {"token": issue_session(user["id"]), "user": _public_user(user)}


def login(email: str, password: str) -> dict:
    user = db.get_user_by_email((email or "").strip())
    if user is None or not verify_password(password or "", user["password_hash"]):
        raise Unauthenticated("Invalid email or password")

    return {"token": issue_session(user["id"]), "user": _public_user(user)}
