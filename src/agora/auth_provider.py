"""Pluggable bearer-token authentication for agora.

By default, bearer tokens are agora session tokens checked against the
sessions table. A custom provider can be configured instead:

- AGORA_AUTH_MODULE: Python module path (e.g., 'myapp.auth')

Custom auth modules must expose:
- verify_bearer_token(token: str) -> AuthResult
- extract_bearer_token(authorization: str | None) -> str | None (optional)

The AuthResult dataclass is provided by this module for custom implementations.
"""

import importlib
import os
from dataclasses import dataclass

from . import db
from .auth import hash_secret


@dataclass
class AuthResult:
    """Result of an authentication attempt."""

    valid: bool
    user_id: str | None = None
    username: str | None = None
    email: str | None = None
    error: str | None = None


def _get_auth_module():
    """Get the configured custom auth module, or None."""
    custom_module = os.environ.get("AGORA_AUTH_MODULE")
    if custom_module:
        try:
            return importlib.import_module(custom_module)
        except ImportError as e:
            raise ImportError(f"Failed to import auth module '{custom_module}': {e}") from e
    return None


def verify_session_token(token: str) -> AuthResult:
    """Default provider: look the token's hash up in the sessions table."""
    user = db.get_session_user(hash_secret(token))
    if user is None:
        return AuthResult(valid=False, error="Invalid or expired token")
    return AuthResult(
        valid=True,
        user_id=user["id"],
        username=user["username"],
        email=user["email"],
    )


def verify_bearer_token(token: str) -> AuthResult:
    """
    Verify a bearer token using the configured auth module.

    Args:
        token: The bearer token to verify

    Returns:
        AuthResult with validation status and the resolved user
    """
    module = _get_auth_module()
    if module is None:
        return verify_session_token(token)
    return module.verify_bearer_token(token)


def extract_bearer_token(authorization: str | None) -> str | None:
    """
    Extract bearer token from Authorization header.

    Uses custom module's implementation if available, otherwise default.

    Args:
        authorization: The full Authorization header value

    Returns:
        The token if valid Bearer format, None otherwise
    """
    module = _get_auth_module()
    if module and hasattr(module, "extract_bearer_token"):
        return module.extract_bearer_token(authorization)

    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        return None

    return token.strip() or None


def get_auth_method_name() -> str:
    """Get the name of the current auth method for logging/debugging."""
    custom_module = os.environ.get("AGORA_AUTH_MODULE")
    if custom_module:
        return f"custom:{custom_module}"
    return "session"
