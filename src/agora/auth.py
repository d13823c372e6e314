"""Credential utilities for agora.

Session tokens are opaque random secrets; only their SHA-256 is stored.
Account passwords are hashed with argon2id from libsodium (PyNaCl).
"""

import hashlib
import secrets

from nacl import pwhash
from nacl.exceptions import InvalidkeyError

# Session lifetime in seconds (7 days)
SESSION_TTL_SECONDS = 7 * 24 * 3600


def generate_secret() -> str:
    """Generate a new random secret (64 hex chars = 32 bytes)."""
    return secrets.token_hex(32)


def hash_secret(secret: str) -> str:
    """Hash a secret for storage/comparison. Returns full SHA-256."""
    return hashlib.sha256(secret.encode()).hexdigest()


def verify_secret(secret: str, expected_hash: str) -> bool:
    """Verify a secret against its stored hash."""
    return secrets.compare_digest(hash_secret(secret), expected_hash)


def hash_password(password: str) -> str:
    """Hash a password with argon2id. Returns the encoded hash string."""
    return pwhash.argon2id.str(
        password.encode(),
        opslimit=pwhash.argon2id.OPSLIMIT_INTERACTIVE,
        memlimit=pwhash.argon2id.MEMLIMIT_INTERACTIVE,
    ).decode()


def verify_password(password: str, password_hash: str) -> bool:
    """Check a password against an argon2id hash. Malformed hashes never match."""
    try:
        return pwhash.verify(password_hash.encode(), password.encode())
    except InvalidkeyError:
        return False
