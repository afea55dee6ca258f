"""Participant token utilities for knockroom."""

import hashlib
import secrets

TOKEN_HEADER = "X-Chat-Token"


def generate_token() -> str:
    """Generate a new participant token (32 random bytes, base64url)."""
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    """Hash a token for storage/lookup. Returns full SHA-256 hex."""
    return hashlib.sha256(token.encode()).hexdigest()


def extract_token(header_value: str | None) -> str | None:
    """Normalize the bearer header value. Empty means absent."""
    if not header_value:
        return None
    token = header_value.strip()
    return token or None
