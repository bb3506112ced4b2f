"""Account authentication using salted password hashes and HMAC-signed tokens.

Users log in with username and password and receive a signed bearer token
that the dashboard sends in the Authorization header of every API call.

Security Model:
    1. Passwords are stored as salted hashes (werkzeug.security)
    2. Login verifies the password against the stored hash
    3. The server returns a signed token with a 24-hour expiry
    4. Each API request presents "Authorization: Bearer <token>"

Token Format:
    {user_id}:{expiry_timestamp}:{hmac_signature}
    Example: "9b1c0e...:1735689600:a1b2c3d4e5f67890a1b2c3d4e5f67890"

Environment Variables:
    SITEHOST_SECRET: Secret key for HMAC signing (keep secure!)
"""

from __future__ import annotations

import hashlib
import hmac
import time

from werkzeug.security import check_password_hash, generate_password_hash

from .config import SECRET

TOKEN_LIFETIME: int = 60 * 60 * 24
"""Token validity period in seconds (24 hours)."""


# =============================================================================
# Passwords
# =============================================================================


def hash_password(password: str) -> str:
    """Hash a password for storage (salted, werkzeug's default method)."""
    return generate_password_hash(password)


def verify_password(password: str, stored: str | None) -> bool:
    """Check a password against a stored hash. Malformed hashes never match."""
    if not stored:
        return False
    try:
        return check_password_hash(stored, password)
    except ValueError:
        return False


# =============================================================================
# Tokens
# =============================================================================


def is_configured() -> bool:
    """Check if token signing is configured (SITEHOST_SECRET is set)."""
    return bool(SECRET)


def _sign(user_id: str, expires: int) -> str:
    payload = f"user:{user_id}:{expires}"
    return hmac.new(SECRET.encode(), payload.encode(), hashlib.sha256).hexdigest()[:32]


def generate_token(user_id: str) -> str:
    """Generate a signed authentication token for a user.

    Args:
        user_id: Id of the authenticated user.

    Returns:
        Signed token string valid for TOKEN_LIFETIME seconds.
    """
    expires = int(time.time()) + TOKEN_LIFETIME
    return f"{user_id}:{expires}:{_sign(user_id, expires)}"


def verify_token(token: str) -> str | None:
    """Verify a token's signature and check expiry.

    Uses constant-time comparison for the signature check.

    Args:
        token: Token string in format "{user_id}:{expiry}:{signature}".

    Returns:
        The user id if the token is valid and not expired, else None.
    """
    if not SECRET:
        return None
    try:
        user_id, expires_str, signature = token.split(":", 2)
        expires = int(expires_str)

        # Check expiry
        if time.time() > expires:
            return None

        if not hmac.compare_digest(signature, _sign(user_id, expires)):
            return None
        return user_id
    except (ValueError, AttributeError):
        return None
