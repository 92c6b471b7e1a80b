"""Time and randomness sources shared by every protocol adapter.

Adapters take a ``clock`` callable at construction so tests can pin "now";
all tokens (state, nonce, session id) come from ``generate_token``.
"""

import secrets
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]

# 32 random bytes -> 256 bits of entropy, URL-safe base64 (43 chars).
TOKEN_BYTES = 32


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def generate_token() -> str:
    """Generate a cryptographically random, URL-safe token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def generate_request_id() -> str:
    """Generate a SAML message ID (must not start with a digit)."""
    return "_" + secrets.token_hex(16)
