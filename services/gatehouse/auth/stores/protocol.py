"""
Store protocols for CSRF state, LTI nonces and sessions.

Backends satisfy these structurally (duck typing); no inheritance required.
All methods are async so in-memory and Redis backends are interchangeable.
"""

from datetime import datetime
from typing import Protocol, runtime_checkable

from gatehouse.auth.identity import Session

# --- Exceptions ---


class StoreError(Exception):
    """Base exception for store operations (backend unavailable, corrupt data)."""


class DuplicateNonceError(StoreError):
    """Raised when saving a nonce that is already stored."""


# --- Protocols ---


@runtime_checkable
class StateStore(Protocol):
    """Single-use CSRF state tokens (OAuth2 state, SAML relay state, LTI state)."""

    async def save(self, state: str, expires_at: datetime) -> None:
        """Store a state token until ``expires_at``."""
        ...

    async def validate(self, state: str) -> bool:
        """Atomically check and invalidate a state token.

        Returns True at most once per token; False for absent, consumed or
        expired tokens. The token is gone after this call either way.
        """
        ...


@runtime_checkable
class NonceStore(Protocol):
    """Single-use replay tokens for LTI launches."""

    async def save(self, nonce: str, expires_at: datetime) -> None:
        """Store a nonce. Raises DuplicateNonceError if it already exists."""
        ...

    async def exists(self, nonce: str) -> bool:
        """Non-consuming lookup of a live nonce."""
        ...

    async def consume(self, nonce: str) -> bool:
        """Atomically check and invalidate a nonce; same contract as StateStore.validate."""
        ...


@runtime_checkable
class SessionStore(Protocol):
    """Authenticated sessions keyed by opaque session id."""

    async def save(self, session: Session) -> None:
        """Persist a session. Transient credentials are not stored."""
        ...

    async def get(self, session_id: str) -> Session | None:
        """Look up a session. Expiry is the caller's concern."""
        ...

    async def delete(self, session_id: str) -> None:
        """Delete a session. Deleting an unknown id is not an error."""
        ...
