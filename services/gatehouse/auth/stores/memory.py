"""
In-process store backends.

Suitable for a single API process (development, tests, small deployments).
A lock makes each check-and-delete atomic even if the stores are shared with
worker threads. Expired entries are dropped when touched, and writes sweep the
whole map at most once per CLEANUP_INTERVAL so abandoned logins cannot pile up.
"""

import json
import threading
from datetime import datetime, timedelta

from gatehouse.auth.clock import Clock, utc_now
from gatehouse.auth.identity import Session
from gatehouse.auth.stores.protocol import DuplicateNonceError

CLEANUP_INTERVAL = timedelta(minutes=1)


class _ExpiringTokens:
    """Token -> expiry map with atomic single-use consumption."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens: dict[str, datetime] = {}
        self._last_cleanup = clock()

    def put(self, token: str, expires_at: datetime, *, unique: bool = False) -> None:
        with self._lock:
            now = self._clock()
            if now - self._last_cleanup >= CLEANUP_INTERVAL:
                self._purge(now)
            current = self._tokens.get(token)
            if unique and current is not None and now <= current:
                raise DuplicateNonceError("Nonce already exists")
            self._tokens[token] = expires_at

    def peek(self, token: str) -> bool:
        with self._lock:
            expires_at = self._tokens.get(token)
            if expires_at is None:
                return False
            if self._clock() > expires_at:
                del self._tokens[token]
                return False
            return True

    def take(self, token: str) -> bool:
        with self._lock:
            expires_at = self._tokens.pop(token, None)
        return expires_at is not None and self._clock() <= expires_at

    def cleanup(self) -> int:
        with self._lock:
            return self._purge(self._clock())

    def _purge(self, now: datetime) -> int:
        # Caller holds the lock
        expired = [token for token, expires_at in self._tokens.items() if now > expires_at]
        for token in expired:
            del self._tokens[token]
        self._last_cleanup = now
        return len(expired)

    def __len__(self) -> int:
        return len(self._tokens)


class MemoryStateStore:
    """In-memory StateStore."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._tokens = _ExpiringTokens(clock)

    async def save(self, state: str, expires_at: datetime) -> None:
        self._tokens.put(state, expires_at)

    async def validate(self, state: str) -> bool:
        return self._tokens.take(state)

    def cleanup(self) -> int:
        """Drop expired states. Returns how many were removed."""
        return self._tokens.cleanup()

    def __len__(self) -> int:
        return len(self._tokens)


class MemoryNonceStore:
    """In-memory NonceStore."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._tokens = _ExpiringTokens(clock)

    async def save(self, nonce: str, expires_at: datetime) -> None:
        self._tokens.put(nonce, expires_at, unique=True)

    async def exists(self, nonce: str) -> bool:
        return self._tokens.peek(nonce)

    async def consume(self, nonce: str) -> bool:
        return self._tokens.take(nonce)

    def cleanup(self) -> int:
        """Drop expired nonces. Returns how many were removed."""
        return self._tokens.cleanup()

    def __len__(self) -> int:
        return len(self._tokens)


class MemorySessionStore:
    """In-memory SessionStore.

    Sessions are kept as JSON so a read returns the same shape as a Redis
    round-trip: a fresh copy without transient credentials. Reads still return
    expired sessions; only the write-time sweep and cleanup() drop them.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, tuple[str, datetime]] = {}
        self._last_cleanup = clock()

    async def save(self, session: Session) -> None:
        data = json.dumps(session.to_dict(), default=str)
        with self._lock:
            now = self._clock()
            if now - self._last_cleanup >= CLEANUP_INTERVAL:
                self._purge(now)
            self._sessions[session.id] = (data, session.expires_at)

    async def get(self, session_id: str) -> Session | None:
        with self._lock:
            entry = self._sessions.get(session_id)
        if entry is None:
            return None
        return Session.from_dict(json.loads(entry[0]))

    async def delete(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def cleanup(self) -> int:
        """Drop expired sessions. Returns how many were removed."""
        with self._lock:
            return self._purge(self._clock())

    def _purge(self, now: datetime) -> int:
        expired = [sid for sid, (_, expires_at) in self._sessions.items() if now > expires_at]
        for sid in expired:
            del self._sessions[sid]
        self._last_cleanup = now
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)
