"""Session issuance and the session cookie.

Sessions are the output of every protocol adapter. The browser receives an
opaque session id in an HttpOnly cookie (never the identity or a token); the
server resolves it through the SessionStore, enabling immediate revocation.
"""

from datetime import timedelta

from starlette.requests import Request
from starlette.responses import Response

from gatehouse.auth.clock import Clock, generate_token, utc_now
from gatehouse.auth.errors import CollaboratorError, ProtocolError
from gatehouse.auth.identity import Session, User
from gatehouse.auth.stores.protocol import SessionStore, StoreError
from gatehouse.config import CookieConfig
from gatehouse.logging_config import get_logger

logger = get_logger(__name__)


def generate_session_id() -> str:
    """Generate a cryptographically random session id (256 bits)."""
    return generate_token()


class SessionIssuer:
    """Creates sessions and applies one adapter's cookie policy."""

    def __init__(
        self,
        store: SessionStore,
        cookie: CookieConfig,
        duration: timedelta,
        clock: Clock = utc_now,
    ) -> None:
        if duration <= timedelta(0):
            raise ValueError("Session duration must be positive")
        self._store = store
        self._cookie = cookie
        self._duration = duration
        self._clock = clock

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def cookie(self) -> CookieConfig:
        return self._cookie

    @property
    def duration(self) -> timedelta:
        return self._duration

    async def issue(self, user: User) -> Session:
        """Create and persist a session for an authenticated user.

        The user is snapshotted so the session is unaffected by later mutation.
        """
        if not user.id:
            raise ProtocolError("Identity has no subject id")

        now = self._clock()
        session = Session(
            id=generate_session_id(),
            user=user.snapshot(),
            created_at=now,
            expires_at=now + self._duration,
        )
        try:
            await self._store.save(session)
        except StoreError as e:
            raise CollaboratorError("Failed to save session") from e

        logger.info("Session created", provider=user.provider, user_id=user.id)
        return session

    def set_cookie(self, response: Response, session: Session) -> None:
        response.set_cookie(
            key=self._cookie.name,
            value=session.id,
            max_age=int(self._duration.total_seconds()),
            path=self._cookie.path,
            domain=self._cookie.domain or None,
            secure=self._cookie.secure,
            httponly=True,
            samesite=self._cookie.same_site.value,
        )

    def clear_cookie(self, response: Response) -> None:
        response.delete_cookie(
            key=self._cookie.name,
            path=self._cookie.path,
            domain=self._cookie.domain or None,
            secure=self._cookie.secure,
            httponly=True,
            samesite=self._cookie.same_site.value,
        )

    async def revoke(self, request: Request, response: Response) -> None:
        """Best-effort delete of the request's session, then clear the cookie.

        A store failure is logged, never raised: logout always succeeds.
        """
        session_id = request.cookies.get(self._cookie.name, "")
        if session_id:
            try:
                await self._store.delete(session_id)
                logger.info("Session revoked")
            except StoreError as e:
                logger.warning("Failed to delete session on logout", error=str(e))
        self.clear_cookie(response)
