"""Session middleware shared by every adapter.

Resolves the session cookie to a User for protected routes. Used as FastAPI
dependencies through ``gatehouse.api.dependencies``.
"""

from starlette.requests import Request

from gatehouse.auth.clock import Clock, utc_now
from gatehouse.auth.errors import LoginRequired, SessionError
from gatehouse.auth.identity import Session, User
from gatehouse.auth.stores.protocol import SessionStore, StoreError
from gatehouse.logging_config import get_logger

logger = get_logger(__name__)


class SessionAuth:
    """Loads sessions from the cookie and guards protected routes."""

    def __init__(
        self,
        store: SessionStore,
        cookie_name: str = "gatehouse_session",
        login_url: str = "/login",
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._cookie_name = cookie_name
        self._login_url = login_url
        self._clock = clock

    @property
    def login_url(self) -> str:
        return self._login_url

    async def load_session(self, request: Request) -> Session | None:
        """Resolve the request's session cookie, or None.

        Expired sessions are deleted on sight. Store failures count as no session.
        """
        session_id = request.cookies.get(self._cookie_name, "")
        if not session_id:
            return None

        try:
            session = await self._store.get(session_id)
        except StoreError as e:
            logger.warning("Session lookup failed", error=str(e))
            return None

        if session is None:
            return None

        if session.is_expired(self._clock()):
            try:
                await self._store.delete(session_id)
            except StoreError as e:
                logger.warning("Failed to delete expired session", error=str(e))
            logger.debug("Session expired", user_id=session.user.id)
            return None

        return session

    async def _authenticate(self, request: Request) -> User | None:
        session = await self.load_session(request)
        if session is None:
            return None
        # Request-scoped: never shared between requests
        request.state.user = session.user
        return session.user

    async def require_user(self, request: Request) -> User:
        """Browser guard: raises LoginRequired (redirect to login) without a session."""
        user = await self._authenticate(request)
        if user is None:
            raise LoginRequired(self._login_url)
        return user

    async def require_user_json(self, request: Request) -> User:
        """API guard: raises SessionError (401 JSON) without a session."""
        user = await self._authenticate(request)
        if user is None:
            raise SessionError("unauthorized")
        return user


def current_user(request: Request) -> User | None:
    """The user placed on the request by a guard, if any."""
    return getattr(request.state, "user", None)
