"""Protocol adapter base abstraction.

Defines what every adapter (OAuth2, SAML2, LTI 1.3) shares: identity, the
state-token helpers, the success path (session, cookie, callback) and the
single error path.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import timedelta

from starlette.requests import Request
from starlette.responses import PlainTextResponse, RedirectResponse, Response

from gatehouse.auth.clock import Clock, generate_token, utc_now
from gatehouse.auth.errors import AuthError, CollaboratorError, StateError
from gatehouse.auth.identity import User
from gatehouse.auth.sessions import SessionIssuer
from gatehouse.auth.stores.protocol import StateStore, StoreError
from gatehouse.logging_config import get_logger

logger = get_logger(__name__)

SuccessCallback = Callable[[Request, User], Awaitable[Response]]
ErrorCallback = Callable[[Request, AuthError], Awaitable[Response]]

DEFAULT_STATE_TTL = timedelta(minutes=10)


class AuthProvider(ABC):
    """Abstract base class for all protocol adapters."""

    # Redirect status for login/landing/logout redirects
    redirect_status: int = 307

    def __init__(
        self,
        *,
        name: str,
        display_name: str = "",
        sessions: SessionIssuer,
        state_store: StateStore,
        state_ttl: timedelta = DEFAULT_STATE_TTL,
        landing_path: str = "/",
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._name = name
        self._display_name = display_name
        self._sessions = sessions
        self._state_store = state_store
        self._state_ttl = state_ttl
        self._landing_path = landing_path
        self._on_success = on_success
        self._on_error = on_error
        self._clock = clock

    @property
    def name(self) -> str:
        """Unique provider name (e.g., 'google', 'shibboleth')."""
        return self._name

    @property
    def display_name(self) -> str:
        """Human-readable label for login UI. Falls back to name."""
        return self._display_name or self._name

    @property
    @abstractmethod
    def provider_type(self) -> str:
        """Protocol type: 'oauth2', 'saml' or 'lti'."""

    @property
    def sessions(self) -> SessionIssuer:
        return self._sessions

    @abstractmethod
    async def login(self, request: Request) -> Response:
        """Start a login attempt and redirect to the identity provider."""

    # --- shared state handling ---

    async def _issue_state(self) -> str:
        state = generate_token()
        try:
            await self._state_store.save(state, self._clock() + self._state_ttl)
        except StoreError as e:
            raise CollaboratorError("Failed to save state") from e
        return state

    async def _consume_state(self, state: str, label: str = "state") -> None:
        """Validate a state token exactly once. Raises StateError if unusable."""
        if not state:
            raise StateError(f"Missing {label} parameter")
        try:
            valid = await self._state_store.validate(state)
        except StoreError as e:
            raise CollaboratorError(f"Failed to validate {label}") from e
        if not valid:
            raise StateError(f"Invalid or expired {label}")

    # --- success and error paths ---

    async def _complete_login(self, request: Request, user: User) -> Response:
        """Final step of every adapter: success callback, then session and cookie.

        The session is issued last so a failing callback leaves nothing behind.
        """
        user.provider = self.name

        if self._on_success is not None:
            response = await self._on_success(request, user)
        else:
            response = RedirectResponse(self._landing_path, status_code=self.redirect_status)

        session = await self._sessions.issue(user)
        self._sessions.set_cookie(response, session)
        logger.info(
            "Authentication successful",
            provider=self.name,
            provider_type=self.provider_type,
            user_id=user.id,
        )
        return response

    async def _handle_error(self, request: Request, exc: AuthError) -> Response:
        logger.warning(
            "Authentication failed",
            provider=self.name,
            provider_type=self.provider_type,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        if self._on_error is not None:
            return await self._on_error(request, exc)
        return PlainTextResponse("authentication failed", status_code=401)

    async def logout(self, request: Request) -> Response:
        """Delete the session (best effort), clear the cookie, go to the landing page."""
        response = RedirectResponse(self._landing_path, status_code=self.redirect_status)
        await self._sessions.revoke(request, response)
        return response
