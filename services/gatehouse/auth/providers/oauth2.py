"""OAuth2 authorization-code adapter.

Flow per login attempt:

    login     -> fresh state saved, redirect to the authorization endpoint
    callback  -> provider error? -> state validated exactly once -> code
                 exchanged at the token endpoint -> identity fetched ->
                 session created -> cookie set -> success callback / landing
    logout    -> session deleted (best effort) -> cookie cleared

Every failure goes through ``_handle_error``; no step is ever retried and no
session exists until the very last step.
"""

from datetime import timedelta
from urllib.parse import urlencode

import httpx
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from gatehouse.auth.clock import Clock, utc_now
from gatehouse.auth.errors import (
    AuthError,
    CollaboratorError,
    ConfigurationError,
    ProtocolError,
)
from gatehouse.auth.fetchers import DEFAULT_TIMEOUT, IdentityFetcher, TokenSet, http_client
from gatehouse.auth.identity import User
from gatehouse.auth.providers.base import (
    DEFAULT_STATE_TTL,
    AuthProvider,
    ErrorCallback,
    SuccessCallback,
)
from gatehouse.auth.sessions import SessionIssuer
from gatehouse.auth.stores.protocol import StateStore
from gatehouse.config import OAuth2ProviderConfig
from gatehouse.logging_config import get_logger

logger = get_logger(__name__)


class OAuth2Provider(AuthProvider):
    """Authorization-code login against any OAuth2 provider."""

    def __init__(
        self,
        config: OAuth2ProviderConfig,
        *,
        sessions: SessionIssuer,
        state_store: StateStore,
        fetcher: IdentityFetcher,
        state_ttl: timedelta = DEFAULT_STATE_TTL,
        http: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
        clock: Clock = utc_now,
    ) -> None:
        missing = [
            key
            for key in ("client_id", "authorize_url", "token_url", "redirect_url")
            if not getattr(config, key)
        ]
        if missing:
            raise ConfigurationError(
                f"OAuth2 provider '{config.name}' is missing: {', '.join(missing)}"
            )

        super().__init__(
            name=config.name,
            display_name=config.display_name,
            sessions=sessions,
            state_store=state_store,
            state_ttl=state_ttl,
            landing_path=config.landing_path,
            on_success=on_success,
            on_error=on_error,
            clock=clock,
        )
        self._config = config
        self._fetcher = fetcher
        self._http = http
        self._timeout = timeout

    @property
    def provider_type(self) -> str:
        return "oauth2"

    def authorization_url(self, state: str) -> str:
        """Build the provider authorization URL embedding ``state``."""
        params = {
            "response_type": "code",
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_url,
            "scope": " ".join(self._config.scopes),
            "state": state,
            # Ask for a refresh token where the provider supports it
            "access_type": "offline",
            **self._config.extra_authorize_params,
        }
        separator = "&" if "?" in self._config.authorize_url else "?"
        return f"{self._config.authorize_url}{separator}{urlencode(params)}"

    async def login(self, request: Request) -> Response:
        try:
            state = await self._issue_state()
        except AuthError as e:
            return await self._handle_error(request, e)

        logger.debug("Redirecting to OAuth2 provider", provider=self.name)
        return RedirectResponse(self.authorization_url(state), status_code=self.redirect_status)

    async def callback(self, request: Request) -> Response:
        try:
            user = await self._authenticate(request)
            return await self._complete_login(request, user)
        except AuthError as e:
            return await self._handle_error(request, e)

    async def _authenticate(self, request: Request) -> User:
        params = request.query_params

        error = params.get("error")
        if error:
            description = params.get("error_description", "")
            message = f"Provider returned error: {error}"
            if description:
                message += f" ({description})"
            raise ProtocolError(message)

        await self._consume_state(params.get("state", ""))

        code = params.get("code", "")
        if not code:
            raise ProtocolError("Missing code parameter")

        token = await self.exchange_code(code)

        try:
            user = await self._fetcher.fetch_identity(token)
        except AuthError:
            raise
        except Exception as e:
            logger.warning("Identity fetch failed", provider=self.name, exc_info=True)
            raise CollaboratorError("Failed to fetch user info") from e

        user.access_token = token.access_token
        user.refresh_token = token.refresh_token
        user.token_expiry = token.expires_at
        return user

    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange an authorization code at the token endpoint."""
        token_data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._config.redirect_url,
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }

        try:
            async with http_client(self._http, self._timeout) as client:
                resp = await client.post(
                    self._config.token_url,
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                resp.raise_for_status()
                payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProtocolError(f"Failed to exchange code: {e}") from e

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise ProtocolError("Failed to exchange code: no access_token in response")

        return TokenSet.from_response(payload, self._clock())
