"""Identity fetchers: turn an OAuth2 token into a normalized User.

Vendor-specific fetchers (one per LMS/IdP REST API) plug in through the
``IdentityFetcher`` protocol. ``UserInfoFetcher`` is the generic,
configuration-driven implementation for any OIDC-style userinfo endpoint.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

import httpx

from gatehouse.auth.identity import User
from gatehouse.config import UserInfoFields
from gatehouse.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 10.0


@asynccontextmanager
async def http_client(
    client: httpx.AsyncClient | None, timeout: float = DEFAULT_TIMEOUT
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the injected client, or a short-lived one owned by this call."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout) as owned:
        yield owned


@dataclass(frozen=True)
class TokenSet:
    """Result of an authorization-code token exchange."""

    access_token: str = field(repr=False)
    token_type: str = "Bearer"
    refresh_token: str = field(default="", repr=False)
    expires_at: datetime | None = None
    id_token: str = field(default="", repr=False)
    scope: str = ""

    @classmethod
    def from_response(cls, payload: dict[str, Any], now: datetime) -> "TokenSet":
        expires_at = None
        expires_in = payload.get("expires_in")
        if expires_in is not None:
            try:
                expires_at = now + timedelta(seconds=int(expires_in))
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric expires_in", expires_in=expires_in)
        return cls(
            access_token=payload["access_token"],
            token_type=payload.get("token_type") or "Bearer",
            refresh_token=payload.get("refresh_token") or "",
            expires_at=expires_at,
            id_token=payload.get("id_token") or "",
            scope=payload.get("scope") or "",
        )


@runtime_checkable
class IdentityFetcher(Protocol):
    """Capability: resolve a token to the identity it belongs to.

    Implementations must not retain the token beyond the call. Any exception
    is treated as a failed login.
    """

    async def fetch_identity(self, token: TokenSet) -> User: ...


class UserInfoFetcher:
    """Fetches identity from a JSON userinfo endpoint with a Bearer token."""

    def __init__(
        self,
        userinfo_url: str,
        fields: UserInfoFields | None = None,
        http: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._url = userinfo_url
        self._fields = fields or UserInfoFields()
        self._http = http
        self._timeout = timeout

    async def fetch_identity(self, token: TokenSet) -> User:
        async with http_client(self._http, self._timeout) as client:
            resp = await client.get(
                self._url,
                headers={
                    "Authorization": f"Bearer {token.access_token}",
                    "Accept": "application/json",
                },
            )
            resp.raise_for_status()
            claims = resp.json()

        if not isinstance(claims, dict):
            raise ValueError("Userinfo response is not a JSON object")

        logger.debug("Fetched userinfo", claims=sorted(claims))
        return self.to_user(claims)

    def to_user(self, claims: dict[str, Any]) -> User:
        f = self._fields
        subject = claims.get(f.id)
        verified = claims.get(f.email_verified, False)
        return User(
            # GitHub and friends use numeric ids
            id="" if subject is None else str(subject),
            email=claims.get(f.email) or "",
            email_verified=verified is True or str(verified).lower() == "true",
            name=claims.get(f.name) or "",
            picture=claims.get(f.picture) or "",
            raw=claims,
        )
