"""LTI 1.3 tool adapter (OIDC third-party-initiated login + signed launch).

Login leg: the platform calls /lti/login with ``iss``, ``login_hint`` and
``target_link_uri``. The issuer must be a registered platform (the platform
table is a trust boundary). Fresh state and nonce are stored and the browser is
sent to the platform's OIDC endpoint for a form-posted ``id_token``.

Launch leg: state is validated exactly once, the issuer is read from the
unverified token only to pick the platform, then the signature is verified
with that platform's registered key (PEM or JWKS, RSA only). Audience,
deployment and nonce checks follow; claims are extracted last.
"""

import base64
import binascii
import html
import json
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from authlib.jose import JsonWebKey, JsonWebToken, KeySet
from authlib.jose import jwt as authlib_jwt
from authlib.jose.errors import JoseError
from starlette.requests import Request
from starlette.responses import HTMLResponse, RedirectResponse, Response

from gatehouse.auth.clock import Clock, generate_token, utc_now
from gatehouse.auth.errors import (
    AuthError,
    CollaboratorError,
    ConfigurationError,
    ProtocolError,
    StateError,
)
from gatehouse.auth.fetchers import DEFAULT_TIMEOUT, http_client
from gatehouse.auth.providers.base import (
    DEFAULT_STATE_TTL,
    AuthProvider,
    ErrorCallback,
    SuccessCallback,
)
from gatehouse.auth.providers.lti_launch import (
    DL_CLAIM,
    LTI_CLAIM,
    LTI_VERSION,
    ContentItem,
    LTILaunch,
    LTIMessageType,
    build_launch,
)
from gatehouse.auth.sessions import SessionIssuer
from gatehouse.auth.stores.protocol import NonceStore, StateStore, StoreError
from gatehouse.config import LTIConfig, LTIPlatformConfig
from gatehouse.logging_config import get_logger

logger = get_logger(__name__)

# Platforms sign launches with RSA; anything else (HS*, none) is rejected.
_launch_jwt = JsonWebToken(["RS256", "RS384", "RS512"])

JWKS_CACHE_TTL = timedelta(hours=1)
DEEP_LINK_TTL = timedelta(minutes=5)
ID_TOKEN_LEEWAY_SECONDS = 60


def _unverified_segment(id_token: str, index: int) -> dict[str, Any]:
    """Decode a JWT header (0) or payload (1) without verification.

    Only used to find the issuer and signing key before verifying.
    """
    parts = id_token.split(".")
    if len(parts) != 3:
        raise ProtocolError("Malformed id_token")
    try:
        segment = parts[index]
        padded = segment + "=" * (-len(segment) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded))
    except (ValueError, binascii.Error) as e:
        raise ProtocolError("Malformed id_token") from e
    if not isinstance(data, dict):
        raise ProtocolError("Malformed id_token")
    return data


def _has_kid(key_set: KeySet, kid: str) -> bool:
    try:
        key_set.find_by_kid(kid)
    except ValueError:
        return False
    return True


def _import_rsa_key(pem: str, what: str) -> Any:
    try:
        key = JsonWebKey.import_key(pem, {"kty": "RSA"})
    except (JoseError, ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid RSA key for {what}") from e
    return key


class LTIProvider(AuthProvider):
    """LTI 1.3 tool: launches from any registered platform."""

    def __init__(
        self,
        config: LTIConfig,
        *,
        sessions: SessionIssuer,
        state_store: StateStore,
        nonce_store: NonceStore | None,
        state_ttl: timedelta = DEFAULT_STATE_TTL,
        http: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
        clock: Clock = utc_now,
    ) -> None:
        if not config.client_id:
            raise ConfigurationError("LTI requires client_id")
        if not config.platforms:
            raise ConfigurationError("LTI requires at least one platform")

        super().__init__(
            name=config.name,
            sessions=sessions,
            state_store=state_store,
            state_ttl=state_ttl,
            landing_path=config.landing_path,
            on_success=on_success,
            on_error=on_error,
            clock=clock,
        )
        self._config = config
        self._nonce_store = nonce_store
        self._http = http
        self._timeout = timeout

        self._platforms: dict[str, LTIPlatformConfig] = {}
        self._platform_keys: dict[str, Any] = {}
        for platform in config.platforms:
            if not platform.auth_url:
                raise ConfigurationError(f"LTI platform '{platform.issuer}' requires auth_url")
            if platform.public_key:
                self._platform_keys[platform.issuer] = _import_rsa_key(
                    platform.public_key, f"platform {platform.issuer}"
                )
            elif not platform.jwks_url:
                # Launches from a platform we cannot verify are never accepted
                raise ConfigurationError(
                    f"LTI platform '{platform.issuer}' requires public_key or jwks_url"
                )
            self._platforms[platform.issuer] = platform

        self._tool_key: Any | None = None
        if config.private_key:
            self._tool_key = _import_rsa_key(config.private_key, "the LTI tool")

        self._jwks_cache: dict[str, tuple[KeySet, datetime]] = {}

        if nonce_store is None:
            logger.warning("LTI nonce store not configured, replay protection disabled")

    @property
    def provider_type(self) -> str:
        return "lti"

    def platform(self, issuer: str) -> LTIPlatformConfig:
        platform = self._platforms.get(issuer)
        if platform is None:
            raise ProtocolError(f"Unknown platform issuer: {issuer}")
        return platform

    def client_id(self, platform: LTIPlatformConfig) -> str:
        return platform.client_id or self._config.client_id

    # --- login leg ---

    async def login(self, request: Request) -> Response:
        try:
            url = await self._authorization_url(request)
        except AuthError as e:
            return await self._handle_error(request, e)

        return RedirectResponse(url, status_code=self.redirect_status)

    async def _authorization_url(self, request: Request) -> str:
        params: dict[str, str] = dict(request.query_params)
        if request.method == "POST":
            form = await request.form()
            params.update({k: str(v) for k, v in form.items()})

        issuer = params.get("iss", "")
        if not issuer:
            raise ProtocolError("Missing iss parameter")
        platform = self.platform(issuer)
        client_id = self.client_id(platform)

        requested_client = params.get("client_id", "")
        if requested_client and requested_client != client_id:
            raise ProtocolError(f"client_id mismatch: expected {client_id}, got {requested_client}")

        login_hint = params.get("login_hint", "")
        target_link_uri = params.get("target_link_uri", "")
        if not login_hint:
            raise ProtocolError("Missing login_hint parameter")
        if not target_link_uri:
            raise ProtocolError("Missing target_link_uri parameter")

        state = await self._issue_state()
        nonce = generate_token()
        if self._nonce_store is not None:
            try:
                await self._nonce_store.save(nonce, self._clock() + self._state_ttl)
            except StoreError as e:
                raise CollaboratorError("Failed to save nonce") from e

        auth_params = {
            "scope": "openid",
            "response_type": "id_token",
            "response_mode": "form_post",
            "client_id": client_id,
            "redirect_uri": target_link_uri,
            "login_hint": login_hint,
            "state": state,
            "nonce": nonce,
            "prompt": "none",
        }
        if params.get("lti_message_hint"):
            auth_params["lti_message_hint"] = params["lti_message_hint"]
        if params.get("lti_deployment_id"):
            auth_params["lti_deployment_id"] = params["lti_deployment_id"]

        logger.info("LTI login initiated", platform=issuer)
        separator = "&" if "?" in platform.auth_url else "?"
        return f"{platform.auth_url}{separator}{urlencode(auth_params)}"

    # --- launch leg ---

    async def launch(self, request: Request) -> Response:
        try:
            launch = await self._validate_launch(request)
            # Request-scoped, for on_success and the launch route
            request.state.lti_launch = launch
            return await self._complete_login(request, launch.user)
        except AuthError as e:
            return await self._handle_error(request, e)

    async def _validate_launch(self, request: Request) -> LTILaunch:
        form = await request.form()
        id_token = str(form.get("id_token") or "")
        if not id_token:
            error = str(form.get("error") or "")
            if error:
                raise ProtocolError(f"Platform returned error: {error}")
            raise ProtocolError("Missing id_token")

        await self._consume_state(str(form.get("state") or ""))

        claims = await self.verify_id_token(id_token)
        launch = build_launch(claims, provider=self.name)
        launch.user.access_token = id_token
        logger.info(
            "LTI launch validated",
            platform=launch.platform_id,
            message_type=launch.message_type,
            context_id=launch.context_id,
        )
        return launch

    async def verify_id_token(self, id_token: str) -> dict[str, Any]:
        """Verify a platform id_token and return its claims."""
        issuer = _unverified_segment(id_token, 1).get("iss")
        if not isinstance(issuer, str) or not issuer:
            raise ProtocolError("id_token has no issuer")
        platform = self.platform(issuer)
        kid = _unverified_segment(id_token, 0).get("kid")
        key = await self._platform_key(platform, kid if isinstance(kid, str) else None)

        try:
            claims = _launch_jwt.decode(
                id_token,
                key,
                claims_options={
                    "iss": {"essential": True, "value": platform.issuer},
                    "exp": {"essential": True},
                    "iat": {"essential": True},
                },
            )
            claims.validate(
                now=int(self._clock().timestamp()), leeway=ID_TOKEN_LEEWAY_SECONDS
            )
        except (JoseError, ValueError) as e:
            raise ProtocolError(f"id_token verification failed: {e}") from e

        self._check_audience(claims, self.client_id(platform))
        self._check_deployment(claims, platform)
        await self._check_nonce(claims)
        return dict(claims)

    async def _platform_key(self, platform: LTIPlatformConfig, kid: str | None = None) -> Any:
        """Static key, or the platform JWKS cached for JWKS_CACHE_TTL.

        A cached key set without ``kid`` is refetched once, so a platform key
        rotation is picked up before the cache expires.
        """
        key = self._platform_keys.get(platform.issuer)
        if key is not None:
            return key

        now = self._clock()
        cached = self._jwks_cache.get(platform.issuer)
        if cached is not None and now - cached[1] < JWKS_CACHE_TTL:
            if kid is None or _has_kid(cached[0], kid):
                return cached[0]
            logger.info(
                "Unknown key id, refetching platform JWKS", platform=platform.issuer, kid=kid
            )

        try:
            async with http_client(self._http, self._timeout) as client:
                resp = await client.get(platform.jwks_url)
                resp.raise_for_status()
                key_set = JsonWebKey.import_key_set(resp.json())
        except (httpx.HTTPError, JoseError, ValueError) as e:
            raise ProtocolError(f"Failed to load platform JWKS: {e}") from e

        self._jwks_cache[platform.issuer] = (key_set, now)
        logger.info("Platform JWKS loaded", platform=platform.issuer)
        return key_set

    @staticmethod
    def _check_audience(claims: dict[str, Any], client_id: str) -> None:
        aud = claims.get("aud")
        if isinstance(aud, str):
            valid = aud == client_id
        elif isinstance(aud, list):
            # Multiple audiences are only acceptable when we are the authorized party
            valid = client_id in aud and (len(aud) == 1 or claims.get("azp") == client_id)
        else:
            valid = False
        if not valid:
            raise ProtocolError("id_token audience does not match client_id")

    def _check_deployment(self, claims: dict[str, Any], platform: LTIPlatformConfig) -> None:
        pinned = platform.deployment_id or self._config.deployment_id
        if pinned and claims.get(LTI_CLAIM + "deployment_id") != pinned:
            raise ProtocolError("id_token deployment_id does not match")

    async def _check_nonce(self, claims: dict[str, Any]) -> None:
        if self._nonce_store is None:
            return
        nonce = claims.get("nonce")
        if not isinstance(nonce, str) or not nonce:
            raise StateError("id_token has no nonce")
        try:
            fresh = await self._nonce_store.consume(nonce)
        except StoreError as e:
            raise CollaboratorError("Failed to validate nonce") from e
        if not fresh:
            raise StateError("Nonce already used or expired")

    # --- tool key material ---

    def jwks(self) -> dict[str, Any]:
        """The tool's public key as a JWKS. Raises ConfigurationError without a key."""
        if self._tool_key is None:
            raise ConfigurationError("No LTI tool key configured")
        public = self._tool_key.as_dict(is_private=False)
        public.update({"alg": "RS256", "use": "sig", "kid": self._config.key_id})
        return {"keys": [public]}

    def create_deep_link_response(self, launch: LTILaunch, items: list[ContentItem]) -> str:
        """Signed LtiDeepLinkingResponse JWT returning content items to the platform."""
        if self._tool_key is None:
            raise ConfigurationError("Private key required for deep linking")
        settings = launch.deep_linking_settings
        if settings is None:
            raise ProtocolError("Launch does not have deep linking settings")

        now = self._clock()
        payload: dict[str, Any] = {
            "iss": self._config.issuer or self._config.client_id,
            "aud": launch.platform_id,
            "iat": int(now.timestamp()),
            "exp": int((now + DEEP_LINK_TTL).timestamp()),
            "nonce": launch.raw_claims.get("nonce", ""),
            LTI_CLAIM + "message_type": LTIMessageType.DEEP_LINKING_RESPONSE.value,
            LTI_CLAIM + "version": LTI_VERSION,
            LTI_CLAIM + "deployment_id": launch.deployment_id,
            DL_CLAIM + "content_items": [item.to_claim() for item in items],
        }
        if settings.data:
            payload[DL_CLAIM + "data"] = settings.data

        header = {"alg": "RS256", "typ": "JWT", "kid": self._config.key_id}
        return authlib_jwt.encode(header, payload, self._tool_key).decode()

    def deep_link_form(self, launch: LTILaunch, items: list[ContentItem]) -> HTMLResponse:
        """Auto-submitting form that posts the deep link response JWT back to the platform."""
        settings = launch.deep_linking_settings
        if settings is None:
            raise ProtocolError("Launch is not a deep linking request")
        token = self.create_deep_link_response(launch, items)
        return_url = settings.deep_link_return_url
        if not return_url:
            raise ProtocolError("Launch has no deep_link_return_url")
        body = (
            "<!DOCTYPE html><html><body onload=\"document.forms[0].submit()\">"
            f'<form method="post" action="{html.escape(return_url)}">'
            f'<input type="hidden" name="JWT" value="{html.escape(token)}"/>'
            '<noscript><button type="submit">Continue</button></noscript>'
            "</form></body></html>"
        )
        return HTMLResponse(body)
