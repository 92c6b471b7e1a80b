"""Protocol adapter registry.

Manages initialized adapters, keyed by provider name, plus the session
middleware that reads the cookie they all write.
"""

import os
from datetime import timedelta

from gatehouse.auth.errors import ConfigurationError
from gatehouse.auth.middleware import SessionAuth
from gatehouse.auth.providers.base import AuthProvider
from gatehouse.auth.providers.lti import LTIProvider
from gatehouse.auth.sessions import SessionIssuer
from gatehouse.auth.stores import get_stores
from gatehouse.config import SameSite, settings
from gatehouse.logging_config import get_logger

logger = get_logger(__name__)

# Registry of initialized adapters
_providers: dict[str, AuthProvider] = {}
_lti: LTIProvider | None = None
_session_auth: SessionAuth | None = None

# Environment variable overrides for OAuth2 client secrets.
# Keyed by provider name (uppercase), e.g. GATEHOUSE_CANVAS_CLIENT_SECRET.
_SECRET_ENV_PREFIX = "GATEHOUSE_"
_SECRET_ENV_SUFFIX = "_CLIENT_SECRET"


def _secret_env_key(name: str) -> str:
    return f"{_SECRET_ENV_PREFIX}{name.upper().replace('-', '_')}{_SECRET_ENV_SUFFIX}"


def _register(provider: AuthProvider) -> None:
    if provider.name in _providers:
        raise ConfigurationError(f"Duplicate provider name: {provider.name}")
    _providers[provider.name] = provider


def init_providers() -> None:
    """Initialize all configured protocol adapters.

    Called during application startup (lifespan handler), after init_stores().
    Registers OAuth2, SAML and LTI adapters based on config.
    """
    from gatehouse.auth.fetchers import UserInfoFetcher
    from gatehouse.auth.providers.oauth2 import OAuth2Provider
    from gatehouse.auth.providers.saml import SAMLServiceProvider

    global _lti, _session_auth  # noqa: PLW0603

    _providers.clear()
    _lti = None

    auth = settings.auth
    stores = get_stores()
    state_ttl = timedelta(seconds=auth.state_ttl_seconds)
    duration = timedelta(seconds=auth.session_ttl_seconds)
    timeout = settings.http_timeout_seconds

    sessions = SessionIssuer(stores.sessions, auth.cookie, duration)

    for oauth2_config in auth.oauth2:
        # Inject client_secret from env var if not set in config.
        # Convention: GATEHOUSE_{NAME}_CLIENT_SECRET
        env_key = _secret_env_key(oauth2_config.name)
        env_secret = os.environ.get(env_key, "")
        if env_secret and not oauth2_config.client_secret:
            oauth2_config = oauth2_config.model_copy(update={"client_secret": env_secret})
            logger.debug(
                "Loaded client_secret from env", provider=oauth2_config.name, env_var=env_key
            )

        if not oauth2_config.userinfo_url:
            raise ConfigurationError(
                f"OAuth2 provider '{oauth2_config.name}' requires userinfo_url"
            )
        fetcher = UserInfoFetcher(oauth2_config.userinfo_url, oauth2_config.fields, timeout=timeout)
        provider = OAuth2Provider(
            oauth2_config,
            sessions=sessions,
            state_store=stores.state,
            fetcher=fetcher,
            state_ttl=state_ttl,
            timeout=timeout,
        )
        _register(provider)
        logger.info("Registered OAuth2 provider", provider=provider.name)

    for saml_config in auth.saml:
        provider = SAMLServiceProvider(
            saml_config,
            sessions=sessions,
            state_store=stores.state,
            state_ttl=state_ttl,
            timeout=timeout,
        )
        _register(provider)
        logger.info("Registered SAML provider", provider=provider.name)

    if auth.lti.enabled:
        # Launches arrive inside a platform iframe: the cookie must be cross-site
        lti_cookie = auth.cookie.model_copy(
            update={"same_site": auth.lti.same_site, "secure": True}
        )
        if auth.lti.same_site != SameSite.NONE:
            logger.warning("LTI cookie is not SameSite=None, iframe launches may lose it")
        _lti = LTIProvider(
            auth.lti,
            sessions=SessionIssuer(stores.sessions, lti_cookie, duration),
            state_store=stores.state,
            nonce_store=stores.nonce,
            state_ttl=state_ttl,
            timeout=timeout,
        )
        _register(_lti)
        logger.info("Registered LTI tool", platforms=len(auth.lti.platforms))

    _session_auth = SessionAuth(
        stores.sessions,
        cookie_name=auth.cookie.name,
        login_url=auth.login_url,
    )

    logger.info("Auth providers initialized", count=len(_providers))


def get_provider(name: str) -> AuthProvider | None:
    """Get an adapter by provider name."""
    return _providers.get(name)


def list_providers() -> list[dict[str, str]]:
    """List all configured providers (name, type, display_name)."""
    return [
        {"name": p.name, "type": p.provider_type, "display_name": p.display_name}
        for p in _providers.values()
    ]


def get_lti_provider() -> LTIProvider | None:
    """The LTI tool, when enabled."""
    return _lti


def get_session_auth() -> SessionAuth:
    """Return the session middleware. Raises RuntimeError if not initialized."""
    if _session_auth is None:
        raise RuntimeError("Providers not initialized, call init_providers() first")
    return _session_auth
