"""FastAPI dependencies for sessions and provider lookup.

Session guards delegate to the shared SessionAuth built by the provider
registry. Provider dependencies resolve the ``{name}`` path parameter and 404
for unknown names or names registered under a different protocol.
"""

from fastapi import HTTPException, Request, status

from gatehouse.auth.identity import User
from gatehouse.auth.providers import get_lti_provider, get_provider, get_session_auth
from gatehouse.auth.providers.lti import LTIProvider
from gatehouse.auth.providers.oauth2 import OAuth2Provider
from gatehouse.auth.providers.saml import SAMLServiceProvider


async def require_user(request: Request) -> User:
    """Browser guard: redirects to the login page without a session."""
    return await get_session_auth().require_user(request)


async def require_user_json(request: Request) -> User:
    """API guard: 401 JSON without a session."""
    return await get_session_auth().require_user_json(request)


def _not_found(kind: str, name: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Unknown {kind} provider: {name}",
    )


async def oauth2_provider(name: str) -> OAuth2Provider:
    provider = get_provider(name)
    if not isinstance(provider, OAuth2Provider):
        raise _not_found("OAuth2", name)
    return provider


async def saml_provider(name: str) -> SAMLServiceProvider:
    provider = get_provider(name)
    if not isinstance(provider, SAMLServiceProvider):
        raise _not_found("SAML", name)
    return provider


async def lti_provider() -> LTIProvider:
    provider = get_lti_provider()
    if provider is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="LTI is not enabled")
    return provider
