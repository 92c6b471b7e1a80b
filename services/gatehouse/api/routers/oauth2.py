"""OAuth2 authorization-code router.

    GET      /auth/oauth2/{name}/login     redirect to the provider
    GET      /auth/oauth2/{name}/callback  code exchange, session, cookie
    GET|POST /auth/oauth2/{name}/logout    revoke session, clear cookie
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from gatehouse.api.dependencies import oauth2_provider
from gatehouse.auth.providers.oauth2 import OAuth2Provider

router = APIRouter(prefix="/auth/oauth2", tags=["oauth2"])


@router.get("/{name}/login")
async def login(request: Request, provider: OAuth2Provider = Depends(oauth2_provider)) -> Response:
    return await provider.login(request)


@router.get("/{name}/callback")
async def callback(
    request: Request, provider: OAuth2Provider = Depends(oauth2_provider)
) -> Response:
    return await provider.callback(request)


@router.api_route("/{name}/logout", methods=["GET", "POST"])
async def logout(request: Request, provider: OAuth2Provider = Depends(oauth2_provider)) -> Response:
    return await provider.logout(request)
