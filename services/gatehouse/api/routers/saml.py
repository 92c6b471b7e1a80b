"""SAML 2.0 service provider router.

    GET      /auth/saml/{name}/login     AuthnRequest via HTTP-Redirect
    POST     /auth/saml/{name}/acs       assertion consumer service
    GET      /auth/saml/{name}/metadata  SP metadata for the IdP
    GET|POST /auth/saml/{name}/logout    revoke session, clear cookie
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from gatehouse.api.dependencies import saml_provider
from gatehouse.auth.providers.saml import SAMLServiceProvider

router = APIRouter(prefix="/auth/saml", tags=["saml"])


@router.get("/{name}/login")
async def login(
    request: Request, provider: SAMLServiceProvider = Depends(saml_provider)
) -> Response:
    return await provider.login(request)


@router.post("/{name}/acs")
async def acs(request: Request, provider: SAMLServiceProvider = Depends(saml_provider)) -> Response:
    return await provider.callback(request)


@router.get("/{name}/metadata")
async def metadata(
    request: Request, provider: SAMLServiceProvider = Depends(saml_provider)
) -> Response:
    return await provider.metadata(request)


@router.api_route("/{name}/logout", methods=["GET", "POST"])
async def logout(
    request: Request, provider: SAMLServiceProvider = Depends(saml_provider)
) -> Response:
    return await provider.logout(request)
