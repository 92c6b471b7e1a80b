"""LTI 1.3 tool router.

    GET|POST /lti/login   OIDC third-party-initiated login
    POST     /lti/launch  id_token launch, session, cookie
    GET      /lti/jwks    tool public key for the platform
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response

from gatehouse.api.dependencies import lti_provider
from gatehouse.auth.errors import ConfigurationError
from gatehouse.auth.providers.lti import LTIProvider

router = APIRouter(prefix="/lti", tags=["lti"])


@router.api_route("/login", methods=["GET", "POST"])
async def login(request: Request, provider: LTIProvider = Depends(lti_provider)) -> Response:
    return await provider.login(request)


@router.post("/launch")
async def launch(request: Request, provider: LTIProvider = Depends(lti_provider)) -> Response:
    return await provider.launch(request)


@router.get("/jwks")
async def jwks(provider: LTIProvider = Depends(lti_provider)) -> dict[str, Any]:
    try:
        return provider.jwks()
    except ConfigurationError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="No tool key configured"
        ) from None
