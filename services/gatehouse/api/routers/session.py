"""Session router.

Consumers:
    Login page:
        GET /auth/providers  configured providers
    Web UI / API clients:
        GET /auth/me         identity behind the session cookie
"""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from gatehouse.api.dependencies import require_user_json
from gatehouse.auth.identity import User
from gatehouse.auth.providers import list_providers

router = APIRouter(prefix="/auth", tags=["auth"])


class ProviderInfo(BaseModel):
    name: str
    type: str
    display_name: str


class ProvidersResponse(BaseModel):
    providers: list[ProviderInfo]


class UserResponse(BaseModel):
    id: str
    email: str
    email_verified: bool
    name: str
    picture: str
    provider: str
    extra: dict[str, str]


@router.get("/providers", response_model=ProvidersResponse)
async def providers() -> ProvidersResponse:
    """List configured auth providers."""
    return ProvidersResponse(providers=[ProviderInfo(**p) for p in list_providers()])


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(require_user_json)) -> dict[str, Any]:
    """Return the authenticated identity. Raw claims and tokens are never exposed."""
    return {
        "id": user.id,
        "email": user.email,
        "email_verified": user.email_verified,
        "name": user.name,
        "picture": user.picture,
        "provider": user.provider,
        "extra": user.extra,
    }
