"""
Configuration management for the Gatehouse auth broker.

Non-secret configuration loaded from YAML file, secrets from environment variables.
Provider configuration models are frozen: they are built once at startup and
shared read-only by every in-flight request.
"""

import os
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_FILE = "/etc/gatehouse/config.yaml"


def yaml_config_settings_source() -> dict[str, Any]:
    """Load configuration from YAML file."""
    config_path = Path(os.environ.get("GATEHOUSE_CONFIG_FILE", DEFAULT_CONFIG_FILE))
    if config_path.exists():
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    return {}


# --- Cookie Configuration ---


class SameSite(StrEnum):
    """SameSite cookie policies."""

    LAX = "lax"
    STRICT = "strict"
    NONE = "none"


class CookieConfig(BaseModel):
    """Session cookie policy shared by every protocol adapter."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="gatehouse_session", description="Session cookie name")
    path: str = Field(default="/", description="Cookie path")
    domain: str = Field(default="", description="Cookie domain (host-only when empty)")
    secure: bool = Field(default=True, description="Send the cookie over HTTPS only")
    same_site: SameSite = Field(default=SameSite.LAX)


# --- OAuth2 Configuration ---


class UserInfoFields(BaseModel):
    """Maps userinfo JSON fields onto the normalized identity."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default="sub")
    email: str = Field(default="email")
    email_verified: str = Field(default="email_verified")
    name: str = Field(default="name")
    picture: str = Field(default="picture")


class OAuth2ProviderConfig(BaseModel):
    """Configuration for a single OAuth2 authorization-code provider."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Unique provider name (e.g., 'google', 'canvas')")
    display_name: str = Field(
        default="", description="Human-readable label for login UI (falls back to name)"
    )
    client_id: str = Field(description="OAuth2 client ID")
    client_secret: str = Field(default="", description="OAuth2 client secret (from env)")
    authorize_url: str = Field(description="Provider authorization endpoint")
    token_url: str = Field(description="Provider token endpoint")
    redirect_url: str = Field(description="Externally-reachable callback URL")
    userinfo_url: str = Field(default="", description="Userinfo endpoint for identity fetch")
    scopes: list[str] = Field(default=["openid", "profile", "email"])
    extra_authorize_params: dict[str, str] = Field(
        default_factory=dict,
        description="Additional query parameters for the authorization URL",
    )
    fields: UserInfoFields = Field(default_factory=UserInfoFields)
    landing_path: str = Field(default="/", description="Redirect target after login/logout")


# --- SAML Configuration ---


class SAMLProviderConfig(BaseModel):
    """Configuration for a single SAML2 identity provider."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Unique provider name (e.g., 'shibboleth')")
    display_name: str = Field(
        default="", description="Human-readable label for login UI (falls back to name)"
    )
    entity_id: str = Field(description="SP entity ID")
    acs_url: str = Field(description="Assertion consumer service URL")
    idp_metadata_url: str = Field(default="", description="IdP metadata URL")
    idp_metadata_xml: str = Field(default="", description="Inline IdP metadata XML")
    idp_entity_id: str = Field(default="", description="IdP entity ID (overrides metadata)")
    idp_sso_url: str = Field(default="", description="IdP SSO endpoint (overrides metadata)")
    idp_certificate: str = Field(
        default="", description="IdP signing certificate, PEM or bare base64 (overrides metadata)"
    )
    sp_certificate: str = Field(default="", description="SP certificate (PEM) for metadata")
    sp_private_key: str = Field(default="", description="SP private key (PEM, from env)")
    slo_url: str = Field(default="", description="SP single logout URL")
    sign_requests: bool = Field(default=False, description="Sign AuthnRequests")
    want_assertions_signed: bool = Field(
        default=True, description="Reject responses without a valid IdP signature"
    )
    attribute_map: dict[str, str] = Field(
        default_factory=dict,
        description="SAML attribute name -> normalized key (defaults to eduPerson/SCHAC)",
    )
    clock_skew_seconds: int = Field(default=120, description="Tolerance for validity windows")
    landing_path: str = Field(default="/")


# --- LTI Configuration ---


class LTIPlatformConfig(BaseModel):
    """A trusted LMS platform registration."""

    model_config = ConfigDict(frozen=True)

    issuer: str = Field(description="Platform issuer (e.g., 'https://canvas.instructure.com')")
    name: str = Field(default="")
    auth_url: str = Field(description="Platform OIDC authorization endpoint")
    token_url: str = Field(default="")
    jwks_url: str = Field(default="", description="Platform JWKS URL")
    public_key: str = Field(default="", description="Platform public key (PEM), instead of JWKS")
    client_id: str = Field(default="", description="Client ID for this platform (tool default)")
    deployment_id: str = Field(default="", description="Pinned deployment ID (optional)")


class LTIConfig(BaseModel):
    """LTI 1.3 tool configuration."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=False)
    name: str = Field(default="lti")
    issuer: str = Field(default="", description="This tool's issuer, used on deep link responses")
    client_id: str = Field(default="", description="Client ID assigned by the platform")
    deployment_id: str = Field(default="", description="Pinned deployment ID (optional)")
    private_key: str = Field(default="", description="Tool RSA private key (PEM, from env)")
    key_id: str = Field(default="1", description="kid advertised in the tool JWKS")
    platforms: list[LTIPlatformConfig] = Field(default_factory=list)
    same_site: SameSite = Field(
        default=SameSite.NONE,
        description="LTI launches arrive in third-party iframes and need SameSite=None",
    )
    landing_path: str = Field(default="/")


# --- Auth Configuration ---


class StoreBackend(StrEnum):
    """Supported state/nonce/session store backends."""

    MEMORY = "memory"
    REDIS = "redis"


class AuthConfig(BaseModel):
    """Authentication configuration."""

    store_backend: StoreBackend = Field(
        default=StoreBackend.MEMORY,
        description="Backend for state, nonce and session stores: memory or redis",
    )
    login_url: str = Field(default="/login", description="Browser redirect for missing sessions")
    cookie: CookieConfig = Field(default_factory=CookieConfig)
    session_ttl_seconds: int = Field(default=86400, description="Session lifetime")
    state_ttl_seconds: int = Field(default=600, description="CSRF state / nonce lifetime")
    oauth2: list[OAuth2ProviderConfig] = Field(default_factory=list)
    saml: list[SAMLProviderConfig] = Field(default_factory=list)
    lti: LTIConfig = Field(default_factory=LTIConfig)


# --- CORS Configuration ---


class CORSConfig(BaseModel):
    """CORS (Cross-Origin Resource Sharing) configuration."""

    allow_origins: list[str] = Field(
        default_factory=list,
        description="Allowed origins. Empty list means CORS middleware is disabled.",
    )
    allow_credentials: bool = Field(
        default=True, description="Allow credentials (cookies, auth headers)"
    )
    allow_methods: list[str] = Field(default=["GET", "POST", "OPTIONS"])
    allow_headers: list[str] = Field(default=["Content-Type", "X-Request-ID"])


# --- Main Settings ---


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="GATEHOUSE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="gatehouse")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True, description="JSON logging in production")

    # Redis
    redis_url: RedisDsn = Field(
        default="redis://localhost:6379",
        description="Redis connection URL (used when auth.store_backend is redis)",
    )

    # Outbound HTTP (token exchange, userinfo, JWKS, IdP metadata)
    http_timeout_seconds: float = Field(default=10.0)

    # Authentication
    auth: AuthConfig = Field(default_factory=AuthConfig)

    # CORS
    cors: CORSConfig = Field(default_factory=CORSConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Customize settings sources: env vars override YAML config."""
        return (
            init_settings,
            env_settings,
            yaml_config_settings_source,
            dotenv_settings,
            file_secret_settings,
        )


# Global settings instance
settings = Settings()
