"""Tests for the LTI 1.3 tool adapter."""

import base64
import html
import json
import re
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from authlib.jose import JsonWebKey, jwt
from starlette.responses import JSONResponse, PlainTextResponse

from gatehouse.auth.errors import ConfigurationError, ProtocolError, StateError
from gatehouse.auth.providers.lti import LTIProvider
from gatehouse.auth.providers.lti_launch import DL_CLAIM, LTI_CLAIM, ContentItem, LineItem
from gatehouse.config import LTIConfig, LTIPlatformConfig

PLATFORM = "https://canvas.example.edu"
AUTH_URL = "https://canvas.example.edu/api/lti/authorize_redirect"
JWKS_URL = "https://canvas.example.edu/api/lti/security/jwks"
CLIENT_ID = "tool-client"
TARGET = "https://tool.example.com/lti/launch"


def _platform(**overrides) -> LTIPlatformConfig:
    values = {"issuer": PLATFORM, "name": "Canvas", "auth_url": AUTH_URL}
    values.update(overrides)
    return LTIPlatformConfig(**values)


def _config(*platforms: LTIPlatformConfig, **overrides) -> LTIConfig:
    values = {
        "enabled": True,
        "client_id": CLIENT_ID,
        "issuer": "https://tool.example.com",
        "platforms": list(platforms),
    }
    values.update(overrides)
    return LTIConfig(**values)


def _claims(now, nonce: str, **overrides) -> dict:
    iat = int(now.timestamp())
    claims = {
        "iss": PLATFORM,
        "aud": CLIENT_ID,
        "sub": "canvas-user-7",
        "iat": iat,
        "exp": iat + 300,
        "nonce": nonce,
        "name": "Ada Lovelace",
        "email": "ada@example.edu",
        LTI_CLAIM + "message_type": "LtiResourceLinkRequest",
        LTI_CLAIM + "version": "1.3.0",
        LTI_CLAIM + "deployment_id": "deploy-1",
        LTI_CLAIM + "target_link_uri": TARGET,
        LTI_CLAIM + "roles": [
            "http://purl.imsglobal.org/vocab/lis/v2/membership#Instructor",
        ],
        LTI_CLAIM + "context": {"id": "course-101", "title": "Analytical Engines"},
        LTI_CLAIM + "resource_link": {"id": "link-1"},
    }
    claims.update(overrides)
    return claims


def _sign(claims: dict, key_pem: str, kid: str = "plat-1") -> str:
    return jwt.encode({"alg": "RS256", "kid": kid}, claims, key_pem).decode()


@pytest.fixture
def provider(key_public_pem, other_key_pem, sessions, state_store, nonce_store, clock):
    return LTIProvider(
        _config(_platform(public_key=key_public_pem), private_key=other_key_pem),
        sessions=sessions,
        state_store=state_store,
        nonce_store=nonce_store,
        clock=clock,
    )


async def _start(provider, make_request) -> tuple[str, str]:
    """Run the login leg; return (state, nonce)."""
    response = await provider.login(
        make_request(
            query={"iss": PLATFORM, "login_hint": "hint-7", "target_link_uri": TARGET}
        )
    )
    query = parse_qs(urlparse(response.headers["location"]).query)
    return query["state"][0], query["nonce"][0]


class TestConstruction:
    def test_requires_client_id(self, key_public_pem, sessions, state_store):
        with pytest.raises(ConfigurationError, match="client_id"):
            LTIProvider(
                _config(_platform(public_key=key_public_pem), client_id=""),
                sessions=sessions,
                state_store=state_store,
                nonce_store=None,
            )

    def test_requires_platforms(self, sessions, state_store):
        with pytest.raises(ConfigurationError, match="platform"):
            LTIProvider(_config(), sessions=sessions, state_store=state_store, nonce_store=None)

    def test_platform_without_key_rejected(self, sessions, state_store):
        with pytest.raises(ConfigurationError, match="public_key or jwks_url"):
            LTIProvider(
                _config(_platform()), sessions=sessions, state_store=state_store, nonce_store=None
            )

    def test_invalid_platform_key(self, sessions, state_store):
        with pytest.raises(ConfigurationError):
            LTIProvider(
                _config(_platform(public_key="not a key")),
                sessions=sessions,
                state_store=state_store,
                nonce_store=None,
            )

    def test_identity(self, provider):
        assert provider.name == "lti"
        assert provider.provider_type == "lti"


class TestLogin:
    async def test_redirects_to_platform(self, provider, state_store, nonce_store, make_request):
        response = await provider.login(
            make_request(
                query={
                    "iss": PLATFORM,
                    "login_hint": "hint-7",
                    "target_link_uri": TARGET,
                    "client_id": CLIENT_ID,
                    "lti_message_hint": "msg-hint",
                    "lti_deployment_id": "deploy-1",
                }
            )
        )

        assert response.status_code == 307
        location = urlparse(response.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == AUTH_URL
        query = parse_qs(location.query)
        assert query["scope"] == ["openid"]
        assert query["response_type"] == ["id_token"]
        assert query["response_mode"] == ["form_post"]
        assert query["prompt"] == ["none"]
        assert query["client_id"] == [CLIENT_ID]
        assert query["redirect_uri"] == [TARGET]
        assert query["login_hint"] == ["hint-7"]
        assert query["lti_message_hint"] == ["msg-hint"]
        assert query["lti_deployment_id"] == ["deploy-1"]
        assert await nonce_store.exists(query["nonce"][0])
        assert len(state_store) == 1

    async def test_post_login(self, provider, make_request):
        response = await provider.login(
            make_request(
                "POST",
                form={"iss": PLATFORM, "login_hint": "hint-7", "target_link_uri": TARGET},
            )
        )
        assert response.status_code == 307

    async def test_unknown_issuer(self, provider, state_store, make_request):
        response = await provider.login(
            make_request(
                query={
                    "iss": "https://evil.example.com",
                    "login_hint": "h",
                    "target_link_uri": TARGET,
                }
            )
        )

        assert response.status_code == 401
        assert len(state_store) == 0

    async def test_missing_issuer(self, provider, make_request):
        response = await provider.login(make_request(query={"login_hint": "h"}))
        assert response.status_code == 401

    async def test_client_id_mismatch(self, provider, make_request):
        response = await provider.login(
            make_request(
                query={
                    "iss": PLATFORM,
                    "login_hint": "h",
                    "target_link_uri": TARGET,
                    "client_id": "someone-else",
                }
            )
        )
        assert response.status_code == 401

    async def test_platform_client_id_override(
        self, key_public_pem, sessions, state_store, make_request
    ):
        provider = LTIProvider(
            _config(_platform(public_key=key_public_pem, client_id="per-platform")),
            sessions=sessions,
            state_store=state_store,
            nonce_store=None,
        )

        response = await provider.login(
            make_request(
                query={"iss": PLATFORM, "login_hint": "h", "target_link_uri": TARGET}
            )
        )

        query = parse_qs(urlparse(response.headers["location"]).query)
        assert query["client_id"] == ["per-platform"]


class TestLaunch:
    async def test_successful_launch(
        self, provider, key_pem, session_store, make_request, cookies_of, clock
    ):
        state, nonce = await _start(provider, make_request)
        id_token = _sign(_claims(clock(), nonce), key_pem)

        response = await provider.launch(
            make_request("POST", form={"id_token": id_token, "state": state})
        )

        assert response.status_code == 307
        [cookie] = cookies_of(response)
        assert "SameSite" in cookie
        session_id = cookie.split(";", 1)[0].split("=", 1)[1]
        session = await session_store.get(session_id)
        assert session.user.id == "canvas-user-7"
        assert session.user.provider == "lti"
        assert session.user.email_verified is True
        assert session.user.extra["context_id"] == "course-101"
        assert session.user.access_token == ""

    async def test_launch_record_reaches_success_callback(
        self, key_public_pem, key_pem, sessions, state_store, nonce_store, make_request, clock
    ):
        seen = {}

        async def on_success(request, user):
            seen["launch"] = request.state.lti_launch
            seen["user"] = user
            return JSONResponse({"ok": True})

        provider = LTIProvider(
            _config(_platform(public_key=key_public_pem)),
            sessions=sessions,
            state_store=state_store,
            nonce_store=nonce_store,
            on_success=on_success,
            clock=clock,
        )
        state, nonce = await _start(provider, make_request)
        id_token = _sign(_claims(clock(), nonce), key_pem)

        response = await provider.launch(
            make_request("POST", form={"id_token": id_token, "state": state})
        )

        assert response.status_code == 200
        assert seen["launch"].is_instructor()
        assert seen["launch"].context_title == "Analytical Engines"
        assert seen["user"].access_token == id_token

    async def test_wrong_audience_rejected_before_session(
        self, provider, key_pem, session_store, make_request, clock
    ):
        on_error = AsyncMock(return_value=PlainTextResponse("no", status_code=401))
        provider._on_error = on_error
        state, nonce = await _start(provider, make_request)
        id_token = _sign(_claims(clock(), nonce, aud="other-client"), key_pem)

        response = await provider.launch(
            make_request("POST", form={"id_token": id_token, "state": state})
        )

        assert response.status_code == 401
        assert isinstance(on_error.call_args[0][1], ProtocolError)
        assert "audience" in str(on_error.call_args[0][1])
        assert len(session_store) == 0

    @pytest.mark.parametrize(
        ("aud", "azp", "accepted"),
        [
            ([CLIENT_ID], None, True),
            ([CLIENT_ID, "other"], CLIENT_ID, True),
            ([CLIENT_ID, "other"], None, False),
            ([CLIENT_ID, "other"], "other", False),
            (["other"], None, False),
        ],
    )
    async def test_audience_lists(
        self, provider, key_pem, session_store, make_request, clock, aud, azp, accepted
    ):
        state, nonce = await _start(provider, make_request)
        overrides = {"aud": aud}
        if azp is not None:
            overrides["azp"] = azp
        id_token = _sign(_claims(clock(), nonce, **overrides), key_pem)

        response = await provider.launch(
            make_request("POST", form={"id_token": id_token, "state": state})
        )

        assert (response.status_code == 307) is accepted
        assert len(session_store) == (1 if accepted else 0)

    async def test_reused_nonce_rejected(
        self, provider, key_pem, session_store, make_request, clock
    ):
        state, nonce = await _start(provider, make_request)
        id_token = _sign(_claims(clock(), nonce), key_pem)
        first = await provider.launch(
            make_request("POST", form={"id_token": id_token, "state": state})
        )
        assert first.status_code == 307

        # Fresh state, replayed id_token
        state2, _ = await _start(provider, make_request)
        second = await provider.launch(
            make_request("POST", form={"id_token": id_token, "state": state2})
        )

        assert second.status_code == 401
        assert len(session_store) == 1

    async def test_unissued_nonce_rejected(self, provider, key_pem, make_request, clock):
        state, _ = await _start(provider, make_request)
        id_token = _sign(_claims(clock(), "made-up-nonce"), key_pem)

        response = await provider.launch(
            make_request("POST", form={"id_token": id_token, "state": state})
        )

        assert response.status_code == 401

    async def test_missing_nonce_claim(self, provider, key_pem, make_request, clock):
        on_error = AsyncMock(return_value=PlainTextResponse("no", status_code=401))
        provider._on_error = on_error
        state, _ = await _start(provider, make_request)
        claims = _claims(clock(), "x")
        del claims["nonce"]

        await provider.launch(
            make_request("POST", form={"id_token": _sign(claims, key_pem), "state": state})
        )

        assert isinstance(on_error.call_args[0][1], StateError)

    async def test_missing_state(self, provider, key_pem, nonce_store, make_request, clock):
        _, nonce = await _start(provider, make_request)
        id_token = _sign(_claims(clock(), nonce), key_pem)

        response = await provider.launch(make_request("POST", form={"id_token": id_token}))

        assert response.status_code == 401
        # Rejected before the token was looked at
        assert await nonce_store.exists(nonce)

    async def test_missing_id_token(self, provider, make_request):
        response = await provider.launch(make_request("POST", form={"state": "s"}))
        assert response.status_code == 401

    async def test_bad_signature(self, provider, other_key_pem, make_request, clock):
        state, nonce = await _start(provider, make_request)
        id_token = _sign(_claims(clock(), nonce), other_key_pem)

        response = await provider.launch(
            make_request("POST", form={"id_token": id_token, "state": state})
        )

        assert response.status_code == 401

    async def test_unknown_issuer_in_token(self, provider, key_pem, make_request, clock):
        state, nonce = await _start(provider, make_request)
        id_token = _sign(_claims(clock(), nonce, iss="https://evil.example.com"), key_pem)

        response = await provider.launch(
            make_request("POST", form={"id_token": id_token, "state": state})
        )

        assert response.status_code == 401

    async def test_expired_token(self, provider, key_pem, make_request, clock):
        state, nonce = await _start(provider, make_request)
        claims = _claims(clock(), nonce)
        claims["exp"] = claims["iat"] - 600

        response = await provider.launch(
            make_request("POST", form={"id_token": _sign(claims, key_pem), "state": state})
        )

        assert response.status_code == 401

    async def test_unsigned_token_rejected(self, provider, make_request, clock):
        state, nonce = await _start(provider, make_request)
        header = "eyJhbGciOiJub25lIn0"  # {"alg":"none"}
        payload = (
            base64.urlsafe_b64encode(json.dumps(_claims(clock(), nonce)).encode())
            .rstrip(b"=")
            .decode()
        )

        response = await provider.launch(
            make_request("POST", form={"id_token": f"{header}.{payload}.", "state": state})
        )

        assert response.status_code == 401

    async def test_malformed_token(self, provider, make_request):
        state, _ = await _start(provider, make_request)

        response = await provider.launch(
            make_request("POST", form={"id_token": "garbage", "state": state})
        )

        assert response.status_code == 401

    async def test_deployment_pin(
        self, key_public_pem, key_pem, sessions, state_store, nonce_store, make_request, clock
    ):
        provider = LTIProvider(
            _config(_platform(public_key=key_public_pem, deployment_id="deploy-2")),
            sessions=sessions,
            state_store=state_store,
            nonce_store=nonce_store,
            clock=clock,
        )
        state, nonce = await _start(provider, make_request)

        response = await provider.launch(
            make_request(
                "POST", form={"id_token": _sign(_claims(clock(), nonce), key_pem), "state": state}
            )
        )

        assert response.status_code == 401

    async def test_without_nonce_store(
        self, key_public_pem, key_pem, sessions, state_store, make_request, clock
    ):
        provider = LTIProvider(
            _config(_platform(public_key=key_public_pem)),
            sessions=sessions,
            state_store=state_store,
            nonce_store=None,
            clock=clock,
        )
        state, nonce = await _start(provider, make_request)

        response = await provider.launch(
            make_request(
                "POST", form={"id_token": _sign(_claims(clock(), nonce), key_pem), "state": state}
            )
        )

        assert response.status_code == 307


class TestPlatformJWKS:
    async def test_jwks_fetched_and_cached(
        self, key_public_pem, key_pem, sessions, state_store, nonce_store, make_request, clock
    ):
        calls = []
        jwk = JsonWebKey.import_key(key_public_pem, {"kty": "RSA", "kid": "plat-1"})

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"keys": [jwk.as_dict()]})

        provider = LTIProvider(
            _config(_platform(jwks_url=JWKS_URL)),
            sessions=sessions,
            state_store=state_store,
            nonce_store=nonce_store,
            http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            clock=clock,
        )

        for _ in range(2):
            state, nonce = await _start(provider, make_request)
            response = await provider.launch(
                make_request(
                    "POST",
                    form={"id_token": _sign(_claims(clock(), nonce), key_pem), "state": state},
                )
            )
            assert response.status_code == 307

        assert len(calls) == 1
        assert str(calls[0].url) == JWKS_URL

    async def test_jwks_refetched_after_ttl(
        self, key_public_pem, sessions, state_store, nonce_store, clock
    ):
        calls = []
        jwk = JsonWebKey.import_key(key_public_pem, {"kty": "RSA", "kid": "plat-1"})

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"keys": [jwk.as_dict()]})

        provider = LTIProvider(
            _config(_platform(jwks_url=JWKS_URL)),
            sessions=sessions,
            state_store=state_store,
            nonce_store=nonce_store,
            http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            clock=clock,
        )

        await provider._platform_key(provider.platform(PLATFORM))
        clock.advance(hours=2)
        await provider._platform_key(provider.platform(PLATFORM))

        assert len(calls) == 2

    async def test_unknown_kid_forces_one_refetch(
        self, key_pem, key_public_pem, other_key_pem, sessions, state_store, nonce_store,
        make_request, clock,
    ):
        calls = []
        retired = JsonWebKey.import_key(other_key_pem, {"kty": "RSA", "kid": "plat-0"})
        current = JsonWebKey.import_key(key_public_pem, {"kty": "RSA", "kid": "plat-1"})

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            keys = [retired.as_dict()]
            if len(calls) > 1:
                keys.insert(0, current.as_dict())
            return httpx.Response(200, json={"keys": keys})

        provider = LTIProvider(
            _config(_platform(jwks_url=JWKS_URL)),
            sessions=sessions,
            state_store=state_store,
            nonce_store=nonce_store,
            http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            clock=clock,
        )
        await provider._platform_key(provider.platform(PLATFORM))

        # Platform rotated to plat-1 while the old key set is still cached
        for _ in range(2):
            state, nonce = await _start(provider, make_request)
            response = await provider.launch(
                make_request(
                    "POST",
                    form={"id_token": _sign(_claims(clock(), nonce), key_pem), "state": state},
                )
            )
            assert response.status_code == 307

        assert len(calls) == 2

    async def test_kid_missing_after_refetch_rejected(
        self, other_key_pem, key_public_pem, sessions, state_store, nonce_store,
        make_request, clock,
    ):
        calls = []
        jwk = JsonWebKey.import_key(key_public_pem, {"kty": "RSA", "kid": "plat-1"})

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"keys": [jwk.as_dict()]})

        provider = LTIProvider(
            _config(_platform(jwks_url=JWKS_URL)),
            sessions=sessions,
            state_store=state_store,
            nonce_store=nonce_store,
            http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            clock=clock,
        )
        await provider._platform_key(provider.platform(PLATFORM))
        state, nonce = await _start(provider, make_request)

        response = await provider.launch(
            make_request(
                "POST",
                form={
                    "id_token": _sign(_claims(clock(), nonce), other_key_pem, kid="rogue"),
                    "state": state,
                },
            )
        )

        assert response.status_code == 401
        assert len(calls) == 2

    async def test_jwks_unavailable(
        self, key_pem, sessions, state_store, nonce_store, make_request, clock
    ):
        provider = LTIProvider(
            _config(_platform(jwks_url=JWKS_URL)),
            sessions=sessions,
            state_store=state_store,
            nonce_store=nonce_store,
            http=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda request: httpx.Response(500))
            ),
            clock=clock,
        )
        state, nonce = await _start(provider, make_request)

        response = await provider.launch(
            make_request(
                "POST", form={"id_token": _sign(_claims(clock(), nonce), key_pem), "state": state}
            )
        )

        assert response.status_code == 401


class TestToolKeys:
    def test_jwks_publishes_public_key_only(self, provider):
        jwks = provider.jwks()

        [key] = jwks["keys"]
        assert key["kty"] == "RSA"
        assert key["kid"] == "1"
        assert key["alg"] == "RS256"
        assert key["use"] == "sig"
        assert "d" not in key

    def test_jwks_without_key(self, key_public_pem, sessions, state_store):
        provider = LTIProvider(
            _config(_platform(public_key=key_public_pem)),
            sessions=sessions,
            state_store=state_store,
            nonce_store=None,
        )
        with pytest.raises(ConfigurationError):
            provider.jwks()


class TestDeepLinking:
    async def _deep_link_launch(self, provider, key_pem, make_request, clock):
        state, nonce = await _start(provider, make_request)
        claims = _claims(
            clock(),
            nonce,
            **{
                LTI_CLAIM + "message_type": "LtiDeepLinkingRequest",
                DL_CLAIM + "deep_linking_settings": {
                    "deep_link_return_url": "https://canvas.example.edu/deep_link?x=1&y=2",
                    "accept_types": ["ltiResourceLink"],
                    "accept_multiple": True,
                    "data": "opaque-platform-data",
                },
            },
        )
        response = await provider.launch(
            make_request("POST", form={"id_token": _sign(claims, key_pem), "state": state})
        )
        assert response.status_code == 200
        return provider._launch

    @pytest.fixture
    def dl_provider(
        self, key_public_pem, other_key_pem, sessions, state_store, nonce_store, clock
    ):
        async def on_success(request, user):
            dl_provider._launch = request.state.lti_launch
            return JSONResponse({})

        dl_provider = LTIProvider(
            _config(_platform(public_key=key_public_pem), private_key=other_key_pem),
            sessions=sessions,
            state_store=state_store,
            nonce_store=nonce_store,
            on_success=on_success,
            clock=clock,
        )
        return dl_provider

    async def test_response_jwt(self, dl_provider, key_pem, make_request, clock):
        launch = await self._deep_link_launch(dl_provider, key_pem, make_request, clock)
        assert launch.is_deep_linking_request()
        items = [
            ContentItem(
                title="Chapter 1",
                url="https://tool.example.com/ch1",
                line_item=LineItem(score_maximum=10, label="Quiz 1"),
            )
        ]

        token = dl_provider.create_deep_link_response(launch, items)

        key_set = JsonWebKey.import_key_set(dl_provider.jwks())
        claims = jwt.decode(token, key_set)
        assert claims["iss"] == "https://tool.example.com"
        assert claims["aud"] == PLATFORM
        assert claims["exp"] - claims["iat"] == 300
        assert claims["nonce"] == launch.raw_claims["nonce"]
        assert claims[LTI_CLAIM + "message_type"] == "LtiDeepLinkingResponse"
        assert claims[LTI_CLAIM + "version"] == "1.3.0"
        assert claims[LTI_CLAIM + "deployment_id"] == "deploy-1"
        assert claims[DL_CLAIM + "data"] == "opaque-platform-data"
        assert claims[DL_CLAIM + "content_items"] == [
            {
                "type": "ltiResourceLink",
                "title": "Chapter 1",
                "url": "https://tool.example.com/ch1",
                "lineItem": {"scoreMaximum": 10, "label": "Quiz 1"},
            }
        ]

    async def test_form_posts_jwt_to_return_url(self, dl_provider, key_pem, make_request, clock):
        launch = await self._deep_link_launch(dl_provider, key_pem, make_request, clock)

        response = dl_provider.deep_link_form(launch, [ContentItem(title="x")])

        body = response.body.decode()
        action = re.search(r'action="([^"]+)"', body).group(1)
        assert html.unescape(action) == "https://canvas.example.edu/deep_link?x=1&y=2"
        token = html.unescape(re.search(r'name="JWT" value="([^"]+)"', body).group(1))
        assert token.count(".") == 2

    async def test_requires_deep_linking_launch(self, provider, key_pem, make_request, clock):
        seen = {}

        async def on_success(request, user):
            seen["launch"] = request.state.lti_launch
            return JSONResponse({})

        provider._on_success = on_success
        state, nonce = await _start(provider, make_request)
        await provider.launch(
            make_request(
                "POST", form={"id_token": _sign(_claims(clock(), nonce), key_pem), "state": state}
            )
        )

        with pytest.raises(ProtocolError):
            provider.create_deep_link_response(seen["launch"], [])

    async def test_form_requires_deep_linking_launch(self, provider, key_pem, make_request, clock):
        seen = {}

        async def on_success(request, user):
            seen["launch"] = request.state.lti_launch
            return JSONResponse({})

        provider._on_success = on_success
        state, nonce = await _start(provider, make_request)
        await provider.launch(
            make_request(
                "POST", form={"id_token": _sign(_claims(clock(), nonce), key_pem), "state": state}
            )
        )

        assert seen["launch"].deep_linking_settings is None
        with pytest.raises(ProtocolError, match="not a deep linking request"):
            provider.deep_link_form(seen["launch"], [ContentItem(title="x")])
