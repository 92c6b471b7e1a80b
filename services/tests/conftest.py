"""
Top-level test configuration for Gatehouse.
"""

import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

# Ensure test-friendly defaults
os.environ.setdefault("GATEHOUSE_JSON_LOGS", "false")
os.environ.setdefault("GATEHOUSE_LOG_LEVEL", "DEBUG")
os.environ.setdefault("GATEHOUSE_CONFIG_FILE", "/nonexistent/gatehouse.yaml")

import pytest  # noqa: E402
from cryptography import x509  # noqa: E402
from cryptography.hazmat.primitives import hashes, serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402
from cryptography.x509.oid import NameOID  # noqa: E402
from starlette.requests import Request  # noqa: E402

from gatehouse.auth.sessions import SessionIssuer  # noqa: E402
from gatehouse.auth.stores.memory import (  # noqa: E402
    MemoryNonceStore,
    MemorySessionStore,
    MemoryStateStore,
)
from gatehouse.config import CookieConfig  # noqa: E402

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock pinned to a settable instant."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_store(clock):
    return MemoryStateStore(clock)


@pytest.fixture
def nonce_store(clock):
    return MemoryNonceStore(clock)


@pytest.fixture
def session_store(clock):
    return MemorySessionStore(clock)


@pytest.fixture
def sessions(session_store, clock):
    return SessionIssuer(session_store, CookieConfig(), timedelta(hours=1), clock)


# --- Key material ---


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def private_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


def public_pem(key: rsa.RSAPrivateKey) -> str:
    return (
        key.public_key()
        .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
        .decode()
    )


def self_signed_cert(key: rsa.RSAPrivateKey, common_name: str = "idp.example.edu") -> str:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now(UTC) - timedelta(days=1))
        .not_valid_after(datetime.now(UTC) + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode()


@pytest.fixture(scope="session")
def key_pem(rsa_key) -> str:
    return private_pem(rsa_key)


@pytest.fixture(scope="session")
def key_public_pem(rsa_key) -> str:
    return public_pem(rsa_key)


@pytest.fixture(scope="session")
def cert_pem(rsa_key) -> str:
    return self_signed_cert(rsa_key)


@pytest.fixture(scope="session")
def other_key_pem(other_rsa_key) -> str:
    return private_pem(other_rsa_key)


@pytest.fixture(scope="session")
def other_cert_pem(other_rsa_key) -> str:
    return self_signed_cert(other_rsa_key, "attacker.example.com")


# --- Requests ---


def build_request(
    method: str = "GET",
    path: str = "/",
    query: dict[str, str] | None = None,
    form: dict[str, str] | None = None,
    cookies: dict[str, str] | None = None,
) -> Request:
    """A Starlette request with an optional urlencoded form body."""
    body = urlencode(form).encode() if form is not None else b""
    headers: list[tuple[bytes, bytes]] = []
    if form is not None:
        headers.append((b"content-type", b"application/x-www-form-urlencoded"))
        headers.append((b"content-length", str(len(body)).encode()))
    if cookies:
        headers.append((b"cookie", "; ".join(f"{k}={v}" for k, v in cookies.items()).encode()))

    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "https",
        "server": ("gatehouse.test", 443),
        "client": ("127.0.0.1", 50000),
        "root_path": "",
        "path": path,
        "raw_path": path.encode(),
        "query_string": urlencode(query or {}).encode(),
        "headers": headers,
    }

    async def receive() -> dict[str, object]:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


@pytest.fixture
def make_request() -> Callable[..., Request]:
    return build_request


def set_cookies(response) -> list[str]:
    return response.headers.getlist("set-cookie")


@pytest.fixture
def cookies_of() -> Callable[..., list[str]]:
    return set_cookies
