"""SAML 2.0 Web SSO service-provider adapter.

Login sends an AuthnRequest over the HTTP-Redirect binding with a single-use
relay state. The Assertion Consumer Service accepts the HTTP-POST binding and
checks, in order: relay state, response status, XML signature (signxml),
issuer, validity window, audience and recipient; only then are attributes read.

XML is always parsed with defusedxml (no entity expansion, no DTDs).
"""

import base64
import binascii
import zlib
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlencode
from xml.sax.saxutils import escape, quoteattr

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeET
from signxml import XMLVerifier
from signxml.exceptions import SignXMLException
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from gatehouse.auth.clock import Clock, generate_request_id, utc_now
from gatehouse.auth.errors import AuthError, ConfigurationError, ProtocolError
from gatehouse.auth.fetchers import DEFAULT_TIMEOUT, http_client
from gatehouse.auth.identity import User
from gatehouse.auth.providers.base import (
    DEFAULT_STATE_TTL,
    AuthProvider,
    ErrorCallback,
    SuccessCallback,
)
from gatehouse.auth.providers.saml_attributes import DEFAULT_ATTRIBUTE_MAP
from gatehouse.auth.sessions import SessionIssuer
from gatehouse.auth.stores.protocol import StateStore
from gatehouse.config import SAMLProviderConfig
from gatehouse.logging_config import get_logger

logger = get_logger(__name__)

PROTOCOL_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
ASSERTION_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
METADATA_NS = "urn:oasis:names:tc:SAML:2.0:metadata"
DSIG_NS = "http://www.w3.org/2000/09/xmldsig#"
NS = {"samlp": PROTOCOL_NS, "saml": ASSERTION_NS, "md": METADATA_NS, "ds": DSIG_NS}

STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
BINDING_HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
BINDING_HTTP_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
NAMEID_TRANSIENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:transient"
NAMEID_PERSISTENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:persistent"
SIG_ALG_RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"


@dataclass(frozen=True)
class IdPMetadata:
    """What the SP needs to know about its identity provider."""

    entity_id: str = ""
    sso_url: str = ""
    certificate: str = ""
    slo_url: str = ""


# --- XML helpers ---


def _parse_xml(data: bytes | str) -> Any:
    try:
        return SafeET.fromstring(data)
    except (SafeET.ParseError, DefusedXmlException) as e:
        raise ProtocolError(f"Invalid SAML XML: {e}") from e


def _text(element: Any, path: str) -> str:
    node = element.find(path, NS)
    if node is None or node.text is None:
        return ""
    return node.text.strip()


def _parse_instant(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ProtocolError(f"Invalid SAML timestamp: {value}") from e
    if parsed.tzinfo is None:
        raise ProtocolError(f"SAML timestamp without timezone: {value}")
    return parsed


def _format_instant(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def certificate_body(certificate: str) -> str:
    """Base64 body of a certificate, without PEM armour or whitespace."""
    lines = [
        line.strip()
        for line in certificate.strip().splitlines()
        if line.strip() and not line.startswith("-----")
    ]
    return "".join(lines)


def certificate_pem(certificate: str) -> str:
    """Normalize a PEM or bare-base64 certificate to PEM."""
    body = certificate_body(certificate)
    wrapped = "\n".join(body[i : i + 64] for i in range(0, len(body), 64))
    return f"-----BEGIN CERTIFICATE-----\n{wrapped}\n-----END CERTIFICATE-----\n"


def parse_idp_metadata(xml: bytes | str) -> IdPMetadata:
    """Extract entity id, SSO/SLO endpoints and signing certificate from IdP metadata."""
    try:
        root = _parse_xml(xml)
    except ProtocolError as e:
        raise ConfigurationError(f"Invalid IdP metadata: {e}") from e

    if root.tag == f"{{{METADATA_NS}}}EntityDescriptor":
        descriptor = root
    else:
        descriptor = root.find(".//md:EntityDescriptor", NS)
    idp = descriptor.find("md:IDPSSODescriptor", NS) if descriptor is not None else None
    if idp is None:
        raise ConfigurationError("IdP metadata has no IDPSSODescriptor")

    def endpoint(tag: str) -> str:
        services = idp.findall(f"md:{tag}", NS)
        # Prefer the redirect binding, since that is how requests are sent
        for service in services:
            if service.get("Binding") == BINDING_HTTP_REDIRECT:
                return service.get("Location", "")
        return services[0].get("Location", "") if services else ""

    certificate = ""
    for key in idp.findall("md:KeyDescriptor", NS):
        if key.get("use", "signing") == "signing":
            certificate = _text(key, "ds:KeyInfo/ds:X509Data/ds:X509Certificate")
            if certificate:
                break

    return IdPMetadata(
        entity_id=descriptor.get("entityID", ""),
        sso_url=endpoint("SingleSignOnService"),
        certificate=certificate,
        slo_url=endpoint("SingleLogoutService"),
    )


class SAMLServiceProvider(AuthProvider):
    """SAML 2.0 SP for Shibboleth / eduGAIN style identity providers."""

    redirect_status = 302

    def __init__(
        self,
        config: SAMLProviderConfig,
        *,
        sessions: SessionIssuer,
        state_store: StateStore,
        state_ttl: timedelta = DEFAULT_STATE_TTL,
        http: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
        clock: Clock = utc_now,
    ) -> None:
        if not config.entity_id:
            raise ConfigurationError(f"SAML provider '{config.name}' requires entity_id")
        if not config.acs_url:
            raise ConfigurationError(f"SAML provider '{config.name}' requires acs_url")
        if not (config.idp_metadata_url or config.idp_metadata_xml or config.idp_sso_url):
            raise ConfigurationError(
                f"SAML provider '{config.name}' requires idp_metadata_url, "
                "idp_metadata_xml or idp_sso_url"
            )
        if config.want_assertions_signed and not (
            config.idp_certificate or config.idp_metadata_url or config.idp_metadata_xml
        ):
            raise ConfigurationError(
                f"SAML provider '{config.name}' wants signed assertions but has no IdP certificate"
            )

        super().__init__(
            name=config.name,
            display_name=config.display_name,
            sessions=sessions,
            state_store=state_store,
            state_ttl=state_ttl,
            landing_path=config.landing_path,
            on_success=on_success,
            on_error=on_error,
            clock=clock,
        )
        self._config = config
        self._http = http
        self._timeout = timeout
        self._attribute_map = config.attribute_map or DEFAULT_ATTRIBUTE_MAP
        self._skew = timedelta(seconds=config.clock_skew_seconds)

        self._signing_key: rsa.RSAPrivateKey | None = None
        if config.sign_requests:
            self._signing_key = self._load_signing_key(config)

        self._idp_metadata: IdPMetadata | None = None
        if config.idp_metadata_xml:
            self._idp_metadata = self._with_overrides(parse_idp_metadata(config.idp_metadata_xml))
        elif not config.idp_metadata_url:
            self._idp_metadata = self._with_overrides(IdPMetadata())

    @property
    def provider_type(self) -> str:
        return "saml"

    @staticmethod
    def _load_signing_key(config: SAMLProviderConfig) -> rsa.RSAPrivateKey:
        if not config.sp_private_key:
            raise ConfigurationError(
                f"SAML provider '{config.name}' signs requests but has no sp_private_key"
            )
        try:
            key = serialization.load_pem_private_key(config.sp_private_key.encode(), password=None)
        except ValueError as e:
            raise ConfigurationError(f"Invalid SP private key for '{config.name}'") from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ConfigurationError(f"SP private key for '{config.name}' must be RSA")
        return key

    def _with_overrides(self, metadata: IdPMetadata) -> IdPMetadata:
        """Explicit configuration wins over anything found in metadata."""
        return replace(
            metadata,
            entity_id=self._config.idp_entity_id or metadata.entity_id,
            sso_url=self._config.idp_sso_url or metadata.sso_url,
            certificate=self._config.idp_certificate or metadata.certificate,
        )

    async def idp_metadata(self) -> IdPMetadata:
        """Resolved IdP metadata, fetched once from idp_metadata_url if needed."""
        if self._idp_metadata is not None:
            return self._idp_metadata

        try:
            async with http_client(self._http, self._timeout) as client:
                resp = await client.get(self._config.idp_metadata_url)
                resp.raise_for_status()
                content = resp.content
        except httpx.HTTPError as e:
            raise ProtocolError(f"Failed to fetch IdP metadata: {e}") from e

        metadata = self._with_overrides(parse_idp_metadata(content))
        if not metadata.sso_url:
            raise ConfigurationError("IdP metadata has no SingleSignOnService")
        if self._config.want_assertions_signed and not metadata.certificate:
            raise ConfigurationError("IdP metadata has no signing certificate")

        self._idp_metadata = metadata
        logger.info("IdP metadata loaded", provider=self.name, idp=metadata.entity_id)
        return metadata

    # --- login ---

    def build_authn_request(self, request_id: str, destination: str) -> str:
        """AuthnRequest XML asking for a transient NameID posted to our ACS."""
        return (
            f'<samlp:AuthnRequest xmlns:samlp="{PROTOCOL_NS}" xmlns:saml="{ASSERTION_NS}"'
            f" ID={quoteattr(request_id)}"
            ' Version="2.0"'
            f' IssueInstant="{_format_instant(self._clock())}"'
            f" Destination={quoteattr(destination)}"
            f" AssertionConsumerServiceURL={quoteattr(self._config.acs_url)}"
            f' ProtocolBinding="{BINDING_HTTP_POST}">'
            f"<saml:Issuer>{escape(self._config.entity_id)}</saml:Issuer>"
            f'<samlp:NameIDPolicy Format="{NAMEID_TRANSIENT}" AllowCreate="true"/>'
            "</samlp:AuthnRequest>"
        )

    def redirect_url(self, sso_url: str, authn_request: str, relay_state: str) -> str:
        """HTTP-Redirect binding: raw DEFLATE, base64, optional query signature."""
        deflated = zlib.compress(authn_request.encode())[2:-4]
        params = [
            ("SAMLRequest", base64.b64encode(deflated).decode()),
            ("RelayState", relay_state),
        ]
        if self._signing_key is not None:
            params.append(("SigAlg", SIG_ALG_RSA_SHA256))
            signed_query = urlencode(params)
            signature = self._signing_key.sign(
                signed_query.encode(), padding.PKCS1v15(), hashes.SHA256()
            )
            params.append(("Signature", base64.b64encode(signature).decode()))

        separator = "&" if "?" in sso_url else "?"
        return f"{sso_url}{separator}{urlencode(params)}"

    async def login(self, request: Request) -> Response:
        try:
            idp = await self.idp_metadata()
            relay_state = await self._issue_state()
        except AuthError as e:
            return await self._handle_error(request, e)

        authn_request = self.build_authn_request(generate_request_id(), idp.sso_url)
        logger.debug("Redirecting to SAML IdP", provider=self.name, idp=idp.entity_id)
        return RedirectResponse(
            self.redirect_url(idp.sso_url, authn_request, relay_state),
            status_code=self.redirect_status,
        )

    # --- assertion consumer service ---

    async def callback(self, request: Request) -> Response:
        try:
            user = await self._authenticate(request)
            return await self._complete_login(request, user)
        except AuthError as e:
            return await self._handle_error(request, e)

    async def _authenticate(self, request: Request) -> User:
        if request.method != "POST":
            raise ProtocolError("SAML response must use the HTTP-POST binding")

        form = await request.form()
        saml_response = str(form.get("SAMLResponse") or "")
        if not saml_response:
            raise ProtocolError("Missing SAMLResponse")

        relay_state = str(form.get("RelayState") or "")
        if relay_state:
            await self._consume_state(relay_state, label="relay state")

        try:
            xml_bytes = base64.b64decode(saml_response, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ProtocolError("Invalid base64 SAMLResponse") from e

        idp = await self.idp_metadata()
        return self.parse_response(xml_bytes, idp)

    def parse_response(self, xml_bytes: bytes, idp: IdPMetadata) -> User:
        """Validate a decoded SAML Response and map it to a User."""
        root = _parse_xml(xml_bytes)
        if root.tag != f"{{{PROTOCOL_NS}}}Response":
            raise ProtocolError("Not a SAML Response")

        status_code = root.find("samlp:Status/samlp:StatusCode", NS)
        status = status_code.get("Value", "") if status_code is not None else ""
        if status != STATUS_SUCCESS:
            raise ProtocolError(f"SAML authentication failed: {status}")

        assertion = self._trusted_assertion(root, xml_bytes, idp)

        issuer = _text(assertion, "saml:Issuer") or _text(root, "saml:Issuer")
        if idp.entity_id and issuer and issuer != idp.entity_id:
            raise ProtocolError("SAML issuer mismatch")

        self._check_conditions(assertion)

        name_id = _text(assertion, "saml:Subject/saml:NameID")
        if not name_id:
            raise ProtocolError("No NameID in SAML assertion")

        user = User(id=name_id, provider=self.name)
        authn = assertion.find("saml:AuthnStatement", NS)
        user.extra["idp_entity_id"] = issuer
        user.extra["session_index"] = authn.get("SessionIndex", "") if authn is not None else ""
        user.extra["authn_instant"] = authn.get("AuthnInstant", "") if authn is not None else ""

        self._map_attributes(assertion, user)
        return user

    def _trusted_assertion(self, root: Any, xml_bytes: bytes, idp: IdPMetadata) -> Any:
        """The assertion to read from: taken from the signed subtree when signatures are required."""
        if root.find("saml:EncryptedAssertion", NS) is not None:
            raise ProtocolError("Encrypted assertions are not supported")

        if not self._config.want_assertions_signed:
            assertion = root.find("saml:Assertion", NS)
            if assertion is None:
                raise ProtocolError("No assertion in SAML response")
            return assertion

        if not idp.certificate:
            raise ConfigurationError("No IdP signing certificate configured")
        try:
            result = XMLVerifier().verify(xml_bytes, x509_cert=certificate_pem(idp.certificate))
        except SignXMLException as e:
            raise ProtocolError(f"SAML signature validation failed: {e}") from e

        signed = result.signed_xml
        if signed.tag == f"{{{ASSERTION_NS}}}Assertion":
            return signed
        if signed.tag == f"{{{PROTOCOL_NS}}}Response":
            assertion = signed.find("saml:Assertion", NS)
            if assertion is not None:
                return assertion
        raise ProtocolError("Signature does not cover an assertion")

    def _check_conditions(self, assertion: Any) -> None:
        now = self._clock()

        conditions = assertion.find("saml:Conditions", NS)
        if conditions is not None:
            not_before = conditions.get("NotBefore")
            if not_before and now + self._skew < _parse_instant(not_before):
                raise ProtocolError("SAML assertion not yet valid")
            not_on_or_after = conditions.get("NotOnOrAfter")
            if not_on_or_after and now - self._skew >= _parse_instant(not_on_or_after):
                raise ProtocolError("SAML assertion expired")

            audiences = [
                (node.text or "").strip()
                for node in conditions.findall("saml:AudienceRestriction/saml:Audience", NS)
            ]
            if audiences and self._config.entity_id not in audiences:
                raise ProtocolError("SAML audience mismatch")

        confirmation = assertion.find(
            "saml:Subject/saml:SubjectConfirmation/saml:SubjectConfirmationData", NS
        )
        if confirmation is not None:
            expiry = confirmation.get("NotOnOrAfter")
            if expiry and now - self._skew >= _parse_instant(expiry):
                raise ProtocolError("SAML subject confirmation expired")
            recipient = confirmation.get("Recipient")
            if recipient and recipient != self._config.acs_url:
                raise ProtocolError("SAML recipient mismatch")

    def _map_attributes(self, assertion: Any, user: User) -> None:
        for statement in assertion.findall("saml:AttributeStatement", NS):
            for attribute in statement.findall("saml:Attribute", NS):
                name = attribute.get("Name", "")
                friendly = attribute.get("FriendlyName", "")
                key = self._attribute_map.get(name) or self._attribute_map.get(friendly) or name
                values = [
                    (value.text or "").strip()
                    for value in attribute.findall("saml:AttributeValue", NS)
                ]
                if len(values) == 1:
                    user.extra[key] = values[0]
                    user.raw[name] = values[0]
                elif values:
                    user.extra[key] = ",".join(values)
                    user.raw[name] = values

        if user.extra.get("eppn"):
            user.id = user.extra["eppn"]
        if user.extra.get("mail"):
            # Released by the institution, not typed in by the user
            user.email = user.extra["mail"]
            user.email_verified = True
        user.name = (
            user.extra.get("display_name")
            or user.extra.get("cn")
            or f"{user.extra.get('given_name', '')} {user.extra.get('surname', '')}".strip()
        )

    # --- SP metadata ---

    def sp_metadata(self) -> str:
        """This SP's EntityDescriptor, for IdP administrators."""
        cfg = self._config
        parts = [
            '<?xml version="1.0" encoding="UTF-8"?>',
            f'<md:EntityDescriptor xmlns:md="{METADATA_NS}" entityID={quoteattr(cfg.entity_id)}>',
            f'<md:SPSSODescriptor AuthnRequestsSigned="{str(cfg.sign_requests).lower()}"'
            f' WantAssertionsSigned="{str(cfg.want_assertions_signed).lower()}"'
            f' protocolSupportEnumeration="{PROTOCOL_NS}">',
        ]
        if cfg.sp_certificate:
            body = certificate_body(cfg.sp_certificate)
            for use in ("signing", "encryption"):
                parts.append(
                    f'<md:KeyDescriptor use="{use}">'
                    f'<ds:KeyInfo xmlns:ds="{DSIG_NS}"><ds:X509Data>'
                    f"<ds:X509Certificate>{body}</ds:X509Certificate>"
                    "</ds:X509Data></ds:KeyInfo></md:KeyDescriptor>"
                )
        if cfg.slo_url:
            for binding in (BINDING_HTTP_REDIRECT, BINDING_HTTP_POST):
                parts.append(
                    f'<md:SingleLogoutService Binding="{binding}" Location={quoteattr(cfg.slo_url)}/>'
                )
        parts += [
            f"<md:NameIDFormat>{NAMEID_TRANSIENT}</md:NameIDFormat>",
            f"<md:NameIDFormat>{NAMEID_PERSISTENT}</md:NameIDFormat>",
            f'<md:AssertionConsumerService Binding="{BINDING_HTTP_POST}"'
            f' Location={quoteattr(cfg.acs_url)} index="0" isDefault="true"/>',
            "</md:SPSSODescriptor>",
            "</md:EntityDescriptor>",
        ]
        return "\n".join(parts)

    async def metadata(self, request: Request) -> Response:
        return Response(self.sp_metadata(), media_type="application/samlmetadata+xml")
