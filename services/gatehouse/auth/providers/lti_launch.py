"""LTI 1.3 launch record, role predicates and Deep Linking content items.

Everything here is copied verbatim from a verified id_token claim set; the
launch record never re-derives values. Roles stay opaque URI strings and the
predicates are deliberately loose substring tests so both context-level
(membership#Instructor) and institution-level (institution/person#Instructor)
role URIs match.
"""

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from gatehouse.auth.identity import User

LTI_CLAIM = "https://purl.imsglobal.org/spec/lti/claim/"
DL_CLAIM = "https://purl.imsglobal.org/spec/lti-dl/claim/"
NRPS_CLAIM = "https://purl.imsglobal.org/spec/lti-nrps/claim/namesroleservice"
AGS_CLAIM = "https://purl.imsglobal.org/spec/lti-ags/claim/endpoint"

LTI_VERSION = "1.3.0"


class LTIMessageType(StrEnum):
    RESOURCE_LINK = "LtiResourceLinkRequest"
    DEEP_LINKING_REQUEST = "LtiDeepLinkingRequest"
    DEEP_LINKING_RESPONSE = "LtiDeepLinkingResponse"
    SUBMISSION_REVIEW = "LtiSubmissionReviewRequest"


class LTIRole(StrEnum):
    """Role fragments matched by the predicates below."""

    INSTRUCTOR = "Instructor"
    LEARNER = "Learner"
    ADMINISTRATOR = "Administrator"
    CONTENT_DEVELOPER = "ContentDeveloper"
    MENTOR = "Mentor"
    TEACHING_ASSISTANT = "TeachingAssistant"


@dataclass
class LaunchPresentation:
    document_target: str = ""
    width: int = 0
    height: int = 0
    return_url: str = ""
    locale: str = ""


@dataclass
class DeepLinkingSettings:
    deep_link_return_url: str = ""
    accept_types: list[str] = field(default_factory=list)
    accept_presentation_document_targets: list[str] = field(default_factory=list)
    accept_media_types: str = ""
    accept_multiple: bool = False
    auto_create: bool = False
    title: str = ""
    text: str = ""
    data: str = ""


@dataclass
class LTILaunch:
    """A validated LTI 1.3 launch."""

    user: User
    user_id: str = ""
    roles: list[str] = field(default_factory=list)
    email: str = ""
    name: str = ""
    given_name: str = ""
    family_name: str = ""
    picture: str = ""

    context_id: str = ""
    context_label: str = ""
    context_title: str = ""
    context_type: list[str] = field(default_factory=list)

    resource_link_id: str = ""
    resource_link_title: str = ""
    resource_link_description: str = ""

    platform_id: str = ""
    platform_name: str = ""
    platform_version: str = ""
    platform_product_family: str = ""

    message_type: str = ""
    version: str = ""
    deployment_id: str = ""
    target_link_uri: str = ""
    launch_presentation: LaunchPresentation | None = None
    custom: dict[str, str] = field(default_factory=dict)

    deep_linking_settings: DeepLinkingSettings | None = None
    nrps_context_memberships_url: str = ""
    ags_lineitems_url: str = ""
    ags_lineitem_url: str = ""
    ags_scopes: list[str] = field(default_factory=list)

    raw_claims: dict[str, Any] = field(default_factory=dict, repr=False)

    # --- role predicates ---

    def has_role(self, *roles: str) -> bool:
        return any(check in role for role in self.roles for check in roles)

    def is_instructor(self) -> bool:
        return self.has_role(LTIRole.INSTRUCTOR)

    def is_learner(self) -> bool:
        return self.has_role(LTIRole.LEARNER)

    def is_administrator(self) -> bool:
        return self.has_role(LTIRole.ADMINISTRATOR)

    def is_content_developer(self) -> bool:
        return self.has_role(LTIRole.CONTENT_DEVELOPER)

    def is_teaching_assistant(self) -> bool:
        return self.has_role(LTIRole.TEACHING_ASSISTANT)

    def is_mentor(self) -> bool:
        return self.has_role(LTIRole.MENTOR)

    # --- service and message predicates ---

    def supports_nrps(self) -> bool:
        return bool(self.nrps_context_memberships_url)

    def supports_ags(self) -> bool:
        return bool(self.ags_lineitems_url or self.ags_lineitem_url)

    def is_deep_linking_request(self) -> bool:
        return self.message_type == LTIMessageType.DEEP_LINKING_REQUEST

    def is_resource_link_request(self) -> bool:
        return self.message_type == LTIMessageType.RESOURCE_LINK

    def custom_param(self, key: str) -> str:
        return self.custom.get(key, "")


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, str)]
    return []


def build_launch(claims: dict[str, Any], provider: str = "lti") -> LTILaunch:
    """Assemble the launch record and its User from verified claims."""
    context = _dict(claims.get(LTI_CLAIM + "context"))
    resource_link = _dict(claims.get(LTI_CLAIM + "resource_link"))
    platform = _dict(claims.get(LTI_CLAIM + "tool_platform"))
    presentation = claims.get(LTI_CLAIM + "launch_presentation")
    dl_settings = claims.get(DL_CLAIM + "deep_linking_settings")
    nrps = _dict(claims.get(NRPS_CLAIM))
    ags = _dict(claims.get(AGS_CLAIM))
    custom = _dict(claims.get(LTI_CLAIM + "custom"))

    roles = _str_list(claims.get(LTI_CLAIM + "roles"))
    email = _str(claims.get("email"))

    launch = LTILaunch(
        user=User(),
        user_id=_str(claims.get("sub")),
        roles=roles,
        email=email,
        name=_str(claims.get("name")),
        given_name=_str(claims.get("given_name")),
        family_name=_str(claims.get("family_name")),
        picture=_str(claims.get("picture")),
        context_id=_str(context.get("id")),
        context_label=_str(context.get("label")),
        context_title=_str(context.get("title")),
        context_type=_str_list(context.get("type")),
        resource_link_id=_str(resource_link.get("id")),
        resource_link_title=_str(resource_link.get("title")),
        resource_link_description=_str(resource_link.get("description")),
        platform_id=_str(claims.get("iss")),
        platform_name=_str(platform.get("name")),
        platform_version=_str(platform.get("version")),
        platform_product_family=_str(platform.get("product_family_code")),
        message_type=_str(claims.get(LTI_CLAIM + "message_type")),
        version=_str(claims.get(LTI_CLAIM + "version")),
        deployment_id=_str(claims.get(LTI_CLAIM + "deployment_id")),
        target_link_uri=_str(claims.get(LTI_CLAIM + "target_link_uri")),
        custom={k: str(v) for k, v in custom.items()},
        nrps_context_memberships_url=_str(nrps.get("context_memberships_url")),
        ags_lineitems_url=_str(ags.get("lineitems")),
        ags_lineitem_url=_str(ags.get("lineitem")),
        ags_scopes=_str_list(ags.get("scope")),
        raw_claims=claims,
    )

    if isinstance(presentation, dict):
        launch.launch_presentation = LaunchPresentation(
            document_target=_str(presentation.get("document_target")),
            width=_int(presentation.get("width")),
            height=_int(presentation.get("height")),
            return_url=_str(presentation.get("return_url")),
            locale=_str(presentation.get("locale")),
        )

    if isinstance(dl_settings, dict):
        launch.deep_linking_settings = DeepLinkingSettings(
            deep_link_return_url=_str(dl_settings.get("deep_link_return_url")),
            accept_types=_str_list(dl_settings.get("accept_types")),
            accept_presentation_document_targets=_str_list(
                dl_settings.get("accept_presentation_document_targets")
            ),
            accept_media_types=_str(dl_settings.get("accept_media_types")),
            accept_multiple=dl_settings.get("accept_multiple") is True,
            auto_create=dl_settings.get("auto_create") is True,
            title=_str(dl_settings.get("title")),
            text=_str(dl_settings.get("text")),
            data=_str(dl_settings.get("data")),
        )

    launch.user = User(
        id=launch.user_id,
        email=email,
        email_verified=bool(email),
        name=launch.name,
        picture=launch.picture,
        provider=provider,
        extra={
            "context_id": launch.context_id,
            "context_title": launch.context_title,
            "context_label": launch.context_label,
            "resource_link_id": launch.resource_link_id,
            "platform_id": launch.platform_id,
            "platform_name": launch.platform_name,
            "deployment_id": launch.deployment_id,
            "roles": ",".join(roles),
            "given_name": launch.given_name,
            "family_name": launch.family_name,
        },
        raw=claims,
    )
    return launch


# --- Deep Linking content items ---


@dataclass
class Icon:
    url: str
    width: int = 0
    height: int = 0


@dataclass
class LineItem:
    score_maximum: float
    label: str = ""
    resource_id: str = ""
    tag: str = ""
    grades_released: bool = False


@dataclass
class ContentItem:
    """A Deep Linking content item returned to the platform."""

    type: str = "ltiResourceLink"
    title: str = ""
    text: str = ""
    url: str = ""
    icon: Icon | None = None
    thumbnail: Icon | None = None
    custom: dict[str, str] = field(default_factory=dict)
    line_item: LineItem | None = None
    iframe: dict[str, int] = field(default_factory=dict)
    window: dict[str, Any] = field(default_factory=dict)

    def to_claim(self) -> dict[str, Any]:
        """camelCase JSON form with empty members omitted."""
        claim: dict[str, Any] = {"type": self.type}
        for key in ("title", "text", "url"):
            if getattr(self, key):
                claim[key] = getattr(self, key)
        for key in ("icon", "thumbnail"):
            icon = getattr(self, key)
            if icon is not None:
                claim[key] = {k: v for k, v in asdict(icon).items() if v}
        if self.custom:
            claim["custom"] = dict(self.custom)
        if self.line_item is not None:
            li = self.line_item
            line_item: dict[str, Any] = {"scoreMaximum": li.score_maximum}
            if li.label:
                line_item["label"] = li.label
            if li.resource_id:
                line_item["resourceId"] = li.resource_id
            if li.tag:
                line_item["tag"] = li.tag
            if li.grades_released:
                line_item["gradesReleased"] = True
            claim["lineItem"] = line_item
        if self.iframe:
            claim["iframe"] = dict(self.iframe)
        if self.window:
            claim["window"] = dict(self.window)
        return claim
