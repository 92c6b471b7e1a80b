"""eduPerson / SCHAC attribute vocabulary for SAML federations.

The default attribute map translates the OIDs (and friendly names) released by
Shibboleth-style IdPs into the keys stored in ``User.extra``. The helpers
below read those keys back; roles and affiliations stay open-ended strings.
"""

from enum import StrEnum

from gatehouse.auth.identity import User

DEFAULT_ATTRIBUTE_MAP: dict[str, str] = {
    # eduPerson (OID form)
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.6": "eppn",
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.1": "affiliation",
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.9": "scoped_affiliation",
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.7": "entitlement",
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.10": "targeted_id",
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.11": "assurance",
    "urn:oid:1.3.6.1.4.1.5923.1.1.1.13": "unique_id",
    # LDAP / X.500
    "urn:oid:0.9.2342.19200300.100.1.3": "mail",
    "urn:oid:2.16.840.1.113730.3.1.241": "display_name",
    "urn:oid:2.5.4.42": "given_name",
    "urn:oid:2.5.4.4": "surname",
    "urn:oid:2.5.4.3": "cn",
    "urn:oid:2.5.4.10": "org",
    "urn:oid:2.5.4.11": "org_unit",
    # SCHAC
    "urn:oid:1.3.6.1.4.1.25178.1.2.9": "home_org",
    "urn:oid:1.3.6.1.4.1.25178.1.2.3": "home_org_type",
    # Friendly-name fallbacks
    "eduPersonPrincipalName": "eppn",
    "eduPersonAffiliation": "affiliation",
    "eduPersonScopedAffiliation": "scoped_affiliation",
    "eduPersonEntitlement": "entitlement",
    "eduPersonTargetedID": "targeted_id",
    "mail": "mail",
    "displayName": "display_name",
    "givenName": "given_name",
    "sn": "surname",
    "cn": "cn",
    "o": "org",
    "ou": "org_unit",
    "schacHomeOrganization": "home_org",
}


class Affiliation(StrEnum):
    """eduPersonAffiliation values."""

    FACULTY = "faculty"
    STUDENT = "student"
    STAFF = "staff"
    EMPLOYEE = "employee"
    MEMBER = "member"
    AFFILIATE = "affiliate"
    ALUM = "alum"
    LIBRARY_WALK_IN = "library-walk-in"
    UNKNOWN = "unknown"


# Most specific first, used to pick a primary affiliation
_AFFILIATION_PRECEDENCE = (
    Affiliation.FACULTY,
    Affiliation.STAFF,
    Affiliation.STUDENT,
    Affiliation.EMPLOYEE,
    Affiliation.AFFILIATE,
    Affiliation.ALUM,
    Affiliation.LIBRARY_WALK_IN,
    Affiliation.MEMBER,
)


def _split(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def affiliations(user: User) -> list[str]:
    """Unscoped affiliations, from eduPersonAffiliation or the scoped variant."""
    values = _split(user.extra.get("affiliation", ""))
    # "student@example.edu" -> "student"
    values += [v.split("@", 1)[0] for v in _split(user.extra.get("scoped_affiliation", ""))]
    seen: dict[str, None] = {}
    for v in values:
        seen.setdefault(v.lower(), None)
    return list(seen)


def has_affiliation(user: User, affiliation: Affiliation | str) -> bool:
    return str(affiliation).lower() in affiliations(user)


def is_faculty(user: User) -> bool:
    return has_affiliation(user, Affiliation.FACULTY)


def is_student(user: User) -> bool:
    return has_affiliation(user, Affiliation.STUDENT)


def is_staff(user: User) -> bool:
    return has_affiliation(user, Affiliation.STAFF)


def is_employee(user: User) -> bool:
    return has_affiliation(user, Affiliation.EMPLOYEE)


def is_member(user: User) -> bool:
    return has_affiliation(user, Affiliation.MEMBER)


def is_affiliate(user: User) -> bool:
    return has_affiliation(user, Affiliation.AFFILIATE)


def is_alum(user: User) -> bool:
    return has_affiliation(user, Affiliation.ALUM)


def primary_affiliation(user: User) -> Affiliation:
    held = set(affiliations(user))
    for candidate in _AFFILIATION_PRECEDENCE:
        if candidate.value in held:
            return candidate
    return Affiliation.UNKNOWN


def eppn(user: User) -> str:
    return user.extra.get("eppn", "")


def entitlements(user: User) -> list[str]:
    return _split(user.extra.get("entitlement", ""))


def has_entitlement(user: User, entitlement: str) -> bool:
    return entitlement in entitlements(user)


def organization(user: User) -> str:
    return user.extra.get("org") or user.extra.get("home_org", "")


def org_unit(user: User) -> str:
    return user.extra.get("org_unit", "")


def idp_entity_id(user: User) -> str:
    return user.extra.get("idp_entity_id", "")


def session_index(user: User) -> str:
    return user.extra.get("session_index", "")
