"""Normalized identity and server-side session records.

Every protocol adapter produces a ``User``; a successful login turns it into a
``Session`` whose id is the only thing the browser ever sees.
"""

import copy
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar

from gatehouse.auth.clock import utc_now


@dataclass
class User:
    """Identity returned by a protocol adapter after successful authentication."""

    id: str = ""
    email: str = ""
    email_verified: bool = False
    name: str = ""
    picture: str = ""
    provider: str = ""
    # Normalized, provider-specific string attributes (roles, affiliation, ...)
    extra: dict[str, str] = field(default_factory=dict)
    # Unprocessed claims / assertion attributes
    raw: dict[str, Any] = field(default_factory=dict)

    # Transient credential material. Lives only in memory for the duration of
    # the login request; never serialized into a store.
    access_token: str = field(default="", repr=False)
    refresh_token: str = field(default="", repr=False)
    token_expiry: datetime | None = field(default=None, repr=False)

    TRANSIENT_FIELDS: ClassVar[tuple[str, ...]] = (
        "access_token",
        "refresh_token",
        "token_expiry",
    )

    def to_dict(self) -> dict[str, Any]:
        """Serializable form with transient credentials stripped."""
        data = asdict(self)
        for name in self.TRANSIENT_FIELDS:
            data.pop(name)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        persisted = {f.name for f in fields(cls)} - set(cls.TRANSIENT_FIELDS)
        return cls(**{k: v for k, v in data.items() if k in persisted})

    def snapshot(self) -> "User":
        """Deep copy, so later mutation of this user cannot alter an issued session."""
        return copy.deepcopy(self)


@dataclass
class Session:
    """Server-side session binding an opaque id to a user snapshot."""

    id: str = field(repr=False)
    user: User
    created_at: datetime
    expires_at: datetime

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("Session expires_at must be after created_at")

    def is_expired(self, now: datetime | None = None) -> bool:
        """True iff ``now`` is strictly after ``expires_at``."""
        return (now or utc_now()) > self.expires_at

    def ttl_seconds(self, now: datetime | None = None) -> int:
        """Whole seconds remaining before expiry (0 once expired)."""
        remaining = (self.expires_at - (now or utc_now())).total_seconds()
        return max(int(remaining), 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user": self.user.to_dict(),
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            user=User.from_dict(data["user"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )
