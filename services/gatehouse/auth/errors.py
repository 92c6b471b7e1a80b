"""Authentication error taxonomy.

Every failure inside a protocol adapter is one of these. Adapters funnel them
through a single error path (on_error callback, default 401), so none of them
ever escapes a login/callback handler.
"""


class AuthError(Exception):
    """Base exception for authentication failures."""

    status_code: int = 401


class ConfigurationError(AuthError):
    """A required provider setting is missing or invalid. Raised at construction."""

    status_code = 500


class StateError(AuthError):
    """CSRF state or nonce is missing, invalid, expired or already consumed."""


class ProtocolError(AuthError):
    """The upstream provider reported an error or sent an unacceptable message."""


class CollaboratorError(AuthError):
    """A store or identity fetcher failed."""


class SessionError(AuthError):
    """No usable session on a protected route."""


class LoginRequired(SessionError):
    """Browser request without a session; resolved by redirecting to login."""

    def __init__(self, login_url: str) -> None:
        self.login_url = login_url
        super().__init__(f"Login required: {login_url}")
