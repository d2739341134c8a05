"""Error taxonomy for the session core.

Everything except ConfigurationError is request-scoped and gets mapped to an
HTTP status by the exception handler registered in ``ntpof_auth.main``.
"""


class AuthError(Exception):
    """Base class for all authentication errors."""

    status_code = 401
    public_message = "unauthorised"


class ConfigurationError(AuthError):
    """Startup configuration is incomplete or invalid. Fatal."""

    status_code = 500

    def __init__(self, missing: list[str] | None = None, invalid: list[str] | None = None):
        self.missing = list(missing or [])
        self.invalid = list(invalid or [])
        parts = []
        if self.missing:
            parts.append("missing required environment variables: " + ", ".join(self.missing))
        if self.invalid:
            parts.append("invalid configuration: " + "; ".join(self.invalid))
        super().__init__(". ".join(parts) or "invalid configuration")


class InvalidSignature(AuthError):
    """Token is malformed, tampered with, or signed by an unknown/retired key."""


class Expired(AuthError):
    """Token signature is valid but its expiry has passed."""


class Unauthenticated(AuthError):
    """Generic rejection exposed to clients; the internal reason is only logged."""


class SessionNotFound(AuthError):
    """No live session (or refresh token record) for the given handle."""


class TokenReused(AuthError):
    """An already-consumed refresh token was presented again. Security event."""

    def __init__(self, session_handle: str, token_id: str):
        self.session_handle = session_handle
        self.token_id = token_id
        super().__init__(f"refresh token {token_id} reused for session {session_handle}")


class InvalidState(AuthError):
    """OAuth state is unknown, already consumed, expired or for another provider."""

    status_code = 400
    public_message = "invalid or expired sign-in attempt, please start again"


class ProviderRejected(AuthError):
    """The identity provider refused the exchange. Terminal for this attempt."""

    status_code = 400
    public_message = "sign-in was rejected by the provider, please start again"


class ProviderUnavailable(AuthError):
    """The identity provider could not be reached in time. Retryable."""

    status_code = 503
    public_message = "identity provider unavailable, please try again"


class UnknownProvider(AuthError):
    status_code = 404
    public_message = "unknown sign-in provider"
