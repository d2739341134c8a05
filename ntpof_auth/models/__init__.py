from ntpof_auth.models.user import User
from ntpof_auth.models.third_party_identity import ThirdPartyIdentity
from ntpof_auth.models.auth_session import AuthSession
from ntpof_auth.models.refresh_token import RefreshToken
from ntpof_auth.models.oauth_state import OAuthState
from ntpof_auth.models.audit_log import AuditLog

__all__ = [
    "User",
    "ThirdPartyIdentity",
    "AuthSession",
    "RefreshToken",
    "OAuthState",
    "AuditLog",
]
