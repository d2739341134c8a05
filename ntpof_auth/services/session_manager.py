"""Session lifecycle: sign-in, request authentication, refresh and sign-out.

Every failure leaves this module as ``Unauthenticated``; the precise reason
(expired, revoked, reused, tampered) is only logged and audited.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ntpof_auth.core.errors import Expired, InvalidSignature, SessionNotFound, TokenReused, Unauthenticated
from ntpof_auth.core.tokens import TokenCodec
from ntpof_auth.db.base import utcnow
from ntpof_auth.models.auth_session import AuthSession
from ntpof_auth.models.refresh_token import RefreshToken
from ntpof_auth.services import metrics
from ntpof_auth.services.audit import ACTION_SIGN_IN, ACTION_SIGN_OUT, ACTION_TOKEN_REUSE, record_event
from ntpof_auth.services.oauth import ExternalIdentity
from ntpof_auth.services.session_store import SessionMetadata, SessionStore
from ntpof_auth.services.users import resolve_user

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignInResult:
    user_id: str
    created_new_user: bool
    session: AuthSession
    access_token: str
    access_expiry: datetime
    refresh_token: str
    refresh_record: RefreshToken


@dataclass(frozen=True)
class RefreshResult:
    user_id: str
    session_handle: str
    access_token: str
    access_expiry: datetime
    refresh_token: str
    refresh_record: RefreshToken


@dataclass(frozen=True)
class AuthContext:
    """Identity of an authenticated request, handed explicitly to route handlers."""

    user_id: str
    session_handle: str
    access_expiry: datetime
    refreshed: RefreshResult | None = None


class SessionManager:
    def __init__(
        self,
        codec: TokenCodec,
        store: SessionStore,
        session_maker: async_sessionmaker[AsyncSession],
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=100),
        live_check: bool = True,
    ):
        self.codec = codec
        self.store = store
        self._session_maker = session_maker
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.live_check = live_check

    async def sign_in(self, identity: ExternalIdentity, metadata: SessionMetadata | None = None) -> SignInResult:
        metadata = metadata or SessionMetadata()
        user_id, created = await resolve_user(self._session_maker, identity)
        now = utcnow()
        access_expiry = now + self.access_ttl
        refresh_expiry = now + self.refresh_ttl
        session, record = await self.store.create(
            user_id,
            metadata,
            expires_at=refresh_expiry,
            refresh_expires_at=refresh_expiry,
        )
        access_token = self.codec.issue(user_id, session.handle, access_expiry)
        refresh_token = self.codec.issue_refresh(session.handle, record.id, record.family_id, refresh_expiry)

        metrics.SIGN_INS.labels(provider=identity.provider_id, new_user=str(created).lower()).inc()
        await record_event(
            self._session_maker,
            user_id,
            ACTION_SIGN_IN,
            resource_id=session.handle,
            details={"provider": identity.provider_id, "created_new_user": created},
            ip_address=metadata.ip_address,
        )
        logger.info("Signed in user_id=%s via %s (session %s)", user_id, identity.provider_id, session.handle)
        return SignInResult(
            user_id=user_id,
            created_new_user=created,
            session=session,
            access_token=access_token,
            access_expiry=access_expiry,
            refresh_token=refresh_token,
            refresh_record=record,
        )

    async def authenticate(self, access_token: str | None, refresh_token: str | None = None) -> AuthContext:
        """Validate an access token; an expired one is transparently refreshed when a refresh token is given."""
        if not access_token:
            raise Unauthenticated("no access token")
        try:
            claims = self.codec.verify(access_token)
        except Expired as e:
            if refresh_token:
                logger.debug("Access token expired, refreshing")
                expired_claims = self.codec.verify(access_token, allow_expired=True)
                result = await self.refresh(refresh_token, expected_handle=expired_claims.session_handle)
                return AuthContext(
                    user_id=result.user_id,
                    session_handle=result.session_handle,
                    access_expiry=result.access_expiry,
                    refreshed=result,
                )
            logger.debug("Rejected expired access token")
            raise Unauthenticated("access token expired") from e
        except InvalidSignature as e:
            logger.info("Rejected access token: %s", e)
            raise Unauthenticated("invalid access token") from e

        if self.live_check:
            try:
                session = await self.store.lookup(claims.session_handle)
            except SessionNotFound as e:
                logger.info("Access token for unknown session %s", claims.session_handle)
                raise Unauthenticated("session not found") from e
            if session.user_id != claims.user_id or not session.is_live(utcnow()):
                logger.info("Access token for revoked or expired session %s", claims.session_handle)
                raise Unauthenticated("session not live")
        return AuthContext(
            user_id=claims.user_id,
            session_handle=claims.session_handle,
            access_expiry=claims.expiry,
        )

    async def refresh(self, refresh_token: str | None, expected_handle: str | None = None) -> RefreshResult:
        """Rotate the refresh token. ``expected_handle`` pins the refresh to one session."""
        if not refresh_token:
            raise Unauthenticated("no refresh token")
        try:
            claims = self.codec.verify_refresh(refresh_token)
        except (InvalidSignature, Expired) as e:
            metrics.REFRESHES.labels(outcome="invalid").inc()
            logger.info("Rejected refresh token: %s", e)
            raise Unauthenticated("invalid refresh token") from e
        if expected_handle is not None and claims.session_handle != expected_handle:
            metrics.REFRESHES.labels(outcome="mismatch").inc()
            logger.info(
                "Refresh token for session %s presented with access token for session %s",
                claims.session_handle,
                expected_handle,
            )
            raise Unauthenticated("refresh token belongs to another session")

        now = utcnow()
        refresh_expiry = now + self.refresh_ttl
        handle = claims.session_handle
        try:
            record = await self.store.rotate_refresh_token(handle, claims.token_id, refresh_expiry)
            session = await self.store.lookup(handle)
        except TokenReused as e:
            await self._on_token_reuse(e)
            raise Unauthenticated("refresh token reused") from e
        except SessionNotFound as e:
            metrics.REFRESHES.labels(outcome="not_found").inc()
            logger.info("Refresh for dead session %s: %s", handle, e)
            raise Unauthenticated("session not found") from e

        access_expiry = now + self.access_ttl
        metrics.REFRESHES.labels(outcome="ok").inc()
        return RefreshResult(
            user_id=session.user_id,
            session_handle=handle,
            access_token=self.codec.issue(session.user_id, handle, access_expiry),
            access_expiry=access_expiry,
            refresh_token=self.codec.issue_refresh(handle, record.id, record.family_id, refresh_expiry),
            refresh_record=record,
        )

    async def sign_out(self, handle: str, ip_address: str | None = None) -> bool:
        """Revoke the session. Idempotent: repeated calls are no-ops returning False."""
        revoked = await self.store.revoke(handle)
        if revoked:
            user_id = None
            try:
                user_id = (await self.store.lookup(handle)).user_id
            except SessionNotFound:
                pass
            await record_event(self._session_maker, user_id, ACTION_SIGN_OUT, resource_id=handle, ip_address=ip_address)
            logger.info("Signed out session %s", handle)
        return revoked

    async def sign_out_with_token(self, access_token: str | None, ip_address: str | None = None) -> bool:
        """Sign out the session named by an access token, even an expired one.

        The signature must still be valid under the key ring; expiry is ignored
        so a client whose access token lapsed can still end its session.
        """
        if not access_token:
            return False
        try:
            claims = self.codec.verify(access_token, allow_expired=True)
        except InvalidSignature as e:
            logger.info("Sign-out with invalid access token: %s", e)
            return False
        return await self.sign_out(claims.session_handle, ip_address=ip_address)

    async def _on_token_reuse(self, error: TokenReused) -> None:
        metrics.TOKEN_REUSE.inc()
        metrics.REFRESHES.labels(outcome="reused").inc()
        logger.warning(
            "SECURITY: refresh token %s reused for session %s; session and token family revoked",
            error.token_id,
            error.session_handle,
        )
        user_id = None
        try:
            user_id = (await self.store.lookup(error.session_handle)).user_id
        except SessionNotFound:
            pass
        await record_event(
            self._session_maker,
            user_id,
            ACTION_TOKEN_REUSE,
            resource_id=error.session_handle,
            details={"token_id": error.token_id},
        )
