"""Session persistence: opaque handles, refresh-token families, rotation and sweep.

Every operation runs in its own short transaction. Refresh-token consumption is
a conditional UPDATE (``used = false`` -> ``used = true``) whose rowcount decides
the winner, so two concurrent refreshes with the same token can never both
succeed, regardless of how many workers share the database.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ntpof_auth.core.errors import SessionNotFound, TokenReused
from ntpof_auth.db.base import utcnow
from ntpof_auth.models.auth_session import AuthSession
from ntpof_auth.models.oauth_state import OAuthState
from ntpof_auth.models.refresh_token import RefreshToken

logger = logging.getLogger(__name__)

HANDLE_BYTES = 24
TOKEN_ID_BYTES = 24
MAX_HANDLE_ATTEMPTS = 5
USER_AGENT_MAX_LEN = 512

_NO_SYNC = {"synchronize_session": False}


@dataclass(frozen=True)
class SessionMetadata:
    user_agent: str | None = None
    ip_address: str | None = None


@dataclass(frozen=True)
class SweepResult:
    expired_sessions: int = 0
    revoked_sessions: int = 0
    oauth_states: int = 0

    @property
    def total(self) -> int:
        return self.expired_sessions + self.revoked_sessions + self.oauth_states


def new_session_handle() -> str:
    return secrets.token_urlsafe(HANDLE_BYTES)


def new_token_id() -> str:
    return secrets.token_urlsafe(TOKEN_ID_BYTES)


class SessionStore:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        revoked_grace: timedelta = timedelta(hours=1),
    ):
        self._session_maker = session_maker
        self._revoked_grace = revoked_grace

    async def create(
        self,
        user_id: str,
        metadata: SessionMetadata,
        expires_at: datetime,
        refresh_expires_at: datetime,
    ) -> tuple[AuthSession, RefreshToken]:
        """Create a session with a fresh handle and the first token of a new refresh family."""
        for attempt in range(1, MAX_HANDLE_ATTEMPTS + 1):
            handle = new_session_handle()
            now = utcnow()
            async with self._session_maker() as db:
                if await db.get(AuthSession, handle) is not None:
                    logger.warning("Session handle collision (attempt %s), retrying", attempt)
                    continue
                family_id = secrets.token_urlsafe(16)
                session = AuthSession(
                    handle=handle,
                    user_id=user_id,
                    refresh_family_id=family_id,
                    user_agent=metadata.user_agent[:USER_AGENT_MAX_LEN] if metadata.user_agent else None,
                    ip_address=metadata.ip_address,
                    created_at=now,
                    expires_at=expires_at,
                    revoked=False,
                )
                db.add(session)
                try:
                    await db.flush()
                except IntegrityError:
                    await db.rollback()
                    logger.warning("Session handle collision on insert (attempt %s), retrying", attempt)
                    continue
                token = RefreshToken(
                    id=new_token_id(),
                    session_handle=handle,
                    family_id=family_id,
                    parent_id=None,
                    issued_at=now,
                    expires_at=refresh_expires_at,
                    used=False,
                )
                db.add(token)
                await db.commit()
                logger.debug("Created session %s for user_id=%s", handle, user_id)
                return session, token
        raise RuntimeError("could not allocate a unique session handle")

    async def lookup(self, handle: str) -> AuthSession:
        async with self._session_maker() as db:
            session = await db.get(AuthSession, handle)
        if session is None:
            raise SessionNotFound(f"session {handle} not found")
        return session

    async def rotate_refresh_token(
        self,
        handle: str,
        presented_token_id: str,
        refresh_expires_at: datetime,
    ) -> RefreshToken:
        """Consume ``presented_token_id`` and issue its successor in the same family.

        Raises TokenReused (after revoking the whole session) when the token was
        already consumed, SessionNotFound when the session or token is not live.
        """
        now = utcnow()
        async with self._session_maker() as db:
            session = await db.get(AuthSession, handle)
            if session is None or not session.is_live(now):
                raise SessionNotFound(f"no live session {handle}")
            token = await db.get(RefreshToken, presented_token_id)
            if token is None or token.session_handle != handle:
                raise SessionNotFound(f"unknown refresh token for session {handle}")
            if token.expires_at <= now:
                raise SessionNotFound(f"refresh token for session {handle} expired")

            consumed = await db.execute(
                update(RefreshToken)
                .where(RefreshToken.id == presented_token_id, RefreshToken.used.is_(False))
                .values(used=True, used_at=now)
                .execution_options(**_NO_SYNC)
            )
            if consumed.rowcount != 1:
                await self._revoke_session_and_family(db, handle, session.refresh_family_id, now)
                await db.commit()
                raise TokenReused(handle, presented_token_id)

            extended = await db.execute(
                update(AuthSession)
                .where(AuthSession.handle == handle, AuthSession.revoked.is_(False))
                .values(expires_at=refresh_expires_at, last_refreshed_at=now)
                .execution_options(**_NO_SYNC)
            )
            if extended.rowcount != 1:
                await db.rollback()
                raise SessionNotFound(f"session {handle} revoked during refresh")

            successor = RefreshToken(
                id=new_token_id(),
                session_handle=handle,
                family_id=session.refresh_family_id,
                parent_id=presented_token_id,
                issued_at=now,
                expires_at=refresh_expires_at,
                used=False,
            )
            db.add(successor)
            await db.commit()
        return successor

    async def revoke(self, handle: str) -> bool:
        """Mark the session revoked. Idempotent; returns True only on the first call."""
        now = utcnow()
        async with self._session_maker() as db:
            result = await db.execute(
                update(AuthSession)
                .where(AuthSession.handle == handle, AuthSession.revoked.is_(False))
                .values(revoked=True, revoked_at=now)
                .execution_options(**_NO_SYNC)
            )
            await db.commit()
        return result.rowcount == 1

    async def revoke_all_for_user(self, user_id: str) -> int:
        now = utcnow()
        async with self._session_maker() as db:
            result = await db.execute(
                update(AuthSession)
                .where(AuthSession.user_id == user_id, AuthSession.revoked.is_(False))
                .values(revoked=True, revoked_at=now)
                .execution_options(**_NO_SYNC)
            )
            await db.commit()
        return result.rowcount

    async def sweep_expired(self, now: datetime | None = None) -> SweepResult:
        """Delete expired sessions, revoked sessions past the grace period and expired OAuth states.

        Each kind is removed in its own transaction so the sweep never holds
        locks across the whole table set.
        """
        now = now or utcnow()
        expired = await self._delete_sessions(AuthSession.expires_at <= now)
        revoked = await self._delete_sessions(
            AuthSession.revoked.is_(True),
            AuthSession.revoked_at <= now - self._revoked_grace,
        )
        async with self._session_maker() as db:
            states = await db.execute(
                delete(OAuthState).where(OAuthState.expires_at <= now).execution_options(**_NO_SYNC)
            )
            await db.commit()
        return SweepResult(expired_sessions=expired, revoked_sessions=revoked, oauth_states=states.rowcount)

    async def _delete_sessions(self, *criteria) -> int:
        async with self._session_maker() as db:
            handles = select(AuthSession.handle).where(*criteria)
            await db.execute(
                delete(RefreshToken).where(RefreshToken.session_handle.in_(handles)).execution_options(**_NO_SYNC)
            )
            result = await db.execute(delete(AuthSession).where(*criteria).execution_options(**_NO_SYNC))
            await db.commit()
        return result.rowcount

    @staticmethod
    async def _revoke_session_and_family(db: AsyncSession, handle: str, family_id: str, now: datetime) -> None:
        await db.execute(
            update(AuthSession)
            .where(AuthSession.handle == handle, AuthSession.revoked.is_(False))
            .values(revoked=True, revoked_at=now)
            .execution_options(**_NO_SYNC)
        )
        await db.execute(
            update(RefreshToken)
            .where(RefreshToken.family_id == family_id, RefreshToken.used.is_(False))
            .values(used=True, used_at=now)
            .execution_options(**_NO_SYNC)
        )
