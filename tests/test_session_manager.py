"""Session manager: identity mapping, authenticate, refresh rotation, reuse, sign-out."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from ntpof_auth.core.errors import Unauthenticated
from ntpof_auth.db.base import utcnow
from ntpof_auth.models.audit_log import AuditLog
from ntpof_auth.services.audit import ACTION_SIGN_IN, ACTION_SIGN_OUT, ACTION_TOKEN_REUSE
from ntpof_auth.services.oauth import ExternalIdentity
from ntpof_auth.services.session_manager import RefreshResult
from ntpof_auth.services.session_store import SessionMetadata


def _identity(subject: str = "google-sub-1", email: str | None = "ada@example.com") -> ExternalIdentity:
    return ExternalIdentity(provider_id="google", subject=subject, email=email, raw_profile={"sub": subject})


async def _audit_actions(services) -> list[str]:
    async with services.session_maker() as db:
        r = await db.execute(select(AuditLog.action).order_by(AuditLog.id))
        return list(r.scalars().all())


@pytest.mark.asyncio
async def test_sign_in_maps_identity_to_stable_user(services):
    first = await services.sessions.sign_in(_identity(), SessionMetadata(user_agent="ua", ip_address="10.0.0.1"))
    second = await services.sessions.sign_in(_identity(email="changed@example.com"))
    other = await services.sessions.sign_in(_identity(subject="google-sub-2"))

    assert first.created_new_user is True
    assert second.created_new_user is False
    assert second.user_id == first.user_id
    assert other.user_id != first.user_id
    assert first.session.handle != second.session.handle


@pytest.mark.asyncio
async def test_sign_in_tokens_authenticate(services):
    result = await services.sessions.sign_in(_identity())
    ctx = await services.sessions.authenticate(result.access_token)
    assert ctx.user_id == result.user_id
    assert ctx.session_handle == result.session.handle
    assert ctx.refreshed is None
    assert await _audit_actions(services) == [ACTION_SIGN_IN]


@pytest.mark.asyncio
async def test_authenticate_rejects_missing_and_garbage(services):
    with pytest.raises(Unauthenticated):
        await services.sessions.authenticate(None)
    with pytest.raises(Unauthenticated):
        await services.sessions.authenticate("garbage")


@pytest.mark.asyncio
async def test_authenticate_rejects_revoked_session(services):
    result = await services.sessions.sign_in(_identity())
    assert await services.sessions.sign_out(result.session.handle) is True
    with pytest.raises(Unauthenticated):
        await services.sessions.authenticate(result.access_token)


@pytest.mark.asyncio
async def test_expired_access_token_without_refresh_token(services):
    result = await services.sessions.sign_in(_identity())
    expired = services.codec.issue(result.user_id, result.session.handle, utcnow() - timedelta(seconds=5))
    with pytest.raises(Unauthenticated):
        await services.sessions.authenticate(expired)


@pytest.mark.asyncio
async def test_expired_access_token_is_refreshed_transparently(services):
    result = await services.sessions.sign_in(_identity())
    expired = services.codec.issue(result.user_id, result.session.handle, utcnow() - timedelta(seconds=5))

    ctx = await services.sessions.authenticate(expired, result.refresh_token)

    assert ctx.user_id == result.user_id
    assert ctx.refreshed is not None
    assert ctx.refreshed.refresh_token != result.refresh_token
    assert (await services.sessions.authenticate(ctx.refreshed.access_token)).user_id == result.user_id


@pytest.mark.asyncio
async def test_refresh_rotates(services):
    result = await services.sessions.sign_in(_identity())
    refreshed = await services.sessions.refresh(result.refresh_token)

    assert refreshed.session_handle == result.session.handle
    assert refreshed.refresh_record.parent_id == result.refresh_record.id
    again = await services.sessions.refresh(refreshed.refresh_token)
    assert again.refresh_record.parent_id == refreshed.refresh_record.id


@pytest.mark.asyncio
async def test_refresh_token_reuse_revokes_session(services):
    result = await services.sessions.sign_in(_identity())
    refreshed = await services.sessions.refresh(result.refresh_token)

    with pytest.raises(Unauthenticated):
        await services.sessions.refresh(result.refresh_token)

    # Everything issued for the session is now dead, including the newest pair.
    with pytest.raises(Unauthenticated):
        await services.sessions.refresh(refreshed.refresh_token)
    with pytest.raises(Unauthenticated):
        await services.sessions.authenticate(refreshed.access_token)
    assert ACTION_TOKEN_REUSE in await _audit_actions(services)


@pytest.mark.asyncio
async def test_concurrent_refresh_with_same_token_kills_session(services):
    result = await services.sessions.sign_in(_identity())

    outcomes = await asyncio.gather(
        services.sessions.refresh(result.refresh_token),
        services.sessions.refresh(result.refresh_token),
        return_exceptions=True,
    )
    winners = [o for o in outcomes if isinstance(o, RefreshResult)]
    losers = [o for o in outcomes if isinstance(o, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], Unauthenticated)

    with pytest.raises(Unauthenticated):
        await services.sessions.authenticate(winners[0].access_token)
    with pytest.raises(Unauthenticated):
        await services.sessions.refresh(winners[0].refresh_token)
    assert ACTION_TOKEN_REUSE in await _audit_actions(services)


@pytest.mark.asyncio
async def test_expired_access_token_refresh_must_match_session(services):
    first = await services.sessions.sign_in(_identity())
    second = await services.sessions.sign_in(_identity(subject="google-sub-2", email="grace@example.com"))
    expired = services.codec.issue(first.user_id, first.session.handle, utcnow() - timedelta(seconds=5))

    with pytest.raises(Unauthenticated):
        await services.sessions.authenticate(expired, second.refresh_token)

    # The mismatched refresh token was not consumed, so its own session still rotates.
    refreshed = await services.sessions.refresh(second.refresh_token)
    assert refreshed.session_handle == second.session.handle
    assert (await services.store.lookup(first.session.handle)).revoked is False


@pytest.mark.asyncio
async def test_sign_out_with_expired_access_token(services):
    result = await services.sessions.sign_in(_identity())
    expired = services.codec.issue(result.user_id, result.session.handle, utcnow() - timedelta(seconds=5))

    assert await services.sessions.sign_out_with_token(expired) is True
    assert await services.sessions.sign_out_with_token(expired) is False
    assert await services.sessions.sign_out_with_token("not-a-jwt") is False
    assert await services.sessions.sign_out_with_token(None) is False
    with pytest.raises(Unauthenticated):
        await services.sessions.refresh(result.refresh_token)


@pytest.mark.asyncio
async def test_refresh_rejects_access_token(services):
    result = await services.sessions.sign_in(_identity())
    with pytest.raises(Unauthenticated):
        await services.sessions.refresh(result.access_token)
    with pytest.raises(Unauthenticated):
        await services.sessions.refresh(None)


@pytest.mark.asyncio
async def test_sign_out_is_idempotent_and_audited(services):
    result = await services.sessions.sign_in(_identity())
    assert await services.sessions.sign_out(result.session.handle, ip_address="10.0.0.1") is True
    assert await services.sessions.sign_out(result.session.handle) is False
    with pytest.raises(Unauthenticated):
        await services.sessions.refresh(result.refresh_token)
    assert await _audit_actions(services) == [ACTION_SIGN_IN, ACTION_SIGN_OUT]


@pytest.mark.asyncio
async def test_live_check_can_be_disabled(services):
    from ntpof_auth.services.session_manager import SessionManager

    result = await services.sessions.sign_in(_identity())
    await services.sessions.sign_out(result.session.handle)
    stateless = SessionManager(services.codec, services.store, services.session_maker, live_check=False)
    ctx = await stateless.authenticate(result.access_token)
    assert ctx.session_handle == result.session.handle
