"""Session store: creation, lookup, refresh-token rotation, reuse detection, revoke, sweep."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from ntpof_auth.core.errors import SessionNotFound, TokenReused
from ntpof_auth.db.base import utcnow
from ntpof_auth.models.oauth_state import OAuthState
from ntpof_auth.models.refresh_token import RefreshToken
from ntpof_auth.services.session_store import SessionMetadata


async def _create(services, user_id, ttl=timedelta(days=1)):
    expires_at = utcnow() + ttl
    return await services.store.create(
        user_id,
        SessionMetadata(user_agent="pytest", ip_address="127.0.0.1"),
        expires_at=expires_at,
        refresh_expires_at=expires_at,
    )


@pytest.mark.asyncio
async def test_create_and_lookup(services, user_id):
    session, token = await _create(services, user_id)
    assert token.session_handle == session.handle
    assert token.family_id == session.refresh_family_id
    assert token.parent_id is None

    found = await services.store.lookup(session.handle)
    assert found.user_id == user_id
    assert found.user_agent == "pytest"
    assert found.is_live(utcnow())


@pytest.mark.asyncio
async def test_handles_are_unique(services, user_id):
    first, _ = await _create(services, user_id)
    second, _ = await _create(services, user_id)
    assert first.handle != second.handle
    assert first.refresh_family_id != second.refresh_family_id


@pytest.mark.asyncio
async def test_lookup_unknown_handle(services):
    with pytest.raises(SessionNotFound):
        await services.store.lookup("no-such-handle")


@pytest.mark.asyncio
async def test_rotate_issues_successor_in_same_family(services, user_id):
    session, token = await _create(services, user_id)
    new_expiry = utcnow() + timedelta(days=2)
    successor = await services.store.rotate_refresh_token(session.handle, token.id, new_expiry)

    assert successor.id != token.id
    assert successor.parent_id == token.id
    assert successor.family_id == token.family_id

    refreshed = await services.store.lookup(session.handle)
    assert refreshed.expires_at == new_expiry
    assert refreshed.last_refreshed_at is not None

    async with services.session_maker() as db:
        consumed = await db.get(RefreshToken, token.id)
    assert consumed.used is True


@pytest.mark.asyncio
async def test_reuse_revokes_session_and_family(services, user_id):
    session, token = await _create(services, user_id)
    expiry = utcnow() + timedelta(days=1)
    successor = await services.store.rotate_refresh_token(session.handle, token.id, expiry)

    with pytest.raises(TokenReused) as exc:
        await services.store.rotate_refresh_token(session.handle, token.id, expiry)
    assert exc.value.session_handle == session.handle

    revoked = await services.store.lookup(session.handle)
    assert revoked.revoked is True
    # The successor was never used by the client but is dead too.
    with pytest.raises(SessionNotFound):
        await services.store.rotate_refresh_token(session.handle, successor.id, expiry)


@pytest.mark.asyncio
async def test_concurrent_rotation_succeeds_exactly_once(services, user_id):
    session, token = await _create(services, user_id)
    expiry = utcnow() + timedelta(days=1)

    results = await asyncio.gather(
        services.store.rotate_refresh_token(session.handle, token.id, expiry),
        services.store.rotate_refresh_token(session.handle, token.id, expiry),
        return_exceptions=True,
    )
    successes = [r for r in results if isinstance(r, RefreshToken)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], TokenReused)
    # The losing rotation counts as reuse, so the session and its family are dead.
    assert (await services.store.lookup(session.handle)).revoked
    with pytest.raises(SessionNotFound):
        await services.store.rotate_refresh_token(session.handle, successes[0].id, expiry)


@pytest.mark.asyncio
async def test_rotate_rejects_token_from_other_session(services, user_id):
    first, first_token = await _create(services, user_id)
    second, _ = await _create(services, user_id)
    with pytest.raises(SessionNotFound):
        await services.store.rotate_refresh_token(second.handle, first_token.id, utcnow() + timedelta(days=1))
    assert (await services.store.lookup(first.handle)).revoked is False


@pytest.mark.asyncio
async def test_rotate_on_expired_session(services, user_id):
    session, token = await _create(services, user_id, ttl=timedelta(seconds=-1))
    with pytest.raises(SessionNotFound):
        await services.store.rotate_refresh_token(session.handle, token.id, utcnow() + timedelta(days=1))


@pytest.mark.asyncio
async def test_revoke_is_idempotent(services, user_id):
    session, token = await _create(services, user_id)
    assert await services.store.revoke(session.handle) is True
    assert await services.store.revoke(session.handle) is False
    assert await services.store.revoke("no-such-handle") is False
    with pytest.raises(SessionNotFound):
        await services.store.rotate_refresh_token(session.handle, token.id, utcnow() + timedelta(days=1))


@pytest.mark.asyncio
async def test_revoke_all_for_user(services, user_id):
    await _create(services, user_id)
    await _create(services, user_id)
    assert await services.store.revoke_all_for_user(user_id) == 2
    assert await services.store.revoke_all_for_user(user_id) == 0


@pytest.mark.asyncio
async def test_sweep_removes_only_dead_records(services, user_id):
    live, _ = await _create(services, user_id)
    expired, _ = await _create(services, user_id, ttl=timedelta(seconds=-1))
    revoked, _ = await _create(services, user_id)
    await services.store.revoke(revoked.handle)

    await services.oauth.initiate("google")
    async with services.session_maker() as db:
        db.add(
            OAuthState(
                state="stale-state",
                provider_id="google",
                encrypted_code_verifier="verifier",
                redirect_uri="http://api.test/auth/callback/google",
                expires_at=utcnow() - timedelta(minutes=1),
            )
        )
        await db.commit()

    # Revoked sessions survive until the grace period has passed.
    result = await services.store.sweep_expired()
    assert (result.expired_sessions, result.revoked_sessions, result.oauth_states) == (1, 0, 1)
    await services.store.lookup(revoked.handle)
    async with services.session_maker() as db:
        states = (await db.execute(select(OAuthState.state))).scalars().all()
    assert len(states) == 1

    result = await services.store.sweep_expired(now=utcnow() + timedelta(hours=2))
    assert result.revoked_sessions == 1
    assert result.expired_sessions == 0

    await services.store.lookup(live.handle)
    for handle in (expired.handle, revoked.handle):
        with pytest.raises(SessionNotFound):
            await services.store.lookup(handle)
    async with services.session_maker() as db:
        tokens = (await db.execute(select(RefreshToken.session_handle))).scalars().all()
    assert set(tokens) == {live.handle}
