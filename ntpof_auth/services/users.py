"""Map a verified external identity to a stable internal user id."""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ntpof_auth.models.third_party_identity import ThirdPartyIdentity
from ntpof_auth.models.user import User
from ntpof_auth.services.oauth import ExternalIdentity

logger = logging.getLogger(__name__)


async def _find_identity(session: AsyncSession, identity: ExternalIdentity) -> ThirdPartyIdentity | None:
    r = await session.execute(
        select(ThirdPartyIdentity).where(
            ThirdPartyIdentity.provider_id == identity.provider_id,
            ThirdPartyIdentity.subject == identity.subject,
        )
    )
    return r.scalar_one_or_none()


async def resolve_user(
    session_maker: async_sessionmaker[AsyncSession],
    identity: ExternalIdentity,
) -> tuple[str, bool]:
    """Return (user_id, created_new_user). Existing (provider, subject) mappings are reused as-is."""
    async with session_maker() as session:
        existing = await _find_identity(session, identity)
        if existing is not None:
            return existing.user_id, False
        user = User(email=identity.email)
        session.add(user)
        await session.flush()
        session.add(
            ThirdPartyIdentity(
                provider_id=identity.provider_id,
                subject=identity.subject,
                user_id=user.id,
                email=identity.email,
            )
        )
        try:
            await session.commit()
            logger.info("Created user_id=%s for %s identity", user.id, identity.provider_id)
            return user.id, True
        except IntegrityError:
            # A concurrent first sign-in created the mapping; use theirs.
            await session.rollback()

    async with session_maker() as session:
        existing = await _find_identity(session, identity)
    if existing is None:
        raise RuntimeError(f"identity mapping for {identity.provider_id} vanished during sign-in")
    return existing.user_id, False
