"""Audit trail for security-relevant session events."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ntpof_auth.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

ACTION_SIGN_IN = "sign_in"
ACTION_SIGN_OUT = "sign_out"
ACTION_TOKEN_REUSE = "refresh_token_reuse"
RESOURCE_SESSION = "session"


async def log_action(
    session: AsyncSession,
    user_id: str | None,
    action: str,
    resource: str,
    resource_id: str | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
) -> None:
    session.add(
        AuditLog(
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details,
            ip_address=ip_address,
        )
    )
    await session.flush()


async def record_event(
    session_maker: async_sessionmaker[AsyncSession],
    user_id: str | None,
    action: str,
    resource_id: str | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
) -> None:
    """Write one session audit entry in its own transaction. Failures are logged, not raised."""
    try:
        async with session_maker() as session:
            await log_action(session, user_id, action, RESOURCE_SESSION, resource_id, details, ip_address)
            await session.commit()
    except Exception as e:
        logger.warning("Audit: failed to record %s for user_id=%s: %s", action, user_id, e)
