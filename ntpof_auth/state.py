"""
Per-application service container.

Built once by the app factory from an immutable Settings instance and stored on
``app.state.services``; route dependencies read it from there.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ntpof_auth.config import Settings
from ntpof_auth.core.tokens import KeyRing, TokenCodec
from ntpof_auth.db.session import create_engine_and_sessionmaker
from ntpof_auth.services.http_client import create_http_client
from ntpof_auth.services.oauth import OAuthExchangeEngine, google_provider
from ntpof_auth.services.session_manager import SessionManager
from ntpof_auth.services.session_store import SessionStore


@dataclass(frozen=True)
class AppServices:
    settings: Settings
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    codec: TokenCodec
    store: SessionStore
    oauth: OAuthExchangeEngine
    sessions: SessionManager


def build_services(settings: Settings, http_client: httpx.AsyncClient | None = None) -> AppServices:
    engine, session_maker = create_engine_and_sessionmaker(settings.database_url, echo=settings.debug)
    http_client = http_client or create_http_client(timeout=settings.provider_timeout_seconds)
    codec = TokenCodec(KeyRing.from_settings(settings))
    store = SessionStore(session_maker, revoked_grace=timedelta(minutes=settings.revoked_session_grace_minutes))
    oauth = OAuthExchangeEngine(
        providers={"google": google_provider(settings)},
        session_maker=session_maker,
        http_client=http_client,
        state_ttl=timedelta(seconds=settings.oauth_state_ttl_seconds),
        encryption_key=settings.encryption_key,
    )
    sessions = SessionManager(
        codec=codec,
        store=store,
        session_maker=session_maker,
        access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
        refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
    )
    return AppServices(
        settings=settings,
        engine=engine,
        session_maker=session_maker,
        http_client=http_client,
        codec=codec,
        store=store,
        oauth=oauth,
        sessions=sessions,
    )
