"""
Third-party sign-in: authorization code flow with PKCE.
Each attempt moves Initiated -> Callback Received -> Token Exchanged -> Identity Fetched;
nothing is retried here, the caller restarts from initiate() on failure.
"""
from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ntpof_auth.core.errors import InvalidState, ProviderRejected, ProviderUnavailable, UnknownProvider
from ntpof_auth.db.base import utcnow
from ntpof_auth.models.oauth_state import OAuthState
from ntpof_auth.services.crypto import decrypt_value, encrypt_value

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZATION_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"


@dataclass(frozen=True)
class OAuthProvider:
    id: str
    client_id: str
    client_secret: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    redirect_uri: str
    scopes: tuple[str, ...] = ()
    extra_authorization_params: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ExternalIdentity:
    provider_id: str
    subject: str
    email: str | None
    raw_profile: dict[str, Any]


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    state: str
    expires_at: datetime


def google_provider(settings) -> OAuthProvider:
    return OAuthProvider(
        id="google",
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        authorization_endpoint=GOOGLE_AUTHORIZATION_URL,
        token_endpoint=GOOGLE_TOKEN_URL,
        userinfo_endpoint=GOOGLE_USERINFO_URL,
        redirect_uri=settings.google_redirect_uri,
        scopes=("openid", "email", "profile"),
        extra_authorization_params={"access_type": "offline", "include_granted_scopes": "true"},
    )


def generate_code_verifier() -> str:
    """Random PKCE code verifier (43 chars, base64url without padding)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii").rstrip("=")


def code_challenge_s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _check_provider_status(provider_id: str, step: str, response: httpx.Response) -> None:
    if response.status_code >= 500 or response.status_code == 429:
        logger.warning("%s %s failed with HTTP %s", provider_id, step, response.status_code)
        raise ProviderUnavailable(f"{provider_id} {step} returned HTTP {response.status_code}")
    if response.status_code >= 400:
        logger.warning("%s %s rejected with HTTP %s: %s", provider_id, step, response.status_code, response.text[:200])
        raise ProviderRejected(f"{provider_id} {step} returned HTTP {response.status_code}")


def _json_body(provider_id: str, step: str, response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderRejected(f"{provider_id} {step} returned a non-JSON body") from e
    if not isinstance(data, dict):
        raise ProviderRejected(f"{provider_id} {step} returned unexpected JSON")
    return data


class OAuthExchangeEngine:
    def __init__(
        self,
        providers: dict[str, OAuthProvider],
        session_maker: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
        state_ttl: timedelta = timedelta(minutes=10),
        encryption_key: str = "",
    ):
        self._providers = providers
        self._session_maker = session_maker
        self._http = http_client
        self._state_ttl = state_ttl
        self._encryption_key = encryption_key

    def provider(self, provider_id: str) -> OAuthProvider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise UnknownProvider(f"unknown provider: {provider_id}")
        return provider

    async def initiate(self, provider_id: str) -> AuthorizationRequest:
        """Store a fresh state + PKCE verifier and build the provider redirect URL."""
        provider = self.provider(provider_id)
        state = secrets.token_urlsafe(32)
        verifier = generate_code_verifier()
        expires_at = utcnow() + self._state_ttl
        async with self._session_maker() as session:
            session.add(
                OAuthState(
                    state=state,
                    provider_id=provider.id,
                    encrypted_code_verifier=encrypt_value(verifier, self._encryption_key),
                    redirect_uri=provider.redirect_uri,
                    expires_at=expires_at,
                )
            )
            await session.commit()
        params = {
            "client_id": provider.client_id,
            "redirect_uri": provider.redirect_uri,
            "response_type": "code",
            "scope": " ".join(provider.scopes),
            "state": state,
            "code_challenge": code_challenge_s256(verifier),
            "code_challenge_method": "S256",
            **provider.extra_authorization_params,
        }
        return AuthorizationRequest(
            url=f"{provider.authorization_endpoint}?{urlencode(params)}",
            state=state,
            expires_at=expires_at,
        )

    async def complete(self, provider_id: str, code: str | None, state: str | None) -> ExternalIdentity:
        """Validate the callback, exchange the code and fetch the provider profile."""
        provider = self.provider(provider_id)
        verifier, redirect_uri = await self._consume_state(provider.id, state)
        if not code:
            raise ProviderRejected("callback carried no authorization code")
        tokens = await self._exchange_code(provider, code, verifier, redirect_uri)
        return await self._fetch_identity(provider, tokens["access_token"])

    async def _consume_state(self, provider_id: str, state: str | None) -> tuple[str, str]:
        if not state:
            raise InvalidState("callback carried no state")
        now = utcnow()
        async with self._session_maker() as session:
            row = await session.get(OAuthState, state)
            if row is None:
                raise InvalidState("unknown or already consumed state")
            result = await session.execute(
                delete(OAuthState)
                .where(OAuthState.state == state)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            raise InvalidState("state already consumed")
        if row.expires_at <= now:
            raise InvalidState("state expired")
        if row.provider_id != provider_id:
            raise InvalidState("state belongs to another provider")
        verifier = decrypt_value(row.encrypted_code_verifier, self._encryption_key)
        if not verifier:
            raise InvalidState("stored PKCE verifier could not be decrypted")
        return verifier, row.redirect_uri

    async def _exchange_code(
        self, provider: OAuthProvider, code: str, verifier: str, redirect_uri: str
    ) -> dict[str, Any]:
        data = {
            "client_id": provider.client_id,
            "client_secret": provider.client_secret,
            "code": code,
            "code_verifier": verifier,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        try:
            r = await self._http.post(provider.token_endpoint, data=data)
        except httpx.TimeoutException as e:
            logger.warning("%s token exchange timed out", provider.id)
            raise ProviderUnavailable(f"{provider.id} token endpoint timed out") from e
        except httpx.HTTPError as e:
            logger.warning("%s token exchange failed: %s", provider.id, e)
            raise ProviderUnavailable(f"{provider.id} token endpoint unreachable") from e
        _check_provider_status(provider.id, "token exchange", r)
        body = _json_body(provider.id, "token exchange", r)
        if not isinstance(body.get("access_token"), str) or not body["access_token"]:
            raise ProviderRejected(f"{provider.id} token response has no access_token")
        return body

    async def _fetch_identity(self, provider: OAuthProvider, access_token: str) -> ExternalIdentity:
        try:
            r = await self._http.get(
                provider.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TimeoutException as e:
            logger.warning("%s userinfo timed out", provider.id)
            raise ProviderUnavailable(f"{provider.id} userinfo endpoint timed out") from e
        except httpx.HTTPError as e:
            logger.warning("%s userinfo failed: %s", provider.id, e)
            raise ProviderUnavailable(f"{provider.id} userinfo endpoint unreachable") from e
        _check_provider_status(provider.id, "userinfo", r)
        profile = _json_body(provider.id, "userinfo", r)
        subject = profile.get("sub") or profile.get("id")
        if subject is None or str(subject) == "":
            raise ProviderRejected(f"{provider.id} profile has no subject id")
        email = profile.get("email")
        return ExternalIdentity(
            provider_id=provider.id,
            subject=str(subject),
            email=email if isinstance(email, str) else None,
            raw_profile=profile,
        )
