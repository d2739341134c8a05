"""Signed access/refresh token codec with a rotating key set."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt

from ntpof_auth.core.errors import Expired, InvalidSignature

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class AccessTokenClaims:
    user_id: str
    session_handle: str
    expiry: datetime


@dataclass(frozen=True)
class RefreshTokenClaims:
    session_handle: str
    token_id: str
    family_id: str
    expiry: datetime


@dataclass(frozen=True)
class KeyRing:
    """Ordered signing keys. The first key signs; every key listed verifies.

    Retiring a key means removing it from the ring.
    """

    keys: tuple[tuple[str, str], ...]
    algorithm: str = "HS256"

    def __post_init__(self) -> None:
        if not self.keys:
            raise ValueError("KeyRing needs at least one key")

    @classmethod
    def from_settings(cls, settings) -> KeyRing:
        return cls(keys=tuple(settings.signing_keys), algorithm=settings.jwt_algorithm)

    @property
    def current(self) -> tuple[str, str]:
        return self.keys[0]

    def secret_for(self, kid: str) -> str | None:
        for key_id, secret in self.keys:
            if key_id == kid:
                return secret
        return None


class TokenCodec:
    """Issue and verify session JWTs. Pure over the key ring; never touches storage."""

    def __init__(self, key_ring: KeyRing):
        self.key_ring = key_ring

    def issue(self, user_id: str, session_handle: str, expiry: datetime) -> str:
        payload = {
            "sub": user_id,
            "sid": session_handle,
            "typ": ACCESS_TOKEN_TYPE,
            "iat": datetime.now(timezone.utc),
            "exp": expiry,
        }
        return self._encode(payload)

    def verify(self, token: str, *, allow_expired: bool = False) -> AccessTokenClaims:
        """Verify an access token. With ``allow_expired`` only the signature, key and type are checked."""
        payload = self._decode(token, ACCESS_TOKEN_TYPE, verify_exp=not allow_expired)
        user_id = payload.get("sub")
        handle = payload.get("sid")
        if not isinstance(user_id, str) or not isinstance(handle, str):
            raise InvalidSignature("access token is missing sub/sid")
        return AccessTokenClaims(user_id=user_id, session_handle=handle, expiry=_exp(payload))

    def issue_refresh(self, session_handle: str, token_id: str, family_id: str, expiry: datetime) -> str:
        payload = {
            "sid": session_handle,
            "jti": token_id,
            "fam": family_id,
            "typ": REFRESH_TOKEN_TYPE,
            "iat": datetime.now(timezone.utc),
            "exp": expiry,
        }
        return self._encode(payload)

    def verify_refresh(self, token: str) -> RefreshTokenClaims:
        payload = self._decode(token, REFRESH_TOKEN_TYPE)
        handle = payload.get("sid")
        token_id = payload.get("jti")
        family_id = payload.get("fam")
        if not all(isinstance(v, str) for v in (handle, token_id, family_id)):
            raise InvalidSignature("refresh token is missing sid/jti/fam")
        return RefreshTokenClaims(
            session_handle=handle,
            token_id=token_id,
            family_id=family_id,
            expiry=_exp(payload),
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        kid, secret = self.key_ring.current
        result = jwt.encode(payload, secret, algorithm=self.key_ring.algorithm, headers={"kid": kid})
        return result if isinstance(result, str) else result.decode("utf-8")

    def _decode(self, token: str, expected_type: str, verify_exp: bool = True) -> dict[str, Any]:
        if not token:
            raise InvalidSignature("empty token")
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise InvalidSignature("malformed token") from e
        kid = header.get("kid")
        secret = self.key_ring.secret_for(kid) if isinstance(kid, str) else None
        if secret is None:
            raise InvalidSignature(f"unknown or retired key id: {kid!r}")
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self.key_ring.algorithm],
                options={"require_exp": True, "verify_exp": verify_exp, "verify_aud": False},
            )
        except ExpiredSignatureError as e:
            raise Expired("token expired") from e
        except JWTError as e:
            raise InvalidSignature(str(e)) from e
        if payload.get("typ") != expected_type:
            raise InvalidSignature(f"expected {expected_type} token")
        return payload


def _exp(payload: dict[str, Any]) -> datetime:
    return datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
