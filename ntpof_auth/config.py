from urllib.parse import urlparse

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ntpof_auth.core.errors import ConfigurationError

# Env vars that must be present (and non-empty) for the service to start.
REQUIRED_ENV = (
    "DATABASE_URL",
    "API_DOMAIN",
    "WEBSITE_DOMAIN",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "SESSION_SIGNING_KEYS",
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore", frozen=True)

    # Session store backend, e.g. postgresql+asyncpg://user:pass@db:5432/auth
    database_url: str = Field(..., min_length=1)
    api_domain: str = Field(..., min_length=1)
    website_domain: str = Field(..., min_length=1)
    google_client_id: str = Field(..., min_length=1)
    google_client_secret: str = Field(..., min_length=1)
    # "kid:secret,kid:secret" - first entry signs, all entries verify
    session_signing_keys: str = Field(..., min_length=1)

    app_name: str = "NTPOF"
    api_base_path: str = "/auth"
    website_base_path: str = "/auth"
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    debug: bool = False

    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    refresh_token_expire_days: int = 100
    oauth_state_ttl_seconds: int = 600
    provider_timeout_seconds: float = 10.0
    session_sweep_interval_minutes: int = 15
    revoked_session_grace_minutes: int = 60

    cookie_domain: str | None = None
    cookie_secure: bool | None = None  # None: secure iff website is served over https
    cookie_same_site: str = "lax"
    # "/" lets protected routes refresh an expired access token transparently
    refresh_cookie_path: str = "/"
    encryption_key: str = ""  # Fernet key for PKCE verifiers at rest; empty stores plaintext (dev)
    enable_hsts: bool = False

    @field_validator("api_domain", "website_domain")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("api_base_path", "website_base_path")
    @classmethod
    def _normalize_base_path(cls, v: str) -> str:
        v = "/" + v.strip("/")
        return "" if v == "/" else v

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_jwt_algorithm(cls, v: str) -> str:
        if v not in ("HS256", "HS384", "HS512"):
            raise ValueError(f"JWT_ALGORITHM must be one of HS256, HS384, HS512, got: {v}")
        return v

    @field_validator("cookie_same_site")
    @classmethod
    def _validate_same_site(cls, v: str) -> str:
        v = v.lower()
        if v not in ("lax", "strict", "none"):
            raise ValueError(f"COOKIE_SAME_SITE must be lax, strict or none, got: {v}")
        return v

    @field_validator("session_signing_keys")
    @classmethod
    def _validate_signing_keys(cls, v: str) -> str:
        parse_signing_keys(v)
        return v

    @property
    def signing_keys(self) -> list[tuple[str, str]]:
        """Ordered (kid, secret) pairs; the first one is the current signing key."""
        return parse_signing_keys(self.session_signing_keys)

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return urlparse(self.website_domain).scheme == "https"

    @property
    def google_redirect_uri(self) -> str:
        return f"{self.api_domain}{self.api_base_path}/callback/google"

    @property
    def masked_database_url(self) -> str:
        """Database URL with the password replaced, for startup logs."""
        parsed = urlparse(self.database_url)
        if not parsed.password:
            return self.database_url
        return self.database_url.replace(f":{parsed.password}@", ":***@", 1)


def parse_signing_keys(raw: str) -> list[tuple[str, str]]:
    keys: list[tuple[str, str]] = []
    seen: set[str] = set()
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        kid, sep, secret = item.partition(":")
        kid, secret = kid.strip(), secret.strip()
        if not sep or not kid or not secret:
            raise ValueError("SESSION_SIGNING_KEYS entries must look like 'kid:secret'")
        if kid in seen:
            raise ValueError(f"duplicate key id in SESSION_SIGNING_KEYS: {kid}")
        seen.add(kid)
        keys.append((kid, secret))
    if not keys:
        raise ValueError("SESSION_SIGNING_KEYS must contain at least one key")
    return keys


def load_settings(**overrides) -> Settings:
    """Build Settings from the environment, turning validation errors into ConfigurationError.

    Missing or empty required variables are collected by their env name so the
    caller can print them all at once.
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        missing: list[str] = []
        invalid: list[str] = []
        for err in e.errors():
            field = str(err["loc"][0]) if err["loc"] else ""
            env_name = field.upper()
            if err["type"] in ("missing", "string_too_short") and env_name in REQUIRED_ENV:
                missing.append(env_name)
            else:
                invalid.append(f"{env_name}: {err['msg']}")
        raise ConfigurationError(missing=missing, invalid=invalid) from e
