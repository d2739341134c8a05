"""How session credentials travel: HttpOnly cookies by default, headers when the client asks for them."""

from fastapi import Request, Response

from ntpof_auth.config import Settings

ACCESS_COOKIE = "sAccessToken"
REFRESH_COOKIE = "sRefreshToken"

AUTH_MODE_HEADER = "st-auth-mode"
ACCESS_TOKEN_HEADER = "st-access-token"
REFRESH_TOKEN_HEADER = "st-refresh-token"

# Request headers the website may send cross-origin, besides content-type.
SESSION_CORS_HEADERS = ["authorization", AUTH_MODE_HEADER, REFRESH_TOKEN_HEADER, "rid", "fdi-version"]
# Response headers the website may read.
SESSION_EXPOSED_HEADERS = [ACCESS_TOKEN_HEADER, REFRESH_TOKEN_HEADER]


def wants_header_mode(request: Request) -> bool:
    return request.headers.get(AUTH_MODE_HEADER, "").lower() == "header"


def _bearer(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:].strip() or None


def read_access_token(request: Request) -> str | None:
    return _bearer(request) or request.cookies.get(ACCESS_COOKIE)


def read_refresh_token(request: Request, *, bearer_is_refresh: bool = False) -> str | None:
    """Refresh credential from its header or cookie.

    On the refresh endpoint a header-mode client sends the refresh token as the
    bearer token, so ``bearer_is_refresh`` lets that endpoint accept it.
    """
    token = request.headers.get(REFRESH_TOKEN_HEADER) or request.cookies.get(REFRESH_COOKIE)
    if token:
        return token
    if bearer_is_refresh:
        return _bearer(request)
    return None


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def set_session_credentials(
    response: Response,
    request: Request,
    settings: Settings,
    access_token: str,
    refresh_token: str,
) -> None:
    if wants_header_mode(request):
        response.headers[ACCESS_TOKEN_HEADER] = access_token
        response.headers[REFRESH_TOKEN_HEADER] = refresh_token
        return
    # The access cookie outlives the access token so an expired token still
    # reaches the server and can be refreshed.
    max_age = settings.refresh_token_expire_days * 86400
    common = {
        "max_age": max_age,
        "domain": settings.cookie_domain,
        "secure": settings.secure_cookies,
        "httponly": True,
        "samesite": settings.cookie_same_site,
    }
    response.set_cookie(ACCESS_COOKIE, access_token, path="/", **common)
    response.set_cookie(REFRESH_COOKIE, refresh_token, path=settings.refresh_cookie_path, **common)


def clear_session_credentials(response: Response, settings: Settings) -> None:
    common = {
        "domain": settings.cookie_domain,
        "secure": settings.secure_cookies,
        "httponly": True,
        "samesite": settings.cookie_same_site,
    }
    response.delete_cookie(ACCESS_COOKIE, path="/", **common)
    response.delete_cookie(REFRESH_COOKIE, path=settings.refresh_cookie_path, **common)
