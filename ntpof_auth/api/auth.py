"""Auth: third-party sign-in, session refresh, sign-out."""

import logging
from typing import Annotated
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from ntpof_auth.api.deps import get_services
from ntpof_auth.api.guards import trusted_origin_for_unsafe_methods, verify_session
from ntpof_auth.api.transport import (
    clear_session_credentials,
    client_ip,
    read_access_token,
    read_refresh_token,
    set_session_credentials,
)
from ntpof_auth.core.errors import AuthError, Unauthenticated
from ntpof_auth.core.rate_limit import SIGNIN_LIMIT, limiter
from ntpof_auth.services.session_manager import AuthContext
from ntpof_auth.services.session_store import SessionMetadata
from ntpof_auth.state import AppServices

logger = logging.getLogger(__name__)
router = APIRouter(tags=["auth"])


class AuthorisationUrlOut(BaseModel):
    status: str = "OK"
    urlWithQueryParams: str


class UserOut(BaseModel):
    id: str
    email: str | None = None


class SignInOut(BaseModel):
    status: str = "OK"
    user: UserOut
    createdNewUser: bool


class StatusOut(BaseModel):
    status: str = "OK"


def _metadata(request: Request) -> SessionMetadata:
    return SessionMetadata(user_agent=request.headers.get("user-agent"), ip_address=client_ip(request))


@router.get(
    "/authorisationurl",
    response_model=AuthorisationUrlOut,
    summary="Provider authorization URL for clients that redirect themselves",
    responses={404: {"description": "Unknown provider"}},
)
@limiter.limit(SIGNIN_LIMIT)
async def authorisation_url(
    request: Request,
    services: Annotated[AppServices, Depends(get_services)],
    third_party_id: Annotated[str, Query(alias="thirdPartyId")],
) -> AuthorisationUrlOut:
    auth_request = await services.oauth.initiate(third_party_id)
    return AuthorisationUrlOut(urlWithQueryParams=auth_request.url)


@router.get(
    "/signinup/{provider_id}",
    summary="Start sign-in: redirect to the provider",
    status_code=307,
    responses={404: {"description": "Unknown provider"}},
)
@limiter.limit(SIGNIN_LIMIT)
async def signinup(
    request: Request,
    provider_id: str,
    services: Annotated[AppServices, Depends(get_services)],
) -> RedirectResponse:
    auth_request = await services.oauth.initiate(provider_id)
    logger.debug("Sign-in initiated for %s, state expires at %s", provider_id, auth_request.expires_at)
    return RedirectResponse(auth_request.url, status_code=307)


@router.get(
    "/callback/{provider_id}",
    summary="Provider redirect target: complete sign-in and return to the website",
    status_code=303,
)
async def callback_redirect(
    request: Request,
    provider_id: str,
    services: Annotated[AppServices, Depends(get_services)],
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
) -> RedirectResponse:
    settings = services.settings
    if error:
        logger.info("%s callback returned error=%s", provider_id, error)
        code = None
    try:
        identity = await services.oauth.complete(provider_id, code, state)
        result = await services.sessions.sign_in(identity, _metadata(request))
    except AuthError as e:
        logger.info("%s sign-in failed: %s", provider_id, e)
        query = urlencode({"error": e.public_message})
        return RedirectResponse(f"{settings.website_domain}{settings.website_base_path}?{query}", status_code=303)
    response = RedirectResponse(f"{settings.website_domain}/", status_code=303)
    set_session_credentials(response, request, settings, result.access_token, result.refresh_token)
    return response


@router.post(
    "/callback/{provider_id}",
    response_model=SignInOut,
    summary="Complete sign-in with code and state posted by the website",
    responses={
        400: {"description": "Invalid state or provider rejected the code"},
        503: {"description": "Provider unavailable"},
    },
)
async def callback(
    request: Request,
    response: Response,
    provider_id: str,
    services: Annotated[AppServices, Depends(get_services)],
) -> SignInOut:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
    elif content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        payload = dict(await request.form())
    else:
        payload = dict(request.query_params)
    code = payload.get("code")
    state = payload.get("state")
    identity = await services.oauth.complete(
        provider_id,
        code if isinstance(code, str) else None,
        state if isinstance(state, str) else None,
    )
    result = await services.sessions.sign_in(identity, _metadata(request))
    set_session_credentials(response, request, services.settings, result.access_token, result.refresh_token)
    return SignInOut(user=UserOut(id=result.user_id, email=identity.email), createdNewUser=result.created_new_user)


@router.post(
    "/session/refresh",
    response_model=StatusOut,
    summary="Rotate the refresh token and issue a new access token",
    responses={401: {"description": "Refresh token missing, invalid, reused or session revoked"}},
)
async def refresh_session(
    request: Request,
    response: Response,
    services: Annotated[AppServices, Depends(get_services)],
):
    try:
        result = await services.sessions.refresh(read_refresh_token(request, bearer_is_refresh=True))
    except Unauthenticated as e:
        failed = JSONResponse(status_code=e.status_code, content={"message": e.public_message})
        clear_session_credentials(failed, services.settings)
        return failed
    set_session_credentials(response, request, services.settings, result.access_token, result.refresh_token)
    return StatusOut()


@router.post(
    "/signout",
    response_model=StatusOut,
    summary="Revoke the current session and clear credentials",
)
async def signout(
    request: Request,
    response: Response,
    services: Annotated[AppServices, Depends(get_services)],
    ctx: Annotated[AuthContext | None, Depends(verify_session(trusted_origin_for_unsafe_methods))],
) -> StatusOut:
    if ctx is not None:
        await services.sessions.sign_out(ctx.session_handle, ip_address=client_ip(request))
    else:
        # lapsed access token: its signature still names the session to end
        await services.sessions.sign_out_with_token(read_access_token(request), ip_address=client_ip(request))
    clear_session_credentials(response, services.settings)
    return StatusOut()
