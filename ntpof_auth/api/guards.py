"""
Route guards.

A protected route declares an ordered list of guards. Each guard is a plain
function ``(request, auth_context) -> GuardDecision``; the first rejection wins.
The session itself is validated once, before the guards run, and the
resulting ``AuthContext`` (or None) is passed to every guard and then to the
route handler.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import HTTPException, Request, Response

from ntpof_auth.api.deps import get_services
from ntpof_auth.api.transport import read_access_token, read_refresh_token, set_session_credentials
from ntpof_auth.core.errors import Unauthenticated
from ntpof_auth.services.session_manager import AuthContext

logger = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    reason: str | None = None
    status_code: int = 401


ALLOW = GuardDecision(allowed=True)

Guard = Callable[[Request, "AuthContext | None"], GuardDecision]


def reject(reason: str, status_code: int = 401) -> GuardDecision:
    return GuardDecision(allowed=False, reason=reason, status_code=status_code)


def require_session(request: Request, ctx: AuthContext | None) -> GuardDecision:
    return ALLOW if ctx is not None else reject("no valid session")


def trusted_origin_for_unsafe_methods(request: Request, ctx: AuthContext | None) -> GuardDecision:
    """Browsers send Origin on cross-site writes; only our own website and API may issue them."""
    if request.method in SAFE_METHODS:
        return ALLOW
    origin = request.headers.get("origin")
    if origin is None:
        return ALLOW
    settings = request.app.state.services.settings
    if origin.rstrip("/") in (settings.website_domain, settings.api_domain):
        return ALLOW
    return reject(f"untrusted origin {origin}", status_code=403)


DEFAULT_GUARDS: tuple[Guard, ...] = (require_session, trusted_origin_for_unsafe_methods)


def evaluate_guards(guards: tuple[Guard, ...], request: Request, ctx: AuthContext | None) -> GuardDecision:
    for guard in guards:
        decision = guard(request, ctx)
        if not decision.allowed:
            return decision
    return ALLOW


def verify_session(*guards: Guard):
    """Build a dependency yielding the request's AuthContext after running ``guards`` in order.

    With no guards given, DEFAULT_GUARDS apply (session required).
    """
    chain = guards or DEFAULT_GUARDS

    async def dependency(request: Request, response: Response) -> AuthContext | None:
        services = get_services(request)
        ctx: AuthContext | None = None
        access_token = read_access_token(request)
        if access_token:
            try:
                ctx = await services.sessions.authenticate(access_token, read_refresh_token(request))
            except Unauthenticated as e:
                logger.debug("Session rejected on %s: %s", request.url.path, e)
        decision = evaluate_guards(chain, request, ctx)
        if not decision.allowed:
            logger.debug("Guard rejected %s %s: %s", request.method, request.url.path, decision.reason)
            if decision.status_code == 401:
                raise Unauthenticated(decision.reason or "unauthorised")
            raise HTTPException(status_code=decision.status_code, detail="forbidden")
        if ctx is not None and ctx.refreshed is not None:
            set_session_credentials(
                response,
                request,
                services.settings,
                ctx.refreshed.access_token,
                ctx.refreshed.refresh_token,
            )
        return ctx

    return dependency
