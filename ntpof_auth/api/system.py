from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from ntpof_auth.api.guards import verify_session
from ntpof_auth.core.rate_limit import limiter
from ntpof_auth.services.session_manager import AuthContext

router = APIRouter(tags=["system"])


class MeOut(BaseModel):
    userId: str
    sessionHandle: str


@router.get("/health")
@limiter.exempt
async def health(request: Request):
    now = datetime.now(timezone.utc)
    return {"status": "ok", "timestamp": now.isoformat(timespec="milliseconds").replace("+00:00", "Z")}


@router.get(
    "/me",
    response_model=MeOut,
    summary="Identity of the current session",
    responses={401: {"description": "Not authenticated"}},
)
async def me(ctx: Annotated[AuthContext, Depends(verify_session())]) -> MeOut:
    return MeOut(userId=ctx.user_id, sessionHandle=ctx.session_handle)
