"""FastAPI route definitions for the invite code REST API.

This module provides all HTTP endpoints with proper dependency injection,
rate limiting, and response serialization. Every endpoint except /health
answers with the uniform ApiEnvelope; failures are rendered by the
InviteError handler registered in main.py.

API Endpoint Overview
=====================
::
    GET  /health
        └─ HealthResponse (200)

    POST /api/invite/create
        ├─ InviteCreate (request body)
        └─ ApiEnvelope[InviteResponse] (201) or 422/500/503

    POST /api/invite/use                       rate limit: strict
        ├─ InviteRedeem (request body)
        └─ ApiEnvelope[RedemptionResult] (200) or 400/404/409/410/423/429/503

    GET  /api/invite/validate/:code            rate limit: default
        └─ ApiEnvelope[InviteValidation] (200)

    GET  /api/invite/stats?referrer_email=
        └─ ApiEnvelope[InviteStats] (200)

    GET  /api/invite/details/:code
        └─ ApiEnvelope[InviteDetails] (200) or 400/404

Key Behaviours
===============
- The redeemer's origin address is the first X-Forwarded-For hop, else the
  socket peer.
- Route handlers contain no business rules; they call InviteService and
  wrap the result.
- Admin endpoints (create, stats, details) carry no authentication here;
  deployments restrict them at the gateway.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy import text

from invite_api.dependencies import RequestContext, get_invite_service, get_request_context
from invite_api.enums import HealthStatus
from invite_api.invite_service import InviteService
from invite_api.rate_limit import default_rate_limit, strict_rate_limit
from invite_api.schemas import (
    ApiEnvelope,
    HealthResponse,
    InviteCreate,
    InviteDetails,
    InviteRedeem,
    InviteResponse,
    RedemptionResult,
)

__all__ = ["router"]

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx: RequestContext = Depends(get_request_context)) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.HEALTHY

    try:
        await ctx.database.execute(text("SELECT 1"))
    except Exception as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    try:
        await ctx.cache_writer.ping()
    except Exception as e:
        ctx.logger.error(f"Cache health check failed: {e}")
        cache_status = HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is HealthStatus.HEALTHY
        else HealthStatus.UNHEALTHY
    )
    ctx.logger.debug(f"Health check completed: {status.value}")
    return HealthResponse(status=status, database=db_status, cache=cache_status)


@router.post("/api/invite/create", response_model=ApiEnvelope, status_code=201, tags=["invites"])
async def create_invite(
    payload: InviteCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: InviteService = Depends(get_invite_service),
) -> ApiEnvelope:
    ctx.add_tag("issue")
    ctx.logger.info(
        f"Invite creation requested by {payload.referrer_email}",
        extra={"operation": "issue_invite", "max_uses": payload.max_uses},
    )

    invite = await service.issue_invite(payload.referrer_email, payload.max_uses, payload.expires_in_days)

    ctx.logger.info(
        f"Invite created: {invite.code}",
        extra={"operation": "issue_invite", "code": invite.code, "duration_ms": ctx.get_duration()},
    )
    return ApiEnvelope(
        code=201,
        message="Invite code created successfully",
        data=InviteResponse.model_validate(invite).model_dump(mode="json"),
    )


@router.post(
    "/api/invite/use",
    response_model=ApiEnvelope,
    tags=["invites"],
    dependencies=[Depends(strict_rate_limit)],
)
async def use_invite(
    payload: InviteRedeem,
    ctx: RequestContext = Depends(get_request_context),
    service: InviteService = Depends(get_invite_service),
) -> ApiEnvelope:
    ctx.add_tag("redemption")
    ctx.logger.info(
        f"Invite redemption requested: {payload.code}",
        extra={"operation": "redeem_invite", "code": payload.code, "client_ip": ctx.client_ip},
    )

    invite = await service.redeem_invite(payload.code, payload.email, ctx.client_ip)

    ctx.logger.info(
        f"Invite redeemed: {invite.code}",
        extra={"operation": "redeem_invite", "code": invite.code, "duration_ms": ctx.get_duration()},
    )
    result = RedemptionResult(
        code=invite.code,
        referrer=invite.referrer_email,
        current_uses=invite.current_uses,
        remaining_uses=invite.remaining_uses,
        is_active=invite.is_active,
    )
    return ApiEnvelope(message="Invite code redeemed successfully", data=result.model_dump(mode="json"))


@router.get(
    "/api/invite/validate/{code}",
    response_model=ApiEnvelope,
    tags=["invites"],
    dependencies=[Depends(default_rate_limit)],
)
async def validate_invite(
    code: str,
    service: InviteService = Depends(get_invite_service),
) -> ApiEnvelope:
    validation = await service.validate_invite(code)
    return ApiEnvelope(message="Invite code validation", data=validation.model_dump(mode="json"))


@router.get("/api/invite/stats", response_model=ApiEnvelope, tags=["admin"])
async def get_invite_stats(
    referrer_email: str = Query(..., min_length=3, max_length=320),
    ctx: RequestContext = Depends(get_request_context),
    service: InviteService = Depends(get_invite_service),
) -> ApiEnvelope:
    ctx.logger.info(f"Stats requested for {referrer_email}")
    stats = await service.get_invite_stats(referrer_email)
    return ApiEnvelope(message="Invite statistics retrieved", data=stats.model_dump(mode="json"))


@router.get("/api/invite/details/{code}", response_model=ApiEnvelope, tags=["admin"])
async def get_invite_details(
    code: str,
    service: InviteService = Depends(get_invite_service),
) -> ApiEnvelope:
    invite = await service.get_invite_details(code)
    return ApiEnvelope(
        message="Invite details retrieved",
        data=InviteDetails.model_validate(invite).model_dump(mode="json"),
    )
