"""Invite Service Layer - Core Business Logic

This module provides the service layer for issuing and redeeming invite codes.
Redemption is the only operation with real concurrency concerns: it must never
let a code be used more than ``max_uses`` times, nor let one email redeem more
than one code, however many requests race for it.

Architecture Overview
==================
::
    ┌─────────────────────────────────────────────────────────────┐
    │                    InviteService                            │
    │  ┌─────────────────┐  ┌─────────────────┐  ┌──────────────┐ │
    │  │  Code Codec     │  │  Lock Manager   │  │ Invite Cache │ │
    │  │                 │  │                 │  │              │ │
    │  │ • Generate      │  │ • SET NX PX     │  │ • Get (fail  │ │
    │  │ • Checksum      │  │ • Token-guarded │  │   open)      │ │
    │  │ • Validate      │  │   release       │  │ • Invalidate │ │
    │  └─────────────────┘  └─────────────────┘  └──────────────┘ │
    └─────────────────────────────────────────────────────────────┘
                │                    │                    │
                ▼                    ▼                    ▼
    ┌─────────────────┐  ┌─────────────────┐  ┌─────────────────┐
    │   (no I/O)      │  │     Redis       │  │     Redis       │
    └─────────────────┘  └─────────────────┘  └─────────────────┘
                                  │
                                  ▼
                       ┌─────────────────────┐
                       │ InviteRepository    │
                       │ PostgreSQL (source  │
                       │ of truth)           │
                       └─────────────────────┘

Request Flow Diagrams
=====================

Redemption Flow
---------------
::
    ┌─────────────┐
    │ RECEIVED    │
    └──────┬──────┘
           ▼
    ┌─────────────┐  bad checksum
    │ FORMAT      │─────────────────▶ InvalidFormatError (no I/O)
    │ CHECKED     │
    └──────┬──────┘
           ▼
    ┌─────────────┐  lease busy
    │ LOCKED      │─────────────────▶ InviteContendedError
    └──────┬──────┘
           ▼
    ┌─────────────┐  no record
    │ LOADED      │─────────────────▶ InviteNotFoundError
    │ cache → DB  │
    └──────┬──────┘
           ▼
    ┌─────────────┐  uses >= max    ▶ MaxUsesReachedError
    │ RULE        │  now > expiry   ▶ InviteExpiredError
    │ CHECKED     │  email used     ▶ IdentityAlreadyRedeemedError
    └──────┬──────┘
           ▼
    ┌─────────────┐  guard miss     ▶ InviteContendedError
    │ COMMITTED   │  email UNIQUE   ▶ IdentityAlreadyRedeemedError
    │ + invalidate│
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ UNLOCKED    │  (leaving lease(): runs on every path that took it)
    └─────────────┘

Issuance Flow
-------------
::
    ┌─────────────┐
    │ generate()  │◀──────────────┐
    └──────┬──────┘               │ collision,
           ▼                      │ attempts left
    ┌─────────────┐               │
    │ probe DB +  │───────────────┘
    │ insert      │
    └──────┬──────┘  attempts exhausted ▶ CodeSpaceExhaustedError
           ▼
    ┌─────────────┐
    │ cache put   │
    └─────────────┘

Key Behaviours
===============
- Rule order is fixed (uses, expiry, identity) so a given bad state always
  produces the same error.
- The identity check always reads the database; the per-code cache cannot
  answer a question about every code.
- The conditional UPDATE re-checks ``current_uses`` in SQL, so an expired
  lease can never cause a lost update.
- The service never retries a contended redemption; the caller may.
"""

import datetime
import time
from typing import TYPE_CHECKING

from prometheus_client import Counter, Histogram

from invite_api.cache import InviteCache
from invite_api.codec import InviteCodeCodec
from invite_api.config import Settings
from invite_api.enums import CacheStatus, RedemptionStage, RequestStatus
from invite_api.exceptions import (
    CodeSpaceExhaustedError,
    IdentityAlreadyRedeemedError,
    InvalidFormatError,
    InviteContendedError,
    InviteError,
    InviteExpiredError,
    InviteNotFoundError,
    MaxUsesReachedError,
)
from invite_api.locks import LockManager
from invite_api.models import Invite, as_utc, utcnow
from invite_api.repository import InviteRepository
from invite_api.schemas import CachedInvitePayload, InviteStats, InviteValidation
from invite_api.stats import summarize_invites

if TYPE_CHECKING:
    from invite_api.dependencies import RequestContext

__all__ = ["InviteService"]


# ============================================================================
# PROMETHEUS METRICS
# ============================================================================

INVITE_ISSUE_REQUESTS_TOTAL = Counter(
    "invite_api_issue_requests_total",
    "Total invite issuance requests",
    ["status"],
)
INVITE_REDEMPTION_REQUESTS_TOTAL = Counter(
    "invite_api_redemption_requests_total",
    "Total invite redemption attempts by outcome",
    ["outcome"],
)
INVITE_REDEMPTION_DURATION = Histogram(
    "invite_api_redemption_duration_seconds",
    "Time taken to process a redemption attempt",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)
INVITE_CACHE_LOOKUPS_TOTAL = Counter(
    "invite_api_cache_lookups_total",
    "Invite cache lookups",
    ["cache_hit"],
)
INVITE_LOCK_CONTENTION_TOTAL = Counter(
    "invite_api_lock_contention_total",
    "Redemptions rejected because another request held the code's lease",
)
INVITE_CODE_COLLISIONS_TOTAL = Counter(
    "invite_api_code_collisions_total",
    "Generated codes that already existed",
)

InviteRecord = Invite | CachedInvitePayload


# ============================================================================
# CORE SERVICE CLASS
# ============================================================================


class InviteService:
    """Issue, redeem, validate and report on invite codes.

    One instance per request: it holds that request's database session.
    Everything else (codec, lock manager, cache) is shared and comes from the
    request context.

    Example:
        >>> service = InviteService.from_context(ctx)
        >>> invite = await service.issue_invite("admin@example.com", max_uses=3)
        >>> await service.redeem_invite(invite.code, "user@example.com", "10.0.0.1")
    """

    def __init__(self, ctx: "RequestContext"):
        self._repo = InviteRepository(ctx.database)
        self._codec: InviteCodeCodec = ctx.codec
        self._locks: LockManager = ctx.locks
        self._cache: InviteCache = ctx.invite_cache
        self._settings: Settings = ctx.settings
        self._logger = ctx.logger
        self._ctx = ctx

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "InviteService":
        return cls(ctx)

    # ========================================================================
    # PUBLIC API METHODS
    # ========================================================================

    async def issue_invite(
        self,
        referrer_email: str,
        max_uses: int = 1,
        expires_in_days: int | None = None,
    ) -> Invite:
        """Create a new invite code owned by ``referrer_email``.

        Args:
            referrer_email: Identity of the issuer.
            max_uses: How many distinct emails may redeem the code.
            expires_in_days: Lifetime of the code; settings default if None.

        Returns:
            Invite: The persisted invite.

        Raises:
            ValueError: If ``max_uses`` is below 1.
            CodeSpaceExhaustedError: If no free code was found within
                INVITE_MAX_CODE_ATTEMPTS generations.
        """
        if max_uses < 1:
            raise ValueError(f"max_uses must be at least 1, got {max_uses}")

        referrer_email = referrer_email.strip().lower()
        if expires_in_days is None:
            expires_in_days = self._settings.INVITE_DEFAULT_EXPIRES_DAYS
        max_attempts = self._settings.INVITE_MAX_CODE_ATTEMPTS

        try:
            for attempt in range(1, max_attempts + 1):
                code = self._codec.generate()
                if await self._repo.find_by_code(code) is not None:
                    INVITE_CODE_COLLISIONS_TOTAL.inc()
                    self._logger.warning(f"Generated code {code} already exists (attempt {attempt})")
                    continue

                now = utcnow()
                invite = Invite(
                    code=code,
                    referrer_email=referrer_email,
                    max_uses=max_uses,
                    current_uses=0,
                    is_active=True,
                    expires_at=now + datetime.timedelta(days=expires_in_days),
                    created_at=now,
                    updated_at=now,
                    redemptions=[],
                )
                stored = await self._repo.insert_unique(invite)
                if stored is None:
                    # Lost an insert race on the unique index.
                    INVITE_CODE_COLLISIONS_TOTAL.inc()
                    self._logger.warning(f"Code {code} was taken concurrently (attempt {attempt})")
                    continue

                await self._cache.put(stored)
                INVITE_ISSUE_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
                self._logger.info(f"Invite created: {stored.code} by {referrer_email}")
                return stored

            self._logger.critical(f"Code space exhausted after {max_attempts} attempts; check alphabet and salt")
            raise CodeSpaceExhaustedError(max_attempts)

        except InviteError:
            INVITE_ISSUE_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            raise

    async def redeem_invite(self, code: str, email: str, ip_address: str | None = None) -> Invite:
        """Consume one use of ``code`` for ``email``.

        Args:
            code: Invite code as typed by the user (case and dash optional).
            email: Redeemer identity.
            ip_address: Origin address recorded with the redemption.

        Returns:
            Invite: The updated invite, redemptions included.

        Raises:
            InvalidFormatError, InviteContendedError, InviteNotFoundError,
            MaxUsesReachedError, InviteExpiredError,
            IdentityAlreadyRedeemedError, StoreUnavailableError
        """
        start_time = time.perf_counter()
        stage = RedemptionStage.RECEIVED
        email = email.strip().lower()
        code = self._codec.normalize(code)

        try:
            if not self._codec.validate(code):
                raise InvalidFormatError(code)
            stage = RedemptionStage.FORMAT_CHECKED

            lock_ttl_ms = self._settings.INVITE_LOCK_TTL_MS
            async with self._locks.lease(code, lock_ttl_ms) as token:
                if token is None:
                    INVITE_LOCK_CONTENTION_TOTAL.inc()
                    raise InviteContendedError(code, lock_ttl_ms)
                stage = RedemptionStage.LOCKED

                invite = await self._load_for_redemption(code)
                stage = RedemptionStage.LOADED

                now = utcnow()
                await self._check_redemption_rules(invite, email, now)
                stage = RedemptionStage.RULE_CHECKED

                updated = await self._repo.record_redemption(
                    invite_id=invite.id,
                    expected_uses=invite.current_uses,
                    email=email,
                    ip_address=ip_address,
                    redeemed_at=now,
                )
                if updated is None:
                    # Loaded state was stale; drop it so the retry reads the database.
                    await self._cache.invalidate(code)
                    self._logger.warning(f"Conditional update missed for {code}; state changed since load")
                    raise InviteContendedError(code, lock_ttl_ms)
                stage = RedemptionStage.COMMITTED

                await self._cache.invalidate(code)
            stage = RedemptionStage.UNLOCKED

        except InviteError as exc:
            INVITE_REDEMPTION_DURATION.observe(time.perf_counter() - start_time)
            INVITE_REDEMPTION_REQUESTS_TOTAL.labels(outcome=exc.kind).inc()
            self._logger.warning(f"Redemption of {code} by {email} failed after {stage}: {exc.kind}")
            raise

        except Exception as exc:
            INVITE_REDEMPTION_DURATION.observe(time.perf_counter() - start_time)
            INVITE_REDEMPTION_REQUESTS_TOTAL.labels(outcome=RequestStatus.ERROR).inc()
            self._logger.error(f"Redemption error for {code} after {stage}: {exc}")
            raise

        duration = time.perf_counter() - start_time
        INVITE_REDEMPTION_DURATION.observe(duration)
        INVITE_REDEMPTION_REQUESTS_TOTAL.labels(outcome=RequestStatus.SUCCESS).inc()
        self._logger.info(
            f"Invite used: {code} by {email} ({updated.current_uses}/{updated.max_uses}) in {duration:.3f}s"
        )
        return updated

    async def validate_invite(self, code: str) -> InviteValidation:
        """Check whether ``code`` could be redeemed right now, without using it."""
        code = self._codec.normalize(code)
        if not self._codec.validate(code):
            return InviteValidation(valid=False, reason="Invalid format or checksum")

        invite: InviteRecord | None = await self._cache.get(code)
        INVITE_CACHE_LOOKUPS_TOTAL.labels(cache_hit=CacheStatus.HIT if invite else CacheStatus.MISS).inc()
        if invite is None:
            invite = await self._repo.find_by_code(code)
            if invite is None:
                return InviteValidation(valid=False, reason="Code not found")
            await self._cache.put(invite)

        now = utcnow()
        if not invite.is_active:
            return InviteValidation(valid=False, reason="Code is inactive")
        if invite.current_uses >= invite.max_uses:
            return InviteValidation(valid=False, reason="Maximum uses reached")
        if as_utc(invite.expires_at) <= now:
            return InviteValidation(valid=False, reason="Code has expired")

        return InviteValidation(
            valid=True,
            remaining_uses=invite.max_uses - invite.current_uses,
            expires_at=as_utc(invite.expires_at),
        )

    async def get_invite_stats(self, referrer_email: str) -> InviteStats:
        referrer_email = referrer_email.strip().lower()
        invites = await self._repo.query_by_creator(referrer_email)
        return summarize_invites(referrer_email, invites, utcnow())

    async def get_invite_details(self, code: str) -> Invite:
        code = self._codec.normalize(code)
        if not self._codec.validate(code):
            raise InvalidFormatError(code)
        invite = await self._repo.find_by_code(code)
        if invite is None:
            raise InviteNotFoundError(code)
        return invite

    # ========================================================================
    # PRIVATE HELPER METHODS
    # ========================================================================

    async def _load_for_redemption(self, code: str) -> InviteRecord:
        invite: InviteRecord | None = await self._cache.get(code)
        INVITE_CACHE_LOOKUPS_TOTAL.labels(cache_hit=CacheStatus.HIT if invite else CacheStatus.MISS).inc()
        if invite is None:
            invite = await self._repo.find_by_code(code)
        if invite is None:
            raise InviteNotFoundError(code)

        # Only active invites are redeemable. A used-up invite is still
        # returned so the rules can report it as MaxUsesReached; one that was
        # deactivated any other way is treated as absent.
        if not invite.is_active and invite.current_uses < invite.max_uses:
            raise InviteNotFoundError(code)
        return invite

    async def _check_redemption_rules(self, invite: InviteRecord, email: str, now: datetime.datetime) -> None:
        if invite.current_uses >= invite.max_uses:
            raise MaxUsesReachedError(invite.code)
        if now > as_utc(invite.expires_at):
            raise InviteExpiredError(invite.code)
        if await self._repo.find_by_redeemer(email) is not None:
            raise IdentityAlreadyRedeemedError(email)
