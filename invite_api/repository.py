"""Durable store access for invite records.

All reads and writes of the ``invites`` and ``invite_redemptions`` tables go
through ``InviteRepository``. In particular, ``record_redemption`` is the only
code path that increments ``current_uses`` or appends a redemption.

Flow Diagram — record_redemption()
==================================
::
    ┌──────────────────────────────┐
    │ UPDATE invites               │
    │   SET current_uses += 1,     │
    │       is_active = (cu+1 < mu)│
    │ WHERE id = :id               │
    │   AND current_uses = :seen   │
    │   AND current_uses < mu      │
    └──────────────┬───────────────┘
         rowcount == 1 ?
    ┌──────────────┴───────────────┐
    │ NO                            │ YES
    ▼                               ▼
┌──────────┐               ┌──────────────────┐
│ rollback │               │ INSERT redemption│
│ -> None  │               │ (email UNIQUE)   │
└──────────┘               └────────┬─────────┘
                           UNIQUE violated ?
                      ┌─────────────┴───────┐
                      │ YES                  │ NO
                      ▼                      ▼
             ┌────────────────┐      ┌─────────────┐
             │ rollback ->    │      │ COMMIT both │
             │ IdentityAlready│      │ -> Invite   │
             │ Redeemed       │      └─────────────┘
             └────────────────┘

Key Behaviours
===============
- The conditional UPDATE and the INSERT commit in one transaction.
- A guard miss (someone else moved current_uses) returns None; it never
  overwrites.
- Connectivity failures surface as StoreUnavailableError.
- Every statement bumps invite_api_db_reads_total or invite_api_db_writes_total.

Classes:
    InviteRepository:  Query and mutate invite records on an AsyncSession.
"""

import datetime
import functools
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from invite_api.exceptions import IdentityAlreadyRedeemedError, StoreUnavailableError
from invite_api.models import Invite, InviteRedemption

__all__ = ["InviteRepository", "DB_READS_TOTAL", "DB_WRITES_TOTAL"]

P = ParamSpec("P")
R = TypeVar("R")

DB_READS_TOTAL = Counter(
    "invite_api_db_reads_total",
    "Read statements issued by the invite repository",
)
DB_WRITES_TOTAL = Counter(
    "invite_api_db_writes_total",
    "Write statements issued by the invite repository",
)


def _store_call(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
    @functools.wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return await func(*args, **kwargs)
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailableError("database", str(exc.orig or exc)) from exc

    return wrapper


class InviteRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    @_store_call
    async def find_by_code(self, code: str) -> Invite | None:
        result = await self._session.execute(select(Invite).where(Invite.code == code))
        DB_READS_TOTAL.inc()
        return result.scalar_one_or_none()

    @_store_call
    async def find_by_redeemer(self, email: str) -> Invite | None:
        """Return the invite ``email`` redeemed, if any. Uses the unique email index."""
        result = await self._session.execute(
            select(Invite).join(InviteRedemption).where(InviteRedemption.email == email).limit(1)
        )
        DB_READS_TOTAL.inc()
        return result.scalar_one_or_none()

    @_store_call
    async def insert_unique(self, invite: Invite) -> Invite | None:
        """Persist a new invite; None if its code is already taken."""
        self._session.add(invite)
        DB_WRITES_TOTAL.inc()
        try:
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            return None
        return invite

    @_store_call
    async def record_redemption(
        self,
        invite_id: int,
        expected_uses: int,
        email: str,
        ip_address: str | None,
        redeemed_at: datetime.datetime,
    ) -> Invite | None:
        """Consume one use of an invite for ``email``.

        Args:
            invite_id: Primary key of the invite.
            expected_uses: ``current_uses`` the caller based its decision on.
            email: Normalized redeemer identity.
            ip_address: Origin address of the request, if known.
            redeemed_at: Timestamp stored on the redemption row.

        Returns:
            The refreshed invite, or None if ``current_uses`` no longer
            matched ``expected_uses`` (or the invite was already full).

        Raises:
            IdentityAlreadyRedeemedError: If ``email`` already redeemed any invite.
        """
        result = await self._session.execute(
            update(Invite)
            .where(
                Invite.id == invite_id,
                Invite.current_uses == expected_uses,
                Invite.current_uses < Invite.max_uses,
            )
            .values(
                current_uses=Invite.current_uses + 1,
                is_active=(Invite.current_uses + 1) < Invite.max_uses,
                updated_at=redeemed_at,
            )
            .execution_options(synchronize_session=False)
        )
        DB_WRITES_TOTAL.inc()
        if result.rowcount != 1:
            await self._session.rollback()
            return None

        self._session.add(
            InviteRedemption(
                invite_id=invite_id,
                email=email,
                ip_address=ip_address,
                redeemed_at=redeemed_at,
            )
        )
        DB_WRITES_TOTAL.inc()
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise IdentityAlreadyRedeemedError(email) from exc

        return await self._reload(invite_id)

    @_store_call
    async def query_by_creator(self, email: str) -> list[Invite]:
        result = await self._session.execute(
            select(Invite).where(Invite.referrer_email == email).order_by(Invite.created_at, Invite.id)
        )
        DB_READS_TOTAL.inc()
        return list(result.scalars().all())

    async def _reload(self, invite_id: int) -> Invite:
        result = await self._session.execute(
            select(Invite).where(Invite.id == invite_id).execution_options(populate_existing=True)
        )
        DB_READS_TOTAL.inc()
        return result.scalar_one()
