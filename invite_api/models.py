"""SQLAlchemy ORM models for the invite code service.

This module defines the database schema using SQLAlchemy declarative models
with the indexes and constraints the redemption protocol relies on.

Data Model Layout
=================
::
    invites table
    ├─ id (SERIAL PRIMARY KEY)
    ├─ code (VARCHAR(16) UNIQUE, INDEXED)          "XXXX-XXXX"
    ├─ referrer_email (VARCHAR(320), INDEXED)
    ├─ max_uses (INTEGER, CHECK >= 1)
    ├─ current_uses (INTEGER DEFAULT 0, CHECK <= max_uses)
    ├─ is_active (BOOLEAN DEFAULT TRUE)
    ├─ expires_at (TIMESTAMPTZ)
    ├─ created_at (TIMESTAMPTZ)
    └─ updated_at (TIMESTAMPTZ, ON UPDATE)

    invite_redemptions table
    ├─ id (SERIAL PRIMARY KEY)
    ├─ invite_id (FK invites.id, INDEXED)
    ├─ email (VARCHAR(320) UNIQUE)                 one redemption per email, ever
    ├─ ip_address (VARCHAR(64) NULL)
    └─ redeemed_at (TIMESTAMPTZ)

Class Relationship Diagram
=========================
::
    Invite 1 ──── * InviteRedemption
                    (ordered by redeemed_at)

Key Behaviours
===============
- The UNIQUE constraint on invite_redemptions.email is the final guard for
  identity uniqueness across all codes; the service pre-check only saves work.
- current_uses and is_active are written only by
  InviteRepository.record_redemption.
- Timestamps are stored as UTC. ``as_utc`` re-attaches the zone for backends
  (SQLite) that hand back naive datetimes.

Classes:
    Invite:  An issued invite code with its usage counters.
    InviteRedemption:  One consumed use of an invite code.
"""

import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from invite_api.database import Base

__all__ = ["Invite", "InviteRedemption", "as_utc", "utcnow"]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


class Invite(Base):
    __tablename__ = "invites"
    __table_args__ = (
        CheckConstraint("max_uses >= 1", name="ck_invites_max_uses_positive"),
        CheckConstraint("current_uses >= 0 AND current_uses <= max_uses", name="ck_invites_current_uses_bounded"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(16), unique=True, index=True, nullable=False)
    referrer_email: Mapped[str] = mapped_column(String(320), index=True, nullable=False)
    max_uses: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    current_uses: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    redemptions: Mapped[list["InviteRedemption"]] = relationship(
        back_populates="invite",
        lazy="selectin",
        order_by="InviteRedemption.redeemed_at, InviteRedemption.id",
    )

    @property
    def remaining_uses(self) -> int:
        return max(0, self.max_uses - self.current_uses)

    def is_expired(self, now: datetime.datetime) -> bool:
        return now > as_utc(self.expires_at)

    def __repr__(self) -> str:
        return f"<Invite(id={self.id}, code='{self.code}', uses={self.current_uses}/{self.max_uses})>"


class InviteRedemption(Base):
    __tablename__ = "invite_redemptions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    invite_id: Mapped[int] = mapped_column(ForeignKey("invites.id"), index=True, nullable=False)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    redeemed_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    invite: Mapped[Invite] = relationship(back_populates="redemptions")

    def __repr__(self) -> str:
        return f"<InviteRedemption(invite_id={self.invite_id}, email='{self.email}')>"
