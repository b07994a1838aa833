"""Pydantic schemas for request/response validation in the invite code service.

This module defines Pydantic models for API input validation and output serialization,
ensuring type safety and automatic OpenAPI documentation generation.

Schema Hierarchy
=================
::
    InviteCreate (Input)
    ├─ referrer_email: str (validated, lowercased)
    ├─ max_uses: int (1-100, default 1)
    └─ expires_in_days: int (1-365, default 30)

    InviteRedeem (Input)
    ├─ code: str
    └─ email: str (validated, lowercased)

    ApiEnvelope (Output, every endpoint)
    ├─ failed: bool
    ├─ code: int (HTTP status)
    ├─ message: str
    └─ data: object
         ├─ InviteResponse      (create)
         ├─ RedemptionResult    (use)
         ├─ InviteValidation    (validate)
         ├─ InviteStats         (stats)
         └─ InviteDetails       (details)

    CachedInvitePayload (Redis)
    └─ invite record without redemptions

Key Behaviours
===============
- Email validation uses the validators library.
- Emails are trimmed and lowercased before they reach the service.
- Code shape is not validated here: the service's checksum check is the
  single place that decides whether a code is well formed.
- All datetime fields are timezone-aware.

Classes:
    InviteCreate:  Input schema for issuing codes.
    InviteRedeem:  Input schema for redeeming codes.
    ApiEnvelope:  Uniform response wrapper.
    CachedInvitePayload:  Redis cache payload for invite records.
"""

import datetime
from typing import Any

import validators
from pydantic import BaseModel, Field, field_validator

from invite_api.enums import HealthStatus

__all__ = [
    "ApiEnvelope",
    "CachedInvitePayload",
    "HealthResponse",
    "InviteCreate",
    "InviteDetails",
    "InviteRedeem",
    "InviteResponse",
    "InviteStats",
    "InviteValidation",
    "RedemptionEntry",
    "RedemptionResult",
    "normalize_email",
]


def normalize_email(v: str) -> str:
    v = v.strip().lower()
    if not validators.email(v):
        raise ValueError("Invalid email address provided")
    return v


class InviteCreate(BaseModel):
    referrer_email: str
    max_uses: int = Field(1, ge=1, le=100)
    expires_in_days: int = Field(30, ge=1, le=365)

    @field_validator("referrer_email")
    @classmethod
    def validate_referrer_email(cls, v: str) -> str:
        return normalize_email(v)


class InviteRedeem(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
    email: str

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return normalize_email(v)


class RedemptionEntry(BaseModel):
    email: str
    ip_address: str | None = None
    redeemed_at: datetime.datetime

    model_config = {"from_attributes": True}


class InviteResponse(BaseModel):
    code: str
    referrer_email: str
    max_uses: int
    current_uses: int
    is_active: bool
    expires_at: datetime.datetime
    created_at: datetime.datetime

    model_config = {"from_attributes": True}


class InviteDetails(BaseModel):
    id: int
    code: str
    referrer_email: str
    max_uses: int
    current_uses: int
    remaining_uses: int
    is_active: bool
    expires_at: datetime.datetime
    created_at: datetime.datetime
    updated_at: datetime.datetime
    redemptions: list[RedemptionEntry]

    model_config = {"from_attributes": True}


class RedemptionResult(BaseModel):
    success: bool = True
    code: str
    referrer: str
    current_uses: int
    remaining_uses: int
    is_active: bool


class InviteValidation(BaseModel):
    valid: bool
    reason: str | None = None
    remaining_uses: int | None = None
    expires_at: datetime.datetime | None = None


class InviteStats(BaseModel):
    referrer_email: str
    total_invites: int
    total_uses: int
    active_invites: int
    expired_invites: int
    fully_used_invites: int
    average_usage_rate: float = Field(..., description="Mean current_uses/max_uses across invites, in percent.")


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus


class ApiEnvelope(BaseModel):
    failed: bool = False
    code: int = 200
    message: str
    data: Any = Field(default_factory=dict)


class CachedInvitePayload(BaseModel):
    """Redis cache payload for an invite record. Never authoritative."""

    id: int
    code: str
    referrer_email: str
    max_uses: int
    current_uses: int
    is_active: bool
    expires_at: datetime.datetime
    created_at: datetime.datetime
    updated_at: datetime.datetime

    model_config = {"from_attributes": True}
