"""Shared enums for the invite code service.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = ["HealthStatus", "RequestStatus", "CacheStatus", "RedemptionStage"]


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    ERROR = "error"


class CacheStatus(StrEnum):
    """Cache status values for metrics."""

    HIT = "true"
    MISS = "false"


class RedemptionStage(StrEnum):
    """Stages a single redemption attempt moves through.

    A failed attempt is logged with the last stage it reached, so
    ``LOCKED`` on a failure means the lease was held when it failed.
    """

    RECEIVED = "received"
    FORMAT_CHECKED = "format_checked"
    LOCKED = "locked"
    LOADED = "loaded"
    RULE_CHECKED = "rule_checked"
    COMMITTED = "committed"
    UNLOCKED = "unlocked"
