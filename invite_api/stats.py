"""Read-only usage statistics over a creator's invite codes."""

import datetime
from collections.abc import Sequence

from invite_api.models import Invite
from invite_api.schemas import InviteStats

__all__ = ["summarize_invites"]


def summarize_invites(referrer_email: str, invites: Sequence[Invite], now: datetime.datetime) -> InviteStats:
    """Aggregate counters for one creator.

    An invite counts as active only if its flag is set and it has not expired;
    expired counts every invite past ``expires_at`` regardless of the flag, so
    the buckets overlap (a fully used invite can also be expired).
    """
    total = len(invites)
    expired = [invite for invite in invites if invite.is_expired(now)]
    active = [invite for invite in invites if invite.is_active and not invite.is_expired(now)]
    fully_used = [invite for invite in invites if invite.current_uses >= invite.max_uses]

    if total:
        usage_ratios = sum(invite.current_uses / invite.max_uses for invite in invites)
        average_usage_rate = round(usage_ratios / total * 100, 2)
    else:
        average_usage_rate = 0.0

    return InviteStats(
        referrer_email=referrer_email,
        total_invites=total,
        total_uses=sum(invite.current_uses for invite in invites),
        active_invites=len(active),
        expired_invites=len(expired),
        fully_used_invites=len(fully_used),
        average_usage_rate=average_usage_rate,
    )
