"""Account ledger rules: award capacity and the posting throttle."""

from datetime import datetime, timedelta
from typing import Optional

from .models import Account

DEFAULT_CREDIT_QUOTA = 3
DEFAULT_POST_COOLDOWN_HOURS = 3.0


def has_capacity(account: Account, quota: int = DEFAULT_CREDIT_QUOTA) -> bool:
    """Whether the account may be awarded another job."""
    if account.has_active_paid_plan:
        return True
    return account.credits_used < quota


def remaining_credits(account: Account, quota: int = DEFAULT_CREDIT_QUOTA) -> Optional[int]:
    """Remaining awards, or None when unlimited."""
    if account.has_active_paid_plan:
        return None
    return max(0, quota - account.credits_used)


def consume_credit(account: Account) -> bool:
    """Record one award against the ledger. Returns True if a credit was used.

    Callers must have checked ``has_capacity`` against the same loaded copy
    and commit it with its version stamp.
    """
    if account.has_active_paid_plan:
        return False
    account.credits_used += 1
    return True


def can_post_job(account: Account, now: datetime,
                 cooldown_hours: float = DEFAULT_POST_COOLDOWN_HOURS) -> bool:
    return next_allowed_post_time(account, now, cooldown_hours) is None


def next_allowed_post_time(account: Account, now: datetime,
                           cooldown_hours: float = DEFAULT_POST_COOLDOWN_HOURS) -> Optional[datetime]:
    """When the poster may next post a job, or None if they may post now."""
    if account.has_active_paid_plan:
        return None
    if account.last_job_posted_at is None:
        return None
    next_allowed = account.last_job_posted_at + timedelta(hours=cooldown_hours)
    if now >= next_allowed:
        return None
    return next_allowed


def format_time_remaining(next_time: Optional[datetime], now: datetime) -> str:
    """Human readable wait such as ``2h 5m``."""
    if next_time is None:
        return ""
    seconds = int((next_time - now).total_seconds())
    if seconds <= 0:
        return "now"
    hours, remainder = divmod(seconds, 3600)
    minutes = remainder // 60
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
