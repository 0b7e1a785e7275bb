"""Window boundaries and the proactive-rotation decision.

Everything here is pure: callers pass in the entries, limits and the
current time.
"""

from __future__ import annotations

from typing import Iterable, Optional

from quotakeeper.limits import DEFAULT_PROACTIVE_THRESHOLD, ProviderLimits
from quotakeeper.usage.models import UsageEntry, UsageStats

HOUR_S = 60 * 60
DAY_S = 24 * HOUR_S
MONTH_S = 30 * DAY_S

# (name, duration, ProviderLimits field)
WINDOWS: tuple[tuple[str, int, str], ...] = (
    ("hourly", HOUR_S, "tokens_per_hour"),
    ("daily", DAY_S, "tokens_per_day"),
    ("monthly", MONTH_S, "max_tokens_total"),
)


def sum_in_window(entries: Iterable[UsageEntry], now: float, window_s: float) -> int:
    """Sum tokens of entries with ``now - window_s <= timestamp <= now``."""
    start = now - window_s
    return sum(e.tokens for e in entries if start <= e.timestamp <= now)


def utilization(usage: int, limit: Optional[int]) -> float:
    """``usage / limit``; an absent or zero limit reads as unconstrained (0.0)."""
    if not limit or limit <= 0:
        return 0.0
    return usage / limit


def should_rotate(
    stats: UsageStats, threshold: float = DEFAULT_PROACTIVE_THRESHOLD
) -> bool:
    """True when any single window has reached *threshold* (inclusive)."""
    return stats.max_utilization >= threshold


def compute_stats(
    entries: Iterable[UsageEntry],
    limits: Optional[ProviderLimits],
    now: float,
) -> UsageStats:
    """Derive :class:`UsageStats` from a ledger snapshot."""
    entries = list(entries)
    limits = limits or ProviderLimits()

    hourly = sum_in_window(entries, now, HOUR_S)
    daily = sum_in_window(entries, now, DAY_S)
    monthly = sum_in_window(entries, now, MONTH_S)

    return UsageStats(
        hourly_usage=hourly,
        daily_usage=daily,
        monthly_usage=monthly,
        hourly_limit=limits.tokens_per_hour,
        daily_limit=limits.tokens_per_day,
        monthly_limit=limits.max_tokens_total,
        hourly_utilization=utilization(hourly, limits.tokens_per_hour),
        daily_utilization=utilization(daily, limits.tokens_per_day),
        monthly_utilization=utilization(monthly, limits.max_tokens_total),
    )


def format_utilization(stats: UsageStats) -> str:
    """``hourly=12.0%, daily=85.0%, monthly=2.8%`` for log lines."""
    return (
        f"hourly={stats.hourly_utilization * 100:.1f}%, "
        f"daily={stats.daily_utilization * 100:.1f}%, "
        f"monthly={stats.monthly_utilization * 100:.1f}%"
    )
