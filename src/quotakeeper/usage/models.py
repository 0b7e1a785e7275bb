"""Data models for windowed token usage."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class UsageEntry:
    """One recorded LLM call: when it finished and how many tokens it used."""

    timestamp: float  # epoch seconds
    tokens: int

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "tokens": self.tokens}

    @classmethod
    def from_dict(cls, data: dict) -> Optional[UsageEntry]:
        """Parse a persisted entry.  Returns ``None`` if it is unusable."""
        if not isinstance(data, dict):
            return None
        ts = data.get("timestamp")
        tokens = data.get("tokens")
        for value in (ts, tokens):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return None
            if not math.isfinite(value):
                return None
        if tokens < 0:
            return None
        return cls(timestamp=float(ts), tokens=int(tokens))


def _optional_instant(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


@dataclass
class ProviderLedger:
    """Usage history for one provider, oldest entry first."""

    entries: list[UsageEntry] = field(default_factory=list)
    last_hourly_reset: Optional[float] = None
    last_daily_reset: Optional[float] = None
    last_monthly_reset: Optional[float] = None

    def stamp_resets(self, now: float) -> None:
        self.last_hourly_reset = now
        self.last_daily_reset = now
        self.last_monthly_reset = now

    def to_dict(self) -> dict:
        data: dict = {"usage": [e.to_dict() for e in self.entries]}
        if self.last_hourly_reset is not None:
            data["lastHourlyReset"] = self.last_hourly_reset
        if self.last_daily_reset is not None:
            data["lastDailyReset"] = self.last_daily_reset
        if self.last_monthly_reset is not None:
            data["lastMonthlyReset"] = self.last_monthly_reset
        return data

    @classmethod
    def from_dict(cls, data: dict) -> ProviderLedger:
        """Parse a persisted ledger, dropping entries that fail to parse."""
        if not isinstance(data, dict):
            return cls()
        raw_usage = data.get("usage")
        entries: list[UsageEntry] = []
        if isinstance(raw_usage, list):
            for item in raw_usage:
                entry = UsageEntry.from_dict(item)
                if entry is not None:
                    entries.append(entry)
        # Stored order is trusted only after sorting.
        entries.sort(key=lambda e: e.timestamp)
        return cls(
            entries=entries,
            last_hourly_reset=_optional_instant(data.get("lastHourlyReset")),
            last_daily_reset=_optional_instant(data.get("lastDailyReset")),
            last_monthly_reset=_optional_instant(data.get("lastMonthlyReset")),
        )


@dataclass
class UsageStats:
    """Windowed usage and utilization for one provider.  Never persisted."""

    hourly_usage: int
    daily_usage: int
    monthly_usage: int
    hourly_limit: Optional[int]
    daily_limit: Optional[int]
    monthly_limit: Optional[int]
    hourly_utilization: float
    daily_utilization: float
    monthly_utilization: float

    @property
    def max_utilization(self) -> float:
        return max(
            self.hourly_utilization,
            self.daily_utilization,
            self.monthly_utilization,
        )

    def to_dict(self) -> dict:
        return {
            "hourly_usage": self.hourly_usage,
            "daily_usage": self.daily_usage,
            "monthly_usage": self.monthly_usage,
            "hourly_limit": self.hourly_limit,
            "daily_limit": self.daily_limit,
            "monthly_limit": self.monthly_limit,
            "hourly_utilization": self.hourly_utilization,
            "daily_utilization": self.daily_utilization,
            "monthly_utilization": self.monthly_utilization,
        }
