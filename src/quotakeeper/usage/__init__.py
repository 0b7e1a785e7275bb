"""Windowed token usage tracking and persistence."""

from quotakeeper.usage.ledger import UsageLedger
from quotakeeper.usage.models import ProviderLedger, UsageEntry, UsageStats
from quotakeeper.usage.sweeper import RetentionSweeper

__all__ = [
    "ProviderLedger",
    "RetentionSweeper",
    "UsageEntry",
    "UsageLedger",
    "UsageStats",
]
