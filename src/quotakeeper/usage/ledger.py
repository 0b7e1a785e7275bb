"""Per-provider usage ledger with best-effort persistence."""

from __future__ import annotations

import math
import threading
import time
from typing import Callable, Optional

from quotakeeper._logging import get_logger
from quotakeeper.errors import InvalidInput
from quotakeeper.limits import ProviderLimits
from quotakeeper.storage import KeyValueStore, load_json_record, save_json_record
from quotakeeper.usage.models import ProviderLedger, UsageEntry
from quotakeeper.usage.windows import MONTH_S, WINDOWS, sum_in_window

logger = get_logger("QuotaKeeper.Ledger")

USAGE_STORE_KEY = "quotakeeper.tokenUsage"


def validate_provider(provider) -> str:
    if not isinstance(provider, str) or not provider.strip():
        raise InvalidInput(f"provider must be a non-empty string, got {provider!r}")
    return provider


def validate_tokens(tokens) -> int:
    """Return *tokens* as a non-negative int; fractional counts round up."""
    if isinstance(tokens, bool) or not isinstance(tokens, (int, float)):
        raise InvalidInput(f"tokens must be a number, got {tokens!r}")
    if isinstance(tokens, float):
        if not math.isfinite(tokens):
            raise InvalidInput(f"tokens must be finite, got {tokens!r}")
        tokens = math.ceil(tokens)
    if tokens < 0:
        raise InvalidInput(f"tokens must be >= 0, got {tokens!r}")
    return tokens


class UsageLedger:
    """Thread-safe record of token usage per provider.

    Ledgers are held in memory and mirrored to *store* under
    ``USAGE_STORE_KEY`` after every mutation.  The in-memory copy is
    authoritative: a failed write is logged and the ledger carries on.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
        store_key: str = USAGE_STORE_KEY,
    ) -> None:
        self._store = store
        self._clock = clock
        self._store_key = store_key
        self._lock = threading.RLock()
        self._ledgers: dict[str, ProviderLedger] = {}
        self.load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Replace in-memory state with the persisted payload."""
        try:
            data = load_json_record(self._store, self._store_key)
        except Exception as exc:
            logger.error(f"Failed to load usage data: {exc}")
            data = {}
        with self._lock:
            self._ledgers = self.from_payload(data)
        if self._ledgers:
            logger.debug(f"Loaded usage data for {len(self._ledgers)} providers")
        else:
            logger.debug("No existing usage data found in storage")

    def to_payload(self) -> dict:
        with self._lock:
            return {p: ledger.to_dict() for p, ledger in self._ledgers.items()}

    @staticmethod
    def from_payload(data: dict) -> dict[str, ProviderLedger]:
        ledgers: dict[str, ProviderLedger] = {}
        for provider, raw in data.items():
            if not isinstance(provider, str) or not isinstance(raw, dict):
                logger.warning(f"Skipping malformed usage record for {provider!r}")
                continue
            ledgers[provider] = ProviderLedger.from_dict(raw)
        return ledgers

    def _persist(self) -> None:
        # Caller holds the lock.
        try:
            save_json_record(self._store, self._store_key, self.to_payload())
            logger.debug(f"Saved usage data for {len(self._ledgers)} providers")
        except Exception as exc:
            logger.error(f"Failed to save usage data: {exc}")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def record(self, provider: str, tokens, now: Optional[float] = None) -> UsageEntry:
        """Append a usage entry for *provider*.

        Raises :class:`InvalidInput` for a bad provider or token count.
        """
        provider = validate_provider(provider)
        tokens = validate_tokens(tokens)
        now = self._clock() if now is None else now

        entry = UsageEntry(timestamp=now, tokens=tokens)
        with self._lock:
            ledger = self._ledgers.get(provider)
            if ledger is None:
                ledger = ProviderLedger()
                ledger.stamp_resets(now)
                self._ledgers[provider] = ledger
            ledger.entries.append(entry)
            count = len(ledger.entries)
            self._persist()

        logger.debug(f"Recorded {tokens} tokens for {provider}. Total entries: {count}")
        return entry

    def clear(self, provider: str, now: Optional[float] = None) -> bool:
        """Empty *provider*'s ledger.  Returns False if it had none."""
        now = self._clock() if now is None else now
        with self._lock:
            ledger = self._ledgers.get(provider)
            if ledger is None:
                return False
            ledger.entries = []
            ledger.stamp_resets(now)
            self._persist()
        return True

    def clear_all(self) -> int:
        """Drop every ledger and the persisted record.  Returns the count."""
        with self._lock:
            count = len(self._ledgers)
            self._ledgers = {}
            try:
                self._store.remove(self._store_key)
            except Exception as exc:
                logger.error(f"Failed to remove usage data: {exc}")
        return count

    def prune(self, now: float, horizon_s: float) -> int:
        """Remove entries with ``now - timestamp >= horizon_s``.

        Ledgers are kept even when emptied.  Persists only if something
        was removed; returns the number of entries removed.
        """
        cutoff = now - horizon_s
        removed = 0
        with self._lock:
            for ledger in self._ledgers.values():
                kept = [e for e in ledger.entries if e.timestamp > cutoff]
                if len(kept) != len(ledger.entries):
                    removed += len(ledger.entries) - len(kept)
                    ledger.entries = kept
            if removed:
                self._persist()
        return removed

    def apply_window_resets(
        self,
        provider: str,
        limits: Optional[ProviderLimits],
        now: Optional[float] = None,
    ) -> list[str]:
        """Advance the reset baseline of every configured window that is due.

        Window sums are sliding, so resetting the hourly or daily baseline
        leaves the entries alone.  A due monthly reset also drops entries
        older than the monthly window, which no window reads any more.
        Returns the names of the windows that were reset.
        """
        if limits is None:
            return []
        now = self._clock() if now is None else now
        reset: list[str] = []
        with self._lock:
            ledger = self._ledgers.get(provider)
            if ledger is None:
                return []
            changed = False
            for name, duration, limit_field in WINDOWS:
                if not getattr(limits, limit_field):
                    continue
                attr = f"last_{name}_reset"
                last = getattr(ledger, attr)
                if last is None:
                    setattr(ledger, attr, now)
                    changed = True
                    continue
                if now - last < duration:
                    continue
                if duration == MONTH_S:
                    ledger.entries = [
                        e for e in ledger.entries if now - e.timestamp < MONTH_S
                    ]
                setattr(ledger, attr, now)
                reset.append(name)
                changed = True
            if changed:
                self._persist()
        if reset:
            logger.info(f"Reset {', '.join(reset)} window(s) for {provider}")
        return reset

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def snapshot(self, provider: str) -> list[UsageEntry]:
        """Copy of *provider*'s entries, safe to iterate without the lock."""
        with self._lock:
            ledger = self._ledgers.get(provider)
            return list(ledger.entries) if ledger is not None else []

    def get_ledger(self, provider: str) -> Optional[ProviderLedger]:
        """Detached copy of *provider*'s ledger, or ``None``."""
        with self._lock:
            ledger = self._ledgers.get(provider)
            if ledger is None:
                return None
            return ProviderLedger(
                entries=list(ledger.entries),
                last_hourly_reset=ledger.last_hourly_reset,
                last_daily_reset=ledger.last_daily_reset,
                last_monthly_reset=ledger.last_monthly_reset,
            )

    def usage_in_window(
        self, provider: str, window_s: float, now: Optional[float] = None
    ) -> int:
        """Tokens recorded for *provider* within ``[now - window_s, now]``."""
        now = self._clock() if now is None else now
        return sum_in_window(self.snapshot(provider), now, window_s)

    def has_ledger(self, provider: str) -> bool:
        with self._lock:
            return provider in self._ledgers

    def has_usage(self, provider: str) -> bool:
        with self._lock:
            ledger = self._ledgers.get(provider)
            return bool(ledger and ledger.entries)

    def providers(self) -> list[str]:
        with self._lock:
            return list(self._ledgers)

    def entry_count(self) -> int:
        with self._lock:
            return sum(len(ledger.entries) for ledger in self._ledgers.values())
