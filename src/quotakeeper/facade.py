"""Public entry point for quota accounting and proactive key rotation."""

from __future__ import annotations

import math
import time
from typing import TYPE_CHECKING, Callable, Optional, Union

from quotakeeper._logging import get_logger
from quotakeeper.errors import InvalidInput
from quotakeeper.limits import ProviderLimits
from quotakeeper.rotation import RotationController, RotationResult
from quotakeeper.storage import KeyValueStore, SQLiteKeyValueStore
from quotakeeper.usage.ledger import UsageLedger, validate_provider
from quotakeeper.usage.models import UsageStats
from quotakeeper.usage.sweeper import (
    DEFAULT_RETENTION_S,
    DEFAULT_SWEEP_INTERVAL_S,
    RetentionSweeper,
)
from quotakeeper.usage.windows import compute_stats, format_utilization, should_rotate

if TYPE_CHECKING:
    from quotakeeper.config import ConfigLoader

logger = get_logger("QuotaKeeper.Facade")

LimitsLike = Union[ProviderLimits, dict, None]

_CHARS_PER_TOKEN = 4


class QuotaObserver:
    """Receives quota events.  Override only the hooks you need."""

    def on_usage_recorded(self, provider: str) -> None:
        pass

    def on_rotation(self, provider: str, new_index: int) -> None:
        pass


def estimate_tokens(text) -> int:
    """Rough token count: one token per four characters, rounded up.

    This is an approximation for accounting, not a tokenizer.  Empty or
    non-string input yields 0.
    """
    if not isinstance(text, str) or not text:
        return 0
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


class QuotaFacade:
    """Records token usage and decides when to rotate API keys.

    Nothing here raises into the caller's request path: invalid input is
    logged and ignored, persistence failures are logged and the in-memory
    state stays authoritative.

    Example::

        quota = QuotaFacade(SQLiteKeyValueStore(db_path))
        quota.record_usage("openai", 850)
        if quota.should_rotate_proactively("openai", {"tokens_per_day": 1000}):
            if not quota.rotate_to_next_key("openai"):
                alert_operator("openai keys exhausted")
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
        retention_s: float = DEFAULT_RETENTION_S,
        sweep_interval_s: float = DEFAULT_SWEEP_INTERVAL_S,
    ) -> None:
        self._clock = clock
        self.ledger = UsageLedger(store, clock=clock)
        self.rotation = RotationController(store)
        self.sweeper = RetentionSweeper(
            self.ledger,
            horizon_s=retention_s,
            interval_s=sweep_interval_s,
            clock=clock,
        )
        self._observers: list[QuotaObserver] = []
        logger.info("Quota tracker initialized")

    @classmethod
    def from_config(
        cls,
        config: "ConfigLoader",
        store: Optional[KeyValueStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> QuotaFacade:
        """Build a facade backed by the configured SQLite database.

        API keys listed in the config are synced into the rotation state.
        """
        if store is None:
            store = SQLiteKeyValueStore(
                db_path=config.get_db_path(), scope=config.get_storage_scope()
            )
        facade = cls(
            store,
            clock=clock,
            retention_s=config.get_retention_seconds(),
            sweep_interval_s=config.get_sweep_interval(),
        )
        facade.sync_keys(config)
        return facade

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background retention sweeper."""
        self.sweeper.start()

    def close(self) -> None:
        self.sweeper.stop()

    def add_observer(self, observer: QuotaObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: QuotaObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify(self, hook: str, *args) -> None:
        for observer in list(self._observers):
            try:
                getattr(observer, hook)(*args)
            except Exception:
                # Never fail accounting because of an observer error
                logger.debug(f"Observer {hook} raised; ignoring", exc_info=True)

    # ------------------------------------------------------------------
    # Usage accounting
    # ------------------------------------------------------------------

    def record_usage(self, provider: str, tokens) -> None:
        """Record *tokens* used against *provider*.  Never raises."""
        try:
            self.ledger.record(provider, tokens)
        except InvalidInput as exc:
            logger.warning(f"Ignoring usage record: {exc}")
            return
        logger.info(f"Recording {tokens} tokens for {provider}")
        self._notify("on_usage_recorded", provider)

    def should_rotate_proactively(self, provider: str, limits: LimitsLike) -> bool:
        """True when any window's utilization has reached the threshold."""
        if not self._valid_provider(provider, "rotation check"):
            return False
        limits = self._coerce_limits(limits)
        if limits is None or not limits.has_any_limit:
            return False
        if not self.ledger.has_usage(provider):
            logger.debug(f"No usage data found for {provider}, rotation not needed")
            return False

        now = self._clock()
        self.ledger.apply_window_resets(provider, limits, now)
        stats = compute_stats(self.ledger.snapshot(provider), limits, now)
        rotate = should_rotate(stats, limits.proactive_threshold)

        if rotate:
            logger.warning(
                f"Proactive rotation recommended for {provider}: "
                f"{format_utilization(stats)}"
            )
            if not self.rotation.has_next_key(provider):
                logger.warning(f"No further API key configured for {provider}")
        else:
            logger.debug(
                f"Rotation not needed for {provider}: {format_utilization(stats)}"
            )
        return rotate

    def get_usage_stats(
        self, provider: str, limits: LimitsLike = None
    ) -> Optional[UsageStats]:
        """Windowed usage for *provider*, or ``None`` if it has no entries."""
        if not self._valid_provider(provider, "usage stats request"):
            return None
        limits = self._coerce_limits(limits)
        if not self.ledger.has_usage(provider):
            return None
        now = self._clock()
        self.ledger.apply_window_resets(provider, limits, now)
        entries = self.ledger.snapshot(provider)
        if not entries:
            return None
        return compute_stats(entries, limits, now)

    def reset_usage(self, provider: str) -> None:
        """Clear *provider*'s usage history."""
        if not self._valid_provider(provider, "usage reset"):
            return
        logger.info(f"Resetting usage data for {provider}")
        self.ledger.clear(provider)

    def clear_all_usage(self) -> None:
        count = self.ledger.clear_all()
        logger.info(f"Cleared all usage data ({count} providers removed)")

    def sweep(self) -> int:
        """Run a retention sweep synchronously."""
        return self.sweeper.sweep()

    @staticmethod
    def estimate_tokens(text) -> int:
        return estimate_tokens(text)

    # ------------------------------------------------------------------
    # Key rotation
    # ------------------------------------------------------------------

    def rotate_to_next_key(self, provider: str) -> bool:
        """Advance to the next key.  False means every key is used up."""
        if not self._valid_provider(provider, "rotation"):
            return False
        result = self.rotation.advance(provider)
        if result is RotationResult.EXHAUSTED:
            logger.warning(f"Cannot rotate {provider}: no more API keys available")
            return False
        new_index = self.rotation.current_index(provider)
        logger.info(f"Rotated {provider} to key index {new_index}")
        self._notify("on_rotation", provider, new_index)
        return True

    def current_key(self, provider: str) -> Optional[str]:
        if not self._valid_provider(provider, "key lookup"):
            return None
        return self.rotation.current_key(provider)

    def add_key(self, provider: str, key: str) -> bool:
        try:
            self.rotation.add_key(provider, key)
        except InvalidInput as exc:
            logger.warning(f"Ignoring API key for {provider!r}: {exc}")
            return False
        return True

    def sync_keys(self, config: "ConfigLoader") -> None:
        """Load every provider's configured keys into the rotation state.

        An explicit ``current_key_index`` in the config wins.  Otherwise
        the active key stays active if it is still listed; when none of
        the previous keys survive, rotation restarts at the first key.
        """
        for provider in config.get_provider_ids():
            keys = config.get_api_keys(provider)
            if not keys:
                continue
            previous = self.rotation.keys(provider)
            if keys == previous:
                continue
            index = config.get_provider_config(provider).get("current_key_index")
            if isinstance(index, bool) or not isinstance(index, int):
                active = self.rotation.current_key(provider)
                if active in keys:
                    index = keys.index(active)
                elif not set(previous) & set(keys):
                    index = 0
                else:
                    index = None
            self.rotation.set_keys(provider, keys, index)
            logger.debug(f"Synced {len(keys)} API key(s) for {provider}")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _valid_provider(provider, operation: str) -> bool:
        try:
            validate_provider(provider)
        except InvalidInput as exc:
            logger.warning(f"Ignoring {operation}: {exc}")
            return False
        return True

    @staticmethod
    def _coerce_limits(limits: LimitsLike) -> Optional[ProviderLimits]:
        if limits is None or isinstance(limits, ProviderLimits):
            return limits
        try:
            return ProviderLimits.from_dict(limits)
        except (InvalidInput, TypeError) as exc:
            logger.warning(f"Ignoring invalid limits: {exc}")
            return None
