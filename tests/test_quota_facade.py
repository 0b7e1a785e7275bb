"""Tests for QuotaFacade, the public quota and rotation surface."""

from unittest.mock import MagicMock

import pytest

from quotakeeper.errors import PersistenceFailure
from quotakeeper.facade import QuotaFacade, QuotaObserver, estimate_tokens
from quotakeeper.limits import ProviderLimits
from quotakeeper.storage import InMemoryKeyValueStore
from quotakeeper.usage.windows import DAY_S, HOUR_S, MONTH_S

LIMITS = ProviderLimits(tokens_per_day=1000, max_tokens_total=30000)


class RecordingObserver(QuotaObserver):
    def __init__(self):
        self.events = []

    def on_usage_recorded(self, provider):
        self.events.append(("usage", provider))

    def on_rotation(self, provider, new_index):
        self.events.append(("rotation", provider, new_index))


# ------------------------------------------------------------------
# Usage accounting
# ------------------------------------------------------------------


def test_no_usage_returns_none(facade):
    assert facade.get_usage_stats("openai", LIMITS) is None
    assert facade.should_rotate_proactively("openai", LIMITS) is False


def test_record_and_stats(facade):
    facade.record_usage("openai", 100)
    stats = facade.get_usage_stats("openai", LIMITS)

    assert stats.daily_usage == 100
    assert stats.monthly_usage == 100
    assert stats.daily_utilization == 0.1
    assert stats.monthly_utilization == 100 / 30000


def test_accumulates(facade):
    for tokens in (100, 200, 150):
        facade.record_usage("openai", tokens)
    stats = facade.get_usage_stats("openai", LIMITS)

    assert stats.daily_usage == 450
    assert stats.daily_utilization == 0.45
    assert stats.monthly_utilization == 0.015


def test_daily_threshold_scenario(facade):
    limits = {"tokens_per_day": 1000, "max_tokens_total": 30000}
    facade.record_usage("openai", 850)

    assert facade.should_rotate_proactively("openai", limits) is True
    assert facade.get_usage_stats("openai", limits).daily_utilization == 0.85


def test_below_threshold(facade):
    facade.record_usage("openai", 100)
    assert facade.should_rotate_proactively("openai", LIMITS) is False


def test_threshold_boundary_inclusive(facade):
    facade.record_usage("openai", 800)
    assert facade.should_rotate_proactively("openai", LIMITS) is True


def test_just_under_threshold(facade):
    facade.record_usage("openai", 799)
    assert facade.should_rotate_proactively("openai", LIMITS) is False


def test_monthly_threshold(facade):
    facade.record_usage("openai", 25000)
    limits = ProviderLimits(tokens_per_day=100_000, max_tokens_total=30000)
    assert facade.should_rotate_proactively("openai", limits) is True


def test_hourly_threshold(facade):
    limits = ProviderLimits(
        tokens_per_hour=100, tokens_per_day=1000, max_tokens_total=30000
    )
    facade.record_usage("openai", 85)

    assert facade.should_rotate_proactively("openai", limits) is True
    assert facade.get_usage_stats("openai", limits).hourly_utilization == 0.85


def test_hourly_usage_slides_out(facade, clock):
    limits = ProviderLimits(tokens_per_hour=100)
    facade.record_usage("openai", 85)
    clock.advance(HOUR_S + 1)

    assert facade.should_rotate_proactively("openai", limits) is False
    assert facade.get_usage_stats("openai", limits).daily_usage == 85


def test_custom_threshold(facade):
    facade.record_usage("groq", 850)
    limits = ProviderLimits(tokens_per_day=1000, proactive_threshold=0.9)
    assert facade.should_rotate_proactively("groq", limits) is False
    facade.record_usage("groq", 50)
    assert facade.should_rotate_proactively("groq", limits) is True


def test_no_limits_never_rotates(facade):
    facade.record_usage("openai", 1_000_000)

    assert facade.should_rotate_proactively("openai", None) is False
    assert facade.should_rotate_proactively("openai", {}) is False
    stats = facade.get_usage_stats("openai", ProviderLimits())
    assert stats.daily_usage == 1_000_000
    assert stats.daily_utilization == 0


def test_missing_daily_limit_is_neutral(facade):
    facade.record_usage("openai", 5000)
    limits = ProviderLimits(max_tokens_total=1_000_000)
    stats = facade.get_usage_stats("openai", limits)

    assert stats.daily_utilization == 0
    assert facade.should_rotate_proactively("openai", limits) is False


def test_invalid_limits_mapping_is_ignored(facade):
    facade.record_usage("openai", 5000)
    assert (
        facade.should_rotate_proactively("openai", {"proactive_threshold": 7})
        is False
    )


def test_providers_are_independent(facade):
    facade.record_usage("openai", 500)
    facade.record_usage("anthropic", 1000)

    assert facade.get_usage_stats("openai", LIMITS).daily_usage == 500
    assert facade.get_usage_stats("anthropic", LIMITS).daily_usage == 1000
    facade.record_usage("openai", 400)
    assert facade.get_usage_stats("anthropic", LIMITS).daily_usage == 1000


@pytest.mark.parametrize(
    "provider, tokens",
    [("openai", -5), ("openai", float("nan")), ("", 10), (None, 10), ("openai", "x")],
)
def test_invalid_usage_is_ignored(facade, provider, tokens):
    facade.record_usage(provider, tokens)  # must not raise
    assert facade.get_usage_stats("openai", LIMITS) is None


def test_reset_usage_returns_none(facade):
    facade.record_usage("openai", 500)
    assert facade.get_usage_stats("openai", LIMITS).daily_usage == 500

    facade.reset_usage("openai")

    assert facade.get_usage_stats("openai", LIMITS) is None
    assert facade.ledger.has_ledger("openai") is True


def test_reset_only_touches_one_provider(facade):
    facade.record_usage("openai", 500)
    facade.record_usage("anthropic", 200)
    facade.reset_usage("openai")
    assert facade.get_usage_stats("anthropic", LIMITS).daily_usage == 200


def test_clear_all_usage(facade):
    facade.record_usage("openai", 100)
    facade.record_usage("anthropic", 200)
    facade.clear_all_usage()

    assert facade.get_usage_stats("openai", LIMITS) is None
    assert facade.get_usage_stats("anthropic", LIMITS) is None


def test_aged_out_provider_reads_as_no_data(facade, clock):
    """A provider whose entries are all swept reads the same as a new one."""
    facade.record_usage("openai", 500)
    clock.advance(MONTH_S)
    facade.sweep()

    assert facade.ledger.has_ledger("openai") is True
    assert facade.get_usage_stats("openai", LIMITS) is None
    assert facade.should_rotate_proactively("openai", LIMITS) is False


def test_usage_survives_restart(store, clock):
    first = QuotaFacade(store, clock=clock)
    first.record_usage("openai", 850)
    first.rotation.set_keys("openai", ["k1", "k2", "k3"])
    first.rotate_to_next_key("openai")

    second = QuotaFacade(store, clock=clock)
    assert second.get_usage_stats("openai", LIMITS).daily_usage == 850
    assert second.rotation.current_index("openai") == 1


def test_persistence_failure_does_not_break_recording(clock):
    store = MagicMock()
    store.get.return_value = None
    store.set.side_effect = PersistenceFailure("disk full")
    facade = QuotaFacade(store, clock=clock)

    facade.record_usage("openai", 850)

    assert facade.should_rotate_proactively("openai", LIMITS) is True


# ------------------------------------------------------------------
# Rotation
# ------------------------------------------------------------------


def test_rotate_when_over_limit(facade):
    facade.rotation.set_keys("openai", ["key1", "key2", "key3"])
    facade.record_usage("openai", 850)

    assert facade.should_rotate_proactively("openai", LIMITS) is True
    assert facade.rotate_to_next_key("openai") is True
    assert facade.current_key("openai") == "key2"


def test_rotation_exhausted(facade):
    facade.rotation.set_keys("openai", ["key1", "key2"])
    assert facade.rotate_to_next_key("openai") is True
    assert facade.rotate_to_next_key("openai") is False
    assert facade.rotation.current_index("openai") == 1


def test_single_key_recommends_but_cannot_rotate(facade):
    facade.add_key("openai", "single-key")
    facade.record_usage("openai", 850)

    assert facade.should_rotate_proactively("openai", LIMITS) is True
    assert facade.rotate_to_next_key("openai") is False
    assert facade.rotation.current_index("openai") == 0


def test_rapid_rotations(facade):
    facade.rotation.set_keys("openai", [f"key{i}" for i in range(1, 6)])
    limits = ProviderLimits(tokens_per_day=100, max_tokens_total=3000)

    for i in range(4):
        facade.record_usage("openai", 85)
        assert facade.should_rotate_proactively("openai", limits) is True
        assert facade.rotate_to_next_key("openai") is True

    assert facade.rotation.current_index("openai") == 4
    assert facade.rotate_to_next_key("openai") is False


def test_rotate_without_keys(facade):
    assert facade.rotate_to_next_key("openai") is False
    assert facade.current_key("openai") is None


def test_add_key_rejects_empty(facade):
    assert facade.add_key("openai", "") is False
    assert facade.add_key("openai", "k1") is True


# ------------------------------------------------------------------
# Observers
# ------------------------------------------------------------------


def test_observers_notified(facade):
    observer = RecordingObserver()
    facade.add_observer(observer)
    facade.rotation.set_keys("openai", ["k1", "k2"])

    facade.record_usage("openai", 10)
    facade.record_usage("openai", -1)
    facade.rotate_to_next_key("openai")
    facade.rotate_to_next_key("openai")

    assert observer.events == [("usage", "openai"), ("rotation", "openai", 1)]


def test_observer_errors_are_ignored(facade):
    broken = MagicMock(spec=QuotaObserver)
    broken.on_usage_recorded.side_effect = RuntimeError("ui gone")
    facade.add_observer(broken)

    facade.record_usage("openai", 10)

    assert facade.get_usage_stats("openai", LIMITS).daily_usage == 10


def test_remove_observer(facade):
    observer = RecordingObserver()
    facade.add_observer(observer)
    facade.remove_observer(observer)
    facade.record_usage("openai", 10)
    assert observer.events == []


# ------------------------------------------------------------------
# Token estimation and config wiring
# ------------------------------------------------------------------


def test_estimate_tokens():
    assert estimate_tokens("Hello") == 2
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0
    assert estimate_tokens("abcd") == 1
    long_text = "This is a longer text that should result in more tokens being estimated"
    assert estimate_tokens(long_text) > estimate_tokens("Hello")
    assert QuotaFacade.estimate_tokens("Hello") == 2


def test_from_config(config, clock):
    facade = QuotaFacade.from_config(config, clock=clock)
    try:
        assert facade.current_key("openai") == "sk-1"
        assert facade.rotation.keys("anthropic") == ["ak-1"]
        assert facade.rotation.keys("ollama") == []
        assert facade.sweeper.interval_s == 600
        assert facade.sweeper.horizon_s == 30 * DAY_S
        assert config.get_db_path().exists()
    finally:
        facade.close()


def test_sync_keys_preserves_rotation(config, store, clock):
    facade = QuotaFacade.from_config(config, store=store, clock=clock)
    facade.rotate_to_next_key("openai")

    again = QuotaFacade.from_config(config, store=store, clock=clock)
    assert again.current_key("openai") == "sk-2"


def test_sync_keys_restarts_when_key_list_replaced(config, store, clock):
    facade = QuotaFacade.from_config(config, store=store, clock=clock)
    facade.rotate_to_next_key("openai")

    config.set_api_keys("openai", ["new-1", "new-2", "new-3"])
    facade.sync_keys(config)

    assert facade.current_key("openai") == "new-1"


def test_sync_keys_follows_active_key(config, store, clock):
    facade = QuotaFacade.from_config(config, store=store, clock=clock)
    facade.rotate_to_next_key("openai")

    config.set_api_keys("openai", ["sk-0", "sk-1", "sk-2", "sk-3"])
    facade.sync_keys(config)

    assert facade.current_key("openai") == "sk-2"


# ------------------------------------------------------------------
# Input and store failures
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    "call, expected",
    [
        (lambda f, p: f.should_rotate_proactively(p, LIMITS), False),
        (lambda f, p: f.get_usage_stats(p, LIMITS), None),
        (lambda f, p: f.reset_usage(p), None),
        (lambda f, p: f.rotate_to_next_key(p), False),
        (lambda f, p: f.current_key(p), None),
    ],
    ids=["should_rotate", "stats", "reset", "rotate", "current_key"],
)
@pytest.mark.parametrize("provider", [["openai"], {"id": 1}, None, "", 42])
def test_invalid_provider_is_ignored(facade, call, expected, provider):
    facade.rotation.set_keys("openai", ["k1", "k2"])
    facade.record_usage("openai", 850)

    assert call(facade, provider) is expected
    assert facade.get_usage_stats("openai", LIMITS).daily_usage == 850
    assert facade.current_key("openai") == "k1"


def test_unexpected_store_errors_do_not_reach_caller(clock):
    store = MagicMock()
    store.get.side_effect = RuntimeError("backend down")
    store.set.side_effect = RuntimeError("backend down")
    store.remove.side_effect = RuntimeError("backend down")
    facade = QuotaFacade(store, clock=clock)
    facade.rotation.set_keys("openai", ["k1", "k2"])

    facade.record_usage("openai", 850)

    assert facade.should_rotate_proactively("openai", LIMITS) is True
    assert facade.rotate_to_next_key("openai") is True
    facade.reset_usage("openai")
    facade.clear_all_usage()
    assert facade.get_usage_stats("openai", LIMITS) is None
