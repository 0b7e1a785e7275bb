import pytest
import yaml
from pathlib import Path

from quotakeeper.config import ConfigLoader
from quotakeeper.facade import QuotaFacade
from quotakeeper.storage import InMemoryKeyValueStore

T0 = 1_750_000_000.0


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def facade(store, clock):
    return QuotaFacade(store, clock=clock)


@pytest.fixture
def config(tmp_path: Path):
    """Create a minimal, valid config file in a temporary directory."""
    config_content = {
        "storage": {"db_path": str(tmp_path / "state.db")},
        "retention": {"days": 30, "sweep_interval_seconds": 600},
        "providers": {
            "openai": {
                "api_keys": ["sk-1", "sk-2", "sk-3"],
                "limits": {"tokens_per_day": 1000, "max_tokens_total": 30000},
            },
            "anthropic": {
                "api_keys": ["ak-1"],
                "limits": {"tokens_per_hour": 100, "proactive_threshold": 0.9},
            },
            "ollama": {},
        },
    }
    config_path = tmp_path / "quotaconfig.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config_content, f, sort_keys=False)

    return ConfigLoader(config_path=str(config_path))
