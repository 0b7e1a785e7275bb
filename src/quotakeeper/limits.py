"""Per-provider token limits and the built-in defaults table."""

from __future__ import annotations

import math
from dataclasses import dataclass, asdict, replace
from typing import Optional

from quotakeeper.errors import InvalidInput

DEFAULT_PROACTIVE_THRESHOLD = 0.8

_WINDOW_FIELDS = ("tokens_per_hour", "tokens_per_day", "max_tokens_total")


@dataclass(frozen=True)
class ProviderLimits:
    """Declared token limits for one provider.

    A ``None`` limit means the window is unconstrained: its utilization
    reads as 0 and it never triggers rotation.  ``max_tokens_total`` is
    the limit for the 30-day window.
    """

    tokens_per_hour: Optional[int] = None
    tokens_per_day: Optional[int] = None
    max_tokens_total: Optional[int] = None
    proactive_threshold: float = DEFAULT_PROACTIVE_THRESHOLD

    def __post_init__(self):
        for name in _WINDOW_FIELDS:
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidInput(f"{name} must be a number, got {value!r}")
            if not math.isfinite(value) or value < 0:
                raise InvalidInput(f"{name} must be finite and >= 0, got {value!r}")
        threshold = self.proactive_threshold
        if (
            isinstance(threshold, bool)
            or not isinstance(threshold, (int, float))
            or not 0 < threshold <= 1
        ):
            raise InvalidInput(
                f"proactive_threshold must be in (0, 1], got {threshold!r}"
            )

    @property
    def has_any_limit(self) -> bool:
        return any(getattr(self, name) for name in _WINDOW_FIELDS)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> ProviderLimits:
        """Build limits from a config mapping, ignoring unknown keys."""
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise InvalidInput(f"limits must be a mapping, got {type(data).__name__}")
        valid = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if valid.get("proactive_threshold") is None:
            valid.pop("proactive_threshold", None)
        return cls(**valid)

    def merged(self, overrides: Optional[dict]) -> ProviderLimits:
        """Return a copy with the keys present in *overrides* replaced."""
        if not overrides:
            return self
        valid = {k: v for k, v in overrides.items() if k in self.__dataclass_fields__}
        if valid.get("proactive_threshold") is None:
            valid.pop("proactive_threshold", None)
        return replace(self, **valid)


# Published tier-1 daily quotas; thresholds are rotation points.
DEFAULT_PROVIDER_LIMITS: dict[str, ProviderLimits] = {
    "openai": ProviderLimits(tokens_per_day=10_000_000, proactive_threshold=0.95),
    "anthropic": ProviderLimits(tokens_per_day=1_000_000, proactive_threshold=0.95),
    "gemini": ProviderLimits(tokens_per_day=1_000_000, proactive_threshold=0.95),
    "deepseek": ProviderLimits(tokens_per_day=5_000_000, proactive_threshold=0.95),
    "xai": ProviderLimits(tokens_per_day=1_000_000, proactive_threshold=0.95),
    "mistral": ProviderLimits(tokens_per_day=1_000_000, proactive_threshold=0.95),
    # Very small free tier, rotate earlier.
    "groq": ProviderLimits(tokens_per_day=14_400, proactive_threshold=0.90),
    "openrouter": ProviderLimits(tokens_per_day=10_000_000, proactive_threshold=0.95),
    # Local providers have no API quota.
    "ollama": ProviderLimits(proactive_threshold=1.0),
    "vllm": ProviderLimits(proactive_threshold=1.0),
    "lmstudio": ProviderLimits(proactive_threshold=1.0),
    "litellm": ProviderLimits(tokens_per_day=5_000_000, proactive_threshold=0.95),
    "openai_compatible": ProviderLimits(tokens_per_day=5_000_000, proactive_threshold=0.95),
    "google_vertex": ProviderLimits(tokens_per_day=1_000_000, proactive_threshold=0.95),
    "microsoft_azure": ProviderLimits(tokens_per_day=10_000_000, proactive_threshold=0.95),
    "aws_bedrock": ProviderLimits(tokens_per_day=1_000_000, proactive_threshold=0.95),
}


def get_effective_limits(
    provider: str, overrides: Optional[dict] = None
) -> ProviderLimits:
    """Merge user *overrides* over the provider's default limits.

    Providers missing from the defaults table start from an
    unconstrained :class:`ProviderLimits`.
    """
    base = DEFAULT_PROVIDER_LIMITS.get(provider, ProviderLimits())
    return base.merged(overrides)


def should_track_tokens(provider: str) -> bool:
    """True if the provider's default limits constrain any window."""
    limits = DEFAULT_PROVIDER_LIMITS.get(provider)
    return bool(limits and limits.has_any_limit)
