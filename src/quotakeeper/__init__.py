"""QuotaKeeper: windowed token accounting and proactive API key rotation."""

__version__ = "0.1.0"

from quotakeeper.config import ConfigLoader
from quotakeeper.facade import QuotaFacade, QuotaObserver, estimate_tokens
from quotakeeper.limits import ProviderLimits

__all__ = [
    "ConfigLoader",
    "ProviderLimits",
    "QuotaFacade",
    "QuotaObserver",
    "estimate_tokens",
    "__version__",
]
