"""Error taxonomy for quota accounting and key rotation."""


class QuotaError(Exception):
    """Base class for quotakeeper errors."""


class InvalidInput(QuotaError, ValueError):
    """Bad provider id, token count, limits, or key."""


class PersistenceFailure(QuotaError, RuntimeError):
    """The backing key-value store could not be read or written."""
