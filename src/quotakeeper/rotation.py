"""Active-key bookkeeping for providers configured with several API keys."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional

from quotakeeper._logging import get_logger
from quotakeeper.errors import InvalidInput
from quotakeeper.storage import KeyValueStore, load_json_record, save_json_record

logger = get_logger("QuotaKeeper.Rotation")

ROTATION_STORE_KEY = "quotakeeper.keyRotation"


class RotationResult(enum.Enum):
    ROTATED = "rotated"
    EXHAUSTED = "exhausted"


@dataclass
class RotationState:
    """Keys for one provider and the index of the one in use."""

    api_keys: list[str] = field(default_factory=list)
    current_key_index: int = 0

    @property
    def current_key(self) -> Optional[str]:
        if not self.api_keys:
            return None
        return self.api_keys[self.current_key_index]

    def to_dict(self) -> dict:
        return {
            "apiKeys": list(self.api_keys),
            "currentKeyIndex": self.current_key_index,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Optional[RotationState]:
        """Parse a persisted state.  Returns ``None`` if unusable."""
        if not isinstance(data, dict):
            return None
        keys = data.get("apiKeys")
        if not isinstance(keys, list) or not all(
            isinstance(k, str) and k for k in keys
        ):
            return None
        index = data.get("currentKeyIndex", 0)
        if isinstance(index, bool) or not isinstance(index, int):
            index = 0
        if not keys or not 0 <= index < len(keys):
            index = 0
        return cls(api_keys=list(keys), current_key_index=index)


class RotationController:
    """Owns the active key index per provider.

    Rotation only moves forward: once the last key is active,
    :meth:`advance` reports ``EXHAUSTED`` instead of wrapping back to a
    key that already hit its quota.
    """

    def __init__(
        self, store: KeyValueStore, store_key: str = ROTATION_STORE_KEY
    ) -> None:
        self._store = store
        self._store_key = store_key
        self._lock = threading.RLock()
        self._states: dict[str, RotationState] = {}
        self.load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        try:
            data = load_json_record(self._store, self._store_key)
        except Exception as exc:
            logger.error(f"Failed to load rotation state: {exc}")
            data = {}
        states: dict[str, RotationState] = {}
        for provider, raw in data.items():
            state = RotationState.from_dict(raw)
            if state is None:
                logger.warning(f"Skipping malformed rotation state for {provider!r}")
                continue
            states[provider] = state
        with self._lock:
            self._states = states

    def to_payload(self) -> dict:
        with self._lock:
            return {p: s.to_dict() for p, s in self._states.items()}

    def _persist(self) -> None:
        # Caller holds the lock.
        try:
            save_json_record(self._store, self._store_key, self.to_payload())
        except Exception as exc:
            logger.error(f"Failed to save rotation state: {exc}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current_key(self, provider: str) -> Optional[str]:
        with self._lock:
            state = self._states.get(provider)
            return state.current_key if state is not None else None

    def current_index(self, provider: str) -> Optional[int]:
        with self._lock:
            state = self._states.get(provider)
            if state is None or not state.api_keys:
                return None
            return state.current_key_index

    def keys(self, provider: str) -> list[str]:
        with self._lock:
            state = self._states.get(provider)
            return list(state.api_keys) if state is not None else []

    def has_next_key(self, provider: str) -> bool:
        with self._lock:
            state = self._states.get(provider)
            if state is None:
                return False
            return state.current_key_index + 1 < len(state.api_keys)

    def providers(self) -> list[str]:
        with self._lock:
            return list(self._states)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_key(self, provider: str, key: str) -> None:
        """Append *key* to *provider*'s keys.  The active index is unchanged."""
        if not isinstance(provider, str) or not provider:
            raise InvalidInput(f"provider must be a non-empty string, got {provider!r}")
        if not isinstance(key, str) or not key:
            raise InvalidInput("API key must be a non-empty string")
        with self._lock:
            state = self._states.setdefault(provider, RotationState())
            state.api_keys.append(key)
            self._persist()

    def set_keys(
        self,
        provider: str,
        keys: Iterable[str],
        current_index: Optional[int] = None,
    ) -> None:
        """Replace *provider*'s keys.

        The active index is kept when it is still valid (or set to
        *current_index* if given and valid), otherwise it falls back to 0.
        """
        keys = list(keys)
        if not all(isinstance(k, str) and k for k in keys):
            raise InvalidInput("API keys must be non-empty strings")
        with self._lock:
            state = self._states.setdefault(provider, RotationState())
            index = state.current_key_index if current_index is None else current_index
            state.api_keys = keys
            state.current_key_index = index if 0 <= index < len(keys) else 0
            self._persist()

    def remove_provider(self, provider: str) -> bool:
        with self._lock:
            if self._states.pop(provider, None) is None:
                return False
            self._persist()
        return True

    def advance(self, provider: str) -> RotationResult:
        """Move *provider* to its next key, or report ``EXHAUSTED``."""
        with self._lock:
            state = self._states.get(provider)
            if state is None or state.current_key_index + 1 >= len(state.api_keys):
                return RotationResult.EXHAUSTED
            state.current_key_index += 1
            self._persist()
            return RotationResult.ROTATED
