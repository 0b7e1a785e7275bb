import os
import tempfile
from pathlib import Path
from typing import Optional

import yaml

from quotakeeper._logging import get_logger
from quotakeeper.limits import ProviderLimits, get_effective_limits
from quotakeeper.storage import DEFAULT_SCOPE
from quotakeeper.usage.sweeper import DEFAULT_RETENTION_S, DEFAULT_SWEEP_INTERVAL_S

logger = get_logger("QuotaKeeper.Config")

CONFIG_ENV_VAR = "QUOTAKEEPER_CONFIG"


def _default_config_path() -> Path:
    return Path.home() / ".quotakeeper" / "quotaconfig.yaml"


def _default_db_path() -> Path:
    return Path.home() / ".quotakeeper" / "state.db"


class ConfigLoader:
    """Finds, loads, mutates, and persists quotaconfig.yaml.

    Read path:
        Searches --config, the QUOTAKEEPER_CONFIG env var, then
        ~/.quotakeeper/quotaconfig.yaml.

    Write path:
        ``set_api_keys``, ``set_provider_limits``, ``remove_provider``
        mutate the in-memory config.  ``save()`` atomically writes it back.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        allow_missing: bool = False,
    ):
        self._config_path: Optional[Path] = None

        if allow_missing:
            self.config: dict = {}
            return

        resolved = self._find_config(config_path)

        if not resolved:
            searched: list[str] = []
            if config_path:
                searched.append(
                    f"  - Command line (--config): {Path(config_path).resolve()}"
                )
            env_path = os.environ.get(CONFIG_ENV_VAR)
            if env_path:
                searched.append(
                    f"  - Environment variable ({CONFIG_ENV_VAR}): "
                    f"{Path(env_path).resolve()}"
                )
            searched.append(f"  - User home directory: {_default_config_path()}")
            raise FileNotFoundError(
                "Could not find 'quotaconfig.yaml'. "
                "Searched in the following locations:\n" + "\n".join(searched)
            )

        self._config_path = resolved
        with open(resolved, "r") as f:
            self.config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from: {resolved.resolve()}")

    # ------------------------------------------------------------------
    # Config discovery
    # ------------------------------------------------------------------

    def _find_config(self, config_path: Optional[str]) -> Optional[Path]:
        """Search for quotaconfig.yaml in priority order."""
        if config_path:
            p = Path(config_path)
            if p.is_file():
                return p
            logger.warning(f"Config not found at --config path: {p.resolve()}")

        env = os.environ.get(CONFIG_ENV_VAR)
        if env:
            p = Path(env)
            if p.is_file():
                return p
            logger.warning(f"Config not found at env var path: {p.resolve()}")

        home = _default_config_path()
        if home.is_file():
            return home

        return None

    @property
    def config_path(self) -> Optional[Path]:
        """The resolved path the config was loaded from (or will save to)."""
        return self._config_path

    # ------------------------------------------------------------------
    # Provider accessors
    # ------------------------------------------------------------------

    def get_provider_ids(self) -> list[str]:
        return list((self.config.get("providers") or {}).keys())

    def get_provider_config(self, provider: str) -> dict:
        return (self.config.get("providers") or {}).get(provider) or {}

    def get_api_keys(self, provider: str) -> list[str]:
        keys = self.get_provider_config(provider).get("api_keys") or []
        if not isinstance(keys, list):
            logger.warning(
                f"Ignoring api_keys for {provider}: expected a list, "
                f"got {type(keys).__name__}"
            )
            return []
        return [k for k in keys if isinstance(k, str) and k]

    def get_provider_limits(self, provider: str) -> ProviderLimits:
        """Configured limits merged over the provider's defaults."""
        overrides = self.get_provider_config(provider).get("limits") or {}
        return get_effective_limits(provider, overrides)

    # ------------------------------------------------------------------
    # Storage / retention accessors
    # ------------------------------------------------------------------

    def get_storage_config(self) -> dict:
        """Return the ``storage`` section, or ``{}`` if absent."""
        return self.config.get("storage") or {}

    def get_db_path(self) -> Path:
        path = self.get_storage_config().get("db_path")
        return Path(path).expanduser() if path else _default_db_path()

    def get_storage_scope(self) -> str:
        return self.get_storage_config().get("scope", DEFAULT_SCOPE)

    def get_retention_config(self) -> dict:
        """Return the ``retention`` section, or ``{}`` if absent."""
        return self.config.get("retention") or {}

    def get_retention_seconds(self) -> float:
        days = self.get_retention_config().get("days")
        return float(days) * 86400 if days else float(DEFAULT_RETENTION_S)

    def get_sweep_interval(self) -> float:
        interval = self.get_retention_config().get("sweep_interval_seconds")
        return float(interval) if interval else float(DEFAULT_SWEEP_INTERVAL_S)

    # ------------------------------------------------------------------
    # Mutation methods
    # ------------------------------------------------------------------

    def _provider_section(self, provider: str) -> dict:
        providers = self.config.setdefault("providers", {})
        if providers.get(provider) is None:
            providers[provider] = {}
        return providers[provider]

    def set_api_keys(self, provider: str, keys: list[str]) -> None:
        self._provider_section(provider)["api_keys"] = list(keys)

    def set_provider_limits(self, provider: str, limits: dict) -> None:
        """Replace the ``limits`` override mapping for *provider*."""
        ProviderLimits.from_dict(limits)  # validate before storing
        self._provider_section(provider)["limits"] = dict(limits)

    def remove_provider(self, provider: str) -> bool:
        """Remove a provider. Returns True if it existed."""
        providers = self.config.get("providers") or {}
        if provider in providers:
            del providers[provider]
            return True
        return False

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: Optional[Path] = None) -> Path:
        """Atomically write the current config to YAML.

        Returns the path the file was written to.
        """
        target = path or self._config_path or _default_config_path()
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), suffix=".yaml.tmp")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.dump(
                    self.config,
                    f,
                    default_flow_style=False,
                    sort_keys=False,
                    allow_unicode=True,
                )
            os.replace(tmp_path, str(target))
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        self._config_path = target
        logger.info(f"Configuration saved to: {target}")
        return target

    def to_yaml(self) -> str:
        """Return the current config as a YAML string (for preview)."""
        return yaml.dump(
            self.config,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )
