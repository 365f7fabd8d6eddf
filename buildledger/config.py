"""
Configuration loader for the construction finance engine.

Loads settings from finance_config.yaml and provides typed access
to budget tolerances, the legacy estimation policy, settlement,
ledger staleness, recalculation and permission sections.
"""
import os
from pathlib import Path
from typing import Optional
from functools import lru_cache

import yaml


# Shipped inside the package; BUILDLEDGER_CONFIG points at an override
DEFAULT_CONFIG_PATH = Path(__file__).parent / "finance_config.yaml"
CONFIG_PATH_ENV = "BUILDLEDGER_CONFIG"


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""
    pass


class FinanceConfig:
    """
    Configuration manager for the finance engine.

    Loads YAML configuration and provides typed access to all sections.
    Use get_config() to obtain the singleton instance.
    """

    def __init__(self, config_path: Optional[Path] = None):
        env_path = os.environ.get(CONFIG_PATH_ENV)
        self._config_path = Path(config_path or env_path or DEFAULT_CONFIG_PATH)
        self._config: dict = {}
        self._load()

    def _load(self) -> None:
        """Load configuration from YAML file."""
        if not self._config_path.exists():
            raise ConfigurationError(f"Config file not found: {self._config_path}")

        try:
            with open(self._config_path, 'r') as f:
                self._config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self._config, dict):
            raise ConfigurationError("Config file must contain a YAML mapping")

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load()
        get_config.cache_clear()

    @property
    def version(self) -> str:
        """Configuration file version."""
        return self._config.get("version", "unknown")

    # =========================================================================
    # Budget
    # =========================================================================

    @property
    def budget(self) -> dict:
        """Budget model configuration."""
        return self._config.get("budget", {})

    @property
    def budget_tolerance_absolute(self) -> float:
        """Smallest allowed drift between components and total, in currency units."""
        return float(self.budget.get("tolerance", {}).get("absolute", 0.01))

    @property
    def budget_tolerance_relative(self) -> float:
        """Allowed drift as a fraction of the budget total."""
        return float(self.budget.get("tolerance", {}).get("relative", 0.01))

    @property
    def legacy_estimation(self) -> dict:
        """Raw legacy-to-enhanced estimation settings."""
        return self.budget.get("legacy_estimation", {})

    # =========================================================================
    # Settlement
    # =========================================================================

    @property
    def settlement(self) -> dict:
        """Purchase-order settlement configuration."""
        return self._config.get("settlement", {})

    @property
    def response_token_ttl_hours(self) -> int:
        """Lifetime of a supplier response token."""
        return int(self.settlement.get("response_token_ttl_hours", 168))

    @property
    def line_total_tolerance_cents(self) -> int:
        """Allowed drift between a bulk line total and unit cost times quantity."""
        return int(self.settlement.get("line_total_tolerance_cents", 1))

    # =========================================================================
    # Capital Ledger
    # =========================================================================

    @property
    def ledger_max_age_seconds(self) -> int:
        """Staleness window after which a cached ledger entry is recomputed."""
        return int(self._config.get("capital_ledger", {}).get("max_age_seconds", 300))

    # =========================================================================
    # Recalculation
    # =========================================================================

    @property
    def recalculation(self) -> dict:
        """Recalculation dispatcher and sweep configuration."""
        return self._config.get("recalculation", {})

    @property
    def recalculation_max_workers(self) -> int:
        return int(self.recalculation.get("max_workers", 4))

    @property
    def sweep_enabled(self) -> bool:
        return bool(self.recalculation.get("sweep_enabled", True))

    @property
    def sweep_interval_minutes(self) -> int:
        return int(self.recalculation.get("sweep_interval_minutes", 30))

    # =========================================================================
    # Permissions
    # =========================================================================

    @property
    def permissions(self) -> dict:
        """Role name to list of allowed actions."""
        return self._config.get("permissions", {})

    def get_role_actions(self, role: str) -> list[str]:
        """Get the actions granted to a role (case-insensitive)."""
        if not role:
            return []
        return self.permissions.get(role.upper(), [])

    def __repr__(self) -> str:
        return f"FinanceConfig(path={self._config_path}, version={self.version})"


@lru_cache(maxsize=1)
def get_config(config_path: Optional[str] = None) -> FinanceConfig:
    """
    Get the singleton configuration instance.

    Args:
        config_path: Optional path to config file. Only used on first call.

    Returns:
        FinanceConfig instance
    """
    path = Path(config_path) if config_path else None
    return FinanceConfig(path)


def reload_config() -> FinanceConfig:
    """Force reload configuration from disk."""
    get_config.cache_clear()
    return get_config()
