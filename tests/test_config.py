"""
Tests for the configuration loader.
"""
import tempfile
from decimal import Decimal
from pathlib import Path

import pytest

import buildledger
from buildledger.config import (
    CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH, FinanceConfig, get_config, reload_config, ConfigurationError,
)
from buildledger.domain.entities.budget import BudgetTolerance, LegacyEstimationPolicy


class TestFinanceConfig:
    """Tests for the FinanceConfig class."""

    def test_loads_default_config(self):
        """Test that default config loads successfully."""
        config = get_config()
        assert config is not None
        assert config.version == "1.0.0"

    def test_singleton_behavior(self):
        """Test that get_config returns the same instance."""
        assert get_config() is get_config()

    def test_reload_config(self):
        """Test that reload_config creates a new instance."""
        config1 = get_config()
        config2 = reload_config()
        assert config2.version == config1.version
        assert get_config() is config2

    def test_repr(self):
        config = get_config()
        assert "version=1.0.0" in repr(config)

    def test_default_config_ships_inside_package(self):
        """The default YAML lives next to the package so installs can find it."""
        package_dir = Path(buildledger.__file__).parent
        assert DEFAULT_CONFIG_PATH.parent == package_dir
        assert DEFAULT_CONFIG_PATH.exists()

    def test_environment_variable_overrides_default(self, monkeypatch, tmp_path):
        override = tmp_path / "site.yaml"
        override.write_text(DEFAULT_CONFIG_PATH.read_text().replace('version: "1.0.0"', 'version: "9.9.9"'))
        monkeypatch.setenv(CONFIG_PATH_ENV, str(override))

        config = FinanceConfig()

        assert config.version == "9.9.9"


class TestBudgetSettings:
    """Tests for budget tolerance and legacy estimation settings."""

    def test_tolerances(self):
        """Test absolute and relative budget tolerances."""
        config = get_config()
        assert config.budget_tolerance_absolute == 0.01
        assert config.budget_tolerance_relative == 0.01

    def test_tolerance_from_config(self):
        tolerance = BudgetTolerance.from_config(get_config())
        assert tolerance.absolute == Decimal("0.01")
        assert tolerance.for_total(Decimal("1000000")) == Decimal("10000.00")

    def test_legacy_policy_from_config(self):
        """Test the legacy estimation percentages."""
        policy = LegacyEstimationPolicy.from_config(get_config())
        assert policy.pre_construction_pct == Decimal("0.05")
        assert policy.indirect_pct == Decimal("0.05")
        assert policy.shares["materials"]["structural"] == Decimal("0.65")

    def test_legacy_shares_sum_to_one(self):
        """Test every share group distributes the whole amount."""
        section = get_config().legacy_estimation["shares"]
        for group, items in section.items():
            assert sum(Decimal(str(v)) for v in items.values()) == Decimal("1"), group


class TestOperationalSettings:
    """Tests for settlement, ledger and recalculation settings."""

    def test_settlement(self):
        config = get_config()
        assert config.response_token_ttl_hours == 168
        assert config.line_total_tolerance_cents == 1

    def test_ledger_max_age(self):
        """Test the cached ledger staleness window."""
        assert get_config().ledger_max_age_seconds == 300

    def test_recalculation(self):
        config = get_config()
        assert config.recalculation_max_workers == 4
        assert config.sweep_enabled is True
        assert config.sweep_interval_minutes == 30


class TestPermissions:
    """Tests for role permissions."""

    def test_owner_can_delete(self):
        assert "delete_project" in get_config().get_role_actions("OWNER")

    def test_project_manager_cannot_delete(self):
        actions = get_config().get_role_actions("PROJECT_MANAGER")
        assert "edit_budget" in actions
        assert "delete_project" not in actions

    def test_role_is_case_insensitive(self):
        """Test role lookup ignores case."""
        config = get_config()
        assert config.get_role_actions("investor") == ["view_finances"]

    def test_unknown_role(self):
        config = get_config()
        assert config.get_role_actions("JANITOR") == []
        assert config.get_role_actions("") == []


class TestConfigurationError:
    """Tests for configuration error handling."""

    def test_missing_file(self):
        """Test error on missing config file."""
        with pytest.raises(ConfigurationError) as exc_info:
            FinanceConfig(Path("/nonexistent/path.yaml"))
        assert "not found" in str(exc_info.value)

    def test_invalid_yaml(self):
        """Test error on invalid YAML."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("invalid: yaml: content: [")
            temp_path = Path(f.name)

        try:
            with pytest.raises(ConfigurationError) as exc_info:
                FinanceConfig(temp_path)
            assert "Invalid YAML" in str(exc_info.value)
        finally:
            temp_path.unlink()

    def test_non_mapping(self, tmp_path):
        """Test error when the file holds a list instead of a mapping."""
        path = tmp_path / "finance.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigurationError) as exc_info:
            FinanceConfig(path)
        assert "mapping" in str(exc_info.value)

    def test_missing_sections_use_defaults(self, tmp_path):
        """Test defaults when optional sections are absent."""
        path = tmp_path / "finance.yaml"
        path.write_text('version: "2.0.0"\n')

        config = FinanceConfig(path)
        assert config.version == "2.0.0"
        assert config.response_token_ttl_hours == 168
        assert config.get_role_actions("OWNER") == []
