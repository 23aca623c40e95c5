"""Tests for LedgerConfig defaults, validation, YAML and environment overrides."""

from dataclasses import fields
from decimal import Decimal

import pytest

from campaign_ledger.config import LedgerConfig, get_default_config_path, load_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Make sure no LEDGER_* variable leaks in from the developer's shell."""
    for f in fields(LedgerConfig):
        monkeypatch.delenv(f"LEDGER_{f.name.upper()}", raising=False)
    monkeypatch.delenv("LEDGER_CONFIG_PATH", raising=False)


class TestDefaults:
    """Policy defaults."""

    def test_policy_defaults(self):
        """Thresholds and bounds match the documented policy."""
        config = LedgerConfig()
        assert config.plausibility_threshold == 0.6
        assert config.fraud_risk_threshold == 0.7
        assert config.max_donation_amount == Decimal("1000000")
        assert config.neutral_trust_score == 100.0
        assert config.fraud_fallback_score == 50.0
        assert config.plausibility_fallback_score == 0.0
        assert config.async_propagation is False
        assert config.backend == "memory"

    def test_bundled_yaml_matches_defaults(self):
        """config/ledger.yaml restates the defaults."""
        assert load_config(get_default_config_path()) == LedgerConfig()


class TestValidation:
    """Out-of-range values are rejected at construction."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"plausibility_threshold": 1.5},
            {"fraud_risk_threshold": -0.1},
            {"max_donation_amount": 0},
            {"neutral_trust_score": 101},
            {"plausibility_fallback_score": 2.0},
            {"collaborator_timeout_seconds": 0},
            {"cas_max_attempts": 0},
            {"backend": "redis"},
        ],
    )
    def test_invalid_values(self, overrides):
        """Each bad value raises ValueError."""
        with pytest.raises(ValueError):
            LedgerConfig(**overrides)

    def test_money_coerced_to_decimal(self):
        """String and float ceilings become Decimal."""
        assert LedgerConfig(max_donation_amount="2500.50").max_donation_amount == Decimal("2500.50")

    def test_with_overrides_revalidates(self):
        """Copies go through the same validation."""
        config = LedgerConfig()
        assert config.with_overrides(fraud_window_size=3).fraud_window_size == 3
        with pytest.raises(ValueError):
            config.with_overrides(plausibility_threshold=7)


class TestLoading:
    """YAML file, then environment."""

    def test_missing_file_uses_defaults(self, tmp_path):
        """No file means defaults."""
        assert load_config(tmp_path / "absent.yaml") == LedgerConfig()

    def test_yaml_overrides(self, tmp_path):
        """Known keys in the ledger section are applied; unknown keys are ignored."""
        path = tmp_path / "ledger.yaml"
        path.write_text("ledger:\n  plausibility_threshold: 0.8\n  fraud_window_size: 4\n  colour: blue\n")

        config = load_config(path)
        assert config.plausibility_threshold == 0.8
        assert config.fraud_window_size == 4

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        """LEDGER_* variables win over the file."""
        path = tmp_path / "ledger.yaml"
        path.write_text("ledger:\n  plausibility_threshold: 0.8\n")
        monkeypatch.setenv("LEDGER_PLAUSIBILITY_THRESHOLD", "0.9")
        monkeypatch.setenv("LEDGER_ASYNC_PROPAGATION", "true")
        monkeypatch.setenv("LEDGER_MAX_DONATION_AMOUNT", "2500")
        monkeypatch.setenv("LEDGER_PROPAGATION_MAX_RETRIES", "5")

        config = load_config(path)
        assert config.plausibility_threshold == 0.9
        assert config.async_propagation is True
        assert config.max_donation_amount == Decimal("2500")
        assert config.propagation_max_retries == 5

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        """LEDGER_CONFIG_PATH points at another file."""
        path = tmp_path / "custom.yaml"
        path.write_text("ledger:\n  backend: dolt\n")
        monkeypatch.setenv("LEDGER_CONFIG_PATH", str(path))

        assert get_default_config_path() == path.resolve()
        assert load_config().backend == "dolt"
