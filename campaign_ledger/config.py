"""
Central configuration for the campaign ledger.

Policy constants (thresholds, bounds, neutral defaults) are configurable so that
operators can tune them without a code change. Resolution order:

  1. Defaults from constants.py
  2. config/ledger.yaml (or the path in LEDGER_CONFIG_PATH), if present
  3. LEDGER_* environment variables (a local .env file is loaded first)

Environment variables:
  - LEDGER_PLAUSIBILITY_THRESHOLD (default: 0.6)
  - LEDGER_FRAUD_RISK_THRESHOLD (default: 0.7)
  - LEDGER_MAX_DONATION_AMOUNT (default: 1000000)
  - LEDGER_COLLABORATOR_TIMEOUT_SECONDS (default: 10)
  - LEDGER_ASYNC_PROPAGATION (default: 0)
  - LEDGER_BACKEND (default: memory; "dolt" for DoltDB)
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from . import constants

logger = logging.getLogger(__name__)

ENV_PREFIX = "LEDGER_"


def get_default_config_path() -> Path:
    """Get the path of the YAML overrides file."""
    env_path = os.environ.get("LEDGER_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path(__file__).parent.parent / "config" / "ledger.yaml"


@dataclass(frozen=True)
class LedgerConfig:
    """Policy and runtime configuration for the ledger services.

    Attributes:
        plausibility_threshold: Minimum withdrawal reason score (0-1) to commit
        fraud_risk_threshold: Donation risk (0-1) above which the donation is blocked
        max_donation_amount: Upper bound for a single donation
        neutral_trust_score: Average reported over an empty event list (0-100 scale)
        neutral_verification_score: Average reported over an empty event list (0-1 scale)
        fraud_fallback_score: Trust score (0-100) stored when fraud scoring is unavailable
        plausibility_fallback_score: Score (0-1) used when plausibility checking is unavailable
        collaborator_timeout_seconds: Hard timeout for fraud/plausibility calls
        fraud_window_size: Number of recent donations sent to the fraud scorer
        cas_max_attempts: Re-read attempts on a version conflict
        propagation_max_retries: Immediate retries before an event is queued
        propagation_backoff_seconds: Initial backoff between propagation retries
        async_propagation: Run propagation on a worker pool instead of inline
        propagation_workers: Worker pool size for async propagation
        backend: Storage backend name ("memory" or "dolt")
    """

    plausibility_threshold: float = constants.PLAUSIBILITY_THRESHOLD
    fraud_risk_threshold: float = constants.FRAUD_RISK_THRESHOLD
    max_donation_amount: Decimal = constants.MAX_DONATION_AMOUNT
    neutral_trust_score: float = constants.NEUTRAL_TRUST_SCORE
    neutral_verification_score: float = constants.NEUTRAL_VERIFICATION_SCORE
    fraud_fallback_score: float = constants.FRAUD_FALLBACK_TRUST_SCORE
    plausibility_fallback_score: float = constants.PLAUSIBILITY_FALLBACK_SCORE
    collaborator_timeout_seconds: float = constants.COLLABORATOR_TIMEOUT_SECONDS
    fraud_window_size: int = constants.FRAUD_WINDOW_SIZE
    cas_max_attempts: int = constants.CAS_MAX_ATTEMPTS
    propagation_max_retries: int = constants.PROPAGATION_MAX_RETRIES
    propagation_backoff_seconds: float = constants.PROPAGATION_INITIAL_BACKOFF_SECONDS
    async_propagation: bool = False
    propagation_workers: int = constants.PROPAGATION_WORKERS
    backend: str = "memory"

    def __post_init__(self):
        """Coerce money to Decimal and reject out-of-range policy values."""
        if not isinstance(self.max_donation_amount, Decimal):
            object.__setattr__(self, "max_donation_amount", _to_decimal(self.max_donation_amount))

        if not 0.0 <= self.plausibility_threshold <= 1.0:
            raise ValueError(f"plausibility_threshold must be in [0, 1], got {self.plausibility_threshold}")
        if not 0.0 <= self.fraud_risk_threshold <= 1.0:
            raise ValueError(f"fraud_risk_threshold must be in [0, 1], got {self.fraud_risk_threshold}")
        if self.max_donation_amount <= 0:
            raise ValueError("max_donation_amount must be positive")
        if not 0.0 <= self.neutral_trust_score <= constants.TRUST_SCALE_MAX:
            raise ValueError("neutral_trust_score must be in [0, 100]")
        if not 0.0 <= self.neutral_verification_score <= constants.VERIFICATION_SCALE_MAX:
            raise ValueError("neutral_verification_score must be in [0, 1]")
        if not 0.0 <= self.fraud_fallback_score <= constants.TRUST_SCALE_MAX:
            raise ValueError("fraud_fallback_score must be in [0, 100]")
        if not 0.0 <= self.plausibility_fallback_score <= constants.VERIFICATION_SCALE_MAX:
            raise ValueError("plausibility_fallback_score must be in [0, 1]")
        if self.collaborator_timeout_seconds <= 0:
            raise ValueError("collaborator_timeout_seconds must be positive")
        if self.fraud_window_size < 0:
            raise ValueError("fraud_window_size must be >= 0")
        if self.cas_max_attempts < 1:
            raise ValueError("cas_max_attempts must be >= 1")
        if self.propagation_max_retries < 0:
            raise ValueError("propagation_max_retries must be >= 0")
        if self.backend not in ("memory", "dolt"):
            raise ValueError(f"Unknown backend: {self.backend!r}. Must be 'memory' or 'dolt'")

    def with_overrides(self, **overrides: Any) -> "LedgerConfig":
        """Return a copy with selected fields replaced (validated again)."""
        return replace(self, **overrides)

    @classmethod
    def from_env(cls, base: Optional["LedgerConfig"] = None) -> "LedgerConfig":
        """Build a config from LEDGER_* environment variables on top of `base`."""
        load_dotenv()
        base = base or cls()
        overrides: dict[str, Any] = {}
        for f in fields(cls):
            raw = os.environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None or raw == "":
                continue
            overrides[f.name] = _coerce(f.name, raw, getattr(base, f.name))
        return replace(base, **overrides) if overrides else base


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid decimal value: {value!r}") from e


def _coerce(name: str, raw: Any, current: Any) -> Any:
    """Coerce a raw env/YAML value to the type of the current field value."""
    if isinstance(current, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, Decimal):
        return _to_decimal(raw)
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return str(raw)


def load_config(path: Optional[Path] = None) -> LedgerConfig:
    """
    Load configuration from YAML (if present) and then the environment.

    Args:
        path: YAML file path (defaults to config/ledger.yaml)

    Returns:
        Validated LedgerConfig
    """
    config_path = path or get_default_config_path()
    config = LedgerConfig()

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        section = raw.get("ledger", raw)
        known = {f.name for f in fields(LedgerConfig)}
        unknown = sorted(set(section) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys in {config_path}: {unknown}")
        overrides = {k: _coerce(k, v, getattr(config, k)) for k, v in section.items() if k in known}
        config = replace(config, **overrides)
        logger.info(f"Loaded ledger config from {config_path}")
    else:
        logger.debug(f"Ledger config not found at {config_path}, using defaults")

    return LedgerConfig.from_env(config)
