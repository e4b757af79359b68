from __future__ import annotations

import math
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from coinledger.errors import ConfigError


DEFAULT_FEE_RATE = Decimal("0.001")


def _clean(raw: Optional[str]) -> Optional[str]:
    """Strip whitespace and surrounding quotes; empty values count as unset."""
    if raw is None:
        return None
    value = raw.strip().strip('"').strip("'").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    """Runtime configuration read from the environment."""
    db_path: str = "ledger.db"
    fee_rate: Decimal = DEFAULT_FEE_RATE
    binance_base_url: str = "https://api.binance.com"
    oracle_timeout_s: float = 5.0
    sweep_order_timeout_s: float = 10.0
    sweep_max_workers: int = 4
    sweep_interval_s: float = 30.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables.

        Raises:
            ConfigError: If a variable holds an unusable value
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def number(name: str, default, kind, minimum):
            value = _clean(env.get(name))
            if value is None:
                return default
            try:
                parsed = kind(value)
                finite = math.isfinite(float(parsed))
            except (ValueError, InvalidOperation):
                raise ConfigError(f"{name} must be a number, got {value!r}")
            if not finite:
                raise ConfigError(f"{name} must be finite, got {value!r}")
            if parsed < minimum:
                raise ConfigError(f"{name} must be >= {minimum}, got {value!r}")
            return parsed

        fee_rate = number("LEDGER_FEE_RATE", defaults.fee_rate, Decimal, Decimal("0"))
        if not fee_rate.is_finite() or fee_rate >= 1:
            raise ConfigError(f"LEDGER_FEE_RATE must be below 1, got {fee_rate}")

        log_level = (_clean(env.get("LOG_LEVEL")) or defaults.log_level).upper()
        if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"LOG_LEVEL {log_level!r} is not a logging level")

        return cls(
            db_path=_clean(env.get("LEDGER_DB_PATH")) or defaults.db_path,
            fee_rate=fee_rate,
            binance_base_url=_clean(env.get("BINANCE_BASE_URL")) or defaults.binance_base_url,
            oracle_timeout_s=number("ORACLE_TIMEOUT_S", defaults.oracle_timeout_s, float, 0.1),
            sweep_order_timeout_s=number(
                "SWEEP_ORDER_TIMEOUT_S", defaults.sweep_order_timeout_s, float, 0.1
            ),
            sweep_max_workers=number("SWEEP_MAX_WORKERS", defaults.sweep_max_workers, int, 1),
            sweep_interval_s=number("SWEEP_INTERVAL_S", defaults.sweep_interval_s, float, 1.0),
            log_level=log_level,
        )
