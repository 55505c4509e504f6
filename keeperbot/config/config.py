"""
Environment-driven configuration with validation.

Every variable carries the KB_ prefix. A .env file in the working directory
is loaded on import.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv

from keeperbot.ledger.errors import StartupError

load_dotenv()

PRICE_LEGS = ("native_relative", "token_in", "token_out")
WEBHOOK_TYPES = ("generic", "slack", "discord")


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _decimal_env(key: str, default: str) -> Decimal:
    raw = os.getenv(key)
    return Decimal(raw if raw else default)


def _optional_int_env(key: str) -> Optional[int]:
    raw = os.getenv(key)
    return int(raw) if raw else None


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    chain_id: Optional[int]
    poa: bool
    deployment_file: Optional[str]
    router_abi_path: Optional[str]
    keeper_private_key: Optional[str]
    feeder_private_key: Optional[str]
    http_timeout: float
    read_retries: int
    receipt_timeout: float
    # keeper
    keeper_interval: float
    position_scan_every: int
    liquidation_threshold_pct: int
    confirm_on_chain: bool
    diagnostics_every: int
    low_balance_warn: Decimal
    limit_price_leg: str
    stop_price_leg: str
    keeper_pause_poll: float
    # feeder
    feeder_update_interval: float
    feeder_submit_delay: float
    feeder_nonce_retry_delay: float
    feeder_report_interval: float
    feeder_stats_window: int
    feeder_history_cap: int
    feeder_shocks: str
    feeder_seed: Optional[int]
    feeder_pause_poll: float
    feeder_gas_limit: int
    # gas
    gas_estimate_pct: int
    gas_fallback_pct: int
    gas_initial_gwei: Decimal
    max_gas_gwei: Decimal
    # status gate / breaker
    pause_fail_closed: bool
    api_error_threshold: int
    # observability
    metrics_port: int
    log_level: str
    log_file: str
    price_board: bool
    alert_webhook_url: Optional[str]
    alert_webhook_type: str
    alert_enabled: bool

    def dump(self) -> dict:
        """Settings without secrets, for logging."""
        data = self.__dict__.copy()
        for key in ("keeper_private_key", "feeder_private_key", "alert_webhook_url"):
            if data.get(key):
                data[key] = "***"
        return data

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            rpc_url=os.getenv("KB_RPC_URL", "http://127.0.0.1:8545"),
            chain_id=_optional_int_env("KB_CHAIN_ID"),
            poa=env_bool("KB_POA", False),
            deployment_file=os.getenv("KB_DEPLOYMENT_FILE") or None,
            router_abi_path=os.getenv("KB_ROUTER_ABI_PATH") or None,
            keeper_private_key=os.getenv("KB_KEEPER_PRIVATE_KEY") or None,
            feeder_private_key=os.getenv("KB_FEEDER_PRIVATE_KEY") or None,
            http_timeout=_float_env("KB_HTTP_TIMEOUT", 10.0),
            read_retries=_int_env("KB_READ_RETRIES", 2),
            receipt_timeout=_float_env("KB_RECEIPT_TIMEOUT_SEC", 120.0),
            keeper_interval=_float_env("KB_KEEPER_INTERVAL_SEC", 5.0),
            position_scan_every=_int_env("KB_KEEPER_POSITION_SCAN_EVERY", 2),
            liquidation_threshold_pct=_int_env("KB_KEEPER_LIQUIDATION_THRESHOLD_PCT", -90),
            confirm_on_chain=env_bool("KB_KEEPER_CONFIRM_ON_CHAIN", False),
            diagnostics_every=_int_env("KB_KEEPER_DIAGNOSTICS_EVERY", 12),
            low_balance_warn=_decimal_env("KB_LOW_BALANCE_WARN", "0.05"),
            limit_price_leg=os.getenv("KB_LIMIT_PRICE_LEG", "native_relative").lower(),
            stop_price_leg=os.getenv("KB_STOP_PRICE_LEG", "token_in").lower(),
            keeper_pause_poll=_float_env("KB_KEEPER_PAUSE_POLL_SEC", 10.0),
            feeder_update_interval=_float_env("KB_FEEDER_UPDATE_INTERVAL_SEC", 300.0),
            feeder_submit_delay=_float_env("KB_FEEDER_SUBMIT_DELAY_SEC", 1.0),
            feeder_nonce_retry_delay=_float_env("KB_FEEDER_NONCE_RETRY_DELAY_SEC", 2.0),
            feeder_report_interval=_float_env("KB_FEEDER_REPORT_INTERVAL_SEC", 50.0),
            feeder_stats_window=_int_env("KB_FEEDER_STATS_WINDOW", 24),
            feeder_history_cap=_int_env("KB_FEEDER_HISTORY_CAP", 100),
            feeder_shocks=os.getenv("KB_FEEDER_SHOCKS", ""),
            feeder_seed=_optional_int_env("KB_FEEDER_SEED"),
            feeder_pause_poll=_float_env("KB_FEEDER_PAUSE_POLL_SEC", 3.0),
            feeder_gas_limit=_int_env("KB_FEEDER_GAS_LIMIT", 300_000),
            gas_estimate_pct=_int_env("KB_GAS_ESTIMATE_PCT", 120),
            gas_fallback_pct=_int_env("KB_GAS_FALLBACK_PCT", 110),
            gas_initial_gwei=_decimal_env("KB_GAS_INITIAL_GWEI", "1"),
            max_gas_gwei=_decimal_env("KB_MAX_GAS_GWEI", "0"),
            pause_fail_closed=env_bool("KB_PAUSE_FAIL_CLOSED", True),
            api_error_threshold=_int_env("KB_API_ERROR_THRESHOLD", 5),
            metrics_port=_int_env("KB_METRICS_PORT", 0),
            log_level=os.getenv("KB_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("KB_LOG_FILE", "keeperbot.log"),
            price_board=env_bool("KB_PRICE_BOARD", True),
            alert_webhook_url=os.getenv("KB_ALERT_WEBHOOK_URL") or None,
            alert_webhook_type=os.getenv("KB_ALERT_WEBHOOK_TYPE", "generic").lower(),
            alert_enabled=env_bool("KB_ALERT_ENABLED", True),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def resolve_signer(self, role: str):
        """LocalAccount for the "keeper" or "feeder" role."""
        from eth_account import Account

        key = self.keeper_private_key if role == "keeper" else self.feeder_private_key
        if not key:
            raise StartupError(f"Missing credentials: set KB_{role.upper()}_PRIVATE_KEY")
        try:
            return Account.from_key(key)
        except ValueError as exc:
            raise StartupError(f"KB_{role.upper()}_PRIVATE_KEY is not a valid private key") from exc

    def _validate(self) -> None:
        if self.keeper_interval <= 0:
            raise ValueError("KB_KEEPER_INTERVAL_SEC must be > 0")
        if self.position_scan_every < 1:
            raise ValueError("KB_KEEPER_POSITION_SCAN_EVERY must be >= 1")
        if not -100 <= self.liquidation_threshold_pct < 0:
            raise ValueError("KB_KEEPER_LIQUIDATION_THRESHOLD_PCT must be in [-100, 0)")
        for key, leg in (("KB_LIMIT_PRICE_LEG", self.limit_price_leg), ("KB_STOP_PRICE_LEG", self.stop_price_leg)):
            if leg not in PRICE_LEGS:
                raise ValueError(f"{key} must be one of {', '.join(PRICE_LEGS)}")
        if self.feeder_update_interval <= 0:
            raise ValueError("KB_FEEDER_UPDATE_INTERVAL_SEC must be > 0")
        if self.feeder_submit_delay < 0 or self.feeder_nonce_retry_delay < 0:
            raise ValueError("Feeder delays must be >= 0")
        if self.feeder_history_cap < 1:
            raise ValueError("KB_FEEDER_HISTORY_CAP must be >= 1")
        if not 1 <= self.feeder_stats_window <= self.feeder_history_cap:
            raise ValueError("KB_FEEDER_STATS_WINDOW must be between 1 and KB_FEEDER_HISTORY_CAP")
        if self.gas_estimate_pct < 100 or self.gas_fallback_pct < 100:
            raise ValueError("Gas multipliers must be >= 100 percent")
        if self.gas_initial_gwei <= 0:
            raise ValueError("KB_GAS_INITIAL_GWEI must be > 0")
        if self.alert_webhook_type not in WEBHOOK_TYPES:
            raise ValueError(f"KB_ALERT_WEBHOOK_TYPE must be one of {', '.join(WEBHOOK_TYPES)}")

        logger = logging.getLogger("keeperbot")
        if not self.pause_fail_closed:
            logger.warning(
                "WARNING: KB_PAUSE_FAIL_CLOSED is off. "
                "An unreadable emergency-stop flag will be treated as operational."
            )
        if self.liquidation_threshold_pct > -50:
            logger.warning(
                f"WARNING: KB_KEEPER_LIQUIDATION_THRESHOLD_PCT={self.liquidation_threshold_pct} "
                "liquidates positions long before they approach insolvency."
            )
        if self.feeder_update_interval < 30:
            logger.warning(
                f"WARNING: KB_FEEDER_UPDATE_INTERVAL_SEC={self.feeder_update_interval} is short; "
                "the oracle may reject updates that land in the same block."
            )


def _sanity_check(cfg: Settings) -> None:
    """Log the effective settings once at startup so overrides are obvious."""
    logger = logging.getLogger("keeperbot")
    payload = {
        "event": "config_loaded",
        "rpc_url": cfg.rpc_url,
        "keeper_interval": cfg.keeper_interval,
        "liquidation_threshold_pct": cfg.liquidation_threshold_pct,
        "confirm_on_chain": cfg.confirm_on_chain,
        "feeder_update_interval": cfg.feeder_update_interval,
        "shocks": cfg.feeder_shocks,
    }
    logger.info(json.dumps(payload))
