"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

from dotenv import load_dotenv

from xsettle.core.json_utils import dumps

load_dotenv()

# Settings attribute -> environment key. Used to report missing keys by the
# name an operator actually sets.
ENV_KEYS: Dict[str, str] = {
    "base_rpc_url": "BASE_SEPOLIA_RPC",
    "zeta_rpc_url": "ZETA_ATHENS_RPC",
    "polygon_rpc_url": "POLYGON_AMOY_RPC",
    "base_gateway_address": "BASE_GATEWAY_ADDRESS",
    "base_usdc_address": "BASE_USDC_ADDRESS",
    "zeta_universal_market": "ZETA_UNIVERSAL_MARKET",
    "polygon_escrow_address": "POLYGON_WEAPON_ESCROW",
    "polygon_nft_address": "POLYGON_MOCK_WEAPON_NFT",
    "buyer_private_key": "BUYER_PRIVATE_KEY",
    "seller_private_key": "SELLER_PRIVATE_KEY",
}


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def is_present(value: Optional[str]) -> bool:
    return bool(value and value.strip())


@dataclass(frozen=True)
class Settings:
    # RPC endpoints
    base_rpc_url: str = "https://sepolia.base.org"
    zeta_rpc_url: str = "https://zetachain-athens-evm.blockpi.network/v1/rpc/public"
    polygon_rpc_url: str = "https://rpc-amoy.polygon.technology"
    # Contracts
    base_gateway_address: Optional[str] = None
    base_usdc_address: Optional[str] = None
    zeta_universal_market: Optional[str] = None
    polygon_escrow_address: Optional[str] = None
    polygon_nft_address: Optional[str] = None
    # Signers
    buyer_private_key: Optional[str] = None
    seller_private_key: Optional[str] = None
    # Watcher windows
    processed_timeout_ms: int = 180_000
    delivery_timeout_ms: int = 240_000
    poll_interval_ms: int = 4_000
    receipt_timeout_sec: float = 120.0
    # Simulate mode pacing
    simulate_approve_delay_ms: int = 900
    simulate_step_delay_ms: int = 1_100
    # Deal preparation
    deal_ttl_sec: int = 3_600
    # Streaming / HTTP
    heartbeat_sec: float = 15.0
    http_timeout: float = 30.0
    server_host: str = "0.0.0.0"
    server_port: int = 8787
    metrics_token: Optional[str] = None
    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = "xsettle.log"
    log_json_console: bool = False

    def dump(self) -> dict:
        """Return settings for logging with secrets redacted."""
        data = self.__dict__.copy()
        for key in ("buyer_private_key", "seller_private_key", "metrics_token"):
            if data.get(key):
                data[key] = "***"
        return data

    @classmethod
    def load(cls) -> "Settings":
        def _str_env(key: str, default: Optional[str] = None) -> Optional[str]:
            raw = os.getenv(key)
            if raw is None or raw.strip() == "":
                return default
            return raw.strip()

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

        defaults = cls()
        cfg = cls(
            base_rpc_url=_str_env("BASE_SEPOLIA_RPC", defaults.base_rpc_url),
            zeta_rpc_url=_str_env("ZETA_ATHENS_RPC", defaults.zeta_rpc_url),
            polygon_rpc_url=_str_env("POLYGON_AMOY_RPC", defaults.polygon_rpc_url),
            base_gateway_address=_str_env("BASE_GATEWAY_ADDRESS"),
            base_usdc_address=_str_env("BASE_USDC_ADDRESS"),
            zeta_universal_market=_str_env("ZETA_UNIVERSAL_MARKET"),
            polygon_escrow_address=_str_env("POLYGON_WEAPON_ESCROW"),
            polygon_nft_address=_str_env("POLYGON_MOCK_WEAPON_NFT"),
            buyer_private_key=_str_env("BUYER_PRIVATE_KEY"),
            seller_private_key=_str_env("SELLER_PRIVATE_KEY"),
            processed_timeout_ms=_int_env("XS_PROCESSED_TIMEOUT_MS", defaults.processed_timeout_ms),
            delivery_timeout_ms=_int_env("XS_DELIVERY_TIMEOUT_MS", defaults.delivery_timeout_ms),
            poll_interval_ms=_int_env("XS_POLL_INTERVAL_MS", defaults.poll_interval_ms),
            receipt_timeout_sec=_float_env("XS_RECEIPT_TIMEOUT_SEC", defaults.receipt_timeout_sec),
            simulate_approve_delay_ms=_int_env("XS_SIMULATE_APPROVE_DELAY_MS", defaults.simulate_approve_delay_ms),
            simulate_step_delay_ms=_int_env("XS_SIMULATE_STEP_DELAY_MS", defaults.simulate_step_delay_ms),
            deal_ttl_sec=_int_env("XS_DEAL_TTL_SEC", defaults.deal_ttl_sec),
            heartbeat_sec=_float_env("XS_HEARTBEAT_SEC", defaults.heartbeat_sec),
            http_timeout=_float_env("XS_HTTP_TIMEOUT", defaults.http_timeout),
            server_host=_str_env("XS_HOST", defaults.server_host),
            server_port=_int_env("XS_PORT", defaults.server_port),
            metrics_token=_str_env("XS_METRICS_TOKEN"),
            log_level=_str_env("XS_LOG_LEVEL", defaults.log_level),
            log_file=_str_env("XS_LOG_FILE", defaults.log_file),
            log_json_console=env_bool("XS_LOG_JSON_CONSOLE", defaults.log_json_console),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def resolve_signer(self, role: str = "buyer"):
        from eth_account import Account

        key = self.buyer_private_key if role == "buyer" else self.seller_private_key
        if not is_present(key):
            raise RuntimeError(f"Missing {role} signer: set {role.upper()}_PRIVATE_KEY")
        return Account.from_key(key)

    def resolve_address(self, role: str = "buyer") -> Optional[str]:
        """Address of a configured signer, or None if absent or unparseable."""
        try:
            return self.resolve_signer(role).address
        except (RuntimeError, ValueError):
            return None

    def _validate(self) -> None:
        if self.poll_interval_ms <= 0:
            raise ValueError("XS_POLL_INTERVAL_MS must be > 0")
        if self.processed_timeout_ms <= 0 or self.delivery_timeout_ms <= 0:
            raise ValueError("Watcher timeouts must be > 0")
        if self.receipt_timeout_sec <= 0:
            raise ValueError("XS_RECEIPT_TIMEOUT_SEC must be > 0")
        if self.simulate_approve_delay_ms < 0 or self.simulate_step_delay_ms < 0:
            raise ValueError("Simulate delays must be >= 0")
        if self.deal_ttl_sec <= 0:
            raise ValueError("XS_DEAL_TTL_SEC must be > 0")
        if self.heartbeat_sec <= 0:
            raise ValueError("XS_HEARTBEAT_SEC must be > 0")

        if self.poll_interval_ms > self.processed_timeout_ms:
            logging.getLogger("xsettle").warning(
                f"WARNING: XS_POLL_INTERVAL_MS={self.poll_interval_ms} exceeds the processed-event window "
                f"({self.processed_timeout_ms} ms); the watcher will poll at most once."
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log the settings that matter for a run once at startup so overrides are obvious.
    """
    logger = logging.getLogger("xsettle")
    payload = {
        "event": "config_loaded",
        "base_rpc_url": cfg.base_rpc_url,
        "zeta_rpc_url": cfg.zeta_rpc_url,
        "polygon_rpc_url": cfg.polygon_rpc_url,
        "poll_interval_ms": cfg.poll_interval_ms,
        "processed_timeout_ms": cfg.processed_timeout_ms,
        "delivery_timeout_ms": cfg.delivery_timeout_ms,
        "buyer_signer": bool(cfg.buyer_private_key),
    }
    logger.info(dumps(payload))
