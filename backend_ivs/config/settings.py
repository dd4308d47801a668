"""
Application settings.

Typed, frozen settings built from environment variables (and .env). The contract
address is an explicit value passed to whichever component issues engine calls.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from backend_ivs.config.env import (
    env_float,
    env_int,
    env_str,
    get_abi_path,
    get_rpc_url,
)

DEFAULT_DECRYPT_TIMEOUT_SEC = 180.0
"""Relayer latency has been observed up to ~150 s; leave headroom."""

DEFAULT_POLL_INTERVAL_SEC = 4.0
DEFAULT_RECEIPT_TIMEOUT_SEC = 120.0
DEFAULT_LOG_LOOKBACK_BLOCKS = 100
DEFAULT_REQUEST_TIMEOUT_SEC = 30.0


@dataclass(frozen=True)
class Settings:
    """Service configuration. contract_address/sender_address may be empty for in-memory use."""

    rpc_url: str
    contract_address: str
    sender_address: str
    abi_path: Path | None = None
    decrypt_timeout_sec: float = DEFAULT_DECRYPT_TIMEOUT_SEC
    poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC
    receipt_timeout_sec: float = DEFAULT_RECEIPT_TIMEOUT_SEC
    log_lookback_blocks: int = DEFAULT_LOG_LOOKBACK_BLOCKS
    request_timeout_sec: float = DEFAULT_REQUEST_TIMEOUT_SEC


def load_settings() -> Settings:
    """Read settings from the environment; raises ConfigError on invalid numbers."""
    return Settings(
        rpc_url=get_rpc_url(),
        contract_address=env_str("IVS_CONTRACT_ADDRESS"),
        sender_address=env_str("IVS_SENDER_ADDRESS"),
        abi_path=get_abi_path(),
        decrypt_timeout_sec=env_float("IVS_DECRYPT_TIMEOUT_SEC", DEFAULT_DECRYPT_TIMEOUT_SEC),
        poll_interval_sec=env_float("IVS_POLL_INTERVAL_SEC", DEFAULT_POLL_INTERVAL_SEC),
        receipt_timeout_sec=env_float("IVS_RECEIPT_TIMEOUT_SEC", DEFAULT_RECEIPT_TIMEOUT_SEC),
        log_lookback_blocks=env_int("IVS_LOG_LOOKBACK_BLOCKS", DEFAULT_LOG_LOOKBACK_BLOCKS),
        request_timeout_sec=env_float("IVS_RPC_TIMEOUT_SEC", DEFAULT_REQUEST_TIMEOUT_SEC),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return the process-wide settings (cached after first call).

    Tests that change the environment should call get_settings.cache_clear().
    """
    return load_settings()
