"""
Environment variable loading for Backend IVS.

- IVS_RPC_URL: EVM JSON-RPC endpoint (default: local hardhat node)
- IVS_CONTRACT_ADDRESS: deployed InfectionVulnerabilityScore address
- IVS_SENDER_ADDRESS: unlocked account used as tx sender (admin)
- IVS_ABI_PATH: optional contract ABI (bare list or hardhat artifact); bundled ABI if unset
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

from backend_ivs.core.exceptions import ConfigError

# Project root: config is backend_ivs/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _CONFIG_DIR.parent
_ROOT = _BACKEND_DIR.parent
_ENV_PATH = _ROOT / ".env"

LOCAL_RPC_URL = "http://127.0.0.1:8545"


def load_ivs_env() -> None:
    """Load .env from project root. Safe to call multiple times; existing env wins."""
    from dotenv import load_dotenv

    load_dotenv(_ENV_PATH, override=False)


def env_str(name: str, default: str = "") -> str:
    load_ivs_env()
    return (os.getenv(name) or default).strip()


def env_float(name: str, default: float) -> float:
    """Parse a positive float env var; raise ConfigError on garbage."""
    raw = env_str(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def env_int(name: str, default: int) -> int:
    raw = env_str(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    if value < 0:
        raise ConfigError(f"{name} must be non-negative, got {value}")
    return value


def get_rpc_url() -> str:
    return env_str("IVS_RPC_URL", LOCAL_RPC_URL)


def get_abi_path() -> Path | None:
    raw = env_str("IVS_ABI_PATH")
    return Path(raw) if raw else None


def mask_rpc_url(url: str) -> str:
    """Hide API keys embedded in provider URLs (…/v3/<key>, ?api-key=<key>)."""
    if "api-key=" in url:
        return url.split("api-key=")[0] + "api-key=***"
    parts = url.rstrip("/").rsplit("/", 1)
    if len(parts) == 2 and len(parts[1]) >= 24 and parts[1].isalnum():
        return parts[0] + "/***"
    return url


def print_ivs_startup(script_name: str) -> None:
    """Print RPC endpoint and contract address at script start."""
    rpc = mask_rpc_url(get_rpc_url())
    contract = env_str("IVS_CONTRACT_ADDRESS") or "<unset>"
    print(f"[ivs] {script_name} | contract={contract} | rpc={rpc}")
