"""
Runtime configuration loaded from environment variables.

All settings have safe testnet defaults, so ``load_settings({})`` yields
a working configuration. Values are parsed once at load time and invalid
values raise ``ValueError`` immediately rather than at first use.

Environment variables:
    EVVM_DEFAULT_NETWORK          Network for new sessions (ethereum).
    EVVM_SUPPORTED_NETWORKS       Comma-separated network keys.
    EVVM_RPC_URL_<NETWORK>        JSON-RPC endpoint per network.
    EVVM_RPC_TIMEOUT              Seconds per RPC call (30).
    EVVM_SESSION_MAX_IDLE         Idle seconds before eviction (86400).
    EVVM_SESSION_SWEEP_INTERVAL   Seconds between eviction sweeps (3600).
    EVVM_LOG_LEVEL                Logging level name (INFO).
    EVVM_LOG_JSON                 "1" for JSON log lines (0).
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

# Sepolia-family testnets backing each network key.
NETWORK_CHAIN_IDS: dict[str, int] = {
    "ethereum": 11155111,
    "arbitrum": 421614,
}

DEFAULT_NETWORK = "ethereum"

DEFAULT_RPC_URLS: dict[str, str] = {
    "ethereum": "https://ethereum-sepolia-rpc.publicnode.com",
    "arbitrum": "https://sepolia-rollup.arbitrum.io/rpc",
}

SESSION_MAX_IDLE_SECONDS = 24 * 60 * 60
SESSION_SWEEP_INTERVAL_SECONDS = 60 * 60


@dataclass(frozen=True)
class Settings:
    """Immutable runtime settings.

    Attributes:
        default_network: Network assigned to newly created sessions.
        supported_networks: Network keys users may select.
        rpc_urls: JSON-RPC endpoint per network key.
        rpc_timeout: Timeout in seconds for a single RPC call.
        session_max_idle: Seconds of inactivity before a session is evicted.
        sweep_interval: Seconds between background eviction sweeps.
        log_level: Logging level name.
        log_json: Emit JSON log lines instead of plain text.
    """

    default_network: str = DEFAULT_NETWORK
    supported_networks: tuple[str, ...] = tuple(NETWORK_CHAIN_IDS)
    rpc_urls: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_RPC_URLS))
    rpc_timeout: float = 30.0
    session_max_idle: float = SESSION_MAX_IDLE_SECONDS
    sweep_interval: float = SESSION_SWEEP_INTERVAL_SECONDS
    log_level: str = "INFO"
    log_json: bool = False

    def __post_init__(self) -> None:
        unknown = [n for n in self.supported_networks if n not in NETWORK_CHAIN_IDS]
        if unknown:
            raise ValueError(f"unsupported network(s): {', '.join(unknown)}")
        if self.default_network not in self.supported_networks:
            raise ValueError(
                f"default network {self.default_network!r} is not in supported networks"
            )
        if self.rpc_timeout <= 0:
            raise ValueError("rpc_timeout must be positive")
        if self.session_max_idle <= 0 or self.sweep_interval <= 0:
            raise ValueError("session timings must be positive")
        if logging.getLevelName(self.log_level.upper()) == f"Level {self.log_level.upper()}":
            raise ValueError(f"unknown log level: {self.log_level!r}")

    def chain_id(self, network: str) -> int:
        """Chain id for a supported network key."""
        if network not in self.supported_networks:
            raise ValueError(f"unsupported network: {network!r}")
        return NETWORK_CHAIN_IDS[network]


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from None


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from environment variables.

    Args:
        env: Mapping to read from. Defaults to ``os.environ``.

    Raises:
        ValueError: If any variable is malformed.
    """
    if env is None:
        env = os.environ

    supported_raw = env.get("EVVM_SUPPORTED_NETWORKS", "").strip()
    supported = (
        tuple(n.strip().lower() for n in supported_raw.split(",") if n.strip())
        if supported_raw
        else tuple(NETWORK_CHAIN_IDS)
    )

    rpc_urls = dict(DEFAULT_RPC_URLS)
    for network in supported:
        url = env.get(f"EVVM_RPC_URL_{network.upper()}", "").strip()
        if url:
            rpc_urls[network] = url

    return Settings(
        default_network=env.get("EVVM_DEFAULT_NETWORK", DEFAULT_NETWORK).strip().lower(),
        supported_networks=supported,
        rpc_urls=rpc_urls,
        rpc_timeout=_get_float(env, "EVVM_RPC_TIMEOUT", 30.0),
        session_max_idle=_get_float(env, "EVVM_SESSION_MAX_IDLE", SESSION_MAX_IDLE_SECONDS),
        sweep_interval=_get_float(
            env, "EVVM_SESSION_SWEEP_INTERVAL", SESSION_SWEEP_INTERVAL_SECONDS
        ),
        log_level=env.get("EVVM_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        log_json=env.get("EVVM_LOG_JSON", "0").strip() == "1",
    )
