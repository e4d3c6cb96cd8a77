"""
Engine configuration: ordered provider endpoints and per-chain settings.

Values are sourced from environment variables or a .env file in the project
root. Provider URLs and API tokens live here rather than in adapter code, so
tests can hand adapters their own (mock) endpoint lists.

Bitcoin:
- BTC_NETWORK: "testnet" (default) or "mainnet".
- BTC_FEE_RATE_SAT_PER_VBYTE: fee rate used by the size formula (default 2).
- BLOCKCYPHER_TOKEN: optional BlockCypher API token.
- BTC_UTXO_PROVIDERS / BTC_BROADCAST_PROVIDERS: optional JSON arrays of
  endpoint objects ({"name", "url", "timeout", "priority", "kind"}).

Ethereum:
- ETH_RPC_URLS: comma separated RPC URLs, tried in order.
- ETH_CHAIN_ID: expected chain id (default 11155111, Sepolia).
- ETH_CONFIRMATION_TIMEOUT: seconds to wait for a receipt (default 60).

Solana:
- SOL_RPC_URLS: comma separated RPC URLs, tried in order.
- SOL_RETRY_DELAY: seconds to wait between endpoints (default 1).
- SOL_DERIVATION: "seed-truncation" (default) or "slip10".

- TX_ENGINE_LOG_LEVEL: loguru level (default INFO).
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv

from tx_errors import ConfigError

PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env")

BTCNetwork = Literal["mainnet", "testnet"]
SolDerivation = Literal["seed-truncation", "slip10"]

SEPOLIA_CHAIN_ID = 11155111
GWEI = 10**9


@dataclass(frozen=True)
class Endpoint:
    """One provider in an ordered fallback list."""

    name: str
    url: str
    timeout: float
    priority: int = 0
    # Response/request shape: "blockcypher", "esplora" or "rpc".
    kind: str = "rpc"
    api_token: str | None = None


def _btc_utxo_defaults(network: BTCNetwork, token: str | None) -> list[Endpoint]:
    if network == "mainnet":
        blockcypher = "https://api.blockcypher.com/v1/btc/main"
        esplora = "https://blockstream.info/api"
    else:
        blockcypher = "https://api.blockcypher.com/v1/btc/test3"
        esplora = "https://blockstream.info/testnet/api"
    return [
        Endpoint("blockcypher", blockcypher, 8.0, 0, "blockcypher", token),
        Endpoint("blockstream", esplora, 12.0, 1, "esplora"),
    ]


def _btc_broadcast_defaults(network: BTCNetwork, token: str | None) -> list[Endpoint]:
    return [
        Endpoint(e.name, e.url, 30.0, e.priority, e.kind, e.api_token)
        for e in _btc_utxo_defaults(network, token)
    ]


def _eth_defaults() -> list[Endpoint]:
    return [
        Endpoint("publicnode", "https://ethereum-sepolia-rpc.publicnode.com", 10.0, 0),
        Endpoint("drpc", "https://sepolia.drpc.org", 10.0, 1),
        Endpoint("sepolia.org", "https://rpc.sepolia.org", 10.0, 2),
    ]


def _sol_defaults() -> list[Endpoint]:
    return [
        Endpoint("solana-devnet", "https://api.devnet.solana.com", 10.0, 0),
        Endpoint("helius", "https://devnet.helius-rpc.com", 10.0, 1),
        Endpoint("helius-alt", "https://rpc-devnet.helius.xyz", 10.0, 2),
    ]


def by_priority(endpoints: list[Endpoint]) -> list[Endpoint]:
    # sorted() is stable, so equal priorities keep their listed order.
    return sorted(endpoints, key=lambda e: e.priority)


@dataclass
class EngineConfig:
    btc_network: BTCNetwork = "testnet"
    btc_fee_rate_sat_per_vbyte: int = 2
    btc_utxo_providers: list[Endpoint] = field(
        default_factory=lambda: _btc_utxo_defaults("testnet", None)
    )
    btc_broadcast_providers: list[Endpoint] = field(
        default_factory=lambda: _btc_broadcast_defaults("testnet", None)
    )
    eth_rpc_endpoints: list[Endpoint] = field(default_factory=_eth_defaults)
    eth_chain_id: int = SEPOLIA_CHAIN_ID
    eth_fallback_gas_price_wei: int = 20 * GWEI
    eth_gas_limit_buffer_pct: int = 10
    eth_confirmation_timeout: float = 60.0
    sol_rpc_endpoints: list[Endpoint] = field(default_factory=_sol_defaults)
    sol_retry_delay: float = 1.0
    sol_derivation: SolDerivation = "seed-truncation"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> EngineConfig:
        raw_network = os.getenv("BTC_NETWORK", "testnet").strip().lower()
        if raw_network not in {"mainnet", "testnet"}:
            raise ConfigError(
                f"Invalid BTC_NETWORK={raw_network!r}. Expected 'mainnet' or 'testnet'."
            )
        network: BTCNetwork = "mainnet" if raw_network == "mainnet" else "testnet"
        token = os.getenv("BLOCKCYPHER_TOKEN") or None

        utxo_providers = _endpoints_from_json("BTC_UTXO_PROVIDERS") or _btc_utxo_defaults(
            network, token
        )
        broadcast_providers = _endpoints_from_json(
            "BTC_BROADCAST_PROVIDERS"
        ) or _btc_broadcast_defaults(network, token)

        sol_derivation = os.getenv("SOL_DERIVATION", "seed-truncation").strip().lower()
        if sol_derivation not in {"seed-truncation", "slip10"}:
            raise ConfigError(
                f"Invalid SOL_DERIVATION={sol_derivation!r}. "
                "Expected 'seed-truncation' or 'slip10'."
            )

        return cls(
            btc_network=network,
            btc_fee_rate_sat_per_vbyte=max(1, _int_env("BTC_FEE_RATE_SAT_PER_VBYTE", 2)),
            btc_utxo_providers=by_priority(utxo_providers),
            btc_broadcast_providers=by_priority(broadcast_providers),
            eth_rpc_endpoints=_endpoints_from_urls("ETH_RPC_URLS", 10.0) or _eth_defaults(),
            eth_chain_id=_int_env("ETH_CHAIN_ID", SEPOLIA_CHAIN_ID),
            eth_confirmation_timeout=_float_env("ETH_CONFIRMATION_TIMEOUT", 60.0),
            sol_rpc_endpoints=_endpoints_from_urls("SOL_RPC_URLS", 10.0) or _sol_defaults(),
            sol_retry_delay=_float_env("SOL_RETRY_DELAY", 1.0),
            sol_derivation="slip10" if sol_derivation == "slip10" else "seed-truncation",
            log_level=os.getenv("TX_ENGINE_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid {name}={raw!r}. Expected an integer.") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid {name}={raw!r}. Expected a number.") from exc


def _endpoints_from_urls(name: str, timeout: float) -> list[Endpoint]:
    raw = os.getenv(name, "")
    urls = [u.strip() for u in raw.split(",") if u.strip()]
    return [Endpoint(name=url, url=url, timeout=timeout, priority=i) for i, url in enumerate(urls)]


def _endpoints_from_json(name: str) -> list[Endpoint]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return []
    try:
        items = json.loads(raw)
        return [
            Endpoint(
                name=str(item.get("name") or item["url"]),
                url=str(item["url"]).rstrip("/"),
                timeout=float(item.get("timeout", 10)),
                priority=int(item.get("priority", i)),
                kind=str(item.get("kind", "esplora")),
                api_token=item.get("api_token"),
            )
            for i, item in enumerate(items)
        ]
    except (ValueError, TypeError, KeyError, AttributeError) as exc:
        raise ConfigError(f"Invalid {name}: expected a JSON array of endpoint objects.") from exc
