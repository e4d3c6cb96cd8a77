"""
Ethereum (Sepolia) transfers.

The first reachable RPC endpoint is used; a reachable endpoint that reports a
different chain id aborts the send before anything is signed. Confirmation is
waited for up to a bounded window. A timeout there is not a failure: the
transaction may still be mined and the caller is told to poll.
"""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal
from typing import Any

from loguru import logger
from web3 import Web3
from web3.exceptions import TimeExhausted

from key_derivation import DerivedKey, derive_eth_account
from tx_config import EngineConfig, Endpoint
from tx_errors import (
    ConfirmationTimeoutWarning,
    EstimationError,
    InvalidAddressError,
    NetworkError,
    WrongNetworkError,
)
from tx_types import (
    ChainAdapter,
    FeeEstimate,
    TransactionRequest,
    TransactionResult,
    parse_amount,
    to_base_units,
)


def _http_web3(endpoint: Endpoint) -> Web3:
    return Web3(Web3.HTTPProvider(endpoint.url, request_kwargs={"timeout": endpoint.timeout}))


def eth_to_wei(amount_eth: Decimal) -> int:
    return to_base_units(amount_eth, 18, "ETH")


class EthereumAdapter(ChainAdapter):
    symbol = "ETH"

    def __init__(
        self,
        rpc_endpoints: list[Endpoint] | None = None,
        chain_id: int | None = None,
        fallback_gas_price_wei: int | None = None,
        gas_limit_buffer_pct: int | None = None,
        confirmation_timeout: float | None = None,
        web3_factory: Callable[[Endpoint], Any] | None = None,
    ) -> None:
        defaults = EngineConfig()
        self.rpc_endpoints = list(
            rpc_endpoints if rpc_endpoints is not None else defaults.eth_rpc_endpoints
        )
        self.chain_id = chain_id if chain_id is not None else defaults.eth_chain_id
        self.fallback_gas_price_wei = (
            fallback_gas_price_wei
            if fallback_gas_price_wei is not None
            else defaults.eth_fallback_gas_price_wei
        )
        self.gas_limit_buffer_pct = (
            gas_limit_buffer_pct
            if gas_limit_buffer_pct is not None
            else defaults.eth_gas_limit_buffer_pct
        )
        self.confirmation_timeout = (
            confirmation_timeout
            if confirmation_timeout is not None
            else defaults.eth_confirmation_timeout
        )
        self._web3_factory = web3_factory or _http_web3

    @classmethod
    def from_config(cls, cfg: EngineConfig) -> EthereumAdapter:
        return cls(
            rpc_endpoints=cfg.eth_rpc_endpoints,
            chain_id=cfg.eth_chain_id,
            fallback_gas_price_wei=cfg.eth_fallback_gas_price_wei,
            gas_limit_buffer_pct=cfg.eth_gas_limit_buffer_pct,
            confirmation_timeout=cfg.eth_confirmation_timeout,
        )

    def validate_address(self, address: str) -> None:
        if not Web3.is_address((address or "").strip()):
            raise InvalidAddressError(f"Invalid Ethereum address {address!r}.")

    def derive_address(self, mnemonic: str) -> str:
        return derive_eth_account(mnemonic).address

    # -- network ------------------------------------------------------------

    def connect(self) -> Any:
        """Return a Web3 bound to the expected chain, or raise."""
        failures: list[str] = []
        for endpoint in self.rpc_endpoints:
            w3 = self._web3_factory(endpoint)
            try:
                actual = int(w3.eth.chain_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Ethereum RPC {endpoint.name} unreachable, trying next: {exc}")
                failures.append(f"{endpoint.name}: {exc}")
                continue
            if actual != self.chain_id:
                raise WrongNetworkError(expected=self.chain_id, actual=actual)
            logger.debug(f"Connected to Ethereum RPC {endpoint.name} (chain id {actual})")
            return w3
        detail = "; ".join(failures) or "no RPC endpoints configured"
        raise NetworkError(f"Failed to connect to Ethereum: {detail}")

    def gas_price(self, w3: Any) -> int:
        try:
            price = int(w3.eth.gas_price)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Gas price unavailable, using fallback: {exc}")
            return self.fallback_gas_price_wei
        return price if price > 0 else self.fallback_gas_price_wei

    def gas_limit(self, w3: Any, sender: str, to: str, value_wei: int) -> int:
        try:
            estimate = int(w3.eth.estimate_gas({"from": sender, "to": to, "value": value_wei}))
        except Exception as exc:  # noqa: BLE001
            raise EstimationError(f"Gas estimation rejected the transfer: {exc}") from exc
        return estimate * (100 + self.gas_limit_buffer_pct) // 100

    # -- operations ---------------------------------------------------------

    def _prepare(self, request: TransactionRequest) -> tuple[Any, DerivedKey, str, int, int, int]:
        self.validate_address(request.recipient_address)
        to = Web3.to_checksum_address(request.recipient_address.strip())
        value_wei = eth_to_wei(parse_amount(request.amount))
        key = derive_eth_account(request.mnemonic)
        w3 = self.connect()
        gas_price = self.gas_price(w3)
        gas_limit = self.gas_limit(w3, key.address, to, value_wei)
        return w3, key, to, value_wei, gas_price, gas_limit

    def estimate_fee(self, request: TransactionRequest) -> FeeEstimate:
        _, _, _, _, gas_price, gas_limit = self._prepare(request)
        return FeeEstimate(fee_rate=gas_price, total_fee=gas_price * gas_limit, unit="wei")

    def send(self, request: TransactionRequest) -> TransactionResult:
        w3, key, to, value_wei, gas_price, gas_limit = self._prepare(request)
        try:
            nonce = w3.eth.get_transaction_count(key.address, "pending")
        except Exception as exc:  # noqa: BLE001
            raise NetworkError(f"Failed to fetch nonce: {exc}") from exc

        tx = {
            "to": to,
            "value": value_wei,
            "gas": gas_limit,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": self.chain_id,
        }
        signed = key.signer.sign_transaction(tx)
        try:
            tx_hash = Web3.to_hex(w3.eth.send_raw_transaction(signed.raw_transaction))
        except Exception as exc:  # noqa: BLE001
            raise NetworkError(f"Failed to submit Ethereum transaction: {exc}") from exc
        logger.info(f"ETH transaction submitted: {tx_hash} (gas {gas_limit} @ {gas_price} wei)")

        try:
            receipt = w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.confirmation_timeout
            )
        except TimeExhausted:
            message = (
                f"Transaction {tx_hash} not confirmed within "
                f"{self.confirmation_timeout:g}s; it may still confirm. Poll for its status."
            )
            logger.warning(message)
            return TransactionResult.ok(
                tx_hash, warning=f"{ConfirmationTimeoutWarning.kind}: {message}"
            )

        if receipt.get("status") == 0:
            return TransactionResult(
                success=False,
                tx_hash=tx_hash,
                error_message=f"Transaction {tx_hash} was mined but reverted.",
                error_kind="TransactionReverted",
            )
        logger.info(f"ETH transaction confirmed in block {receipt.get('blockNumber')}")
        return TransactionResult.ok(tx_hash)
