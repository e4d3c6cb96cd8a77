"""
Orchestrator: dispatch a transfer request to the adapter for its token symbol
and normalise every outcome into a TransactionResult.

No exception leaves TransactionEngine.send(); failures come back as
TransactionResult(success=False, error_message=..., error_kind=...).
"""

from __future__ import annotations

import sys
from typing import Any

from loguru import logger

from btc_wallet import BitcoinAdapter
from eth_wallet import EthereumAdapter
from sol_wallet import SolanaAdapter
from tx_config import EngineConfig
from tx_errors import TxEngineError, UnsupportedTokenError
from tx_types import ChainAdapter, TransactionRequest, TransactionResult, parse_amount


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def default_adapters(cfg: EngineConfig) -> dict[str, ChainAdapter]:
    return {
        "BTC": BitcoinAdapter.from_config(cfg),
        "ETH": EthereumAdapter.from_config(cfg),
        "SOL": SolanaAdapter.from_config(cfg),
    }


class TransactionEngine:
    def __init__(
        self,
        config: EngineConfig | None = None,
        adapters: dict[str, ChainAdapter] | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        source = adapters if adapters is not None else default_adapters(self.config)
        self.adapters = {symbol.upper(): adapter for symbol, adapter in source.items()}

    @classmethod
    def from_env(cls) -> TransactionEngine:
        cfg = EngineConfig.from_env()
        setup_logging(cfg.log_level)
        return cls(cfg)

    def supported_tokens(self) -> list[str]:
        return sorted(self.adapters)

    def adapter_for(self, token_symbol: str) -> ChainAdapter:
        symbol = (token_symbol or "").strip().upper()
        adapter = self.adapters.get(symbol)
        if adapter is None:
            raise UnsupportedTokenError(
                f"Unsupported token {token_symbol!r}. "
                f"Supported: {', '.join(self.supported_tokens())}."
            )
        return adapter

    def send(self, request: TransactionRequest) -> TransactionResult:
        try:
            adapter = self.adapter_for(request.token_symbol)
            # Cheap local checks first: nothing below touches the network
            # until the amount and recipient are known to be well formed.
            parse_amount(request.amount)
            adapter.validate_address(request.recipient_address)
            logger.info(f"Sending {request.amount} {adapter.symbol}")
            result = adapter.send(request)
        except TxEngineError as exc:
            logger.warning(f"{request.token_symbol} send failed: {exc.kind}: {exc}")
            return TransactionResult.failed(exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Unexpected error sending {request.token_symbol}")
            return TransactionResult.failed(exc)
        if result.success:
            logger.info(f"{adapter.symbol} send succeeded: {result.tx_hash}")
        return result

    def send_transaction(
        self, token_symbol: str, mnemonic: str, recipient_address: str, amount: str
    ) -> TransactionResult:
        return self.send(
            TransactionRequest(
                token_symbol=token_symbol,
                recipient_address=recipient_address,
                amount=str(amount),
                mnemonic=mnemonic,
            )
        )

    def estimate_fee(self, request: TransactionRequest) -> dict[str, Any]:
        try:
            adapter = self.adapter_for(request.token_symbol)
            parse_amount(request.amount)
            adapter.validate_address(request.recipient_address)
            estimate = adapter.estimate_fee(request)
        except TxEngineError as exc:
            return TransactionResult.failed(exc).to_dict()
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Unexpected error estimating {request.token_symbol} fee")
            return TransactionResult.failed(exc).to_dict()
        return {"success": True, "symbol": adapter.symbol, **estimate.to_dict()}

    def get_address(self, token_symbol: str, mnemonic: str) -> dict[str, Any]:
        try:
            adapter = self.adapter_for(token_symbol)
            address = adapter.derive_address(mnemonic)
        except TxEngineError as exc:
            return TransactionResult.failed(exc).to_dict()
        return {"success": True, "symbol": adapter.symbol, "address": address}

    def validate_address(self, token_symbol: str, address: str) -> dict[str, Any]:
        try:
            adapter = self.adapter_for(token_symbol)
        except UnsupportedTokenError as exc:
            return TransactionResult.failed(exc).to_dict()
        try:
            adapter.validate_address(address)
        except TxEngineError as exc:
            return {"success": True, "valid": False, "reason": str(exc), "kind": exc.kind}
        return {"success": True, "valid": True}

    def _capability(self, token_symbol: str, name: str, label: str) -> tuple[ChainAdapter, Any]:
        adapter = self.adapter_for(token_symbol)
        method = getattr(adapter, name, None)
        if method is None:
            raise UnsupportedTokenError(f"{label} is not supported for {adapter.symbol}.")
        return adapter, method

    def get_transaction_status(self, token_symbol: str, tx_hash: str) -> dict[str, Any]:
        """Confirmation status of a previously broadcast transaction."""
        try:
            adapter, lookup = self._capability(
                token_symbol, "get_transaction_status", "Transaction status lookup"
            )
            tx_hash = (tx_hash or "").strip()
            if not tx_hash:
                raise TxEngineError("Transaction hash is empty.")
            status = lookup(tx_hash)
        except TxEngineError as exc:
            return TransactionResult.failed(exc).to_dict()
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Unexpected error fetching {token_symbol} status for {tx_hash}")
            return TransactionResult.failed(exc).to_dict()
        return {
            "success": True,
            "symbol": adapter.symbol,
            "txHash": tx_hash,
            "confirmed": status["confirmed"],
            "confirmations": status["confirmations"],
            "blockHeight": status["block_height"],
        }

    def decode_transaction(self, token_symbol: str, raw_hex: str) -> dict[str, Any]:
        """Inputs and outputs of a serialized transaction, without broadcasting it."""
        try:
            adapter, decode = self._capability(
                token_symbol, "decode_transaction", "Transaction decoding"
            )
            decoded = decode(raw_hex)
        except TxEngineError as exc:
            return TransactionResult.failed(exc).to_dict()
        return {"success": True, "symbol": adapter.symbol, **decoded}
