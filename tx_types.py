"""
Request, result and fee types shared by every chain adapter, plus the
ChainAdapter interface the orchestrator dispatches through.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any

from tx_errors import InvalidAmountError


@dataclass
class TransactionRequest:
    token_symbol: str
    recipient_address: str
    amount: str  # decimal string in the chain's major unit
    mnemonic: str

    def __repr__(self) -> str:
        # Never echo the mnemonic.
        return (
            f"TransactionRequest(token_symbol={self.token_symbol!r}, "
            f"recipient_address={self.recipient_address!r}, amount={self.amount!r})"
        )


@dataclass
class TransactionResult:
    success: bool
    tx_hash: str | None = None
    error_message: str | None = None
    error_kind: str | None = None
    warning: str | None = None

    @classmethod
    def ok(cls, tx_hash: str, warning: str | None = None) -> TransactionResult:
        return cls(success=True, tx_hash=tx_hash, warning=warning)

    @classmethod
    def failed(cls, exc: Exception) -> TransactionResult:
        kind = getattr(exc, "kind", type(exc).__name__)
        return cls(success=False, error_message=str(exc) or kind, error_kind=kind)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.tx_hash is not None:
            out["txHash"] = self.tx_hash
        if self.error_message is not None:
            out["errorMessage"] = self.error_message
            out["errorKind"] = self.error_kind
        if self.warning is not None:
            out["warning"] = self.warning
        return out


@dataclass
class FeeEstimate:
    fee_rate: int  # sat/vB, wei per gas, or lamports per signature
    total_fee: int  # smallest unit of the chain
    unit: str

    def to_dict(self) -> dict[str, Any]:
        return {"feeRate": self.fee_rate, "totalFee": self.total_fee, "unit": self.unit}


def parse_amount(amount: str | int | float | Decimal) -> Decimal:
    try:
        parsed = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise InvalidAmountError(f"Invalid amount {amount!r}. Must be a number.") from exc
    if not parsed.is_finite() or parsed <= 0:
        raise InvalidAmountError(f"Invalid amount {amount!r}. Must be greater than zero.")
    return parsed


def to_base_units(amount: Decimal, decimals: int, symbol: str) -> int:
    """Floor a major-unit amount to integer base units (sats, wei, lamports)."""
    units = int((amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_FLOOR))
    if units <= 0:
        raise InvalidAmountError(
            f"Amount {amount} {symbol} is smaller than the chain's smallest unit."
        )
    return units


class ChainAdapter(ABC):
    """
    One supported chain. Adapters hold configuration only; all key material,
    UTXO snapshots and connections are created inside a call and dropped when
    it returns.
    """

    symbol: str

    @abstractmethod
    def validate_address(self, address: str) -> None:
        """Raise InvalidAddressError unless address is valid for this chain."""

    @abstractmethod
    def derive_address(self, mnemonic: str) -> str:
        """Address controlled by the mnemonic on this chain."""

    @abstractmethod
    def estimate_fee(self, request: TransactionRequest) -> FeeEstimate:
        """Fee for the request without signing or broadcasting."""

    @abstractmethod
    def send(self, request: TransactionRequest) -> TransactionResult:
        """Build, sign and submit; raise TxEngineError on failure."""
