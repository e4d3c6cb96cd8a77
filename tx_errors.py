"""
Error taxonomy for the transaction engine.

Every failure raised inside an adapter is a TxEngineError subclass with a
stable ``kind`` so callers (and provider fallback loops) can branch on the
class instead of parsing message text.
"""

from __future__ import annotations

from decimal import Decimal

SATS_PER_BTC = Decimal("100000000")


class TxEngineError(Exception):
    """Base class for all engine failures."""

    kind = "TxEngineError"


class ConfigError(TxEngineError):
    kind = "ConfigError"


class DerivationError(TxEngineError):
    """Mnemonic could not be turned into key material."""

    kind = "DerivationError"


class InvalidAddressError(TxEngineError):
    kind = "InvalidAddressError"


class InvalidAmountError(TxEngineError):
    kind = "InvalidAmountError"


class UnsupportedTokenError(TxEngineError):
    kind = "UnsupportedTokenError"


class InsufficientFundsError(TxEngineError):
    """Available balance does not cover amount + fee (BTC figures in satoshis)."""

    kind = "InsufficientFundsError"

    def __init__(self, available_sats: int, needed_sats: int) -> None:
        self.available_sats = available_sats
        self.needed_sats = needed_sats
        self.shortfall_sats = needed_sats - available_sats
        super().__init__(
            "Insufficient funds: "
            f"available {_btc(available_sats)} BTC, "
            f"needed {_btc(needed_sats)} BTC, "
            f"shortfall {_btc(self.shortfall_sats)} BTC"
        )


class NetworkError(TxEngineError):
    """Every provider for an operation failed."""

    kind = "NetworkError"


class ProviderError(NetworkError):
    """A single provider failed; fallback loops catch this and move on."""

    kind = "ProviderError"

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class ProviderTimeoutError(ProviderError):
    kind = "ProviderTimeoutError"


class RateLimitedError(ProviderError):
    kind = "RateLimitedError"


class SigningError(TxEngineError):
    kind = "SigningError"

    def __init__(self, input_index: int, message: str) -> None:
        self.input_index = input_index
        super().__init__(f"Failed to sign input {input_index}: {message}")


class BroadcastError(TxEngineError):
    """All broadcast providers rejected the transaction."""

    kind = "BroadcastError"

    def __init__(self, causes: list[Exception]) -> None:
        self.causes = list(causes)
        detail = "; ".join(str(c) for c in self.causes) or "no broadcast providers configured"
        super().__init__(f"Broadcast failed on all providers: {detail}")


class WrongNetworkError(TxEngineError):
    kind = "WrongNetworkError"

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Connected to chain id {actual}, expected {expected}. "
            "Refusing to submit a transaction on the wrong network."
        )


class EstimationError(TxEngineError):
    kind = "EstimationError"


class TransactionFailedError(TxEngineError):
    """Submitted transaction landed but the chain reports it as failed."""

    kind = "TransactionFailed"

    def __init__(self, tx_hash: str, message: str) -> None:
        self.tx_hash = tx_hash
        super().__init__(message)


class DecodeError(TxEngineError):
    kind = "DecodeError"


class ConfirmationTimeoutWarning(UserWarning):
    """Transaction was submitted but not confirmed within the wait window."""

    kind = "ConfirmationTimeoutWarning"


def _btc(sats: int) -> str:
    return str((Decimal(sats) / SATS_PER_BTC).quantize(Decimal("0.00000001")))
