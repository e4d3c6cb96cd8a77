import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import tx_engine  # noqa: E402
from tx_errors import (  # noqa: E402
    InsufficientFundsError,
    InvalidAddressError,
    InvalidAmountError,
)
from tx_types import (  # noqa: E402
    ChainAdapter,
    FeeEstimate,
    TransactionRequest,
    TransactionResult,
    parse_amount,
)


class RecordingAdapter(ChainAdapter):
    def __init__(self, symbol, send_error=None, valid=True):
        self.symbol = symbol
        self.send_error = send_error
        self.valid = valid
        self.calls = []

    def validate_address(self, address):
        self.calls.append(("validate_address", address))
        if not self.valid:
            raise InvalidAddressError(f"Invalid {self.symbol} address {address!r}.")

    def derive_address(self, mnemonic):
        self.calls.append(("derive_address",))
        return f"{self.symbol.lower()}-address"

    def estimate_fee(self, request):
        self.calls.append(("estimate_fee", request.amount))
        return FeeEstimate(fee_rate=2, total_fee=816, unit="sat")

    def send(self, request):
        self.calls.append(("send", request.amount))
        if self.send_error is not None:
            raise self.send_error
        return TransactionResult.ok(f"{self.symbol.lower()}-txid")


def _engine(**adapters):
    return tx_engine.TransactionEngine(adapters=adapters)


def _request(symbol="BTC", amount="0.001", to="addr"):
    return TransactionRequest(
        token_symbol=symbol, recipient_address=to, amount=amount, mnemonic="seed words"
    )


def test_unsupported_token_fails_without_touching_adapters():
    btc, eth, sol = RecordingAdapter("BTC"), RecordingAdapter("ETH"), RecordingAdapter("SOL")
    engine = _engine(BTC=btc, ETH=eth, SOL=sol)

    result = engine.send(_request("DOGE"))

    assert result.success is False
    assert result.error_kind == "UnsupportedTokenError"
    assert "DOGE" in result.error_message
    assert btc.calls == eth.calls == sol.calls == []


def test_symbol_dispatch_is_case_insensitive():
    sol = RecordingAdapter("SOL")
    engine = _engine(SOL=sol)

    result = engine.send(_request(" sol "))

    assert result.success is True
    assert result.tx_hash == "sol-txid"
    assert ("send", "0.001") in sol.calls


@pytest.mark.parametrize("amount", ["0", "-1", "abc", "", "NaN", "Infinity"])
def test_invalid_amount_rejected_before_adapter(amount):
    btc = RecordingAdapter("BTC")
    result = _engine(BTC=btc).send(_request(amount=amount))

    assert result.success is False
    assert result.error_kind == "InvalidAmountError"
    assert btc.calls == []


def test_invalid_address_never_reaches_send():
    eth = RecordingAdapter("ETH", valid=False)
    result = _engine(ETH=eth).send(_request("ETH"))

    assert result.success is False
    assert result.error_kind == "InvalidAddressError"
    assert [c[0] for c in eth.calls] == ["validate_address"]


def test_adapter_errors_become_failed_results():
    btc = RecordingAdapter("BTC", send_error=InsufficientFundsError(1000, 5000))
    result = _engine(BTC=btc).send(_request())

    assert result.success is False
    assert result.error_kind == "InsufficientFundsError"
    assert "shortfall 0.00004000 BTC" in result.error_message


def test_unexpected_exceptions_never_escape():
    btc = RecordingAdapter("BTC", send_error=KeyError("vout"))
    result = _engine(BTC=btc).send(_request())

    assert result.success is False
    assert result.error_kind == "KeyError"


def test_send_transaction_convenience_signature():
    eth = RecordingAdapter("ETH")
    result = _engine(ETH=eth).send_transaction("ETH", "seed words", "0xabc", 0.25)

    assert result.success is True
    assert ("send", "0.25") in eth.calls


def test_result_to_dict_shapes():
    ok = TransactionResult.ok("abc").to_dict()
    failed = TransactionResult.failed(InvalidAmountError("bad")).to_dict()

    assert ok == {"success": True, "txHash": "abc"}
    assert failed == {
        "success": False,
        "errorMessage": "bad",
        "errorKind": "InvalidAmountError",
    }


def test_estimate_fee_and_get_address():
    btc = RecordingAdapter("BTC")
    engine = _engine(BTC=btc)

    assert engine.estimate_fee(_request()) == {
        "success": True,
        "symbol": "BTC",
        "feeRate": 2,
        "totalFee": 816,
        "unit": "sat",
    }
    assert engine.get_address("btc", "seed words") == {
        "success": True,
        "symbol": "BTC",
        "address": "btc-address",
    }


def test_validate_address_reports_reason():
    engine = _engine(BTC=RecordingAdapter("BTC", valid=False))

    invalid = engine.validate_address("BTC", "nope")
    unsupported = engine.validate_address("XRP", "rAddress")

    assert invalid["success"] is True
    assert invalid["valid"] is False
    assert invalid["kind"] == "InvalidAddressError"
    assert unsupported["success"] is False
    assert unsupported["errorKind"] == "UnsupportedTokenError"


def test_status_and_decode_need_adapter_support():
    engine = _engine(ETH=RecordingAdapter("ETH"))

    status = engine.get_transaction_status("ETH", "0xabc")
    decoded = engine.decode_transaction("ETH", "02f8")

    assert status["success"] is False
    assert status["errorKind"] == "UnsupportedTokenError"
    assert "ETH" in status["errorMessage"]
    assert decoded["errorKind"] == "UnsupportedTokenError"


def test_supported_tokens_sorted():
    engine = _engine(sol=RecordingAdapter("SOL"), btc=RecordingAdapter("BTC"))
    assert engine.supported_tokens() == ["BTC", "SOL"]


def test_request_repr_hides_mnemonic():
    request = TransactionRequest("BTC", "addr", "1", "very secret words")
    assert "secret" not in repr(request)


def test_parse_amount_accepts_numbers_and_strings():
    assert str(parse_amount("0.00100000")) == "0.00100000"
    assert parse_amount(2) == 2
