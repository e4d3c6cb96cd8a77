import sys
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import pytest
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import Transaction

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import sol_wallet  # noqa: E402
from tx_config import Endpoint  # noqa: E402
from tx_errors import DerivationError, InvalidAddressError, NetworkError  # noqa: E402
from tx_types import TransactionRequest  # noqa: E402

MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)
RECIPIENT = str(Keypair.from_seed(bytes([1]) * 32).pubkey())
BLOCKHASH = Hash(bytes([7]) * 32)

ENDPOINTS = [
    Endpoint("rpc-1", "https://one.test", 10.0, 0),
    Endpoint("rpc-2", "https://two.test", 10.0, 1),
    Endpoint("rpc-3", "https://three.test", 10.0, 2),
]


class FakeClient:
    def __init__(self, name, log, error=None, send_error=None, confirm_error=None, status_err=None):
        self.name = name
        self.log = log
        self.error = error
        self.send_error = send_error
        self.confirm_error = confirm_error
        self.status_err = status_err
        self.sent = []
        self.confirmed = []

    def get_latest_blockhash(self):
        self.log.append(self.name)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(
            value=SimpleNamespace(blockhash=BLOCKHASH, last_valid_block_height=1000)
        )

    def get_fee_for_message(self, message):
        return SimpleNamespace(value=5000)

    def send_raw_transaction(self, raw, opts=None):
        self.sent.append((bytes(raw), opts))
        if self.send_error is not None:
            raise self.send_error
        return SimpleNamespace(value=Transaction.from_bytes(bytes(raw)).signatures[0])

    def confirm_transaction(self, signature, commitment=None, last_valid_block_height=None):
        self.confirmed.append((str(signature), last_valid_block_height))
        if self.confirm_error is not None:
            raise self.confirm_error
        return SimpleNamespace(value=[SimpleNamespace(err=self.status_err)])


def _adapter(errors, options=None):
    log, sleeps, clients = [], [], {}
    for endpoint in ENDPOINTS:
        kwargs = (options or {}).get(endpoint.name, {})
        clients[endpoint.name] = FakeClient(
            endpoint.name, log, errors.get(endpoint.name), **kwargs
        )

    adapter = sol_wallet.SolanaAdapter(
        rpc_endpoints=ENDPOINTS,
        retry_delay=1.0,
        client_factory=lambda endpoint: clients[endpoint.name],
        sleep=sleeps.append,
    )
    return adapter, log, sleeps, clients


def _request(amount="0.5", to=RECIPIENT):
    return TransactionRequest(
        token_symbol="SOL", recipient_address=to, amount=amount, mnemonic=MNEMONIC
    )


def test_third_endpoint_succeeds_after_two_failures():
    adapter, log, sleeps, clients = _adapter(
        {"rpc-1": ConnectionError("rpc-1 down"), "rpc-2": TimeoutError("rpc-2 slow")}
    )

    result = adapter.send(_request())

    assert result.success is True
    raw, opts = clients["rpc-3"].sent[0]
    tx = Transaction.from_bytes(raw)
    assert result.tx_hash == str(tx.signatures[0])
    assert log == ["rpc-1", "rpc-2", "rpc-3"]
    assert sleeps == [1.0, 1.0]
    assert opts.skip_confirmation is True
    assert tx.message.recent_blockhash == BLOCKHASH
    assert clients["rpc-3"].confirmed == [(result.tx_hash, 1000)]


def test_first_endpoint_success_does_not_sleep():
    adapter, log, sleeps, clients = _adapter({})

    result = adapter.send(_request())

    assert result.tx_hash == str(Transaction.from_bytes(clients["rpc-1"].sent[0][0]).signatures[0])
    assert log == ["rpc-1"]
    assert sleeps == []


def test_all_endpoints_fail_reports_last_error():
    adapter, log, sleeps, _ = _adapter(
        {
            "rpc-1": ConnectionError("first"),
            "rpc-2": ConnectionError("second"),
            "rpc-3": ConnectionError("blockhash not found"),
        }
    )

    with pytest.raises(NetworkError) as exc_info:
        adapter.send(_request())

    assert "blockhash not found" in str(exc_info.value)
    assert "3 RPC endpoints" in str(exc_info.value)
    assert log == ["rpc-1", "rpc-2", "rpc-3"]
    assert sleeps == [1.0, 1.0]


def test_invalid_recipient_rejected_before_any_rpc():
    adapter, log, _, _ = _adapter({})

    with pytest.raises(InvalidAddressError):
        adapter.send(_request(to="not-a-pubkey!"))
    assert log == []


def test_invalid_mnemonic_is_not_retried_across_endpoints():
    adapter, log, _, _ = _adapter({})
    bad = TransactionRequest("SOL", RECIPIENT, "0.5", "not a real seed phrase")

    with pytest.raises(DerivationError):
        adapter.send(bad)
    assert log == []


def test_estimate_fee_reports_lamports():
    adapter, _, _, _ = _adapter({})

    estimate = adapter.estimate_fee(_request())

    assert estimate.total_fee == 5000
    assert estimate.unit == "lamport"


def test_lamport_conversion_floors():
    assert sol_wallet.sol_to_lamports(Decimal("0.0000000019")) == 1
    assert sol_wallet.sol_to_lamports(Decimal("1.5")) == 1_500_000_000


def _submitted(clients):
    return [(name, raw) for name, c in clients.items() for raw, _ in c.sent]


def test_unconfirmed_submission_is_confirmed_elsewhere_not_resent():
    adapter, log, sleeps, clients = _adapter(
        {}, {"rpc-1": {"confirm_error": TimeoutError("submitted, but not confirmed in time")}}
    )

    result = adapter.send(_request())

    sent = _submitted(clients)
    assert len(sent) == 1
    assert sent[0][0] == "rpc-1"
    signature = str(Transaction.from_bytes(sent[0][1]).signatures[0])
    assert result.success is True
    assert result.tx_hash == signature
    # The second endpoint only confirms; it never builds a new transfer.
    assert log == ["rpc-1"]
    assert clients["rpc-2"].confirmed == [(signature, 1000)]
    assert sleeps == [1.0]


def test_transport_failure_on_send_is_treated_as_in_flight():
    adapter, _, _, clients = _adapter(
        {}, {"rpc-1": {"send_error": ConnectionError("connection reset after write")}}
    )

    result = adapter.send(_request())

    assert len(_submitted(clients)) == 1
    assert result.success is True
    assert clients["rpc-2"].sent == []
    assert clients["rpc-2"].confirmed[0][0] == result.tx_hash


def test_node_rejection_resubmits_same_signed_bytes():
    adapter, log, _, clients = _adapter(
        {}, {"rpc-1": {"send_error": RPCException("node is behind")}}
    )

    result = adapter.send(_request())

    sent = _submitted(clients)
    assert [name for name, _ in sent] == ["rpc-1", "rpc-2"]
    assert sent[0][1] == sent[1][1]
    assert log == ["rpc-1"]
    assert result.success is True


def test_confirmation_failing_everywhere_reports_hash():
    confirm_error = {"confirm_error": TimeoutError("blockhash expired")}
    adapter, _, _, clients = _adapter(
        {}, {"rpc-1": confirm_error, "rpc-2": confirm_error, "rpc-3": confirm_error}
    )

    result = adapter.send(_request())

    sent = _submitted(clients)
    assert len(sent) == 1
    assert result.success is False
    assert result.tx_hash == str(Transaction.from_bytes(sent[0][1]).signatures[0])
    assert result.error_kind == "NetworkError"
    assert "poll" in result.error_message


def test_on_chain_failure_is_reported_with_hash():
    adapter, _, sleeps, clients = _adapter(
        {}, {"rpc-1": {"status_err": "InsufficientFundsForRent"}}
    )

    result = adapter.send(_request())

    assert result.success is False
    assert result.error_kind == "TransactionFailed"
    assert result.tx_hash == str(Transaction.from_bytes(clients["rpc-1"].sent[0][0]).signatures[0])
    assert sleeps == []
