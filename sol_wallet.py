"""
Solana transfers across an ordered list of RPC endpoints.

The transfer is signed once, on the first endpoint that returns a blockhash,
then submitted and confirmed. On failure we wait a fixed delay and move on;
endpoints after a submission only confirm the signature already sent. Only when
every endpoint has failed is the last error reported.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from decimal import Decimal
from typing import Any, TypeVar

from loguru import logger
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from key_derivation import DerivedKey, derive_sol_keypair
from tx_config import EngineConfig, Endpoint
from tx_errors import (
    InvalidAddressError,
    NetworkError,
    TransactionFailedError,
    TxEngineError,
)
from tx_types import (
    ChainAdapter,
    FeeEstimate,
    TransactionRequest,
    TransactionResult,
    parse_amount,
    to_base_units,
)

T = TypeVar("T")

DEFAULT_SIGNATURE_FEE_LAMPORTS = 5000


def _rpc_client(endpoint: Endpoint) -> Client:
    return Client(endpoint.url, commitment=Confirmed, timeout=endpoint.timeout)


def sol_to_lamports(amount_sol: Decimal) -> int:
    return to_base_units(amount_sol, 9, "SOL")


def build_transfer_message(key: DerivedKey, to: Pubkey, lamports: int, blockhash: Any) -> Message:
    payer = key.signer.pubkey()
    ix = transfer(TransferParams(from_pubkey=payer, to_pubkey=to, lamports=lamports))
    return Message.new_with_blockhash([ix], payer, blockhash)


class SolanaAdapter(ChainAdapter):
    symbol = "SOL"

    def __init__(
        self,
        rpc_endpoints: list[Endpoint] | None = None,
        retry_delay: float | None = None,
        derivation: str | None = None,
        client_factory: Callable[[Endpoint], Any] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        defaults = EngineConfig()
        self.rpc_endpoints = list(
            rpc_endpoints if rpc_endpoints is not None else defaults.sol_rpc_endpoints
        )
        self.retry_delay = retry_delay if retry_delay is not None else defaults.sol_retry_delay
        self.derivation = derivation or defaults.sol_derivation
        self._client_factory = client_factory or _rpc_client
        self._sleep = sleep or time.sleep

    @classmethod
    def from_config(cls, cfg: EngineConfig) -> SolanaAdapter:
        return cls(
            rpc_endpoints=cfg.sol_rpc_endpoints,
            retry_delay=cfg.sol_retry_delay,
            derivation=cfg.sol_derivation,
        )

    def validate_address(self, address: str) -> Pubkey:
        try:
            return Pubkey.from_string((address or "").strip())
        except Exception as exc:  # noqa: BLE001
            raise InvalidAddressError(f"Invalid Solana address {address!r}.") from exc

    def derive_address(self, mnemonic: str) -> str:
        return derive_sol_keypair(mnemonic, self.derivation).address

    def _across_endpoints(self, action: str, attempt: Callable[[Any], T]) -> T:
        last_error: Exception | None = None
        total = len(self.rpc_endpoints)
        for i, endpoint in enumerate(self.rpc_endpoints):
            if i > 0:
                self._sleep(self.retry_delay)
            logger.info(f"Solana {action} via RPC {i + 1}/{total}: {endpoint.name}")
            try:
                return attempt(self._client_factory(endpoint))
            except TxEngineError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Solana RPC {endpoint.name} failed: {exc}")
                last_error = exc
        raise NetworkError(
            f"Solana {action} failed on all {total} RPC endpoints. Last error: {last_error}"
        )

    def estimate_fee(self, request: TransactionRequest) -> FeeEstimate:
        to = self.validate_address(request.recipient_address)
        lamports = sol_to_lamports(parse_amount(request.amount))
        key = derive_sol_keypair(request.mnemonic, self.derivation)

        def attempt(client: Any) -> int:
            blockhash = client.get_latest_blockhash().value.blockhash
            message = build_transfer_message(key, to, lamports, blockhash)
            fee = client.get_fee_for_message(message).value
            return int(fee) if fee else DEFAULT_SIGNATURE_FEE_LAMPORTS

        fee = self._across_endpoints("fee estimate", attempt)
        return FeeEstimate(fee_rate=DEFAULT_SIGNATURE_FEE_LAMPORTS, total_fee=fee, unit="lamport")

    def send(self, request: TransactionRequest) -> TransactionResult:
        to = self.validate_address(request.recipient_address)
        lamports = sol_to_lamports(parse_amount(request.amount))
        key = derive_sol_keypair(request.mnemonic, self.derivation)
        # Signed once, by the first endpoint that hands out a blockhash. Once
        # the bytes may have reached a node, later endpoints only confirm that
        # signature; a second, differently signed transfer is never built.
        signed: dict[str, Any] = {}
        submitted = False

        def attempt(client: Any) -> str:
            nonlocal submitted
            if not signed:
                latest = client.get_latest_blockhash().value
                message = build_transfer_message(key, to, lamports, latest.blockhash)
                tx = Transaction([key.signer], message, latest.blockhash)
                signed["raw"] = bytes(tx)
                signed["signature"] = tx.signatures[0]
                signed["last_valid_block_height"] = latest.last_valid_block_height
            signature = str(signed["signature"])

            if not submitted:
                try:
                    client.send_raw_transaction(
                        signed["raw"],
                        opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed),
                    )
                except RPCException:
                    # Rejected by the node; nothing is in flight.
                    raise
                except Exception:
                    # Transport failure after the request left: it may have landed.
                    submitted = True
                    raise
                submitted = True
                logger.info(f"SOL transfer submitted: {signature}")

            resp = client.confirm_transaction(
                signed["signature"],
                Confirmed,
                last_valid_block_height=signed["last_valid_block_height"],
            )
            status = resp.value[0] if resp.value else None
            if status is not None and status.err is not None:
                raise TransactionFailedError(
                    signature, f"Solana transaction {signature} failed on chain: {status.err}"
                )
            return signature

        try:
            signature = self._across_endpoints("transfer", attempt)
        except TransactionFailedError as exc:
            return TransactionResult(
                success=False, tx_hash=exc.tx_hash, error_message=str(exc), error_kind=exc.kind
            )
        except NetworkError as exc:
            if not submitted:
                raise
            signature = str(signed["signature"])
            return TransactionResult(
                success=False,
                tx_hash=signature,
                error_message=(
                    f"Solana transaction {signature} was submitted but not confirmed; "
                    f"it may still land, poll for its status. {exc}"
                ),
                error_kind=exc.kind,
            )
        logger.info(f"SOL transfer confirmed: {signature}")
        return TransactionResult.ok(signature)
