from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Literal

import coincurve
from bip_utils import (
    Base58Decoder,
    Base58Encoder,
    SegwitBech32Decoder,
    SegwitBech32Encoder,
)
from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CScript,
    CTransaction,
    CTxInWitness,
    CTxWitness,
    Hash160,
    b2lx,
    b2x,
    lx,
)
from bitcoin.core.script import (
    OP_0,
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUAL,
    OP_EQUALVERIFY,
    OP_HASH160,
    SIGHASH_ALL,
    SIGVERSION_WITNESS_V0,
    CScriptOp,
    CScriptWitness,
    SignatureHash,
)
from bitcoin.core.serialize import SerializationError
from loguru import logger

from key_derivation import DerivedKey, derive_btc_key
from net_call import bounded_json, bounded_request
from tx_config import EngineConfig, Endpoint
from tx_errors import (
    BroadcastError,
    DecodeError,
    InsufficientFundsError,
    InvalidAddressError,
    InvalidAmountError,
    NetworkError,
    ProviderError,
    SigningError,
)
from tx_types import (
    ChainAdapter,
    FeeEstimate,
    TransactionRequest,
    TransactionResult,
    parse_amount,
    to_base_units,
)

BTCNetwork = Literal["mainnet", "testnet"]

DUST_THRESHOLD_SATS = 546
MIN_FEE_SATS = 300
# Size formula assumes SegWit inputs and, worst case, recipient + change.
INPUT_VBYTES = 110
OUTPUT_VBYTES = 34
OVERHEAD_VBYTES = 10

NETWORK_PARAMS: dict[str, dict[str, Any]] = {
    "mainnet": {"hrp": "bc", "p2pkh": 0x00, "p2sh": 0x05},
    "testnet": {"hrp": "tb", "p2pkh": 0x6F, "p2sh": 0xC4},
}


@dataclass
class UTXO:
    txid: str
    vout: int
    value: int


@dataclass
class SpendPlan:
    """Spend-all plan: every UTXO becomes an input."""

    utxos: list[UTXO]
    amount_sats: int
    fee_sats: int
    change_sats: int
    available_sats: int

    @property
    def absorbed_sats(self) -> int:
        """Remainder below the dust threshold that is paid as extra fee."""
        return self.available_sats - self.amount_sats - self.fee_sats - self.change_sats


# ---------------------------------------------------------------------------
# Addresses and scripts
# ---------------------------------------------------------------------------


def _p2pkh_script(hash160: bytes) -> CScript:
    return CScript([OP_DUP, OP_HASH160, hash160, OP_EQUALVERIFY, OP_CHECKSIG])


def address_to_script_pubkey(address: str, network: BTCNetwork) -> CScript:
    """
    Decode an address under the given network's rules.

    Accepts bech32/bech32m (P2WPKH, P2WSH, P2TR) with the network HRP and
    base58check P2PKH/P2SH with the network version bytes. Raises
    InvalidAddressError otherwise.
    """
    params = NETWORK_PARAMS[network]
    address = (address or "").strip()
    if not address:
        raise InvalidAddressError("Recipient address is empty.")

    if address.lower().startswith(params["hrp"] + "1"):
        try:
            wit_ver, wit_prog = SegwitBech32Decoder.Decode(params["hrp"], address)
        except Exception as exc:  # noqa: BLE001
            raise InvalidAddressError(
                f"Invalid {network} bech32 address {address!r}: {exc}"
            ) from exc
        version_op = OP_0 if wit_ver == 0 else CScriptOp.encode_op_n(wit_ver)
        return CScript([version_op, bytes(wit_prog)])

    try:
        payload = bytes(Base58Decoder.CheckDecode(address))
    except Exception as exc:  # noqa: BLE001
        raise InvalidAddressError(f"Invalid {network} address {address!r}.") from exc
    if len(payload) != 21:
        raise InvalidAddressError(f"Invalid {network} address {address!r}.")
    version, hash160 = payload[0], payload[1:]
    if version == params["p2pkh"]:
        return _p2pkh_script(hash160)
    if version == params["p2sh"]:
        return CScript([OP_HASH160, hash160, OP_EQUAL])
    raise InvalidAddressError(
        f"Address {address!r} does not belong to Bitcoin {network}."
    )


def script_pubkey_to_address(script: bytes, network: BTCNetwork) -> str | None:
    """
    Inverse of address_to_script_pubkey for standard output scripts.

    bitcoin.wallet.CBitcoinAddress would do this, but it encodes with the
    process-wide SelectParams() network; adapters for both networks can
    coexist, so the network's prefixes are applied here instead.
    """
    params = NETWORK_PARAMS[network]
    s = CScript(script)
    raw = bytes(s)
    if s.is_witness_scriptpubkey():
        version = CScriptOp(raw[0]).decode_op_n()
        return SegwitBech32Encoder.Encode(params["hrp"], version, raw[2:])
    if s.is_p2sh():
        return Base58Encoder.CheckEncode(bytes([params["p2sh"]]) + raw[2:22])
    if len(raw) == 25 and s == _p2pkh_script(raw[3:23]):
        return Base58Encoder.CheckEncode(bytes([params["p2pkh"]]) + raw[3:23])
    return None


# ---------------------------------------------------------------------------
# Amounts and fees
# ---------------------------------------------------------------------------


def btc_to_sats(amount_btc: Decimal) -> int:
    amount_sats = to_base_units(amount_btc, 8, "BTC")
    if amount_sats < DUST_THRESHOLD_SATS:
        raise InvalidAmountError(
            f"Amount is below the dust limit ({DUST_THRESHOLD_SATS} satoshis)."
        )
    return amount_sats


def estimate_vsize(num_inputs: int, num_outputs: int = 2) -> int:
    return num_inputs * INPUT_VBYTES + num_outputs * OUTPUT_VBYTES + OVERHEAD_VBYTES


def estimate_fee_sats(num_inputs: int, fee_rate: int) -> int:
    """
    Fee for spending num_inputs SegWit inputs to two outputs.

    3 inputs at 2 sat/vB: 3*110 + 2*34 + 10 = 408 vB -> 816 sat.
    """
    return max(estimate_vsize(num_inputs) * fee_rate, MIN_FEE_SATS)


def plan_spend(utxos: list[UTXO], amount_sats: int, fee_rate: int) -> SpendPlan:
    available = sum(u.value for u in utxos)
    fee = estimate_fee_sats(len(utxos), fee_rate)
    needed = amount_sats + fee
    if available < needed:
        raise InsufficientFundsError(available_sats=available, needed_sats=needed)
    remainder = available - needed
    change = remainder if remainder > DUST_THRESHOLD_SATS else 0
    return SpendPlan(
        utxos=list(utxos),
        amount_sats=amount_sats,
        fee_sats=fee,
        change_sats=change,
        available_sats=available,
    )


# ---------------------------------------------------------------------------
# UTXO providers
# ---------------------------------------------------------------------------


def _token_params(endpoint: Endpoint) -> dict[str, str]:
    return {"token": endpoint.api_token} if endpoint.api_token else {}


def _normalize_blockcypher_utxos(data: Any) -> list[UTXO]:
    refs = list(data.get("txrefs") or []) + list(data.get("unconfirmed_txrefs") or [])
    return [
        UTXO(txid=str(r["tx_hash"]), vout=int(r["tx_output_n"]), value=int(r["value"]))
        for r in refs
        if not r.get("spent", False)
    ]


def _normalize_esplora_utxos(data: Any) -> list[UTXO]:
    return [UTXO(txid=str(u["txid"]), vout=int(u["vout"]), value=int(u["value"])) for u in data]


def _fetch_utxos_from(endpoint: Endpoint, address: str) -> list[UTXO]:
    if endpoint.kind == "blockcypher":
        params = {"unspentOnly": "true", **_token_params(endpoint)}
        data = bounded_json(endpoint, "GET", f"/addrs/{address}", params=params)
        normalize = _normalize_blockcypher_utxos
    elif endpoint.kind == "esplora":
        data = bounded_json(endpoint, "GET", f"/address/{address}/utxo")
        normalize = _normalize_esplora_utxos
    else:
        raise ProviderError(endpoint.name, f"unsupported provider kind {endpoint.kind!r}")
    try:
        return normalize(data)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise ProviderError(endpoint.name, f"unexpected UTXO response shape: {exc}") from exc


def fetch_utxos(address: str, providers: list[Endpoint]) -> list[UTXO]:
    """
    Fetch UTXOs for address, falling back through providers in order.

    Nothing is cached: every call sees a fresh snapshot.
    """
    failures: list[ProviderError] = []
    for endpoint in providers:
        try:
            utxos = _fetch_utxos_from(endpoint, address)
        except ProviderError as exc:
            logger.warning(f"UTXO provider failed, trying next: {exc}")
            failures.append(exc)
            continue
        logger.info(f"Fetched {len(utxos)} UTXOs from {endpoint.name}")
        return utxos
    detail = "; ".join(str(f) for f in failures) or "no UTXO providers configured"
    raise NetworkError(f"Failed to fetch UTXOs: {detail}")


# ---------------------------------------------------------------------------
# Build, sign, finalize
# ---------------------------------------------------------------------------


def build_transaction(
    plan: SpendPlan,
    to_address: str,
    change_address: str,
    network: BTCNetwork,
) -> CMutableTransaction:
    txins = [CMutableTxIn(COutPoint(lx(u.txid), u.vout)) for u in plan.utxos]
    txouts = [CMutableTxOut(plan.amount_sats, address_to_script_pubkey(to_address, network))]
    if plan.change_sats > 0:
        txouts.append(
            CMutableTxOut(plan.change_sats, address_to_script_pubkey(change_address, network))
        )
    return CMutableTransaction(txins, txouts, nVersion=2)


def sign_transaction(tx: CMutableTransaction, utxos: list[UTXO], key: DerivedKey) -> list[bytes]:
    """
    BIP-143 sign every P2WPKH input with SIGHASH_ALL.

    Returns one signature (DER + sighash byte) per input. Aborts on the first
    input that cannot be signed.
    """
    # For P2WPKH the scriptCode is the P2PKH script of the key hash.
    script_code = CScript(
        [OP_DUP, OP_HASH160, Hash160(key.public_key), OP_EQUALVERIFY, OP_CHECKSIG]
    )
    pubkey = coincurve.PublicKey(key.public_key)
    signatures: list[bytes] = []
    for i, utxo in enumerate(utxos):
        try:
            sighash = SignatureHash(
                script_code, tx, i, SIGHASH_ALL, amount=utxo.value, sigversion=SIGVERSION_WITNESS_V0
            )
            der_sig = key.sign(sighash)
            if not pubkey.verify(der_sig, sighash, hasher=None):
                raise ValueError("signature does not verify against the derived public key")
        except Exception as exc:  # noqa: BLE001
            raise SigningError(i, str(exc)) from exc
        signatures.append(der_sig + bytes([SIGHASH_ALL]))
    return signatures


def finalize_transaction(
    tx: CMutableTransaction, signatures: list[bytes], public_key: bytes
) -> str:
    """Attach P2WPKH witnesses and serialize to raw hex."""
    if len(signatures) != len(tx.vin):
        raise SigningError(len(signatures), "missing signature for input")
    tx.wit = CTxWitness(
        [CTxInWitness(CScriptWitness([sig, public_key])) for sig in signatures]
    )
    return b2x(tx.serialize())


def decode_transaction(raw_hex: str, network: BTCNetwork) -> dict[str, Any]:
    """Inputs and outputs of a serialized transaction."""
    try:
        tx = CTransaction.deserialize(bytes.fromhex((raw_hex or "").strip()))
    except (ValueError, SerializationError) as exc:
        raise DecodeError(f"Not a serialized Bitcoin transaction: {exc}") from exc
    return {
        "txid": b2lx(tx.GetTxid()),
        "inputs": [{"txid": b2lx(txin.prevout.hash), "vout": txin.prevout.n} for txin in tx.vin],
        "outputs": [
            {
                "address": script_pubkey_to_address(txout.scriptPubKey, network),
                "value": txout.nValue,
            }
            for txout in tx.vout
        ],
        "segwit": not tx.wit.is_null(),
    }


# ---------------------------------------------------------------------------
# Broadcast and status
# ---------------------------------------------------------------------------


def _broadcast_to(endpoint: Endpoint, raw_hex: str) -> str:
    if endpoint.kind == "blockcypher":
        data = bounded_json(
            endpoint, "POST", "/txs/push", json={"tx": raw_hex}, params=_token_params(endpoint)
        )
        txid = ((data or {}).get("tx") or {}).get("hash", "")
    elif endpoint.kind == "esplora":
        resp = bounded_request(
            endpoint, "POST", "/tx", data=raw_hex, headers={"Content-Type": "text/plain"}
        )
        txid = resp.text.strip()
    else:
        raise ProviderError(endpoint.name, f"unsupported provider kind {endpoint.kind!r}")
    if not txid:
        raise ProviderError(endpoint.name, "broadcast response did not include a txid")
    return txid


def broadcast_transaction(raw_hex: str, providers: list[Endpoint]) -> str:
    """Submit raw_hex to the first provider that accepts it."""
    causes: list[Exception] = []
    for endpoint in providers:
        try:
            txid = _broadcast_to(endpoint, raw_hex)
        except ProviderError as exc:
            logger.warning(f"Broadcast provider failed, trying next: {exc}")
            causes.append(exc)
            continue
        logger.info(f"Broadcast accepted by {endpoint.name}: {txid}")
        return txid
    raise BroadcastError(causes)


def _status_from(endpoint: Endpoint, txid: str) -> dict[str, Any]:
    if endpoint.kind == "blockcypher":
        data = bounded_json(endpoint, "GET", f"/txs/{txid}", params=_token_params(endpoint))
        confirmations = int(data.get("confirmations", 0) or 0)
        height = data.get("block_height")
        return {
            "confirmed": confirmations > 0,
            "confirmations": confirmations,
            "block_height": height if height is not None and height >= 0 else None,
        }
    if endpoint.kind == "esplora":
        status = bounded_json(endpoint, "GET", f"/tx/{txid}/status")
        if not status.get("confirmed"):
            return {"confirmed": False, "confirmations": 0, "block_height": None}
        height = int(status["block_height"])
        tip = int(bounded_request(endpoint, "GET", "/blocks/tip/height").text.strip())
        return {"confirmed": True, "confirmations": tip - height + 1, "block_height": height}
    raise ProviderError(endpoint.name, f"unsupported provider kind {endpoint.kind!r}")


def get_transaction_status(txid: str, providers: list[Endpoint]) -> dict[str, Any]:
    failures: list[Exception] = []
    for endpoint in providers:
        try:
            return _status_from(endpoint, txid)
        except ProviderError as exc:
            failures.append(exc)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            failures.append(ProviderError(endpoint.name, f"unexpected status response: {exc}"))
    detail = "; ".join(str(f) for f in failures) or "no providers configured"
    raise NetworkError(f"Failed to fetch status for {txid}: {detail}")


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class BitcoinAdapter(ChainAdapter):
    """Native SegWit (P2WPKH) sends with provider fallback."""

    symbol = "BTC"

    def __init__(
        self,
        network: BTCNetwork = "testnet",
        utxo_providers: list[Endpoint] | None = None,
        broadcast_providers: list[Endpoint] | None = None,
        fee_rate_sat_per_vbyte: int = 2,
    ) -> None:
        defaults = EngineConfig()
        self.network = network
        self.utxo_providers = list(
            utxo_providers if utxo_providers is not None else defaults.btc_utxo_providers
        )
        self.broadcast_providers = list(
            broadcast_providers
            if broadcast_providers is not None
            else defaults.btc_broadcast_providers
        )
        self.fee_rate = fee_rate_sat_per_vbyte

    @classmethod
    def from_config(cls, cfg: EngineConfig) -> BitcoinAdapter:
        return cls(
            network=cfg.btc_network,
            utxo_providers=cfg.btc_utxo_providers,
            broadcast_providers=cfg.btc_broadcast_providers,
            fee_rate_sat_per_vbyte=cfg.btc_fee_rate_sat_per_vbyte,
        )

    def validate_address(self, address: str) -> None:
        address_to_script_pubkey(address, self.network)

    def derive_address(self, mnemonic: str) -> str:
        return derive_btc_key(mnemonic, self.network).address

    def _prepare(self, request: TransactionRequest) -> tuple[DerivedKey, int, list[UTXO]]:
        self.validate_address(request.recipient_address)
        amount_sats = btc_to_sats(parse_amount(request.amount))
        key = derive_btc_key(request.mnemonic, self.network)
        utxos = fetch_utxos(key.address, self.utxo_providers)
        return key, amount_sats, utxos

    def estimate_fee(self, request: TransactionRequest) -> FeeEstimate:
        _, _, utxos = self._prepare(request)
        return FeeEstimate(
            fee_rate=self.fee_rate,
            total_fee=estimate_fee_sats(len(utxos), self.fee_rate),
            unit="sat",
        )

    def send(self, request: TransactionRequest) -> TransactionResult:
        key, amount_sats, utxos = self._prepare(request)
        plan = plan_spend(utxos, amount_sats, self.fee_rate)
        logger.info(
            f"BTC spend: {len(plan.utxos)} inputs, amount={plan.amount_sats} "
            f"fee={plan.fee_sats} change={plan.change_sats} absorbed={plan.absorbed_sats}"
        )
        tx = build_transaction(plan, request.recipient_address.strip(), key.address, self.network)
        signatures = sign_transaction(tx, plan.utxos, key)
        raw_hex = finalize_transaction(tx, signatures, key.public_key)
        txid = broadcast_transaction(raw_hex, self.broadcast_providers)
        return TransactionResult.ok(txid)

    def get_transaction_status(self, txid: str) -> dict[str, Any]:
        return get_transaction_status(txid, self.utxo_providers)

    def decode_transaction(self, raw_hex: str) -> dict[str, Any]:
        return decode_transaction(raw_hex, self.network)
