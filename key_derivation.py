"""
Mnemonic to chain-specific key material.

Key material is derived fresh for every request and never cached:

- BTC: BIP-39 seed (no passphrase) -> BIP-84 m/84'/1'/0'/0/0 (testnet) or
  m/84'/0'/0'/0/0 (mainnet) -> P2WPKH address.
- ETH: standard m/44'/60'/0'/0/0 account via eth_account.
- SOL: first 32 bytes of the BIP-39 seed used as the ed25519 seed
  ("seed-truncation", matches addresses already handed out), or standard
  SLIP-0010 m/44'/501'/0'/0' ("slip10").
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

import coincurve
from bip_utils import (
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip44,
    Bip44Changes,
    Bip44Coins,
    Bip84,
    Bip84Coins,
)
from eth_account import Account
from solders.keypair import Keypair

from tx_errors import DerivationError

Chain = Literal["BTC", "ETH", "SOL"]

ETH_DERIVATION_PATH = "m/44'/60'/0'/0/0"
SOL_SLIP10_PATH = "m/44'/501'/0'/0'"

Account.enable_unaudited_hdwallet_features()


@dataclass
class DerivedKey:
    chain: Chain
    address: str
    public_key: bytes
    derivation_path: str
    private_key: bytes = field(repr=False)
    signer: Any = field(repr=False, default=None)

    def sign(self, digest: bytes) -> bytes:
        """
        Sign with the chain's native scheme.

        BTC: DER-encoded low-S ECDSA over a 32-byte sighash.
        ETH: 65-byte r||s||v signature over a 32-byte hash.
        SOL: 64-byte ed25519 signature over the message bytes.
        """
        if self.chain == "BTC":
            return coincurve.PrivateKey(self.private_key).sign(digest, hasher=None)
        if self.chain == "ETH":
            return bytes(self.signer.unsafe_sign_hash(digest).signature)
        return bytes(self.signer.sign_message(digest))


def _seed_from_mnemonic(mnemonic: str) -> bytes:
    normalized = " ".join((mnemonic or "").split())
    try:
        Bip39MnemonicValidator().Validate(normalized)
    except Exception:  # noqa: BLE001
        # Not chained: the validator's message may quote mnemonic words.
        raise DerivationError(
            "Mnemonic is not a valid BIP-39 seed phrase. Double-check words and spacing."
        ) from None
    return bytes(Bip39SeedGenerator(normalized).Generate(""))


def derive_btc_key(mnemonic: str, network: str = "testnet") -> DerivedKey:
    seed = _seed_from_mnemonic(mnemonic)
    coin = Bip84Coins.BITCOIN if network == "mainnet" else Bip84Coins.BITCOIN_TESTNET
    ctx = (
        Bip84.FromSeed(seed, coin)
        .Purpose()
        .Coin()
        .Account(0)
        .Change(Bip44Changes.CHAIN_EXT)
        .AddressIndex(0)
    )
    coin_type = 0 if network == "mainnet" else 1
    return DerivedKey(
        chain="BTC",
        address=str(ctx.PublicKey().ToAddress()),
        public_key=bytes(ctx.PublicKey().RawCompressed().ToBytes()),
        derivation_path=f"m/84'/{coin_type}'/0'/0/0",
        private_key=bytes(ctx.PrivateKey().Raw().ToBytes()),
    )


def derive_eth_account(mnemonic: str) -> DerivedKey:
    _seed_from_mnemonic(mnemonic)
    try:
        account = Account.from_mnemonic(
            " ".join(mnemonic.split()), account_path=ETH_DERIVATION_PATH
        )
    except Exception:  # noqa: BLE001
        raise DerivationError("Failed to derive Ethereum account from mnemonic.") from None
    return DerivedKey(
        chain="ETH",
        address=account.address,
        public_key=b"",
        derivation_path=ETH_DERIVATION_PATH,
        private_key=bytes(account.key),
        signer=account,
    )


def derive_sol_keypair(mnemonic: str, scheme: str = "seed-truncation") -> DerivedKey:
    seed = _seed_from_mnemonic(mnemonic)
    if scheme == "slip10":
        ctx = (
            Bip44.FromSeed(seed, Bip44Coins.SOLANA)
            .Purpose()
            .Coin()
            .Account(0)
            .Change(Bip44Changes.CHAIN_EXT)
        )
        secret = bytes(ctx.PrivateKey().Raw().ToBytes())
        path = SOL_SLIP10_PATH
    elif scheme == "seed-truncation":
        secret = seed[:32]
        path = "bip39-seed[0:32]"
    else:
        raise DerivationError(f"Unknown Solana derivation scheme {scheme!r}.")

    keypair = Keypair.from_seed(secret)
    pubkey = keypair.pubkey()
    return DerivedKey(
        chain="SOL",
        address=str(pubkey),
        public_key=bytes(pubkey),
        derivation_path=path,
        private_key=secret,
        signer=keypair,
    )
