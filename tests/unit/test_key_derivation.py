import sys
from pathlib import Path

import coincurve
import pytest
from bip_utils import Bip39SeedGenerator
from solders.keypair import Keypair

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import key_derivation  # noqa: E402
from tx_errors import DerivationError  # noqa: E402

MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)


@pytest.mark.parametrize(
    "derive",
    [
        lambda m: key_derivation.derive_btc_key(m, "testnet"),
        key_derivation.derive_eth_account,
        key_derivation.derive_sol_keypair,
    ],
)
@pytest.mark.parametrize(
    "mnemonic",
    ["", "abandon abandon abandon", MNEMONIC.replace("about", "abandon")],
)
def test_invalid_mnemonic_raises_derivation_error(derive, mnemonic):
    with pytest.raises(DerivationError) as exc_info:
        derive(mnemonic)
    assert "abandon" not in str(exc_info.value)


def test_btc_mainnet_matches_bip84_vector():
    key = key_derivation.derive_btc_key(MNEMONIC, "mainnet")
    assert key.address == "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
    assert key.derivation_path == "m/84'/0'/0'/0/0"


def test_btc_testnet_key_is_p2wpkh():
    key = key_derivation.derive_btc_key(MNEMONIC, "testnet")
    assert key.address.startswith("tb1q")
    assert key.derivation_path == "m/84'/1'/0'/0/0"
    assert len(key.public_key) == 33


def test_btc_signature_verifies():
    key = key_derivation.derive_btc_key(MNEMONIC, "testnet")
    digest = bytes(range(32))
    sig = key.sign(digest)
    assert coincurve.PublicKey(key.public_key).verify(sig, digest, hasher=None)


def test_extra_whitespace_in_mnemonic_is_ignored():
    spaced = "  " + MNEMONIC.replace(" ", "   ") + "\n"
    assert (
        key_derivation.derive_btc_key(spaced).address
        == key_derivation.derive_btc_key(MNEMONIC).address
    )


def test_eth_standard_account():
    key = key_derivation.derive_eth_account(MNEMONIC)
    assert key.address == "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"
    assert key.derivation_path == "m/44'/60'/0'/0/0"


def test_sol_seed_truncation_uses_first_32_seed_bytes():
    seed = bytes(Bip39SeedGenerator(MNEMONIC).Generate(""))
    expected = str(Keypair.from_seed(seed[:32]).pubkey())

    key = key_derivation.derive_sol_keypair(MNEMONIC, "seed-truncation")

    assert key.address == expected
    assert key.derivation_path == "bip39-seed[0:32]"


def test_sol_slip10_differs_from_seed_truncation():
    slip10 = key_derivation.derive_sol_keypair(MNEMONIC, "slip10")
    truncated = key_derivation.derive_sol_keypair(MNEMONIC, "seed-truncation")
    assert slip10.address != truncated.address
    assert slip10.derivation_path == "m/44'/501'/0'/0'"


def test_sol_unknown_scheme_rejected():
    with pytest.raises(DerivationError):
        key_derivation.derive_sol_keypair(MNEMONIC, "ledger-live")


def test_private_key_not_in_repr():
    key = key_derivation.derive_btc_key(MNEMONIC)
    assert key.private_key.hex() not in repr(key)
