from __future__ import annotations

import os
import re
import threading
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Literal

import kaspa
from bip_utils import (
    Bip32Slip10Secp256k1,
    Bip39MnemonicGenerator,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip39WordsNum,
)
from dotenv import load_dotenv

# Load .env from project root
PROJECT_ROOT = Path(__file__).parent
load_dotenv(PROJECT_ROOT / ".env")

KaspaNetwork = Literal["mainnet", "testnet-10", "testnet-11"]
KaspaNetworkType = Literal["mainnet", "testnet"]

SUPPORTED_NETWORKS: tuple[str, ...] = ("mainnet", "testnet-10", "testnet-11")
SOMPI_PER_KAS = 100_000_000
MAX_DECIMAL_PLACES = 8

# BIP44 coin type registered for Kaspa
KASPA_COIN_TYPE = 111111

_AMOUNT_RE = re.compile(r"^\d+(\.\d+)?$")


class KaspaConfigError(Exception):
    """Configuration or key-material error for the Kaspa wallet."""

    pass


@dataclass
class KaspaConfig:
    """
    Configuration for the Kaspa wallet server.

    Values are sourced from environment variables or a .env file.

    Key material:
    - KASPA_MNEMONIC: BIP-39 seed phrase (takes precedence).
    - KASPA_PRIVATE_KEY: hex-encoded secp256k1 private key.
    - KASPA_MNEMONIC_PASSPHRASE: optional BIP-39 passphrase.
    - KASPA_ACCOUNT_INDEX: BIP44 account used with the mnemonic (default 0).

    Network and transport:
    - KASPA_NETWORK: "mainnet", "testnet-10" or "testnet-11" (defaults to mainnet).
    - KASPA_RPC_URL: optional explicit node URL; the public resolver is used otherwise.
    - KASPA_RPC_TIMEOUT: seconds to wait for the node connection (default 30).
    - KASPA_FEE_MASS_ESTIMATE: mass used to project the worst-case fee from the
      priority fee rate (default 3000). A rough heuristic, not a protocol formula.
    """

    network: KaspaNetwork
    mnemonic: str | None = None
    private_key_hex: str | None = None
    passphrase: str = ""
    account_index: int = 0
    rpc_url: str | None = None
    rpc_timeout: float = 30.0
    fee_mass_estimate: int = 3000

    @classmethod
    def from_env(cls) -> KaspaConfig:
        mnemonic = os.getenv("KASPA_MNEMONIC") or None
        private_key = os.getenv("KASPA_PRIVATE_KEY") or None

        # When both are set, prefer the mnemonic over the single key.
        if mnemonic:
            private_key = None
        if not mnemonic and not private_key:
            raise KaspaConfigError(
                "Either KASPA_MNEMONIC or KASPA_PRIVATE_KEY environment variable must be set"
            )

        raw_network = os.getenv("KASPA_NETWORK", "mainnet").strip().lower() or "mainnet"
        if raw_network not in SUPPORTED_NETWORKS:
            raise KaspaConfigError(
                f"Invalid KASPA_NETWORK={raw_network!r}. "
                f"Supported: {', '.join(SUPPORTED_NETWORKS)}"
            )

        try:
            account_index = int(os.getenv("KASPA_ACCOUNT_INDEX", "0"))
        except ValueError as exc:
            raise KaspaConfigError("KASPA_ACCOUNT_INDEX must be an integer.") from exc
        if account_index < 0:
            raise KaspaConfigError("KASPA_ACCOUNT_INDEX must not be negative.")

        rpc_timeout = 30.0
        timeout_env = os.getenv("KASPA_RPC_TIMEOUT")
        if timeout_env is not None and timeout_env.strip():
            try:
                rpc_timeout = max(1.0, float(timeout_env))
            except ValueError:
                pass

        fee_mass_estimate = 3000
        fee_mass_env = os.getenv("KASPA_FEE_MASS_ESTIMATE")
        if fee_mass_env is not None and fee_mass_env.strip():
            try:
                fee_mass_estimate = max(1, int(fee_mass_env))
            except ValueError:
                pass

        return cls(
            network=raw_network,  # type: ignore[arg-type]
            mnemonic=mnemonic,
            private_key_hex=private_key,
            passphrase=os.getenv("KASPA_MNEMONIC_PASSPHRASE", ""),
            account_index=account_index,
            rpc_url=os.getenv("KASPA_RPC_URL") or None,
            rpc_timeout=rpc_timeout,
            fee_mass_estimate=fee_mass_estimate,
        )


def network_type_for(network: str) -> KaspaNetworkType:
    if network == "mainnet":
        return "mainnet"
    return "testnet"


def _derive_private_key_hex(
    mnemonic: str, account_index: int = 0, passphrase: str = ""
) -> str:
    # BIP44 path: m/44'/111111'/account'/0/0 (external chain, first address)
    seed_bytes = Bip39SeedGenerator(mnemonic).Generate(passphrase)
    path = f"m/44'/{KASPA_COIN_TYPE}'/{account_index}'/0/0"
    ctx = Bip32Slip10Secp256k1.FromSeed(seed_bytes).DerivePath(path)
    return ctx.PrivateKey().Raw().ToHex()


class KaspaWallet:
    """Single-address wallet holding one signing key for one network."""

    def __init__(self, private_key: kaspa.PrivateKey, network: KaspaNetwork) -> None:
        self._private_key = private_key
        self._network = network

    @classmethod
    def from_private_key(
        cls, private_key_hex: str, network: KaspaNetwork = "mainnet"
    ) -> KaspaWallet:
        if not private_key_hex:
            raise KaspaConfigError("Private key is required")
        try:
            private_key = kaspa.PrivateKey(private_key_hex.strip())
        except Exception as exc:  # noqa: BLE001
            raise KaspaConfigError("Invalid private key format") from exc
        return cls(private_key, network)

    @classmethod
    def from_mnemonic(
        cls,
        phrase: str,
        network: KaspaNetwork = "mainnet",
        account_index: int = 0,
        passphrase: str = "",
    ) -> KaspaWallet:
        if not phrase:
            raise KaspaConfigError("Mnemonic phrase is required")
        try:
            Bip39MnemonicValidator().Validate(phrase)
            key_hex = _derive_private_key_hex(phrase, account_index, passphrase)
            private_key = kaspa.PrivateKey(key_hex)
        except Exception:  # noqa: BLE001
            # Do not chain the original error; it may echo the phrase.
            raise KaspaConfigError("Invalid mnemonic phrase") from None
        return cls(private_key, network)

    @classmethod
    def from_config(cls, cfg: KaspaConfig) -> KaspaWallet:
        if cfg.mnemonic:
            return cls.from_mnemonic(
                cfg.mnemonic, cfg.network, cfg.account_index, cfg.passphrase
            )
        return cls.from_private_key(cfg.private_key_hex or "", cfg.network)

    def get_address(self) -> str:
        address = self._private_key.to_address(self.get_network_type())
        return address.to_string()

    def get_private_key(self) -> kaspa.PrivateKey:
        return self._private_key

    def get_network_type(self) -> KaspaNetworkType:
        return network_type_for(self._network)

    def get_network_id(self) -> KaspaNetwork:
        return self._network


_wallet_lock = threading.Lock()
_wallet_instance: KaspaWallet | None = None


def get_wallet() -> KaspaWallet:
    """Return the process-wide wallet, building it from the environment once."""
    global _wallet_instance
    if _wallet_instance is None:
        with _wallet_lock:
            if _wallet_instance is None:
                _wallet_instance = KaspaWallet.from_config(KaspaConfig.from_env())
    return _wallet_instance


def reset_wallet() -> None:
    global _wallet_instance
    with _wallet_lock:
        _wallet_instance = None


def generate_mnemonic_phrase(word_count: int = 24) -> str:
    if word_count == 12:
        words_num = Bip39WordsNum.WORDS_NUM_12
    elif word_count == 24:
        words_num = Bip39WordsNum.WORDS_NUM_24
    else:
        raise ValueError("Word count must be 12 or 24")
    return Bip39MnemonicGenerator().FromWordsNumber(words_num).ToStr()


def kas_to_sompi(amount: str) -> int:
    """
    Convert a decimal KAS string into sompi.

    At most 8 fractional digits are accepted; the result must be positive.
    """
    trimmed = str(amount).strip()
    if not _AMOUNT_RE.match(trimmed):
        raise ValueError("Amount must be a valid decimal number")

    integer_part, _, fractional_part = trimmed.partition(".")
    if len(fractional_part) > MAX_DECIMAL_PLACES:
        raise ValueError(
            f"Amount cannot have more than {MAX_DECIMAL_PLACES} decimal places"
        )
    fractional_part = fractional_part.ljust(MAX_DECIMAL_PLACES, "0")

    sompi = int(integer_part) * SOMPI_PER_KAS + int(fractional_part)
    if sompi <= 0:
        raise ValueError("Amount must be greater than zero")
    return sompi


def sompi_to_kas(sompi: int) -> Decimal:
    return Decimal(int(sompi)) / Decimal(SOMPI_PER_KAS)


def format_kas(sompi: int) -> str:
    """Render sompi as a KAS string without trailing zeros."""
    kas = sompi_to_kas(sompi)
    if kas == kas.to_integral_value():
        return str(kas.quantize(Decimal(1)))
    return format(kas.normalize(), "f")


def validate_address(address: str, wallet: KaspaWallet) -> None:
    """Reject malformed addresses and addresses for the wrong network."""
    try:
        kaspa.Address(address)
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"Invalid Kaspa address: {address}") from exc

    prefix = address.split(":", 1)[0]
    expected_prefix = "kaspa" if wallet.get_network_type() == "mainnet" else "kaspatest"
    if prefix != expected_prefix:
        raise ValueError(
            f"Address network mismatch: expected {expected_prefix}: address "
            f"for {wallet.get_network_id()}, got {prefix}:"
        )
