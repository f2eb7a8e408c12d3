"""
Shared test helpers: deterministic randomness, cosigner keys, setup files
and PSBT construction.
"""

import base64
from typing import List, Optional, Sequence, Tuple

from crypto.keys import DEFAULT_ACCOUNT_PATH, ExtendedKey, hash160, seed_to_master_key
from keystore.randomness import RandomnessSource
from psbt.builder import PSBTBuilder
from psbt.scripts import p2wpkh_script
from psbt.transaction import Transaction, TxIn, TxOut

# BlueWallet export of a 2-of-3 P2WSH wallet
BLUEWALLET_EXPORT = """# BlueWallet Multisig setup file
# this file may contain private information
#
Name: test5678
Policy: 2 of 3
Derivation: m/48'/0'/0'/2'
Format: P2WSH

EAB239AA: xpub6E2HG1bNB69EfRnM8vX2vCktifqLHnQH9Har7ZwWegwkss43rEa5EkJnCjiUKMnV5DRKQJUMCaiysNTq12RZ6cffhJbJtXp4atScMDF83SC

F843467D: xpub6EzLSnj1J7ZVK2o4HuU9pwyDfY6uF1wTpSH2g2dZy13oxqyXEJRb44PbeRrcXDaVLFhHq3MVxuzEfiRZBuCcETuNY7z2rNrNudBY7gZrWYu

16EFEC75: xpub6EFHgaRm1rd3AE8DmxXVncR4RcBsirn4ncDc2mW1oCThkQosh7Rdu6SdyugwWBZV97usQf5WwUn89UaH7bVRoZ5NY8sdwpt8H7Zi9ayhLk5
"""


class FixedRandomnessSource(RandomnessSource):
    """Deterministic randomness for tests: every byte equals ``fill``."""

    def __init__(self, fill: int = 0x11):
        self.fill = fill
        self.calls: List[int] = []

    def get_random_bytes(self, n: int) -> bytes:
        self.calls.append(n)
        return bytes([self.fill]) * n


def cosigner_master(tag: int) -> ExtendedKey:
    """Master key of an external cosigner, derived from a fixed seed."""
    return seed_to_master_key(bytes([tag]) * 32)


def account_line(master: ExtendedKey, derivation: str = DEFAULT_ACCOUNT_PATH,
                 network: str = "mainnet") -> Tuple[str, str]:
    """``(FINGERPRINT, xpub)`` pair for a setup file key line."""
    xpub = master.derive_path(derivation).to_xpub(network)
    return master.fingerprint.hex().upper(), xpub


def build_export(keys: Sequence[Tuple[str, str]], threshold: int,
                 derivation: str = DEFAULT_ACCOUNT_PATH, fmt: Optional[str] = "P2WSH",
                 name: Optional[str] = "treasury") -> str:
    """Render a BlueWallet multisig setup file."""
    lines = ["# BlueWallet Multisig setup file", "# this file contains only public keys", ""]
    if name is not None:
        lines.append(f"Name: {name}")
    lines.append(f"Policy: {threshold} of {len(keys)}")
    lines.append(f"Derivation: {derivation}")
    if fmt is not None:
        lines.append(f"Format: {fmt}")
    lines.append("")
    lines.extend(f"{fp}: {xpub}" for fp, xpub in keys)
    return "\n".join(lines) + "\n"


def funding_transaction(outputs: Sequence[Tuple[bytes, int]], tag: int = 0x01) -> Transaction:
    """Previous transaction paying ``outputs``; ``tag`` varies its txid."""
    return Transaction(
        version=2,
        inputs=[TxIn(prev_txid=bytes([tag]) * 32, prev_vout=0)],
        outputs=[TxOut(value=value, script_pubkey=script) for script, value in outputs],
    )


def p2wpkh_spend_psbt(child: ExtendedKey, fingerprint: bytes, path: List[int],
                      value: int = 100_000, send: int = 90_000,
                      destination: Optional[bytes] = None) -> PSBTBuilder:
    """One-input PSBT spending a P2WPKH output of ``child``."""
    script = p2wpkh_script(hash160(child.public_key.bytes))
    prev = funding_transaction([(script, value)])
    builder = PSBTBuilder()
    builder.add_input(
        prev.txid(), 0,
        witness_utxo=TxOut(value, script),
        bip32_derivations={child.public_key.bytes: (fingerprint, path)},
    )
    builder.add_output(destination or p2wpkh_script(b'\x22' * 20), send)
    return builder


def to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')

