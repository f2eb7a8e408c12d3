"""
PSBT Builder

This module constructs BIP174 PSBTs from an unsigned transaction description
plus per-input signing metadata. It serves the command line tooling and the
test-suite; the signer itself only consumes PSBTs.
"""

import base64
import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .exceptions import PSBTConstructionError
from .parser import (
    PSBT_GLOBAL_UNSIGNED_TX,
    PSBT_GLOBAL_XPUB,
    PSBT_IN_BIP32_DERIVATION,
    PSBT_IN_NON_WITNESS_UTXO,
    PSBT_IN_PARTIAL_SIG,
    PSBT_IN_REDEEM_SCRIPT,
    PSBT_IN_SIGHASH_TYPE,
    PSBT_IN_TAP_BIP32_DERIVATION,
    PSBT_IN_TAP_INTERNAL_KEY,
    PSBT_IN_TAP_MERKLE_ROOT,
    PSBT_IN_WITNESS_SCRIPT,
    PSBT_IN_WITNESS_UTXO,
    PSBT_MAGIC,
    PSBT_MAP_TERMINATOR,
    PSBT_OUT_BIP32_DERIVATION,
    PSBT_OUT_REDEEM_SCRIPT,
    PSBT_OUT_WITNESS_SCRIPT,
    PSBT_SEPARATOR,
)
from .transaction import Transaction, TxIn, TxOut
from .utils import encode_key_origin, encode_tap_bip32_derivation, serialize_key_value


@dataclass
class PSBTKeyValue:
    """Represents a key-value pair in PSBT format."""
    key_type: int
    key_data: bytes = field(default_factory=bytes)
    value: bytes = field(default_factory=bytes)

    def serialize(self) -> bytes:
        """Serialize key-value pair to PSBT format."""
        return serialize_key_value(bytes([self.key_type]) + self.key_data, self.value)


@dataclass
class InputMetadata:
    """Signing metadata attached to one PSBT input."""
    non_witness_utxo: Optional[Transaction] = None
    witness_utxo: Optional[TxOut] = None
    partial_sigs: Dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: Optional[int] = None
    redeem_script: Optional[bytes] = None
    witness_script: Optional[bytes] = None
    bip32_derivations: Dict[bytes, Tuple[bytes, List[int]]] = field(default_factory=dict)
    tap_bip32_derivations: Dict[bytes, Tuple[List[bytes], bytes, List[int]]] = field(default_factory=dict)
    tap_internal_key: Optional[bytes] = None
    tap_merkle_root: Optional[bytes] = None

    def serialize(self) -> bytes:
        """Serialize input to PSBT format."""
        pairs = []
        if self.non_witness_utxo is not None:
            pairs.append(PSBTKeyValue(PSBT_IN_NON_WITNESS_UTXO, b'', self.non_witness_utxo.serialize()))
        if self.witness_utxo is not None:
            pairs.append(PSBTKeyValue(PSBT_IN_WITNESS_UTXO, b'', self.witness_utxo.serialize()))
        for pubkey, sig in self.partial_sigs.items():
            pairs.append(PSBTKeyValue(PSBT_IN_PARTIAL_SIG, pubkey, sig))
        if self.sighash_type is not None:
            pairs.append(PSBTKeyValue(PSBT_IN_SIGHASH_TYPE, b'', struct.pack('<I', self.sighash_type)))
        if self.redeem_script is not None:
            pairs.append(PSBTKeyValue(PSBT_IN_REDEEM_SCRIPT, b'', self.redeem_script))
        if self.witness_script is not None:
            pairs.append(PSBTKeyValue(PSBT_IN_WITNESS_SCRIPT, b'', self.witness_script))
        for pubkey, (fingerprint, path) in self.bip32_derivations.items():
            pairs.append(PSBTKeyValue(PSBT_IN_BIP32_DERIVATION, pubkey,
                                      encode_key_origin(fingerprint, path)))
        for x_only, (leaf_hashes, fingerprint, path) in self.tap_bip32_derivations.items():
            pairs.append(PSBTKeyValue(PSBT_IN_TAP_BIP32_DERIVATION, x_only,
                                      encode_tap_bip32_derivation(leaf_hashes, fingerprint, path)))
        if self.tap_internal_key is not None:
            pairs.append(PSBTKeyValue(PSBT_IN_TAP_INTERNAL_KEY, b'', self.tap_internal_key))
        if self.tap_merkle_root is not None:
            pairs.append(PSBTKeyValue(PSBT_IN_TAP_MERKLE_ROOT, b'', self.tap_merkle_root))

        return b''.join(kv.serialize() for kv in pairs) + PSBT_MAP_TERMINATOR


@dataclass
class OutputMetadata:
    """Metadata attached to one PSBT output."""
    redeem_script: Optional[bytes] = None
    witness_script: Optional[bytes] = None
    bip32_derivations: Dict[bytes, Tuple[bytes, List[int]]] = field(default_factory=dict)

    def serialize(self) -> bytes:
        """Serialize output to PSBT format."""
        pairs = []
        if self.redeem_script is not None:
            pairs.append(PSBTKeyValue(PSBT_OUT_REDEEM_SCRIPT, b'', self.redeem_script))
        if self.witness_script is not None:
            pairs.append(PSBTKeyValue(PSBT_OUT_WITNESS_SCRIPT, b'', self.witness_script))
        for pubkey, (fingerprint, path) in self.bip32_derivations.items():
            pairs.append(PSBTKeyValue(PSBT_OUT_BIP32_DERIVATION, pubkey,
                                      encode_key_origin(fingerprint, path)))
        return b''.join(kv.serialize() for kv in pairs) + PSBT_MAP_TERMINATOR


class PSBTBuilder:
    """
    Builder for version 0 PSBTs.

    Inputs and outputs are appended in transaction order; metadata is passed
    as keyword arguments or edited afterwards through ``inputs``/``outputs``.
    """

    def __init__(self, version: int = 2, locktime: int = 0):
        """
        Initialize PSBT builder.

        Args:
            version: Transaction version (default: 2)
            locktime: Transaction locktime (default: 0)
        """
        self.tx = Transaction(version=version, locktime=locktime)
        self.inputs: List[InputMetadata] = []
        self.outputs: List[OutputMetadata] = []
        self.global_xpubs: Dict[bytes, Tuple[bytes, List[int]]] = {}

    def add_input(self, txid: str, vout: int, sequence: int = 0xfffffffd,
                  **metadata) -> InputMetadata:
        """
        Add an input to the PSBT.

        Args:
            txid: Transaction ID of the UTXO to spend (display order)
            vout: Output index of the UTXO to spend
            sequence: Sequence number (default signals RBF)
            **metadata: InputMetadata fields

        Returns:
            The metadata object for further edits
        """
        try:
            prev_txid = bytes.fromhex(txid)[::-1]
        except ValueError as e:
            raise PSBTConstructionError(f"Invalid txid: {txid}") from e
        if len(prev_txid) != 32:
            raise PSBTConstructionError(f"Invalid txid length: {txid}")

        self.tx.inputs.append(TxIn(prev_txid=prev_txid, prev_vout=vout, sequence=sequence))
        psbt_input = InputMetadata(**metadata)
        self.inputs.append(psbt_input)
        return psbt_input

    def add_output(self, script: bytes, amount: int, **metadata) -> OutputMetadata:
        """
        Add an output to the PSBT.

        Args:
            script: Output script
            amount: Amount in satoshis
            **metadata: OutputMetadata fields

        Returns:
            The metadata object for further edits
        """
        if amount < 0:
            raise PSBTConstructionError("Output amount cannot be negative")
        self.tx.outputs.append(TxOut(value=amount, script_pubkey=script))
        psbt_output = OutputMetadata(**metadata)
        self.outputs.append(psbt_output)
        return psbt_output

    def add_global_xpub(self, xpub: bytes, fingerprint: bytes, derivation_path: List[int]) -> None:
        """
        Add global extended public key to PSBT.

        Args:
            xpub: 78-byte serialized extended public key
            fingerprint: Master key fingerprint
            derivation_path: BIP32 derivation path
        """
        if len(xpub) != 78:
            raise PSBTConstructionError("Global xpub must be 78 bytes")
        self.global_xpubs[xpub] = (fingerprint, derivation_path)

    def set_sighash_type(self, input_index: int, sighash_type: int) -> None:
        """Set the sighash type of one input."""
        if input_index >= len(self.inputs):
            raise PSBTConstructionError(f"Input index {input_index} out of range")
        self.inputs[input_index].sighash_type = sighash_type

    def serialize(self) -> bytes:
        """
        Serialize the PSBT.

        Returns:
            PSBT bytes
        """
        global_pairs = [PSBTKeyValue(PSBT_GLOBAL_UNSIGNED_TX, b'', self.tx.serialize(include_witness=False))]
        for xpub, (fingerprint, path) in self.global_xpubs.items():
            global_pairs.append(PSBTKeyValue(PSBT_GLOBAL_XPUB, xpub, encode_key_origin(fingerprint, path)))

        parts = [PSBT_MAGIC + PSBT_SEPARATOR]
        parts.append(b''.join(kv.serialize() for kv in global_pairs) + PSBT_MAP_TERMINATOR)
        parts.extend(psbt_input.serialize() for psbt_input in self.inputs)
        parts.extend(psbt_output.serialize() for psbt_output in self.outputs)
        return b''.join(parts)

    def to_base64(self) -> str:
        """Serialize the PSBT as base64."""
        return base64.b64encode(self.serialize()).decode('ascii')

    def get_transaction_id(self) -> str:
        """Transaction id of the unsigned transaction."""
        return self.tx.txid()
