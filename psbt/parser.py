"""
PSBT Parser and Serializer

This module parses BIP174 (version 0) PSBTs into typed views, validates them
against the BIP174 rules, and serializes them back. Every key-value map keeps
its original bytes: a map that was not modified is written back exactly as it
was read, so a signer only ever changes the inputs it signs.
"""

import base64
import binascii
import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from .exceptions import (
    PSBTParsingError,
    PSBTValidationError,
    TransactionParsingError,
)
from .transaction import Transaction, TxOut
from .utils import (
    decode_key_origin,
    decode_tap_bip32_derivation,
    parse_key_value,
    serialize_key_value,
)


# PSBT Magic Bytes
PSBT_MAGIC = b'psbt'
PSBT_SEPARATOR = b'\xff'
PSBT_MAP_TERMINATOR = b'\x00'

# PSBT Global Types (BIP-174)
PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_GLOBAL_XPUB = 0x01
PSBT_GLOBAL_VERSION = 0xfb
PSBT_GLOBAL_PROPRIETARY = 0xfc

# PSBT Input Types
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_KEY_SIG = 0x13
PSBT_IN_TAP_SCRIPT_SIG = 0x14
PSBT_IN_TAP_LEAF_SCRIPT = 0x15
PSBT_IN_TAP_BIP32_DERIVATION = 0x16
PSBT_IN_TAP_INTERNAL_KEY = 0x17
PSBT_IN_TAP_MERKLE_ROOT = 0x18
PSBT_IN_PROPRIETARY = 0xfc

# PSBT Output Types
PSBT_OUT_REDEEM_SCRIPT = 0x00
PSBT_OUT_WITNESS_SCRIPT = 0x01
PSBT_OUT_BIP32_DERIVATION = 0x02
PSBT_OUT_TAP_INTERNAL_KEY = 0x05
PSBT_OUT_TAP_TREE = 0x06
PSBT_OUT_TAP_BIP32_DERIVATION = 0x07
PSBT_OUT_PROPRIETARY = 0xfc

SUPPORTED_PSBT_VERSION = 0

KeyOrigin = Tuple[bytes, List[int]]


class KeyValueMap:
    """
    Ordered PSBT key-value map that remembers its serialized form.

    Attributes:
        entries: (key, value) pairs in their original order
        raw: Serialized bytes of the map as read, including the terminator
        dirty: True once the map has been modified
    """

    def __init__(self, entries: Optional[List[Tuple[bytes, bytes]]] = None,
                 raw: Optional[bytes] = None):
        self.entries = list(entries or [])
        self.raw = raw
        self.dirty = raw is None

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, key: bytes) -> Optional[bytes]:
        for entry_key, value in self.entries:
            if entry_key == key:
                return value
        return None

    def set(self, key: bytes, value: bytes) -> None:
        """Insert or replace an entry and mark the map as modified."""
        for i, (entry_key, _) in enumerate(self.entries):
            if entry_key == key:
                self.entries[i] = (key, value)
                break
        else:
            self.entries.append((key, value))
        self.dirty = True

    def serialize(self) -> bytes:
        if not self.dirty and self.raw is not None:
            return self.raw
        return b''.join(serialize_key_value(k, v) for k, v in self.entries) + PSBT_MAP_TERMINATOR


@dataclass
class PSBTGlobal:
    """Represents global fields in a PSBT."""
    unsigned_tx: Transaction
    version: int = 0
    xpubs: Dict[bytes, KeyOrigin] = field(default_factory=dict)
    fields: KeyValueMap = field(default_factory=KeyValueMap)


@dataclass
class PSBTInput:
    """Represents input fields in a PSBT."""
    non_witness_utxo: Optional[Transaction] = None
    witness_utxo: Optional[TxOut] = None
    partial_sigs: Dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: Optional[int] = None
    redeem_script: Optional[bytes] = None
    witness_script: Optional[bytes] = None
    bip32_derivations: Dict[bytes, KeyOrigin] = field(default_factory=dict)
    final_scriptsig: Optional[bytes] = None
    final_scriptwitness: Optional[bytes] = None
    tap_key_sig: Optional[bytes] = None
    tap_bip32_derivations: Dict[bytes, Tuple[List[bytes], bytes, List[int]]] = field(default_factory=dict)
    tap_internal_key: Optional[bytes] = None
    tap_merkle_root: Optional[bytes] = None
    fields: KeyValueMap = field(default_factory=KeyValueMap)

    @property
    def is_finalized(self) -> bool:
        return self.final_scriptsig is not None or self.final_scriptwitness is not None

    def add_partial_sig(self, pubkey: bytes, signature: bytes) -> None:
        """Record an ECDSA signature (DER + sighash byte) for ``pubkey``."""
        self.partial_sigs[pubkey] = signature
        self.fields.set(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, signature)

    def set_tap_key_sig(self, signature: bytes) -> None:
        """Record a Taproot key-path Schnorr signature."""
        if len(signature) not in (64, 65):
            raise PSBTValidationError("Taproot key signature must be 64 or 65 bytes")
        self.tap_key_sig = signature
        self.fields.set(bytes([PSBT_IN_TAP_KEY_SIG]), signature)


@dataclass
class PSBTOutput:
    """Represents output fields in a PSBT."""
    redeem_script: Optional[bytes] = None
    witness_script: Optional[bytes] = None
    bip32_derivations: Dict[bytes, KeyOrigin] = field(default_factory=dict)
    tap_internal_key: Optional[bytes] = None
    tap_bip32_derivations: Dict[bytes, Tuple[List[bytes], bytes, List[int]]] = field(default_factory=dict)
    fields: KeyValueMap = field(default_factory=KeyValueMap)


@dataclass
class PSBT:
    """A parsed PSBT: global map, one map per input and one per output."""
    psbt_global: PSBTGlobal
    inputs: List[PSBTInput]
    outputs: List[PSBTOutput]

    @property
    def tx(self) -> Transaction:
        return self.psbt_global.unsigned_tx

    def serialize(self) -> bytes:
        parts = [PSBT_MAGIC + PSBT_SEPARATOR, self.psbt_global.fields.serialize()]
        parts.extend(psbt_input.fields.serialize() for psbt_input in self.inputs)
        parts.extend(psbt_output.fields.serialize() for psbt_output in self.outputs)
        return b''.join(parts)

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode('ascii')

    def spent_output(self, index: int) -> Optional[TxOut]:
        """
        The output spent by input ``index``, from witness_utxo or non_witness_utxo.

        Returns:
            TxOut or None when the PSBT carries no UTXO data for the input
        """
        psbt_input = self.inputs[index]
        if psbt_input.witness_utxo is not None:
            return psbt_input.witness_utxo
        if psbt_input.non_witness_utxo is not None:
            vout = self.tx.inputs[index].prev_vout
            return psbt_input.non_witness_utxo.outputs[vout]
        return None


class PSBTParser:
    """
    Parser for BIP174 PSBTs.

    ``parse`` raises PSBTParsingError when the bytes are not a well-formed
    PSBT and PSBTValidationError when a well-formed PSBT breaks a BIP174 rule.
    """

    def parse(self, psbt_data: Union[bytes, str]) -> PSBT:
        """
        Parse PSBT data.

        Args:
            psbt_data: PSBT data as bytes or base64 string

        Returns:
            PSBT object with typed views over every map
        """
        if isinstance(psbt_data, str):
            try:
                psbt_data = base64.b64decode(psbt_data.strip(), validate=True)
            except (binascii.Error, ValueError) as e:
                raise PSBTParsingError(f"Invalid base64 encoding: {e}") from e

        if not psbt_data.startswith(PSBT_MAGIC + PSBT_SEPARATOR):
            raise PSBTParsingError("Invalid PSBT magic bytes")

        offset = len(PSBT_MAGIC + PSBT_SEPARATOR)
        global_map, offset = self._read_map(psbt_data, offset, "global")
        psbt_global = self._parse_global_fields(global_map)
        tx = psbt_global.unsigned_tx

        inputs = []
        for i in range(len(tx.inputs)):
            input_map, offset = self._read_map(psbt_data, offset, f"input {i}")
            inputs.append(self._parse_input_fields(input_map, i))

        outputs = []
        for i in range(len(tx.outputs)):
            output_map, offset = self._read_map(psbt_data, offset, f"output {i}")
            outputs.append(self._parse_output_fields(output_map, i))

        if offset != len(psbt_data):
            raise PSBTParsingError(f"Trailing data after PSBT: {len(psbt_data) - offset} bytes")

        psbt = PSBT(psbt_global=psbt_global, inputs=inputs, outputs=outputs)
        errors = self._validate_psbt(psbt)
        if errors:
            raise PSBTValidationError("; ".join(errors))
        return psbt

    def _read_map(self, data: bytes, offset: int, label: str) -> Tuple[KeyValueMap, int]:
        """Read one key-value map, rejecting duplicate keys."""
        start = offset
        entries = []
        seen = set()
        while True:
            try:
                key, value, offset = parse_key_value(data, offset)
            except ValueError as e:
                raise PSBTParsingError(f"Truncated {label} map: {e}") from e
            if not key:
                break
            if key in seen:
                raise PSBTParsingError(f"Duplicate key in {label} map: {key.hex()}")
            seen.add(key)
            entries.append((key, value))

        return KeyValueMap(entries, raw=data[start:offset]), offset

    def _parse_global_fields(self, fields: KeyValueMap) -> PSBTGlobal:
        """Parse PSBT global fields."""
        unsigned_tx = None
        version = 0
        xpubs = {}

        for key, value in fields.entries:
            key_type = key[0]
            if key_type == PSBT_GLOBAL_UNSIGNED_TX:
                self._require_key_length(key, 1, "unsigned transaction")
                try:
                    unsigned_tx = Transaction.parse(value, allow_witness=False)
                except TransactionParsingError as e:
                    raise PSBTParsingError(f"Invalid unsigned transaction: {e}") from e
            elif key_type == PSBT_GLOBAL_VERSION:
                self._require_key_length(key, 1, "version")
                if len(value) != 4:
                    raise PSBTParsingError("PSBT version must be 4 bytes")
                version = struct.unpack('<I', value)[0]
            elif key_type == PSBT_GLOBAL_XPUB:
                if len(key) != 79:
                    raise PSBTParsingError("Global xpub key must carry a 78-byte extended key")
                xpubs[key[1:]] = self._decode_origin(value, "global xpub")

        if version != SUPPORTED_PSBT_VERSION:
            raise PSBTValidationError(f"Unsupported PSBT version: {version}")
        if unsigned_tx is None:
            raise PSBTParsingError("Missing unsigned transaction in global fields")

        for i, txin in enumerate(unsigned_tx.inputs):
            if txin.script_sig or txin.witness:
                raise PSBTValidationError(f"Unsigned transaction input {i} has a non-empty scriptSig")

        return PSBTGlobal(unsigned_tx=unsigned_tx, version=version, xpubs=xpubs, fields=fields)

    def _parse_input_fields(self, fields: KeyValueMap, index: int) -> PSBTInput:
        """Parse PSBT input fields."""
        psbt_input = PSBTInput(fields=fields)
        label = f"input {index}"

        for key, value in fields.entries:
            key_type = key[0]
            if key_type == PSBT_IN_NON_WITNESS_UTXO:
                self._require_key_length(key, 1, f"{label} non-witness UTXO")
                psbt_input.non_witness_utxo = self._decode_transaction(value, label)
            elif key_type == PSBT_IN_WITNESS_UTXO:
                self._require_key_length(key, 1, f"{label} witness UTXO")
                try:
                    psbt_input.witness_utxo = TxOut.from_bytes(value)
                except TransactionParsingError as e:
                    raise PSBTParsingError(f"Invalid witness UTXO in {label}: {e}") from e
            elif key_type == PSBT_IN_PARTIAL_SIG:
                self._require_pubkey(key[1:], f"{label} partial signature")
                psbt_input.partial_sigs[key[1:]] = value
            elif key_type == PSBT_IN_SIGHASH_TYPE:
                self._require_key_length(key, 1, f"{label} sighash type")
                if len(value) != 4:
                    raise PSBTParsingError(f"Sighash type in {label} must be 4 bytes")
                psbt_input.sighash_type = struct.unpack('<I', value)[0]
            elif key_type == PSBT_IN_REDEEM_SCRIPT:
                self._require_key_length(key, 1, f"{label} redeem script")
                psbt_input.redeem_script = value
            elif key_type == PSBT_IN_WITNESS_SCRIPT:
                self._require_key_length(key, 1, f"{label} witness script")
                psbt_input.witness_script = value
            elif key_type == PSBT_IN_BIP32_DERIVATION:
                self._require_pubkey(key[1:], f"{label} BIP32 derivation")
                psbt_input.bip32_derivations[key[1:]] = self._decode_origin(value, label)
            elif key_type == PSBT_IN_FINAL_SCRIPTSIG:
                self._require_key_length(key, 1, f"{label} final scriptSig")
                psbt_input.final_scriptsig = value
            elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
                self._require_key_length(key, 1, f"{label} final witness")
                psbt_input.final_scriptwitness = value
            elif key_type == PSBT_IN_TAP_KEY_SIG:
                self._require_key_length(key, 1, f"{label} taproot key signature")
                if len(value) not in (64, 65):
                    raise PSBTParsingError(f"Taproot key signature in {label} must be 64 or 65 bytes")
                psbt_input.tap_key_sig = value
            elif key_type == PSBT_IN_TAP_BIP32_DERIVATION:
                self._require_key_length(key, 33, f"{label} taproot BIP32 derivation")
                psbt_input.tap_bip32_derivations[key[1:]] = self._decode_tap_origin(value, label)
            elif key_type == PSBT_IN_TAP_INTERNAL_KEY:
                self._require_key_length(key, 1, f"{label} taproot internal key")
                if len(value) != 32:
                    raise PSBTParsingError(f"Taproot internal key in {label} must be 32 bytes")
                psbt_input.tap_internal_key = value
            elif key_type == PSBT_IN_TAP_MERKLE_ROOT:
                self._require_key_length(key, 1, f"{label} taproot merkle root")
                if len(value) != 32:
                    raise PSBTParsingError(f"Taproot merkle root in {label} must be 32 bytes")
                psbt_input.tap_merkle_root = value

        return psbt_input

    def _parse_output_fields(self, fields: KeyValueMap, index: int) -> PSBTOutput:
        """Parse PSBT output fields."""
        psbt_output = PSBTOutput(fields=fields)
        label = f"output {index}"

        for key, value in fields.entries:
            key_type = key[0]
            if key_type == PSBT_OUT_REDEEM_SCRIPT:
                self._require_key_length(key, 1, f"{label} redeem script")
                psbt_output.redeem_script = value
            elif key_type == PSBT_OUT_WITNESS_SCRIPT:
                self._require_key_length(key, 1, f"{label} witness script")
                psbt_output.witness_script = value
            elif key_type == PSBT_OUT_BIP32_DERIVATION:
                self._require_pubkey(key[1:], f"{label} BIP32 derivation")
                psbt_output.bip32_derivations[key[1:]] = self._decode_origin(value, label)
            elif key_type == PSBT_OUT_TAP_INTERNAL_KEY:
                self._require_key_length(key, 1, f"{label} taproot internal key")
                psbt_output.tap_internal_key = value
            elif key_type == PSBT_OUT_TAP_BIP32_DERIVATION:
                self._require_key_length(key, 33, f"{label} taproot BIP32 derivation")
                psbt_output.tap_bip32_derivations[key[1:]] = self._decode_tap_origin(value, label)

        return psbt_output

    def _validate_psbt(self, psbt: PSBT) -> List[str]:
        """
        Validate PSBT structure against BIP-174.

        Args:
            psbt: Parsed PSBT

        Returns:
            List of errors (empty when valid)
        """
        errors = []
        tx = psbt.tx

        for i, psbt_input in enumerate(psbt.inputs):
            prev = psbt_input.non_witness_utxo
            if prev is None:
                continue
            txin = tx.inputs[i]
            if prev.txid_bytes() != txin.prev_txid:
                errors.append(f"Input {i}: non-witness UTXO does not match the spent transaction id")
            elif txin.prev_vout >= len(prev.outputs):
                errors.append(f"Input {i}: spent output index {txin.prev_vout} out of range")
            elif psbt_input.witness_utxo is not None and \
                    prev.outputs[txin.prev_vout] != psbt_input.witness_utxo:
                errors.append(f"Input {i}: witness UTXO disagrees with non-witness UTXO")

        return errors

    @staticmethod
    def _require_key_length(key: bytes, length: int, what: str) -> None:
        if len(key) != length:
            raise PSBTParsingError(f"Invalid key length for {what}: {len(key)}")

    @staticmethod
    def _require_pubkey(pubkey: bytes, what: str) -> None:
        if len(pubkey) not in (33, 65):
            raise PSBTParsingError(f"Invalid public key length for {what}: {len(pubkey)}")

    @staticmethod
    def _decode_transaction(value: bytes, label: str) -> Transaction:
        try:
            return Transaction.parse(value)
        except TransactionParsingError as e:
            raise PSBTParsingError(f"Invalid non-witness UTXO in {label}: {e}") from e

    @staticmethod
    def _decode_origin(value: bytes, label: str) -> KeyOrigin:
        try:
            return decode_key_origin(value)
        except ValueError as e:
            raise PSBTParsingError(f"Invalid key origin in {label}: {e}") from e

    @staticmethod
    def _decode_tap_origin(value: bytes, label: str) -> Tuple[List[bytes], bytes, List[int]]:
        try:
            return decode_tap_bip32_derivation(value)
        except ValueError as e:
            raise PSBTParsingError(f"Invalid taproot key origin in {label}: {e}") from e


def parse_psbt(psbt_data: Union[bytes, str]) -> PSBT:
    """
    Parse PSBT from raw bytes or a base64 string.

    Args:
        psbt_data: Raw PSBT bytes or base64-encoded PSBT

    Returns:
        PSBT object
    """
    return PSBTParser().parse(psbt_data)

